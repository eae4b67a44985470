"""
Tests for the evaluator library: factory, EOS, water retention, the
Richards water content built from configuration, the surface-to-top-cells
map and the advected energy source.
"""
import numpy as np
import pytest

from subsurf.core.constants import ATMOSPHERIC_PRESSURE, TAG_NEXT, WATER_MOLAR_MASS
from subsurf.core.exceptions import ConfigurationError
from subsurf.discretization.mesh import ColumnMesh, SurfaceMesh
from subsurf.state.evaluators import (
    AdvectedEnergySourceEvaluator,
    EOSEvaluator,
    IndependentVariableEvaluator,
    SurfaceRelPermEvaluator,
    TopCellsSurfaceEvaluator,
    VanGenuchtenModel,
    build_evaluators,
    create_evaluator,
    infer_density_key,
)
from subsurf.state.evaluators.wrm import VanGenuchtenParameters
from subsurf.core.config import parse_options
from subsurf.state.keys import DEFAULT_DOMAIN, SURFACE_DOMAIN
from subsurf.state.store import StateStore

VG = {"van Genuchten alpha": 2.e-4, "van Genuchten n": 2.0, "residual saturation": 0.1}


@pytest.fixture
def store():
    s = StateStore(ColumnMesh.uniform(4, 2.0, area=2.0))
    s.set_scalar("atmospheric_pressure", ATMOSPHERIC_PRESSURE)
    return s


class TestFactory:

    def test_unknown_type_fails_fast(self):
        with pytest.raises(ConfigurationError, match="Unknown field evaluator type"):
            create_evaluator({"evaluator name": "porosity", "field evaluator type": "magic"})

    def test_independent_variable_requires_value(self):
        with pytest.raises(ConfigurationError):
            IndependentVariableEvaluator({"evaluator name": "porosity"})

    def test_independent_variable_is_set_at_setup(self, store):
        evaluator = create_evaluator({"evaluator name": "porosity",
                                      "field evaluator type": "independent variable",
                                      "value": 0.3})
        evaluator.setup(store)
        np.testing.assert_allclose(store.get_field("porosity", TAG_NEXT)["cell"], 0.3)

    def test_odd_unfrozen_alpha_is_rejected(self):
        with pytest.raises(ConfigurationError, match="even"):
            SurfaceRelPermEvaluator({"evaluator name": "surface-relative_permeability",
                                     "unfrozen rel perm alpha": 3})


class TestEOS:

    @pytest.mark.parametrize("name,basis,explicit,expected", [
        ("molar_density_liquid", "molar", None, "molar_density_liquid"),
        ("molar_density_liquid", "mass", None, "mass_density_liquid"),
        ("mass_density_ice", "molar", None, "molar_density_ice"),
        ("density", "molar", "n_liquid", "n_liquid"),
    ])
    def test_density_key_inference(self, name, basis, explicit, expected):
        assert infer_density_key(name, basis, explicit) == expected

    def test_density_key_without_hint_is_required(self):
        with pytest.raises(ConfigurationError):
            infer_density_key("density", "molar", None)

    def test_both_mode_with_constant_density(self, store):
        store.require_primary("temperature", TAG_NEXT)
        store.require_primary("pressure", TAG_NEXT)
        evaluator = EOSEvaluator({
            "evaluator name": "molar_density_liquid",
            "EOS basis": "both",
            "pressure key": "pressure",
            "EOS parameters": {"EOS type": "constant", "density [kg m^-3]": 1000.0},
        })
        assert evaluator.my_keys == ["molar_density_liquid", "mass_density_liquid"]
        evaluator.setup(store)
        store.set_primary("temperature", TAG_NEXT, 290.0)
        store.set_primary("pressure", TAG_NEXT, ATMOSPHERIC_PRESSURE)

        n = store.get_field("molar_density_liquid", TAG_NEXT)["cell"]
        rho = store.get_field("mass_density_liquid", TAG_NEXT)["cell"]
        np.testing.assert_allclose(n, 1000.0 / WATER_MOLAR_MASS)
        np.testing.assert_allclose(rho, 1000.0)
        np.testing.assert_allclose(
            store.get_derivative("molar_density_liquid", TAG_NEXT, "pressure")["cell"], 0.0)

    def test_linear_eos_pressure_derivative(self, store):
        store.require_primary("temperature", TAG_NEXT)
        store.require_primary("pressure", TAG_NEXT)
        EOSEvaluator({
            "evaluator name": "molar_density_liquid",
            "pressure key": "pressure",
            "EOS parameters": {"EOS type": "linear", "compressibility [Pa^-1]": 1.e-9},
        }).setup(store)
        store.set_primary("temperature", TAG_NEXT, 273.15)
        store.set_primary("pressure", TAG_NEXT, 2 * ATMOSPHERIC_PRESSURE)

        dn_dp = store.get_derivative("molar_density_liquid", TAG_NEXT, "pressure")["cell"]
        np.testing.assert_allclose(dn_dp, 1000.0 * 1.e-9 / WATER_MOLAR_MASS)

    def test_missing_parameters_sublist(self):
        with pytest.raises(ConfigurationError, match="EOS parameters"):
            EOSEvaluator({"evaluator name": "molar_density_liquid"})


class TestVanGenuchten:

    @pytest.fixture
    def model(self):
        return VanGenuchtenModel(parse_options(VanGenuchtenParameters, VG))

    def test_saturated_at_non_positive_capillary_pressure(self, model):
        np.testing.assert_allclose(model.saturation(np.array([-100.0, 0.0])), 1.0)
        np.testing.assert_allclose(model.k_relative(np.array([1.0])), 1.0)

    def test_retention_curve_is_monotone_and_bounded(self, model):
        pc = np.logspace(1, 7, 20)
        s = model.saturation(pc)
        assert np.all(np.diff(s) < 0)
        assert np.all(s > 0.1) and np.all(s < 1.0)

    def test_capillary_pressure_inverts_saturation(self, model):
        pc = np.array([1.e3, 1.e4, 1.e5])
        np.testing.assert_allclose(model.capillary_pressure(model.saturation(pc)), pc, rtol=1e-8)

    def test_saturation_derivative_matches_finite_difference(self, model):
        pc = np.array([2.e3, 5.e3, 2.e4])
        eps = 1.e-3
        fd = (model.saturation(pc + eps) - model.saturation(pc - eps)) / (2 * eps)
        np.testing.assert_allclose(model.d_saturation(pc), fd, rtol=1e-5)

    def test_shape_parameter_is_required(self):
        with pytest.raises(ConfigurationError):
            parse_options(VanGenuchtenParameters, {"van Genuchten alpha": 1.e-4})

    def test_smoothing_reaches_one_with_zero_slope(self):
        model = VanGenuchtenModel(parse_options(
            VanGenuchtenParameters, {**VG, "smoothing interval width [saturation]": 0.05}))
        assert model.k_relative(np.array([1.0 - 1.e-9]))[0] == pytest.approx(1.0, abs=1e-4)
        assert model.d_k_relative(np.array([1.0 - 1.e-9]))[0] == pytest.approx(0.0, abs=1e-3)


class TestRichardsWaterContent:
    """Water content assembled from configuration through build_evaluators"""

    STATE = {
        "saturation_liquid": {"field evaluator type": "water retention", "WRM parameters": VG},
        "water_content": {"field evaluator type": "richards water content"},
        "molar_density_liquid": {
            "field evaluator type": "eos",
            "pressure key": "pressure",
            "EOS parameters": {"EOS type": "constant", "density [kg m^-3]": 1000.0},
        },
        "cell_volume": {"field evaluator type": "cell volume"},
        "porosity": {"field evaluator type": "independent variable", "value": 0.4},
        "temperature": {"field evaluator type": "independent variable", "value": 285.0},
        "molar_density_gas": {"field evaluator type": "independent variable", "value": 40.0},
        "mol_frac_gas": {"field evaluator type": "independent variable", "value": 0.0},
    }

    @pytest.fixture
    def state(self, store):
        store.require_primary("pressure", TAG_NEXT, ("cell", "face"), owner="flow")
        store.require("water_content", TAG_NEXT)
        created = build_evaluators(store, self.STATE)
        return store, created

    def test_graph_is_built_to_a_fixed_point(self, state):
        store, created = state
        names = {evaluator.name for evaluator in created}
        assert {"water_content", "saturation_liquid", "porosity", "cell_volume",
                "molar_density_liquid", "temperature"} <= names
        assert store.unsourced() == []

    def test_saturated_water_content(self, state):
        store, _ = state
        store.set_primary("pressure", TAG_NEXT, ATMOSPHERIC_PRESSURE)
        store.initialize()
        wc = store.get_data("water_content", TAG_NEXT)["cell"]
        # 4 cells of 0.5 m over 2 m^2
        np.testing.assert_allclose(wc, 0.4 * 1000.0 / WATER_MOLAR_MASS * 1.0)

    def test_pressure_derivative_by_chain_rule(self, state):
        store, _ = state
        p = ATMOSPHERIC_PRESSURE - np.array([1.e3, 5.e3, 1.e4, 2.e4])
        store.set_primary("pressure", TAG_NEXT, {"cell": p, "face": np.full(5, p[0])})
        store.initialize()

        model = VanGenuchtenModel(parse_options(VanGenuchtenParameters, VG))
        n_l = 1000.0 / WATER_MOLAR_MASS
        expected = 0.4 * n_l * 1.0 * -model.d_saturation(ATMOSPHERIC_PRESSURE - p)
        dwc_dp = store.get_derivative("water_content", TAG_NEXT, "pressure")["cell"]
        np.testing.assert_allclose(dwc_dp, expected, rtol=1e-10)
        assert np.all(dwc_dp > 0)


class TestTopCellsSurface:

    @pytest.fixture
    def coupled_store(self):
        column = ColumnMesh.uniform(4, 2.0)
        s = StateStore({DEFAULT_DOMAIN: column, SURFACE_DOMAIN: SurfaceMesh.over_column(column)})
        s.require_primary("surface-mass_source", TAG_NEXT)
        s.set_primary("surface-mass_source", TAG_NEXT, 3.0)
        return s

    @pytest.mark.parametrize("negate,sign", [(False, 1.0), (True, -1.0)])
    def test_value_lands_in_the_top_cell(self, coupled_store, negate, sign):
        TopCellsSurfaceEvaluator({"subsurface key": "surface_mass_source",
                                  "surface key": "surface-mass_source",
                                  "negate": negate}).setup(coupled_store)
        values = coupled_store.get_field("surface_mass_source", TAG_NEXT)["cell"]
        np.testing.assert_allclose(values, [sign * 3.0, 0.0, 0.0, 0.0])


class TestAdvectedEnergySource:

    INPUTS = {
        "enthalpy": 4.0,
        "mass_source_enthalpy": 10.0,
        "molar_density_liquid": 55.0,
        "source_molar_density": 50.0,
        "cell_volume": 2.0,
        "conducted_energy_source": 5.0,
    }

    @pytest.fixture
    def inputs(self, store):
        for key, value in self.INPUTS.items():
            store.require_primary(key, TAG_NEXT)
            store.set_primary(key, TAG_NEXT, value)
        store.require_primary("mass_source", TAG_NEXT)
        store.set_primary("mass_source", TAG_NEXT, {"cell": np.array([2.0, -3.0, 0.0, 1.0])})
        return store

    def test_upwinded_on_the_sign_of_the_source(self, inputs):
        evaluator = AdvectedEnergySourceEvaluator({"include conduction": False})
        evaluator.setup(inputs)
        assert evaluator.name == "advected_energy_source"
        values = inputs.get_field("advected_energy_source", TAG_NEXT)["cell"]
        # inflow at the external n h, outflow at the internal n h, per 2 m^3 cell
        np.testing.assert_allclose(values, [2 * 2.0 * 50 * 10, 2 * -3.0 * 55 * 4, 0.0, 2 * 1.0 * 50 * 10])

    def test_conduction_is_added_per_cell(self, inputs):
        evaluator = AdvectedEnergySourceEvaluator({"include conduction": True})
        evaluator.setup(inputs)
        assert evaluator.name == "total_energy_source"
        values = inputs.get_field("total_energy_source", TAG_NEXT)["cell"]
        np.testing.assert_allclose(values, np.array([2000.0, -1320.0, 0.0, 1000.0]) + 2 * 5.0)

    def test_mass_source_derivative(self, inputs):
        AdvectedEnergySourceEvaluator({"include conduction": False}).setup(inputs)
        d = inputs.get_derivative("advected_energy_source", TAG_NEXT, "mass_source")["cell"]
        np.testing.assert_allclose(d, [2 * 50 * 10, 2 * 55 * 4, 2 * 55 * 4, 2 * 50 * 10])
