"""
End-to-end tests of a configured run: setup order, the single-cell steady
step and a short infiltration run from the example configuration.
"""
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from subsurf.core.config import SimulationConfig
from subsurf.core.constants import TAG_NEXT, TAG_PREVIOUS
from subsurf.core.exceptions import ConfigurationError
from subsurf.simulation import Simulation

CONFIG_DIR = Path(__file__).resolve().parents[1] / "configs"

VG = {"van Genuchten alpha": 2.e-4, "van Genuchten n": 2.0, "residual saturation": 0.05}

STATE = {
    "saturation_liquid": {"field evaluator type": "water retention", "WRM parameters": VG},
    "relative_permeability": {"field evaluator type": "relative permeability", "WRM parameters": VG},
    "molar_density_liquid": {
        "field evaluator type": "eos",
        "EOS basis": "both",
        "pressure key": "pressure",
        "EOS parameters": {"EOS type": "constant", "density [kg m^-3]": 1000.0},
    },
    "water_content": {"field evaluator type": "richards water content"},
    "cell_volume": {"field evaluator type": "cell volume"},
    "porosity": {"field evaluator type": "independent variable", "value": 0.4},
    "permeability": {"field evaluator type": "independent variable", "value": 1.e-12},
    "temperature": {"field evaluator type": "independent variable", "value": 288.15},
    "molar_density_gas": {"field evaluator type": "independent variable", "value": 42.3},
    "mol_frac_gas": {"field evaluator type": "independent variable", "value": 0.0},
}


def single_cell_config(**overrides):
    data = {
        "project_name": "single_cell",
        "t_end": 100.0,
        "mesh": {"n_cells": 1, "depth_m": 1.0},
        "integrator": {"dt_initial": 10.0},
        "kernels": {"flow": {"PK type": "richards flow"}},
        "state": STATE,
        "initial_conditions": {"pressure": 2.e5},
    }
    data.update(overrides)
    return SimulationConfig(**data)


class TestSimulationSetup:

    def test_single_kernel_is_the_root(self):
        sim = Simulation(single_cell_config())
        assert sim.root_kernel_name() == "flow"

    def test_root_kernel_is_required_with_several_kernels(self):
        config = single_cell_config(kernels={"flow": {"PK type": "richards flow"},
                                             "energy": {"PK type": "energy"}})
        with pytest.raises(ConfigurationError, match="root_kernel"):
            Simulation(config)

    def test_unused_initial_condition_is_rejected(self):
        sim = Simulation(single_cell_config(initial_conditions={"pressure": 2.e5, "salinity": 1.0}))
        with pytest.raises(ConfigurationError, match="salinity"):
            sim.setup()

    def test_setup_initializes_state(self):
        sim = Simulation(single_cell_config())
        sim.setup()
        assert sim.store.initialized
        for tag in (TAG_PREVIOUS, TAG_NEXT):
            np.testing.assert_allclose(sim.store.get_data("pressure", tag)["cell"], 2.e5)


class TestSingleCellSteadyStep:
    """Zero-flux boundaries and no source leave a saturated cell at rest"""

    @pytest.fixture
    def sim(self):
        sim = Simulation(single_cell_config())
        sim.run()
        return sim

    def test_run_reaches_end_time(self, sim):
        assert isinstance(sim.history, pd.DataFrame)
        assert sim.history["time"].iloc[-1] == pytest.approx(100.0)
        assert sim.store.time(TAG_PREVIOUS) == pytest.approx(100.0)

    def test_residual_at_converged_pressure(self, sim):
        kernel = sim.kernel
        u = kernel.solution(TAG_PREVIOUS)
        res = kernel.fun(100.0, 110.0, kernel.solution(TAG_PREVIOUS), u)
        assert np.all(np.abs(res["cell"]) <= kernel.atol)

    def test_pressure_is_unchanged(self, sim):
        np.testing.assert_allclose(sim.store.get_data("pressure", TAG_PREVIOUS)["cell"], 2.e5)

    def test_snapshot_has_one_row_per_cell(self, sim):
        frame = sim.snapshot()
        assert frame.index.name == "cell"
        assert len(frame) == 1
        assert "pressure" in frame.columns
        assert "water_content" in frame.columns


class TestInfiltrationColumn:

    def test_infiltration_wets_the_top_of_the_column(self):
        config = SimulationConfig.from_yaml(CONFIG_DIR / "infiltration_column.yaml")
        sim = Simulation(config)
        sim.setup()
        wc0 = sim.store.get_field("water_content", TAG_PREVIOUS)["cell"].copy()

        steps = sim.run(t_end=60.0)
        assert steps["time"].iloc[-1] == pytest.approx(60.0)

        wc1 = sim.store.get_field("water_content", TAG_PREVIOUS)["cell"]
        assert wc1[0] > wc0[0]
        # water enters only through the top in this short interval
        assert wc1.sum() > wc0.sum()
