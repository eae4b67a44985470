"""
Shared fixtures for kernel tests: a small column with the flow, energy and
surface evaluator graphs assembled from configuration.
"""
import numpy as np
import pytest

from subsurf.core.constants import ATMOSPHERIC_PRESSURE, GRAVITY, TAG_NEXT, TAG_PREVIOUS
from subsurf.discretization.mesh import ColumnMesh, Mesh1D, SurfaceMesh
from subsurf.kernels import OverlandFlow, RichardsFlow, create_kernel
from subsurf.state.composite import CompositeArray
from subsurf.state.evaluators import build_evaluators
from subsurf.state.keys import DEFAULT_DOMAIN, SURFACE_DOMAIN
from subsurf.state.store import StateStore

VG = {"van Genuchten alpha": 2.e-4, "van Genuchten n": 2.0, "residual saturation": 0.05}

FLOW_STATE = {
    "saturation_liquid": {"field evaluator type": "water retention", "WRM parameters": VG},
    "relative_permeability": {
        "field evaluator type": "relative permeability",
        "use density on viscosity in rel perm": True,
        "WRM parameters": VG,
    },
    "molar_density_liquid": {
        "field evaluator type": "eos",
        "EOS basis": "both",
        "pressure key": "pressure",
        "EOS parameters": {"EOS type": "constant", "density [kg m^-3]": 1000.0},
    },
    "water_content": {"field evaluator type": "richards water content"},
    "cell_volume": {"field evaluator type": "cell volume"},
    "porosity": {"field evaluator type": "independent variable", "value": 0.35},
    "permeability": {"field evaluator type": "independent variable", "value": 1.e-12},
    "temperature": {"field evaluator type": "independent variable", "value": 288.15},
    "viscosity_liquid": {"field evaluator type": "independent variable", "value": 8.9e-4},
    "molar_density_gas": {"field evaluator type": "independent variable", "value": 42.3},
    "mol_frac_gas": {"field evaluator type": "independent variable", "value": 0.0},
}

N_CELLS = 4


def hydrostatic_profile(p_top: float, n_cells: int = N_CELLS, dz: float = 1.0, rho: float = 1000.0):
    """Hydrostatic pressure on cells and faces, ``p_top`` at the surface"""
    z_cell = dz * (np.arange(n_cells) + 0.5)
    z_face = dz * np.arange(n_cells + 1)
    return CompositeArray({"cell": p_top + rho * GRAVITY * z_cell,
                           "face": p_top + rho * GRAVITY * z_face})


@pytest.fixture
def hydrostatic():
    return hydrostatic_profile


@pytest.fixture
def make_flow():
    """Factory for a set-up and initialized Richards kernel on a 4 m column"""

    def build(options=None, pressure=None):
        store = StateStore(ColumnMesh.uniform(N_CELLS, float(N_CELLS)))
        store.set_scalar("atmospheric_pressure", ATMOSPHERIC_PRESSURE)
        kernel = RichardsFlow("flow", {"PK type": "richards flow", **(options or {})})
        kernel.setup(store)
        build_evaluators(store, FLOW_STATE)

        if pressure is None:
            pressure = hydrostatic_profile(ATMOSPHERIC_PRESSURE + 1.e4)
        for tag in (TAG_PREVIOUS, TAG_NEXT):
            store.set_primary("pressure", tag, pressure)
            store.set_time(tag, 0.0)
        kernel.initialize()
        store.initialize()
        return store, kernel

    return build


THERMAL_STATE = {
    **{key: value for key, value in FLOW_STATE.items() if key != "temperature"},
    "energy": {"field evaluator type": "energy"},
    "enthalpy": {"field evaluator type": "enthalpy"},
    "thermal_conductivity": {"field evaluator type": "thermal conductivity",
                             "thermal conductivity [W m^-1 K^-1]": 1.5},
    "density_rock": {"field evaluator type": "independent variable", "value": 2650.0},
}


@pytest.fixture
def make_coupled():
    """Factory for flow and energy under a strong coupler, initialized at rest"""

    def build(preconditioner_type="block diagonal", pressure=None, temperature=290.0):
        kernel_plists = {
            "flow and energy": {"PK type": "strong coupler", "PKs order": ["flow", "energy"],
                                "preconditioner type": preconditioner_type},
            "flow": {"PK type": "richards flow"},
            "energy": {"PK type": "energy"},
        }
        store = StateStore(ColumnMesh.uniform(N_CELLS, float(N_CELLS)))
        store.set_scalar("atmospheric_pressure", ATMOSPHERIC_PRESSURE)
        coupler = create_kernel("flow and energy", kernel_plists["flow and energy"], kernel_plists)
        coupler.setup(store)
        build_evaluators(store, THERMAL_STATE)

        if pressure is None:
            pressure = hydrostatic_profile(ATMOSPHERIC_PRESSURE - 6.e4)
        for tag in (TAG_PREVIOUS, TAG_NEXT):
            store.set_primary("pressure", tag, pressure)
            store.set_primary("temperature", tag, temperature)
            store.set_time(tag, 0.0)
        coupler.initialize()
        store.initialize()
        return store, coupler

    return build


SURFACE_STATE = {
    **FLOW_STATE,
    "surface-molar_density_liquid": {
        "field evaluator type": "eos",
        "EOS basis": "both",
        "pressure key": "surface-pressure",
        "EOS parameters": {"EOS type": "constant", "density [kg m^-3]": 1000.0},
    },
    "surface-ponded_depth": {"field evaluator type": "ponded depth"},
    "surface-water_content": {"field evaluator type": "overland water content"},
    "surface-overland_conductivity": {"field evaluator type": "overland conductivity"},
    "surface-cell_volume": {"field evaluator type": "cell volume"},
    "surface-temperature": {"field evaluator type": "independent variable", "value": 288.15},
}


@pytest.fixture
def make_surface_coupled():
    """Factory for Richards flow under one surface cell"""

    def build(pressure, surface_pressure, preconditioner_type="block diagonal", options=None):
        kernel_plists = {
            "surface and subsurface": {"PK type": "surface-subsurface coupler",
                                       "PKs order": ["flow", "overland"],
                                       "preconditioner type": preconditioner_type},
            "flow": {"PK type": "richards flow", "coupled to surface via head": True,
                     **(options or {})},
            "overland": {"PK type": "overland flow", **(options or {})},
        }
        column = ColumnMesh.uniform(N_CELLS, float(N_CELLS))
        store = StateStore({DEFAULT_DOMAIN: column, SURFACE_DOMAIN: SurfaceMesh.over_column(column)})
        store.set_scalar("atmospheric_pressure", ATMOSPHERIC_PRESSURE)
        coupler = create_kernel("surface and subsurface", kernel_plists["surface and subsurface"],
                                kernel_plists)
        coupler.setup(store)
        build_evaluators(store, SURFACE_STATE)

        for tag in (TAG_PREVIOUS, TAG_NEXT):
            store.set_primary("pressure", tag, pressure)
            store.set_primary("surface-pressure", tag, surface_pressure)
            store.set_time(tag, 0.0)
        coupler.initialize()
        store.initialize()
        return store, coupler

    return build


def surface_strip(n_cells: int = 3) -> Mesh1D:
    """Flat strip of 1 m^2 surface cells along x"""
    x_faces = np.arange(n_cells + 1, dtype=float)
    faces = np.zeros((n_cells + 1, 3))
    faces[:, 0] = x_faces
    cells = np.zeros((n_cells, 3))
    cells[:, 0] = 0.5 * (x_faces[:-1] + x_faces[1:])
    return Mesh1D(faces, cells, cell_volumes=np.ones(n_cells), face_areas=np.ones(n_cells + 1),
                  regions={"left": [0], "right": [n_cells]})


@pytest.fixture
def make_overland():
    """Factory for an overland kernel on its own, over a flat three-cell strip"""

    def build(pressure_old, pressure_new, options=None):
        store = StateStore({SURFACE_DOMAIN: surface_strip()})
        store.set_scalar("atmospheric_pressure", ATMOSPHERIC_PRESSURE)
        kernel = OverlandFlow("overland", {"PK type": "overland flow", **(options or {})})
        kernel.setup(store)
        build_evaluators(store, SURFACE_STATE)

        for tag, pressure in ((TAG_PREVIOUS, pressure_old), (TAG_NEXT, pressure_new)):
            store.set_primary("surface-pressure", tag, pressure)
            store.set_time(tag, 0.0)
        kernel.initialize()
        store.initialize()
        return store, kernel

    return build
