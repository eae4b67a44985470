"""
Physical constants, default values, and system-wide constants.
"""
from typing import Dict, Final, Tuple

# Tags
TAG_PREVIOUS: Final[str] = "previous"
TAG_NEXT: Final[str] = "next"
TAG_CURRENT: Final[str] = "current"
DEFAULT_TAGS: Final[Tuple[str, ...]] = (TAG_PREVIOUS, TAG_NEXT)

# Entity-kind component names
CELL: Final[str] = "cell"
FACE: Final[str] = "face"
BOUNDARY_FACE: Final[str] = "boundary_face"

# Physical constants
ATMOSPHERIC_PRESSURE: Final[float] = 101325.0  # Pa
GRAVITY: Final[float] = 9.80665  # m/s²
WATER_MOLAR_MASS: Final[float] = 0.0180153  # kg/mol
WATER_MASS_DENSITY: Final[float] = 1000.0  # kg/m³
WATER_MOLAR_DENSITY: Final[float] = WATER_MASS_DENSITY / WATER_MOLAR_MASS  # mol/m³
FREEZING_POINT: Final[float] = 273.15  # K
WATER_HEAT_CAPACITY: Final[float] = 76.0  # J/mol/K

# Admissibility bounds of the constitutive models
PRESSURE_ADMISSIBLE_RANGE: Final[Tuple[float, float]] = (-1.e9, 1.e8)  # Pa
TEMPERATURE_ADMISSIBLE_RANGE: Final[Tuple[float, float]] = (200.0, 400.0)  # K

# Error-norm characteristic scales
CHARACTERISTIC_WATER_CONTENT: Final[float] = 0.5 * WATER_MOLAR_DENSITY  # mol/m³
CHARACTERISTIC_SURFACE_WATER_CONTENT: Final[float] = 0.01 * WATER_MOLAR_DENSITY  # mol/m²
CHARACTERISTIC_ENERGY: Final[float] = 2.e6  # J/m³
ENERGY_FACE_SCALE: Final[float] = 1.e-4
ENERGY_FACE_REFERENCE: Final[float] = FREEZING_POINT

# Numerical stability
EPSILON: Final[float] = 1e-10
FLOW_WRM_TOLERANCE: Final[float] = 1e-10
UPWIND_FLUX_TOLERANCE: Final[float] = 1.e-8

# Default tolerances of the nonlinear solve
DEFAULT_TOLERANCES: Final[Dict[str, float]] = {
    "absolute error tolerance": 1.0,
    "relative error tolerance": 1.0,
    "flux tolerance": 1.0,
}
