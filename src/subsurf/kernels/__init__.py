"""Process kernels and couplers; importing this package registers all of them."""
from subsurf.kernels.base import (
    KernelPhase,
    NonlinearFunction,
    KernelOptions,
    PhysicalKernel,
    register_kernel,
    create_kernel,
    available_kernels,
)
from subsurf.kernels.upwind import Upwinding, UPWIND_METHODS
from subsurf.kernels.predictor import FluxBCPredictor, find_bracket
from subsurf.kernels.richards import RichardsFlow, RichardsOptions
from subsurf.kernels.energy import EnergyConservation, EnergyOptions
from subsurf.kernels.overland import OverlandFlow, OverlandOptions
from subsurf.kernels.coupler import StrongCoupler, SurfaceSubsurfaceCoupler

__all__ = [
    "KernelPhase",
    "NonlinearFunction",
    "KernelOptions",
    "PhysicalKernel",
    "register_kernel",
    "create_kernel",
    "available_kernels",
    "Upwinding",
    "UPWIND_METHODS",
    "FluxBCPredictor",
    "find_bracket",
    # Process kernels
    "RichardsFlow",
    "RichardsOptions",
    "EnergyConservation",
    "EnergyOptions",
    "OverlandFlow",
    "OverlandOptions",
    # Couplers
    "StrongCoupler",
    "SurfaceSubsurfaceCoupler",
]
