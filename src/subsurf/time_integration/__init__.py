"""Implicit time stepping of process kernels and couplers."""
from subsurf.time_integration.bdf1 import (
    StepStatus,
    StepResult,
    SolutionHistory,
    BDF1TimeIntegrator,
)
from subsurf.time_integration.driver import TimeStepDriver

__all__ = [
    "StepStatus",
    "StepResult",
    "SolutionHistory",
    "BDF1TimeIntegrator",
    "TimeStepDriver",
]
