"""
The nonlinear-function contract driven by the time integrator, the base
class of physical process kernels, and the kernel factory.

A process kernel owns one primary unknown on one domain. The integrator hands
it trial solutions; the kernel pushes them into the state, lets the
evaluator graph bring its coefficients up to date and assembles a residual
``accumulation / dt + diffusion + advection - sources``.
"""
import logging
from enum import Enum
from typing import (TYPE_CHECKING, Any, ClassVar, Dict, List, Mapping, Optional, Protocol,
                    Tuple, Type, runtime_checkable)

import numpy as np
from pydantic import Field

from subsurf.core.config import Options, parse_options
from subsurf.core.constants import DEFAULT_TOLERANCES, TAG_NEXT, TAG_PREVIOUS
from subsurf.core.exceptions import ConfigurationError, ErrorContext
from subsurf.state.composite import CompositeArray, Vector
from subsurf.state.keys import DEFAULT_DOMAIN, get_key

if TYPE_CHECKING:
    from subsurf.state.store import StateStore

logger = logging.getLogger(__name__)


class KernelPhase(Enum):
    """Where a kernel is in its per-step lifecycle"""
    SETUP = "setup"
    INITIALIZED = "initialized"
    PREDICTOR_PENDING = "predictor pending"
    ITERATING = "iterating"
    CONVERGED = "converged"
    FAILED = "failed"


@runtime_checkable
class NonlinearFunction(Protocol):
    """What the BDF integrator needs from a kernel or coupler"""

    def fun(self, t_old: float, t_new: float, u_old: Vector, u_new: Vector) -> Vector:
        """Residual at the trial solution ``u_new``"""
        ...

    def precon(self, r: Vector) -> Vector:
        """Apply the inverse of the approximate Jacobian"""
        ...

    def update_precon(self, t: float, u: Vector, dt: float) -> None:
        ...

    def enorm(self, u: Vector, du: Vector) -> float:
        """Dimensionless error of a residual ``du``; converged below 1"""
        ...

    def is_admissible(self, u: Vector) -> bool:
        ...

    def modify_predictor(self, dt: float, u: Vector) -> bool:
        """Correct an extrapolated initial guess in place; True if changed"""
        ...

    def changed_solution(self) -> None:
        """Signal that the trial solution was modified in place"""
        ...


# =============================================================================
# Factory
# =============================================================================

_KERNEL_REGISTRY: Dict[str, Type["PhysicalKernel"]] = {}


def register_kernel(name: str):
    """Class decorator adding a process kernel to the factory"""
    def decorator(cls):
        if name in _KERNEL_REGISTRY:
            raise ValueError(f"Kernel type '{name}' registered twice")
        cls.type_name = name
        _KERNEL_REGISTRY[name] = cls
        return cls
    return decorator


def available_kernels() -> List[str]:
    return sorted(_KERNEL_REGISTRY)


def create_kernel(name: str, plist: Mapping[str, Any],
                  kernel_plists: Optional[Mapping[str, Mapping[str, Any]]] = None):
    """Construct the kernel named by ``"PK type"``.

    ``kernel_plists`` holds the option blocks of all kernels, which couplers
    use to build their children.
    """
    kernel_type = plist.get("PK type")
    if kernel_type is None:
        raise ConfigurationError(
            "Missing required option 'PK type'",
            context=ErrorContext(component=name, operation="create_kernel"),
        )
    if kernel_type not in _KERNEL_REGISTRY:
        raise ConfigurationError(
            f"Unknown PK type '{kernel_type}'; available: {', '.join(available_kernels())}",
            context=ErrorContext(component=name, operation="create_kernel"),
        )
    cls = _KERNEL_REGISTRY[kernel_type]
    if getattr(cls, "is_coupler", False):
        return cls(name, plist, kernel_plists or {})
    return cls(name, plist)


# =============================================================================
# Physical kernel base
# =============================================================================

class KernelOptions(Options):
    kernel_type: Optional[str] = Field(None, alias="PK type")
    domain: str = Field(DEFAULT_DOMAIN, alias="domain name")
    primary_key: Optional[str] = Field(None, alias="primary variable key")
    atol: float = Field(DEFAULT_TOLERANCES["absolute error tolerance"], alias="absolute error tolerance", gt=0)
    rtol: float = Field(DEFAULT_TOLERANCES["relative error tolerance"], alias="relative error tolerance", ge=0)
    flux_tol: float = Field(DEFAULT_TOLERANCES["flux tolerance"], alias="flux tolerance", gt=0)


class PhysicalKernel:
    """State bookkeeping shared by every single-domain kernel"""

    type_name: ClassVar[str] = ""
    options_model: ClassVar[Type[KernelOptions]] = KernelOptions
    default_key: ClassVar[str] = ""
    components: ClassVar[Tuple[str, ...]] = ("cell", "face")
    is_coupler: ClassVar[bool] = False

    def __init__(self, name: str, plist: Mapping[str, Any]):
        self.name = name
        self.plist = dict(plist)
        self.options = parse_options(self.options_model, self.plist, owner=name)
        self.domain = self.options.domain
        self.key = self.options.primary_key or get_key(self.domain, self.default_key)
        self.atol = self.options.atol
        self.rtol = self.options.rtol
        self.flux_tol = self.options.flux_tol

        self.logger = logging.getLogger(f"{__name__}.{name}")
        self.store: Optional["StateStore"] = None
        self.mesh = None
        self.niter = 0
        self.phase = KernelPhase.SETUP
        # set by subclasses; couplers read them to build cross terms
        self.conserved_key: Optional[str] = None
        self.precon_matrix = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name})"

    def domain_key(self, name: str) -> str:
        return get_key(self.domain, name)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def setup(self, store: "StateStore") -> None:
        """Require the primary variable at both tags and the fields the kernel reads."""
        self.store = store
        self.mesh = store.mesh(self.domain)
        for tag in (TAG_PREVIOUS, TAG_NEXT):
            store.require_primary(self.key, tag, self.components, owner=self.name)

    def initialize(self) -> None:
        self.phase = KernelPhase.INITIALIZED

    def commit_state(self, dt: float) -> None:
        """Called once a step is accepted, after ``next`` was copied to ``previous``."""
        self.niter = 0
        self.phase = KernelPhase.CONVERGED

    def calculate_diagnostics(self) -> None:
        pass

    def kernels(self) -> List["PhysicalKernel"]:
        return [self]

    # -------------------------------------------------------------------------
    # Solution vectors
    # -------------------------------------------------------------------------

    def solution(self, tag: str = TAG_NEXT) -> CompositeArray:
        """A copy of the primary variable, usable as an integrator vector"""
        return self.store.get_data(self.key, tag).copy()

    def solution_to_state(self, u: CompositeArray, tag: str = TAG_NEXT) -> None:
        self.store.set_primary(self.key, tag, u)

    def changed_solution(self) -> None:
        self.store.mark_changed(self.key, TAG_NEXT)

    def set_times(self, t_old: float, t_new: float) -> None:
        self.store.set_time(TAG_PREVIOUS, t_old)
        self.store.set_time(TAG_NEXT, t_new)

    def timestep(self) -> float:
        return self.store.time(TAG_NEXT) - self.store.time(TAG_PREVIOUS)

    # -------------------------------------------------------------------------
    # Contract defaults
    # -------------------------------------------------------------------------

    def is_admissible(self, u: Vector) -> bool:
        return True

    def all_finite(self, u: CompositeArray) -> bool:
        """False on every rank if any rank holds a NaN or infinite value"""
        finite = self.store.comm.min_all(float(np.isfinite(u.flat()).all()))
        if finite < 1.0:
            self.logger.warning(f"{self.key} is not admissible: non-finite values")
            return False
        return True

    def modify_predictor(self, dt: float, u: Vector) -> bool:
        return False
