"""
Backward Euler (BDF1) step of a nonlinear function.

One step solves fun(t_old, t_new, u_old, u) = 0 for u by a preconditioned
Newton-like iteration

    u <- u - P^-1 r(u)

started from an extrapolated predictor. The step converges when
``enorm(u, r) < 1``. Failure is reported through a StepResult and never
raised: the caller shrinks the step and retries.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np

from subsurf.core.config import IntegratorConfig
from subsurf.core.exceptions import LinearSolverError
from subsurf.kernels.base import NonlinearFunction
from subsurf.state.composite import Vector

logger = logging.getLogger(__name__)


class StepStatus(Enum):
    """Outcome of a single time step"""
    CONVERGED = "converged"
    DIVERGED = "diverged"
    INADMISSIBLE = "inadmissible"


@dataclass
class StepResult:
    status: StepStatus
    iterations: int
    error: float
    dt: float
    message: str = ""

    @property
    def converged(self) -> bool:
        return self.status == StepStatus.CONVERGED


@dataclass
class SolutionHistory:
    """Last accepted solutions, newest last"""
    depth: int = 2
    entries: List[Tuple[float, Vector]] = field(default_factory=list)

    def record(self, t: float, u: Vector) -> None:
        self.entries.append((t, u.copy()))
        del self.entries[:-self.depth]

    @property
    def latest(self) -> Tuple[float, Vector]:
        return self.entries[-1]

    def __len__(self) -> int:
        return len(self.entries)


class BDF1TimeIntegrator:
    """Implicit Euler stepping of any NonlinearFunction"""

    def __init__(self, fn: NonlinearFunction, config: Optional[IntegratorConfig] = None):
        self.fn = fn
        self.config = config or IntegratorConfig()
        self.history = SolutionHistory()
        self.iteration_counts: List[int] = []
        self.logger = logging.getLogger(f"{__name__}.BDF1")

    def set_initial_state(self, t: float, u: Vector) -> None:
        self.history = SolutionHistory()
        self.history.record(t, u)

    @property
    def time(self) -> float:
        return self.history.latest[0]

    # -------------------------------------------------------------------------
    # Predictor
    # -------------------------------------------------------------------------

    def predictor(self, t_new: float, u: Vector) -> None:
        """Linear extrapolation from the last two accepted solutions, into ``u``."""
        t1, u1 = self.history.latest
        u.assign(u1)
        if not self.config.extrapolate_initial_guess or len(self.history) < 2:
            return
        t0, u0 = self.history.entries[-2]
        if t1 <= t0:
            return
        ratio = (t_new - t1) / (t1 - t0)
        u.scale(1.0 + ratio).update(-ratio, u0)
        if not self.fn.is_admissible(u):
            self.logger.debug("Extrapolated predictor is not admissible, using the last solution")
            u.assign(u1)

    # -------------------------------------------------------------------------
    # Step
    # -------------------------------------------------------------------------

    def time_step(self, dt: float, u: Vector) -> StepResult:
        """Attempt one step of size ``dt``; ``u`` holds the result on return."""
        cfg = self.config
        t_old, u_old = self.history.latest
        t_new = t_old + dt
        self.fn.set_times(t_old, t_new)

        self.predictor(t_new, u)
        if self.fn.modify_predictor(dt, u):
            self.fn.changed_solution()

        error0 = None
        error = np.inf
        lag = cfg.max_preconditioner_lag
        for iteration in range(cfg.max_iterations + 1):
            r = self.fn.fun(t_old, t_new, u_old, u)
            error = self.fn.enorm(u, r)
            self.logger.debug(f"t = {t_new:g} iteration {iteration}: error = {error:g}")
            if error < 1.0:
                self.iteration_counts.append(iteration)
                return StepResult(StepStatus.CONVERGED, iteration, error, dt)

            if error0 is None:
                error0 = error
            elif error > cfg.max_divergence_factor * error0:
                return self._failed(StepStatus.DIVERGED, iteration, error, dt,
                                    f"error grew from {error0:g} to {error:g}")
            if iteration == cfg.max_iterations:
                break

            try:
                if lag >= cfg.max_preconditioner_lag:
                    self.fn.update_precon(t_new, u, dt)
                    lag = 0
                else:
                    lag += 1
                du = self.fn.precon(r)
            except LinearSolverError as exc:
                return self._failed(StepStatus.DIVERGED, iteration, error, dt, str(exc))

            u.update(-1.0, du)
            if not self.fn.is_admissible(u):
                return self._failed(StepStatus.INADMISSIBLE, iteration + 1, error, dt,
                                    "trial solution is not admissible")

        return self._failed(StepStatus.DIVERGED, cfg.max_iterations, error, dt,
                            f"no convergence in {cfg.max_iterations} iterations")

    def _failed(self, status: StepStatus, iterations: int, error: float, dt: float,
                message: str) -> StepResult:
        self.logger.warning(f"Step of dt = {dt:g} {status.value}: {message}")
        return StepResult(status, iterations, error, dt, message)

    def commit(self, t_new: float, u: Vector) -> None:
        self.history.record(t_new, u)

    def get_statistics(self) -> Dict[str, float]:
        if not self.iteration_counts:
            return {}
        counts = np.array(self.iteration_counts)
        return {
            "steps": int(counts.size),
            "mean_iterations": float(counts.mean()),
            "max_iterations": int(counts.max()),
        }
