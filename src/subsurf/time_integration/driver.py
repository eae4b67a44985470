"""
Adaptive step-size control around the BDF1 integrator.

Steps grow after easy convergence and shrink after a failed attempt. A
failed attempt restores the ``next`` tag from ``previous`` before retrying;
an accepted step commits ``next`` onto ``previous``.
"""
import logging
from typing import Dict, List, Optional

import pandas as pd

from subsurf.core.config import IntegratorConfig
from subsurf.core.constants import TAG_NEXT, TAG_PREVIOUS
from subsurf.core.exceptions import ConvergenceError, ErrorContext
from subsurf.time_integration.bdf1 import BDF1TimeIntegrator, StepResult

logger = logging.getLogger(__name__)

# fraction of dt_min below which the remaining interval is dropped
TIME_EPSILON = 1.e-3


class TimeStepDriver:
    """Runs a process kernel or coupler over a time interval"""

    def __init__(self, fn, store, config: Optional[IntegratorConfig] = None):
        self.fn = fn
        self.store = store
        self.config = config or IntegratorConfig()
        self.integrator = BDF1TimeIntegrator(fn, self.config)
        self.dt = self.config.dt_initial
        self.logger = logging.getLogger(f"{__name__}.TimeStepDriver")

    def next_dt(self, result: StepResult) -> float:
        cfg = self.config
        if result.iterations < cfg.easy_iterations:
            return min(result.dt * cfg.dt_grow, cfg.dt_max)
        return min(result.dt, cfg.dt_max)

    def advance(self, t: float, dt: float) -> Dict[str, float]:
        """Take one accepted step from ``t``, retrying with smaller steps."""
        cfg = self.config
        retries = 0
        while True:
            u = self.fn.solution(TAG_PREVIOUS)
            result = self.integrator.time_step(dt, u)
            if result.converged:
                break
            retries += 1
            self.store.copy_tag(TAG_PREVIOUS, TAG_NEXT)
            dt *= cfg.dt_shrink
            if dt < cfg.dt_min or retries > cfg.max_step_retries:
                raise ConvergenceError(
                    f"Step from t = {t:g} failed {retries} times ({result.status.value}); "
                    f"last dt = {result.dt:g}",
                    context=ErrorContext(component="TimeStepDriver", operation="advance",
                                         details={"dt_min": cfg.dt_min, "message": result.message}),
                )
            self.logger.info(f"Retrying step at t = {t:g} with dt = {dt:g}")

        t_new = t + dt
        self.fn.solution_to_state(u, TAG_NEXT)
        self.store.copy_tag(TAG_NEXT, TAG_PREVIOUS)
        self.fn.commit_state(dt)
        self.fn.calculate_diagnostics()
        self.integrator.commit(t_new, u)
        self.dt = self.next_dt(result)
        return {
            "time": t_new,
            "dt": dt,
            "iterations": result.iterations,
            "error": result.error,
            "retries": retries,
        }

    def run(self, t_start: float, t_end: float) -> pd.DataFrame:
        """Integrate from ``t_start`` to ``t_end``; one row of diagnostics per step."""
        self.integrator.set_initial_state(t_start, self.fn.solution(TAG_PREVIOUS))
        t = t_start
        rows: List[Dict[str, float]] = []
        tiny = TIME_EPSILON * self.config.dt_min
        while t_end - t > tiny:
            dt = min(self.dt, t_end - t)
            row = self.advance(t, dt)
            t = row["time"]
            rows.append(row)
            self.logger.info(f"Step {len(rows)}: t = {t:g} dt = {row['dt']:g} "
                             f"({row['iterations']} iterations)")
        history = pd.DataFrame(rows, columns=["time", "dt", "iterations", "error", "retries"])
        stats = self.integrator.get_statistics()
        if stats:
            self.logger.info(f"Run complete: {stats}")
        return history
