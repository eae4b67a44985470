"""
Assembly of a run from a SimulationConfig: meshes, state, evaluators, the
root process kernel and the time-step driver.

Setup order matters. Kernels declare what they need, evaluators are built
for everything no kernel owns, primaries get their initial values, kernels
set their auxiliary fields, and only then is the state verified and every
secondary computed once.
"""
import logging
from typing import Dict, Optional

import pandas as pd

from subsurf.core.config import SimulationConfig, configure_logging
from subsurf.core.constants import TAG_NEXT, TAG_PREVIOUS
from subsurf.core.exceptions import ConfigurationError, ErrorContext
from subsurf.discretization.mesh import ColumnMesh, SurfaceMesh
from subsurf.kernels import create_kernel
from subsurf.state.evaluators import build_evaluators
from subsurf.state.keys import DEFAULT_DOMAIN, SURFACE_DOMAIN
from subsurf.state.store import StateStore
from subsurf.time_integration.driver import TimeStepDriver

logger = logging.getLogger(__name__)


class Simulation:
    """One configured run of a column, optionally with its surface"""

    def __init__(self, config: SimulationConfig, setup_logging: bool = False):
        self.config = config
        if setup_logging:
            configure_logging(config.logging)
        self.logger = logging.getLogger(f"{__name__}.{config.project_name}")

        self.meshes = self.build_meshes()
        self.store = StateStore(self.meshes)
        self.store.set_scalar("atmospheric_pressure", config.atmospheric_pressure)
        self.store.set_gravity(config.gravity)

        root = self.root_kernel_name()
        self.kernel = create_kernel(root, config.get_kernel_options(root), config.kernels)
        self.driver: Optional[TimeStepDriver] = None
        self.history = pd.DataFrame()

    def build_meshes(self) -> Dict[str, object]:
        mc = self.config.mesh
        column = ColumnMesh.uniform(mc.n_cells, mc.depth_m, area=mc.area_m2,
                                    top_elevation=mc.surface_elevation_m)
        meshes = {DEFAULT_DOMAIN: column}
        if mc.include_surface:
            meshes[SURFACE_DOMAIN] = SurfaceMesh.over_column(column)
        return meshes

    def root_kernel_name(self) -> str:
        kernels = self.config.kernels
        if self.config.root_kernel is not None:
            return self.config.root_kernel
        if len(kernels) == 1:
            return next(iter(kernels))
        raise ConfigurationError(
            f"'root_kernel' is required with {len(kernels)} configured kernels",
            context=ErrorContext(component="Simulation", operation="root_kernel_name"),
        )

    # =========================================================================
    # Setup
    # =========================================================================

    def setup(self) -> None:
        self.logger.info(f"Setting up {self.kernel!r}")
        self.kernel.setup(self.store)
        created = build_evaluators(self.store, self.config.state)
        self.logger.debug(f"Created {len(created)} evaluators from configuration")

        self.apply_initial_conditions()
        self.kernel.initialize()
        self.store.initialize()
        self.driver = TimeStepDriver(self.kernel, self.store, self.config.integrator)

    def apply_initial_conditions(self) -> None:
        t0 = self.config.t_start
        for tag in (TAG_PREVIOUS, TAG_NEXT):
            self.store.set_time(tag, t0)
        for key, value in self.config.initial_conditions.items():
            applied = False
            for tag in (TAG_PREVIOUS, TAG_NEXT):
                if self.store.has_record(key, tag):
                    self.store.set_primary(key, tag, float(value))
                    applied = True
            if not applied:
                raise ConfigurationError(
                    f"Initial condition given for '{key}', which no kernel or evaluator requires",
                    context=ErrorContext(key=key, component="Simulation", operation="apply_initial_conditions"),
                )

    # =========================================================================
    # Run
    # =========================================================================

    def run(self, t_end: Optional[float] = None) -> pd.DataFrame:
        """Advance to ``t_end`` (default: the configured end time); returns step diagnostics."""
        if self.driver is None:
            self.setup()
        t_start = self.store.time(TAG_PREVIOUS)
        t_end = self.config.t_end if t_end is None else t_end
        self.logger.info(f"Running from t = {t_start:g} to t = {t_end:g}")
        steps = self.driver.run(t_start, t_end)
        self.history = pd.concat([self.history, steps], ignore_index=True) if len(self.history) else steps
        return steps

    def snapshot(self, domain: str = DEFAULT_DOMAIN) -> pd.DataFrame:
        """Cell values of the visualized fields at the last accepted time"""
        return self.store.snapshot(TAG_PREVIOUS, domain)
