"""
Overland flow in the diffusion-wave approximation.

    d(WC)/dt - div( K (grad p + rho g grad z) ) = Q

on the surface domain, with the surface pressure as primary unknown, WC the
ponded water content and K the overland conductivity from the evaluator
graph. Where no water is ponded the accumulation term has no derivative; a
coupler may supply the derivative of its exchange flux instead, and rows
left empty (dry cells, faces between dry cells) get a unit diagonal.
"""
import logging
from typing import Any, Dict, Literal, Mapping, Optional

import numpy as np
import scipy.sparse as sp
from pydantic import Field

from subsurf.core.constants import (
    CHARACTERISTIC_SURFACE_WATER_CONTENT,
    PRESSURE_ADMISSIBLE_RANGE,
    TAG_NEXT,
    TAG_PREVIOUS,
)
from subsurf.core.exceptions import UnsupportedDerivative
from subsurf.core.types import EntityKind
from subsurf.discretization.boundary import BoundaryConditions, boundary_functions_from_list
from subsurf.discretization.linear import create_linear_solver
from subsurf.discretization.operators import DiffusionOperator
from subsurf.kernels.base import KernelOptions, KernelPhase, PhysicalKernel, register_kernel
from subsurf.state.keys import SURFACE_DOMAIN, read_key

logger = logging.getLogger(__name__)


class OverlandOptions(KernelOptions):
    domain: str = Field(SURFACE_DOMAIN, alias="domain name")
    source_term: bool = Field(False, alias="source term")
    preconditioner: Literal["direct", "schur assembled", "schur local"] = Field(
        "direct", alias="preconditioner")
    boundary_conditions: Dict[str, Any] = Field(default_factory=dict, alias="boundary conditions")


@register_kernel("overland flow")
class OverlandFlow(PhysicalKernel):

    options_model = OverlandOptions
    default_key = "pressure"

    def __init__(self, name: str, plist: Mapping[str, Any]):
        super().__init__(name, plist)
        d = self.domain
        self.conductivity_key = read_key(self.plist, d, "overland conductivity", "overland_conductivity")
        self.wc_key = read_key(self.plist, d, "conserved quantity", "water_content")
        self.depth_key = read_key(self.plist, d, "ponded depth", "ponded_depth")
        self.rho_key = read_key(self.plist, d, "mass density", "mass_density_liquid")
        self.cv_key = read_key(self.plist, d, "cell volume", "cell_volume")
        self.source_key = read_key(self.plist, d, "source", "mass_source")
        self.conserved_key = self.wc_key
        # d(coupling source)/d(p) on cells, set by a coupler before update_precon
        self.coupling_diagonal: Optional[np.ndarray] = None

    def setup(self, store):
        super().setup(store)
        store.require(self.conductivity_key, TAG_NEXT)
        store.require(self.depth_key, TAG_NEXT)
        store.require(self.rho_key, TAG_NEXT)
        store.require(self.cv_key, TAG_NEXT)
        for tag in (TAG_PREVIOUS, TAG_NEXT):
            store.require(self.wc_key, tag)
        if self.options.source_term:
            store.require(self.source_key, TAG_NEXT)

        self.operator = DiffusionOperator(self.mesh, gravity=store.gravity, name=f"{self.name} diffusion")
        self.solver = create_linear_solver(self.options.preconditioner,
                                           self.mesh.num_entities(EntityKind.CELL),
                                           name=f"{self.name} precon")
        self.bcs = BoundaryConditions.for_mesh(self.mesh)
        bc_plist = self.options.boundary_conditions
        self.bc_pressure = boundary_functions_from_list(
            self.mesh, bc_plist.get("pressure"), "boundary pressure", owner=self.name)
        self.bc_flux = boundary_functions_from_list(
            self.mesh, bc_plist.get("mass flux"), "outward mass flux", owner=self.name)
        self.precon_matrix = None

    def update_boundary_conditions(self, time: float) -> BoundaryConditions:
        self.bcs.reset()
        for function in self.bc_pressure:
            self.bcs.set_dirichlet(function.faces, function.compute(time))
        for function in self.bc_flux:
            self.bcs.set_neumann(function.faces, function.compute(time))
        self.operator.set_bcs(self.bcs)
        return self.bcs

    def update_coefficients(self) -> None:
        K = self.store.get_field(self.conductivity_key, TAG_NEXT, requestor=self.name)["cell"]
        rho = self.store.get_field(self.rho_key, TAG_NEXT, requestor=self.name)["cell"]
        self.operator.set_gravity(self.store.gravity)
        self.operator.update_coefficients(K, None, rho)

    def fun(self, t_old, t_new, u_old, u_new):
        self.niter += 1
        self.phase = KernelPhase.ITERATING
        h = t_new - t_old
        self.set_times(t_old, t_new)
        bcs = self.update_boundary_conditions(t_new)
        dirichlet = bcs.dirichlet_faces()
        u_new["face"][dirichlet] = bcs.values[dirichlet]
        self.solution_to_state(u_new)

        res = u_new.zeros_like()
        self.update_coefficients()
        self.operator.apply(u_new, res)
        self.logger.debug(f"res (post diffusion) = {res.norm_inf():g}")

        wc1 = self.store.get_field(self.wc_key, TAG_NEXT, requestor=self.name)["cell"]
        wc0 = self.store.get_field(self.wc_key, TAG_PREVIOUS, requestor=self.name)["cell"]
        res["cell"] += (wc1 - wc0) / h
        self.logger.debug(f"res (post accumulation) = {res.norm_inf():g}")

        if self.options.source_term:
            source = self.store.get_field(self.source_key, TAG_NEXT, requestor=self.name)["cell"]
            cv = self.store.get_field(self.cv_key, TAG_NEXT, requestor=self.name)["cell"]
            res["cell"] -= source * cv
        return res

    def accumulation_diagonal(self, dt: float) -> np.ndarray:
        """d(WC)/dp / dt, zero where no water is ponded"""
        dwc = self.store.get_derivative(self.wc_key, TAG_NEXT, self.key, requestor=self.name)["cell"]
        depth = self.store.get_field(self.depth_key, TAG_NEXT, requestor=self.name)["cell"]
        return np.where(depth > 0.0, dwc / dt, 0.0)

    def update_precon(self, t, u, dt):
        if not self.store.get_data(self.key, TAG_NEXT).array_equal(u):
            self.solution_to_state(u)
        self.update_boundary_conditions(t)
        self.update_coefficients()
        diagonal = self.accumulation_diagonal(dt)
        if self.coupling_diagonal is not None:
            diagonal = diagonal + self.coupling_diagonal
        if self.options.source_term and self.store.is_dependency(self.source_key, TAG_NEXT, self.key):
            try:
                dq = self.store.get_derivative(self.source_key, TAG_NEXT, self.key)["cell"]
                diagonal = diagonal - dq * self.store.get_data(self.cv_key, TAG_NEXT)["cell"]
            except UnsupportedDerivative as exc:
                self.logger.warning(f"Omitting source derivative from preconditioner: {exc}")
        A = self.operator.matrix(cell_diagonal=diagonal)
        empty = self.empty_rows(A)
        if empty.size:
            self.logger.debug(f"Unit diagonal on {empty.size} empty rows")
            A = (A + sp.coo_matrix((np.ones(empty.size), (empty, empty)), shape=A.shape)).tocsr()
        self.precon_matrix = A
        self.solver.factorize(self.precon_matrix)

    @staticmethod
    def empty_rows(A: sp.spmatrix) -> np.ndarray:
        return np.flatnonzero(np.asarray(abs(A).sum(axis=1)).ravel() == 0.0)

    def precon(self, r):
        return r.zeros_like().assign_flat(self.solver.solve(r.flat()))

    def enorm(self, u, du):
        wc = self.store.get_field(self.wc_key, TAG_NEXT, requestor=self.name)["cell"]
        cv = self.store.get_field(self.cv_key, TAG_NEXT, requestor=self.name)["cell"]
        h = self.timestep()
        cell_all = np.abs(h * du["cell"]) / (
            self.atol * cv * CHARACTERISTIC_SURFACE_WATER_CONTENT + self.rtol * np.abs(wc))
        enorm_cell = float(cell_all.max()) if cell_all.size else 0.0

        enorm_face = 0.0
        if "face" in du and du["face"].size:
            scale = self.atol * cv.min() * CHARACTERISTIC_SURFACE_WATER_CONTENT
            enorm_face = float(np.max(self.flux_tol * np.abs(h * du["face"]) / scale))
        self.logger.debug(f"ENorm (cells) = {enorm_cell:g}, (faces) = {enorm_face:g}")
        return self.store.comm.max_all(max(enorm_cell, enorm_face))

    def is_admissible(self, u):
        if not self.all_finite(u):
            return False
        lo, hi = PRESSURE_ADMISSIBLE_RANGE
        p_min = self.store.comm.min_all(u.min())
        p_max = self.store.comm.max_all(u.max())
        if p_min < lo or p_max > hi:
            self.logger.warning(f"Surface pressure is not admissible: min/max {p_min:g}, {p_max:g}")
            return False
        return True
