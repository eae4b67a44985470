"""
Richards equation for variably saturated subsurface flow.

Solves

    d(WC)/dt - div( k k_r (grad p + rho g z) ) = Q

for pressure on cells and faces, with WC the water content from the
evaluator graph and k_r the upwinded relative permeability. The face flux
is kept in the state as ``mass_flux`` for transport kernels.

Boundary conditions are read from the ``"boundary conditions"`` sublist:

    "pressure":              [{"regions": [...], "boundary pressure": value}]
    "mass flux":             [{"regions": [...], "outward mass flux": value}]
    "seepage face pressure": [{"regions": [...], "boundary pressure": value}]
    "infiltrate only if unfrozen": bool

Faces without a condition carry no flux. Values may be constants or
``{"times": [...], "values": [...]}`` tables.
"""
import logging
from typing import Any, Dict, List, Literal, Mapping, Optional

import numpy as np
from pydantic import Field

from subsurf.core.constants import (
    CHARACTERISTIC_WATER_CONTENT,
    FREEZING_POINT,
    PRESSURE_ADMISSIBLE_RANGE,
    TAG_NEXT,
    TAG_PREVIOUS,
)
from subsurf.core.exceptions import ConfigurationError, ErrorContext, UnsupportedDerivative
from subsurf.core.types import EntityKind
from subsurf.discretization.boundary import BCKind, BoundaryConditions, boundary_functions_from_list
from subsurf.discretization.linear import create_linear_solver
from subsurf.discretization.operators import DiffusionOperator
from subsurf.kernels.base import KernelOptions, KernelPhase, PhysicalKernel, register_kernel
from subsurf.kernels.predictor import FluxBCPredictor
from subsurf.kernels.upwind import Upwinding
from subsurf.state.composite import CompositeArray
from subsurf.state.keys import SURFACE_DOMAIN, get_key, read_key

logger = logging.getLogger(__name__)


class RichardsOptions(KernelOptions):
    update_flux_mode: Literal["iteration", "timestep", "vis", "never"] = Field(
        "iteration", alias="update flux mode")
    krel_method: Literal["upwind with gravity", "cell centered", "upwind with Darcy flux",
                         "arithmetic mean"] = Field("upwind with gravity", alias="relative permeability method")
    upwind_from_prev_flux: bool = Field(False, alias="upwind flux from previous iteration")
    clobber_surface_kr: bool = Field(False, alias="clobber surface rel perm")
    coupled_via_head: bool = Field(False, alias="coupled to surface via head")
    coupled_via_flux: bool = Field(False, alias="coupled to surface via flux")
    predictor_bc_flux: bool = Field(False, alias="modify predictor for flux BCs")
    predictor_first_bc_flux: bool = Field(False, alias="modify predictor for initial flux BCs")
    predictor_wc: bool = Field(False, alias="modify predictor via water content")
    predictor_consistent_faces: bool = Field(False, alias="modify predictor with consistent faces")
    source_term: bool = Field(False, alias="source term")
    explicit_source: bool = Field(False, alias="explicit source term")
    preconditioner: Literal["direct", "schur assembled", "schur local"] = Field(
        "schur assembled", alias="preconditioner")
    boundary_conditions: Dict[str, Any] = Field(default_factory=dict, alias="boundary conditions")


@register_kernel("richards flow")
class RichardsFlow(PhysicalKernel):
    """Richards flow on cells and faces"""

    options_model = RichardsOptions
    default_key = "pressure"

    def __init__(self, name: str, plist: Mapping[str, Any]):
        super().__init__(name, plist)
        opts = self.options
        if opts.coupled_via_head and opts.coupled_via_flux:
            raise ConfigurationError(
                "'coupled to surface via head' and 'coupled to surface via flux' are mutually exclusive",
                context=ErrorContext(component=name, operation="__init__"),
            )
        if opts.predictor_wc:
            raise ConfigurationError(
                "'modify predictor via water content' is not supported",
                context=ErrorContext(component=name, operation="__init__"),
            )

        self.flux_mode = opts.update_flux_mode
        if opts.coupled_via_head and self.flux_mode != "iteration":
            self.logger.info("Coupled to surface via head: updating fluxes every iteration")
            self.flux_mode = "iteration"

        d = self.domain
        self.flux_key = read_key(self.plist, d, "mass flux", "mass_flux")
        self.perm_key = read_key(self.plist, d, "permeability", "permeability")
        self.kr_key = read_key(self.plist, d, "relative permeability", "relative_permeability")
        self.rho_key = read_key(self.plist, d, "mass density", "mass_density_liquid")
        self.wc_key = read_key(self.plist, d, "conserved quantity", "water_content")
        self.conserved_key = self.wc_key
        self.cv_key = read_key(self.plist, d, "cell volume", "cell_volume")
        self.source_key = read_key(self.plist, d, "source", "mass_source")
        self.temp_key = read_key(self.plist, d, "temperature", "temperature")
        self.surf_pres_key = get_key(SURFACE_DOMAIN, "pressure")
        self.surf_flux_key = get_key(SURFACE_DOMAIN, "subsurface_flux")

        self.infiltrate_only_if_unfrozen = bool(
            opts.boundary_conditions.get("infiltrate only if unfrozen", False))
        self.cycle = 0
        self.flux_predictor = FluxBCPredictor(name=f"{name} flux BCs")

    # =========================================================================
    # Setup
    # =========================================================================

    def setup(self, store):
        super().setup(store)
        opts = self.options
        store.require_primary(self.flux_key, TAG_NEXT, ("face",), owner=self.name)
        store.set_io_flags(self.flux_key, TAG_NEXT, vis=False)

        store.require(self.perm_key, TAG_NEXT)
        store.require(self.kr_key, TAG_NEXT, ("cell", "boundary_face"))
        store.require(self.rho_key, TAG_NEXT)
        store.require(self.cv_key, TAG_NEXT)
        for tag in (TAG_PREVIOUS, TAG_NEXT):
            store.require(self.wc_key, tag)
        if opts.source_term:
            source_tag = TAG_PREVIOUS if opts.explicit_source else TAG_NEXT
            store.require(self.source_key, source_tag)
        if self.infiltrate_only_if_unfrozen:
            store.require(self.temp_key, TAG_NEXT, ("cell", "face"))
        if opts.coupled_via_head:
            store.require(self.surf_pres_key, TAG_NEXT)
        if opts.coupled_via_flux:
            store.require(self.surf_flux_key, TAG_NEXT)

        self.operator = DiffusionOperator(self.mesh, gravity=store.gravity, name=f"{self.name} diffusion")
        self.face_operator = DiffusionOperator(self.mesh, gravity=store.gravity,
                                               name=f"{self.name} face diffusion")
        self.upwinding = Upwinding(opts.krel_method, self.operator)
        self.solver = create_linear_solver(opts.preconditioner, self.mesh.num_entities(EntityKind.CELL),
                                           name=f"{self.name} precon")
        self.bcs = BoundaryConditions.for_mesh(self.mesh)

        bc_plist = opts.boundary_conditions
        self.bc_pressure = boundary_functions_from_list(
            self.mesh, bc_plist.get("pressure"), "boundary pressure", owner=self.name)
        self.bc_flux = boundary_functions_from_list(
            self.mesh, bc_plist.get("mass flux"), "outward mass flux", owner=self.name)
        self.bc_seepage = boundary_functions_from_list(
            self.mesh, bc_plist.get("seepage face pressure"), "boundary pressure", owner=self.name)

        self.boundary_faces = np.asarray(self.mesh.boundary_faces(), dtype=int)
        n_faces = self.mesh.num_entities(EntityKind.FACE)
        self.pair_of_boundary_face = np.full(n_faces, -1, dtype=int)
        for i, f in enumerate(self.operator.pair_face):
            if f in self.boundary_faces:
                self.pair_of_boundary_face[f] = i
        self._flux_direction = np.zeros(n_faces)

    def initialize(self):
        """Zero the kernel-owned flux; called before the state is initialized."""
        self.store.set_primary(self.flux_key, TAG_NEXT, 0.0)
        super().initialize()

    # =========================================================================
    # Boundary conditions and coefficients
    # =========================================================================

    def update_boundary_conditions(self, time: float, pressure: Optional[CompositeArray] = None,
                                   kr_pairs: Optional[np.ndarray] = None) -> BoundaryConditions:
        """Evaluate the boundary conditions at ``time``.

        With ``kr_pairs``, prescribed fluxes are divided by the face relative
        permeability, for solves that use unit relative permeability.
        """
        bcs = self.bcs
        bcs.reset()
        for function in self.bc_pressure:
            bcs.set_dirichlet(function.faces, function.compute(time))

        temp_faces = None
        if self.infiltrate_only_if_unfrozen:
            temp_faces = self.store.get_field(self.temp_key, TAG_NEXT, requestor=self.name)["face"]
        for function in self.bc_flux:
            values = function.compute(time).copy()
            if temp_faces is not None:
                values = np.where(temp_faces[function.faces] > FREEZING_POINT, values, 0.0)
            bcs.set_neumann(function.faces, values)

        if self.bc_seepage:
            pressure = pressure if pressure is not None else self.store.get_data(self.key, TAG_NEXT)
            for function in self.bc_seepage:
                for f, value in zip(function.faces, function.compute(time)):
                    if pressure["face"][f] < value:
                        bcs.set_neumann(f, 0.0)
                    else:
                        bcs.set_dirichlet(f, value)

        if self.options.coupled_via_head or self.options.coupled_via_flux:
            surface = self.store.mesh(SURFACE_DOMAIN)
            n_surf = surface.num_entities(EntityKind.CELL)
            parents = np.array([surface.entity_get_parent(c) for c in range(n_surf)], dtype=int)
            if self.options.coupled_via_head:
                head = self.store.get_field(self.surf_pres_key, TAG_NEXT, requestor=self.name)["cell"]
                bcs.set_dirichlet(parents, head)
            else:
                exchange = self.store.get_field(self.surf_flux_key, TAG_NEXT, requestor=self.name)["cell"]
                bcs.set_neumann(parents, exchange / self.operator.face_areas[parents])

        if kr_pairs is not None:
            neumann = np.flatnonzero(bcs.kinds == BCKind.NEUMANN)
            kr_face = kr_pairs[self.pair_of_boundary_face[neumann]]
            scale = np.where(kr_face > 0.0, kr_face, 1.0)
            bcs.values[neumann] = bcs.values[neumann] / scale
        return bcs

    def apply_dirichlet(self, u: CompositeArray) -> None:
        dirichlet = self.bcs.dirichlet_faces()
        u["face"][dirichlet] = self.bcs.values[dirichlet]

    def _flux_direction_for(self, pressure: CompositeArray) -> np.ndarray:
        if self.options.upwind_from_prev_flux:
            return self.store.get_data(self.flux_key, TAG_NEXT)["face"]
        rho = self.store.get_field(self.rho_key, TAG_NEXT, requestor=self.name)["cell"]
        perm = self.store.get_field(self.perm_key, TAG_NEXT, requestor=self.name)["cell"]
        self.face_operator.update_coefficients(perm, None, rho)
        self._flux_direction = self.face_operator.flux(pressure)
        return self._flux_direction

    def upwinded_rel_perm(self, pressure: CompositeArray) -> np.ndarray:
        """Relative permeability on every cell-face pair"""
        kr = self.store.get_field(self.kr_key, TAG_NEXT, requestor=self.name)
        kr_bf = kr["boundary_face"] if "boundary_face" in kr else None
        flux = None
        if self.options.krel_method == "upwind with Darcy flux":
            flux = self._flux_direction_for(pressure)
        pairs = self.upwinding.update(kr["cell"], kr_bf, flux)
        if self.options.clobber_surface_kr and kr_bf is not None:
            for i, f in enumerate(self.boundary_faces):
                pairs[self.pair_of_boundary_face[f]] = kr_bf[i]
        return pairs

    def update_coefficients(self, pressure: CompositeArray) -> np.ndarray:
        kr_pairs = self.upwinded_rel_perm(pressure)
        perm = self.store.get_field(self.perm_key, TAG_NEXT, requestor=self.name)["cell"]
        rho = self.store.get_field(self.rho_key, TAG_NEXT, requestor=self.name)["cell"]
        self.operator.set_gravity(self.store.gravity)
        self.operator.update_coefficients(perm, kr_pairs, rho)
        self.operator.set_bcs(self.bcs)
        return kr_pairs

    def update_flux(self, pressure: Optional[CompositeArray] = None) -> None:
        pressure = pressure if pressure is not None else self.store.get_data(self.key, TAG_NEXT)
        self.update_coefficients(pressure)
        self.store.set_primary(self.flux_key, TAG_NEXT, {"face": self.operator.flux(pressure)})

    # =========================================================================
    # Nonlinear function
    # =========================================================================

    def fun(self, t_old, t_new, u_old, u_new):
        self.niter += 1
        self.phase = KernelPhase.ITERATING
        h = t_new - t_old
        self.set_times(t_old, t_new)

        self.update_boundary_conditions(t_new, pressure=u_new)
        self.apply_dirichlet(u_new)
        self.solution_to_state(u_new)
        self.logger.debug(f"Residual calculation: t0 = {t_old} t1 = {t_new} h = {h}")

        res = u_new.zeros_like()
        self.update_coefficients(u_new)
        if self.flux_mode == "iteration":
            self.store.set_primary(self.flux_key, TAG_NEXT, {"face": self.operator.flux(u_new)})
        self.operator.apply(u_new, res)
        self.logger.debug(f"res (post diffusion) = {res.norm_inf():g}")

        wc1 = self.store.get_field(self.wc_key, TAG_NEXT, requestor=self.name)["cell"]
        wc0 = self.store.get_field(self.wc_key, TAG_PREVIOUS, requestor=self.name)["cell"]
        res["cell"] += (wc1 - wc0) / h
        self.logger.debug(f"res (post accumulation) = {res.norm_inf():g}")

        if self.options.source_term:
            source_tag = TAG_PREVIOUS if self.options.explicit_source else TAG_NEXT
            source = self.store.get_field(self.source_key, source_tag, requestor=self.name)["cell"]
            cv = self.store.get_field(self.cv_key, TAG_NEXT, requestor=self.name)["cell"]
            res["cell"] -= source * cv
            self.logger.debug(f"res (post source) = {res.norm_inf():g}")
        return res

    def update_precon(self, t, u, dt):
        self.logger.debug(f"Precon update at t = {t}")
        if not self.store.get_data(self.key, TAG_NEXT).array_equal(u):
            self.solution_to_state(u)
        self.update_boundary_conditions(t, pressure=u)
        self.update_coefficients(u)

        dwc = self.store.get_derivative(self.wc_key, TAG_NEXT, self.key, requestor=self.name)["cell"]
        diagonal = dwc / dt
        opts = self.options
        if opts.source_term and not opts.explicit_source \
                and self.store.is_dependency(self.source_key, TAG_NEXT, self.key):
            try:
                dq = self.store.get_derivative(self.source_key, TAG_NEXT, self.key)["cell"]
                cv = self.store.get_data(self.cv_key, TAG_NEXT)["cell"]
                diagonal = diagonal - dq * cv
            except UnsupportedDerivative as exc:
                self.logger.warning(f"Omitting source derivative from preconditioner: {exc}")
        self.precon_matrix = self.operator.matrix(cell_diagonal=diagonal)
        self.solver.factorize(self.precon_matrix)

    def precon(self, r):
        return r.zeros_like().assign_flat(self.solver.solve(r.flat()))

    def enorm(self, u, du):
        wc = self.store.get_field(self.wc_key, TAG_NEXT, requestor=self.name)["cell"]
        cv = self.store.get_field(self.cv_key, TAG_NEXT, requestor=self.name)["cell"]
        h = self.timestep()

        res_c = du["cell"]
        enorm_cell_all = np.abs(h * res_c) / (
            self.atol * cv * CHARACTERISTIC_WATER_CONTENT + self.rtol * np.abs(wc))
        enorm_cell = float(enorm_cell_all.max()) if enorm_cell_all.size else 0.0
        bad_cell = int(np.argmax(enorm_cell_all)) if enorm_cell_all.size else -1

        enorm_face = 0.0
        if "face" in du:
            res_f = du["face"]
            pair_cell, pair_face = self.operator.pair_cell, self.operator.pair_face
            n_faces = res_f.size
            cv_min = np.full(n_faces, np.inf)
            wc_min = np.full(n_faces, np.inf)
            np.minimum.at(cv_min, pair_face, cv[pair_cell])
            np.minimum.at(wc_min, pair_face, np.abs(wc[pair_cell]))
            scale = self.atol * cv_min * CHARACTERISTIC_WATER_CONTENT + self.rtol * wc_min
            enorm_face = float(np.max(self.flux_tol * np.abs(h * res_f) / scale)) if n_faces else 0.0

        self.logger.debug(f"ENorm (cells) = {enorm_cell:g}[{bad_cell}] ({np.abs(res_c).max(initial=0.0):g})")
        self.logger.debug(f"ENorm (faces) = {enorm_face:g}")
        return self.store.comm.max_all(max(enorm_cell, enorm_face))

    def is_admissible(self, u):
        if not self.all_finite(u):
            return False
        lo, hi = PRESSURE_ADMISSIBLE_RANGE
        comm = self.store.comm
        p_min = comm.min_all(u.min())
        p_max = comm.max_all(u.max())
        self.logger.debug(f"Admissible p? (min/max): {p_min:g}, {p_max:g}")
        if p_min < lo or p_max > hi:
            min_c, min_cell = comm.min_loc(u["cell"])
            max_c, max_cell = comm.max_loc(u["cell"])
            self.logger.warning(
                f"Pressure is not admissible, as it is not within bounds of constitutive models: "
                f"cells (min/max): [{min_cell}] {min_c:g}, [{max_cell}] {max_c:g}"
            )
            if "face" in u:
                min_f, min_face = comm.min_loc(u["face"])
                max_f, max_face = comm.max_loc(u["face"])
                self.logger.warning(f"faces (min/max): [{min_face}] {min_f:g}, [{max_face}] {max_f:g}")
            return False
        return True

    # =========================================================================
    # Predictor
    # =========================================================================

    def modify_predictor(self, dt, u):
        self.logger.debug("Modifying predictor")
        opts = self.options
        changed = False
        if opts.predictor_bc_flux or (opts.predictor_first_bc_flux and self.cycle == 0):
            changed |= self.modify_predictor_flux_bcs(dt, u)
        if opts.predictor_consistent_faces:
            self.calculate_consistent_faces(u)
            changed = True
        return changed

    def _boundary_rel_perm(self, pressure_value: float, index: int) -> float:
        evaluator = self.store.get_evaluator(self.kr_key, TAG_NEXT)
        wrm = getattr(evaluator, "wrm", None)
        if wrm is None or not hasattr(evaluator, "boundary_value"):
            raise UnsupportedDerivative(
                f"{evaluator!r} exposes no retention model",
                context=ErrorContext(key=self.kr_key, operation="flux BC predictor"),
            )
        p_atm = self.store.get_scalar("atmospheric_pressure")
        sat = wrm.saturation(np.array([p_atm - pressure_value]))[0]
        return evaluator.boundary_value(self.store, sat, index)

    def modify_predictor_flux_bcs(self, dt, u) -> bool:
        t = self.store.time(TAG_NEXT)
        self.update_boundary_conditions(t, pressure=u)
        self.solution_to_state(u)
        self.update_coefficients(u)

        kr = self.store.get_data(self.kr_key, TAG_NEXT)
        kr_cell = kr["cell"]
        kr_bf = kr["boundary_face"].copy() if "boundary_face" in kr else np.zeros(self.boundary_faces.size)
        flux = self._flux_direction if self.options.krel_method == "upwind with Darcy flux" else None
        perm = self.store.get_data(self.perm_key, TAG_NEXT)["cell"]
        bf_position = {int(f): i for i, f in enumerate(self.boundary_faces)}
        trans = self.operator.transmissibility

        def pair_coefficient(face, face_value):
            trial = kr_bf.copy()
            trial[bf_position[face]] = self._boundary_rel_perm(face_value, bf_position[face])
            i = self.pair_of_boundary_face[face]
            kr_pair = self.upwinding.update(kr_cell, trial, flux)[i]
            return perm[self.operator.pair_cell[i]] * kr_pair * trans[i]

        faces = [int(f) for f in self.bcs.neumann_faces() if self.pair_of_boundary_face[f] >= 0]
        try:
            changed = self.flux_predictor.modify_predictor(
                u, faces, self.pair_of_boundary_face, self.operator.gravity_term,
                self.operator.face_areas, self.bcs.values, self.operator.pair_cell, pair_coefficient,
            )
        except UnsupportedDerivative as exc:
            self.logger.warning(f"Skipping flux BC predictor: {exc}")
            return False
        self.solution_to_state(u)
        return changed

    def calculate_consistent_faces(self, u: CompositeArray) -> None:
        """Face pressures consistent with the cell pressures of ``u``, in place."""
        self.logger.debug("Modifying predictor for consistent faces")
        # faces from the cell average first, so seepage faces see a sensible value
        for f in range(u["face"].size):
            cells = self.mesh.face_get_cells(f)
            u["face"][f] = np.mean(u["cell"][cells])
        self.solution_to_state(u)

        kr_pairs = self.upwinded_rel_perm(u)
        t = self.store.time(TAG_NEXT)
        bcs = self.update_boundary_conditions(t, pressure=u, kr_pairs=kr_pairs)

        perm = self.store.get_field(self.perm_key, TAG_NEXT, requestor=self.name)["cell"]
        rho = self.store.get_field(self.rho_key, TAG_NEXT, requestor=self.name)["cell"]
        self.face_operator.set_gravity(self.store.gravity)
        self.face_operator.update_coefficients(perm, None, rho)
        self.face_operator.set_bcs(bcs)
        self.face_operator.consistent_faces(u)
        self.solution_to_state(u)

    # =========================================================================
    # Commit and diagnostics
    # =========================================================================

    def commit_state(self, dt):
        if self.flux_mode == "timestep":
            self.update_boundary_conditions(self.store.time(TAG_NEXT))
            self.update_flux()
        self.cycle += 1
        super().commit_state(dt)

    def calculate_diagnostics(self):
        if self.flux_mode == "vis":
            self.update_boundary_conditions(self.store.time(TAG_NEXT))
            self.update_flux()
