"""
Energy conservation with conduction and advection by the water flux.

    dE/dt + div( q h ) - div( K grad T ) = Q_E

The primary unknown is temperature on cells and faces. Energy E, enthalpy h
and the conductivity K come from the evaluator graph; the molar flux q is the
``mass_flux`` face field written by a flow kernel.

Boundary conditions (``"boundary conditions"`` sublist):

    "temperature":           [{"regions": [...], "boundary temperature": value}]
    "diffusive energy flux": [{"regions": [...], "outward diffusive energy flux": value}]

Water entering through a temperature boundary carries the enthalpy of the
boundary temperature.
"""
import logging
from typing import Any, Dict, Mapping, Tuple

import numpy as np
import scipy.sparse as sp
from pydantic import Field, field_validator

from subsurf.core.constants import (
    CHARACTERISTIC_ENERGY,
    ENERGY_FACE_REFERENCE,
    ENERGY_FACE_SCALE,
    TAG_NEXT,
    TAG_PREVIOUS,
    TEMPERATURE_ADMISSIBLE_RANGE,
)
from subsurf.core.exceptions import ConfigurationError, ErrorContext, UnsupportedDerivative
from subsurf.core.types import EntityKind
from subsurf.discretization.boundary import BoundaryConditions, boundary_functions_from_list
from subsurf.discretization.linear import DirectSolver, SchurComplementSolver
from subsurf.discretization.operators import AdvectionOperator, DiffusionOperator
from subsurf.kernels.base import KernelOptions, KernelPhase, PhysicalKernel, register_kernel
from subsurf.state.keys import SURFACE_DOMAIN, get_key, read_key

logger = logging.getLogger(__name__)


class EnergyOptions(KernelOptions):
    advection_negated: bool = Field(True, alias="advection negated")
    coupled_to_surface_via_temp: bool = Field(False, alias="coupled to surface via temperature")
    coupled_to_surface_via_flux: bool = Field(False, alias="coupled to surface via flux")
    coupled_to_subsurface_via_temp: bool = Field(False, alias="coupled to subsurface via temperature")
    coupled_to_subsurface_via_flux: bool = Field(False, alias="coupled to subsurface via flux")
    assemble_preconditioner: bool = Field(True, alias="assemble preconditioner")
    predictor_consistent_faces: bool = Field(False, alias="modify predictor with consistent faces")
    source_term: bool = Field(False, alias="source term")
    admissible_range: Tuple[float, float] = Field(TEMPERATURE_ADMISSIBLE_RANGE,
                                                  alias="admissible temperature range [K]")
    boundary_conditions: Dict[str, Any] = Field(default_factory=dict, alias="boundary conditions")

    @field_validator("admissible_range")
    @classmethod
    def validate_range(cls, value):
        if value[0] >= value[1]:
            raise ValueError("admissible temperature range must be increasing")
        return value


@register_kernel("energy")
class EnergyConservation(PhysicalKernel):
    """Advection-diffusion of energy on cells and faces"""

    options_model = EnergyOptions
    default_key = "temperature"

    def __init__(self, name: str, plist: Mapping[str, Any]):
        super().__init__(name, plist)
        opts = self.options
        for a, b in (("coupled_to_surface_via_temp", "coupled_to_surface_via_flux"),
                     ("coupled_to_subsurface_via_temp", "coupled_to_subsurface_via_flux")):
            if getattr(opts, a) and getattr(opts, b):
                fields = EnergyOptions.model_fields
                raise ConfigurationError(
                    f"'{fields[a].alias}' and '{fields[b].alias}' are mutually exclusive",
                    context=ErrorContext(component=name, operation="__init__"),
                )

        d = self.domain
        self.energy_key = read_key(self.plist, d, "conserved quantity", "energy")
        self.conserved_key = self.energy_key
        self.enthalpy_key = read_key(self.plist, d, "enthalpy", "enthalpy")
        self.conductivity_key = read_key(self.plist, d, "thermal conductivity", "thermal_conductivity")
        self.flux_key = read_key(self.plist, d, "mass flux", "mass_flux")
        self.cv_key = read_key(self.plist, d, "cell volume", "cell_volume")
        self.source_key = read_key(self.plist, d, "source", "total_energy_source")
        self.pres_key = read_key(self.plist, d, "pressure", "pressure")
        self.surf_temp_key = get_key(SURFACE_DOMAIN, "temperature")
        self.surf_eflux_key = get_key(SURFACE_DOMAIN, "surface_subsurface_energy_flux")
        self.ss_eflux_key = read_key(self.plist, d, "surface-subsurface energy flux",
                                     "surface_subsurface_energy_flux")
        self.advection_sign = -1.0 if opts.advection_negated else 1.0

    # =========================================================================
    # Setup
    # =========================================================================

    def setup(self, store):
        super().setup(store)
        opts = self.options
        for tag in (TAG_PREVIOUS, TAG_NEXT):
            store.require(self.energy_key, tag)
        store.require(self.enthalpy_key, TAG_NEXT)
        store.require(self.conductivity_key, TAG_NEXT)
        store.require(self.flux_key, TAG_NEXT, ("face",))
        store.require(self.cv_key, TAG_NEXT)
        if opts.source_term:
            store.require(self.source_key, TAG_NEXT)
        if opts.coupled_to_subsurface_via_temp or opts.coupled_to_subsurface_via_flux:
            store.require(self.pres_key, TAG_NEXT)
        if opts.coupled_to_subsurface_via_flux:
            store.require(self.ss_eflux_key, TAG_NEXT)
        if opts.coupled_to_surface_via_temp:
            store.require(self.surf_temp_key, TAG_NEXT)
        if opts.coupled_to_surface_via_flux:
            store.require(self.surf_eflux_key, TAG_NEXT)

        self.diffusion = DiffusionOperator(self.mesh, name=f"{self.name} diffusion")
        self.advection = AdvectionOperator(self.mesh, name=f"{self.name} advection")
        n_cells = self.mesh.num_entities(EntityKind.CELL)
        if opts.coupled_to_surface_via_temp or opts.coupled_to_surface_via_flux:
            # the coupler owns the combined system, so the local solve must be exact
            self.solver = DirectSolver(name=f"{self.name} precon")
        else:
            mode = "assembled" if opts.assemble_preconditioner else "local"
            self.solver = SchurComplementSolver(n_cells, mode=mode, name=f"{self.name} precon")

        self.bcs = BoundaryConditions.for_mesh(self.mesh)
        self.adv_bcs = BoundaryConditions.for_mesh(self.mesh)
        bc_plist = opts.boundary_conditions
        self.bc_temperature = boundary_functions_from_list(
            self.mesh, bc_plist.get("temperature"), "boundary temperature", owner=self.name)
        self.bc_flux = boundary_functions_from_list(
            self.mesh, bc_plist.get("diffusive energy flux"), "outward diffusive energy flux",
            owner=self.name)

    # =========================================================================
    # Boundary conditions
    # =========================================================================

    def _coupled_faces(self):
        surface = self.store.mesh(SURFACE_DOMAIN)
        n_surf = surface.num_entities(EntityKind.CELL)
        return np.array([surface.entity_get_parent(c) for c in range(n_surf)], dtype=int)

    def update_boundary_conditions(self, time: float, u) -> None:
        bcs = self.bcs
        bcs.reset()
        for function in self.bc_temperature:
            bcs.set_dirichlet(function.faces, function.compute(time))
        for function in self.bc_flux:
            bcs.set_neumann(function.faces, function.compute(time))

        opts = self.options
        if opts.coupled_to_surface_via_temp:
            faces = self._coupled_faces()
            temp = self.store.get_field(self.surf_temp_key, TAG_NEXT, requestor=self.name)["cell"]
            bcs.set_dirichlet(faces, temp)
        elif opts.coupled_to_surface_via_flux:
            faces = self._coupled_faces()
            eflux = self.store.get_field(self.surf_eflux_key, TAG_NEXT, requestor=self.name)["cell"]
            bcs.set_neumann(faces, eflux / self.diffusion.face_areas[faces])

        # enthalpy carried in through temperature boundaries
        self.adv_bcs.reset()
        dirichlet = bcs.dirichlet_faces()
        if dirichlet.size:
            cells = self.advection.first[dirichlet]
            enthalpy = self.store.get_field(self.enthalpy_key, TAG_NEXT, requestor=self.name)["cell"]
            dh_dT = self._enthalpy_derivative()
            self.adv_bcs.set_dirichlet(
                dirichlet, enthalpy[cells] + dh_dT[cells] * (bcs.values[dirichlet] - u["cell"][cells]))
        self.advection.set_bcs(self.adv_bcs)
        self.diffusion.set_bcs(bcs)

    def apply_dirichlet(self, u) -> None:
        dirichlet = self.bcs.dirichlet_faces()
        u["face"][dirichlet] = self.bcs.values[dirichlet]

    def _enthalpy_derivative(self) -> np.ndarray:
        try:
            return self.store.get_derivative(self.enthalpy_key, TAG_NEXT, self.key)["cell"]
        except UnsupportedDerivative as exc:
            self.logger.warning(f"Enthalpy derivative unavailable, treating as zero: {exc}")
            return np.zeros(self.mesh.num_entities(EntityKind.CELL))

    def _update_conductivity(self) -> None:
        K = self.store.get_field(self.conductivity_key, TAG_NEXT, requestor=self.name)["cell"]
        self.diffusion.update_coefficients(K)

    # =========================================================================
    # Nonlinear function
    # =========================================================================

    def fun(self, t_old, t_new, u_old, u_new):
        self.niter += 1
        self.phase = KernelPhase.ITERATING
        h = t_new - t_old
        self.set_times(t_old, t_new)
        self.solution_to_state(u_new)
        self.update_boundary_conditions(t_new, u_new)
        self.apply_dirichlet(u_new)
        self.solution_to_state(u_new)
        self.logger.debug(f"Residual calculation: t0 = {t_old} t1 = {t_new} h = {h}")

        res = u_new.zeros_like()
        self._update_conductivity()
        self.diffusion.apply(u_new, res)
        self.logger.debug(f"res (post diffusion) = {res.norm_inf():g}")

        e1 = self.store.get_field(self.energy_key, TAG_NEXT, requestor=self.name)["cell"]
        e0 = self.store.get_field(self.energy_key, TAG_PREVIOUS, requestor=self.name)["cell"]
        res["cell"] += (e1 - e0) / h
        self.logger.debug(f"res (post accumulation) = {res.norm_inf():g}")

        flux = self.store.get_field(self.flux_key, TAG_NEXT, requestor=self.name)["face"]
        enthalpy = self.store.get_field(self.enthalpy_key, TAG_NEXT, requestor=self.name)["cell"]
        res["cell"] += self.advection_sign * self.advection.apply(flux, enthalpy)
        self.logger.debug(f"res (post advection) = {res.norm_inf():g}")

        if self.options.source_term:
            res["cell"] -= self.store.get_field(self.source_key, TAG_NEXT, requestor=self.name)["cell"]
        if self.options.coupled_to_subsurface_via_flux:
            res["cell"] -= self.store.get_field(self.ss_eflux_key, TAG_NEXT, requestor=self.name)["cell"]
        self.logger.debug(f"res (post source) = {res.norm_inf():g}")
        return res

    def update_precon(self, t, u, dt):
        self.logger.debug(f"Precon update at t = {t}")
        if not self.store.get_data(self.key, TAG_NEXT).array_equal(u):
            self.solution_to_state(u)
        self.update_boundary_conditions(t, u)
        self._update_conductivity()

        de_dT = self.store.get_derivative(self.energy_key, TAG_NEXT, self.key,
                                          requestor=self.name)["cell"].copy()
        opts = self.options
        if opts.coupled_to_subsurface_via_temp or opts.coupled_to_subsurface_via_flux:
            # no ponded water, no surface energy to store
            p = self.store.get_field(self.pres_key, TAG_NEXT, requestor=self.name)["cell"]
            dry = p < self.store.get_scalar("atmospheric_pressure")
            de_dT[dry] = 0.0
        diagonal = de_dT / dt
        if opts.source_term and self.store.is_dependency(self.source_key, TAG_NEXT, self.key):
            try:
                diagonal = diagonal - self.store.get_derivative(self.source_key, TAG_NEXT, self.key)["cell"]
            except UnsupportedDerivative as exc:
                self.logger.warning(f"Omitting source derivative from preconditioner: {exc}")

        A = self.diffusion.matrix(cell_diagonal=diagonal)
        flux = self.store.get_field(self.flux_key, TAG_NEXT, requestor=self.name)["face"]
        dh_dT = self._enthalpy_derivative()
        adv = self.advection.matrix(flux) @ sp.diags(dh_dT)
        n_faces = self.mesh.num_entities(EntityKind.FACE)
        A = A + self.advection_sign * sp.block_diag((adv, sp.csr_matrix((n_faces, n_faces))))
        self.precon_matrix = A.tocsr()
        self.solver.factorize(self.precon_matrix)

    def precon(self, r):
        return r.zeros_like().assign_flat(self.solver.solve(r.flat()))

    def enorm(self, u, du):
        energy = self.store.get_field(self.energy_key, TAG_NEXT, requestor=self.name)["cell"]
        cv = self.store.get_field(self.cv_key, TAG_NEXT, requestor=self.name)["cell"]
        h = self.timestep()

        res_c = du["cell"]
        cell_all = np.abs(h * res_c) / (self.atol * cv * CHARACTERISTIC_ENERGY + self.rtol * np.abs(energy))
        enorm_cell = float(cell_all.max()) if cell_all.size else 0.0

        enorm_face = 0.0
        if "face" in du and du["face"].size:
            face_all = ENERGY_FACE_SCALE * np.abs(du["face"]) / (
                self.atol + self.rtol * ENERGY_FACE_REFERENCE)
            enorm_face = float(face_all.max())

        self.logger.debug(f"ENorm (cells) = {enorm_cell:g} ({np.abs(res_c).max(initial=0.0):g})")
        self.logger.debug(f"ENorm (faces) = {enorm_face:g}")
        return self.store.comm.max_all(max(enorm_cell, enorm_face))

    def is_admissible(self, u):
        if not self.all_finite(u):
            return False
        lo, hi = self.options.admissible_range
        comm = self.store.comm
        t_min = comm.min_all(u.min())
        t_max = comm.max_all(u.max())
        self.logger.debug(f"Admissible T? (min/max): {t_min:g}, {t_max:g}")
        if t_min < lo or t_max > hi:
            min_c, min_cell = comm.min_loc(u["cell"])
            max_c, max_cell = comm.max_loc(u["cell"])
            self.logger.warning(
                f"Temperature is not admissible, outside [{lo:g}, {hi:g}]: "
                f"cells (min/max): [{min_cell}] {min_c:g}, [{max_cell}] {max_c:g}"
            )
            return False
        return True

    def modify_predictor(self, dt, u):
        """Set face temperatures consistent with the cells, if enabled."""
        if not self.options.predictor_consistent_faces:
            return False
        t = self.store.time(TAG_NEXT)
        self.solution_to_state(u)
        self.update_boundary_conditions(t, u)
        self._update_conductivity()
        self.diffusion.consistent_faces(u)
        self.solution_to_state(u)
        return True
