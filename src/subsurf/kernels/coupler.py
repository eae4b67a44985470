"""
Couplers: process kernels built from other process kernels.

A coupler stacks the unknowns of its children into a BlockVector and
satisfies the same nonlinear-function contract. Residuals are the children's
residuals; with ``"preconditioner type": "block coupled"`` the children's
matrices are assembled into one system together with the cross terms, else
each child preconditions its own block.
"""
import logging
from typing import Any, Dict, List, Literal, Mapping, Optional

import numpy as np
import scipy.sparse as sp
from pydantic import Field

from subsurf.core.config import Options, parse_options
from subsurf.core.constants import TAG_NEXT
from subsurf.core.exceptions import ConfigurationError, ErrorContext, UnsupportedDerivative
from subsurf.core.types import EntityKind
from subsurf.discretization.linear import DirectSolver
from subsurf.kernels.base import KernelPhase, PhysicalKernel, create_kernel, register_kernel
from subsurf.state.composite import BlockVector
from subsurf.state.keys import SURFACE_DOMAIN, get_key

logger = logging.getLogger(__name__)


class CouplerOptions(Options):
    kernel_type: Optional[str] = Field(None, alias="PK type")
    order: List[str] = Field(alias="PKs order", min_length=1)
    preconditioner_type: Literal["block diagonal", "block coupled"] = Field(
        "block diagonal", alias="preconditioner type")


@register_kernel("strong coupler")
class StrongCoupler:
    """All children advance together on one time step"""

    type_name = ""
    options_model = CouplerOptions
    is_coupler = True

    def __init__(self, name: str, plist: Mapping[str, Any],
                 kernel_plists: Mapping[str, Mapping[str, Any]]):
        self.name = name
        self.plist = dict(plist)
        self.options = parse_options(self.options_model, self.plist, owner=name)
        self.logger = logging.getLogger(f"{__name__}.{name}")

        self.children: Dict[str, Any] = {}
        for child in self.options.order:
            if child not in kernel_plists:
                raise ConfigurationError(
                    f"Coupled kernel '{child}' has no option block",
                    context=ErrorContext(component=name, operation="__init__"),
                )
            if child == name:
                raise ConfigurationError(
                    f"Coupler '{name}' lists itself as a child",
                    context=ErrorContext(component=name, operation="__init__"),
                )
            self.children[child] = create_kernel(child, kernel_plists[child], kernel_plists)

        self.coupled = self.options.preconditioner_type == "block coupled"
        self.store = None
        self.solver: Optional[DirectSolver] = None
        self.precon_matrix = None
        self.phase = KernelPhase.SETUP

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name}: {', '.join(self.children)})"

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def setup(self, store) -> None:
        self.store = store
        for child in self.children.values():
            child.setup(store)
        if self.coupled:
            self.solver = DirectSolver(name=f"{self.name} precon")

    def initialize(self) -> None:
        for child in self.children.values():
            child.initialize()
        self.phase = KernelPhase.INITIALIZED

    def commit_state(self, dt: float) -> None:
        for child in self.children.values():
            child.commit_state(dt)

    def calculate_diagnostics(self) -> None:
        for child in self.children.values():
            child.calculate_diagnostics()

    def kernels(self) -> List[PhysicalKernel]:
        out = []
        for child in self.children.values():
            out.extend(child.kernels())
        return out

    # -------------------------------------------------------------------------
    # Solution vectors
    # -------------------------------------------------------------------------

    def solution(self, tag: str = TAG_NEXT) -> BlockVector:
        return BlockVector({name: child.solution(tag) for name, child in self.children.items()})

    def solution_to_state(self, u: BlockVector, tag: str = TAG_NEXT) -> None:
        for name, child in self.children.items():
            child.solution_to_state(u[name], tag)

    def changed_solution(self) -> None:
        for child in self.children.values():
            child.changed_solution()

    def set_times(self, t_old: float, t_new: float) -> None:
        for child in self.children.values():
            child.set_times(t_old, t_new)

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    def fun(self, t_old, t_new, u_old, u_new):
        # every child must see the others' trial values
        self.solution_to_state(u_new)
        return BlockVector({
            name: child.fun(t_old, t_new, u_old[name], u_new[name])
            for name, child in self.children.items()
        })

    def update_precon(self, t, u, dt):
        for name, child in self.children.items():
            child.update_precon(t, u[name], dt)
        self.assemble_precon(dt)

    def assemble_precon(self, dt: float) -> None:
        blocks = self.matrix_blocks(dt)
        self.precon_matrix = sp.bmat(blocks, format="csr")
        if self.coupled:
            self.solver.factorize(self.precon_matrix)

    def precon(self, r):
        if self.coupled:
            return r.zeros_like().assign_flat(self.solver.solve(r.flat()))
        return BlockVector({name: child.precon(r[name]) for name, child in self.children.items()})

    def enorm(self, u, du):
        norms = []
        for name, child in self.children.items():
            norm = child.enorm(u[name], du[name])
            self.logger.debug(f"ENorm ({name}) = {norm:g}")
            norms.append(norm)
        return max(norms)

    def is_admissible(self, u):
        return all(child.is_admissible(u[name]) for name, child in self.children.items())

    def modify_predictor(self, dt, u):
        changed = False
        for name, child in self.children.items():
            changed |= bool(child.modify_predictor(dt, u[name]))
        return changed

    # -------------------------------------------------------------------------
    # Assembly
    # -------------------------------------------------------------------------

    def matrix_blocks(self, dt: float) -> List[List[Optional[sp.spmatrix]]]:
        """Children's matrices on the diagonal, cross terms off it when coupled"""
        names = list(self.children)
        blocks: List[List[Optional[sp.spmatrix]]] = [[None] * len(names) for _ in names]
        for i, name in enumerate(names):
            blocks[i][i] = self.children[name].precon_matrix
        if self.coupled:
            for i, row in enumerate(names):
                for j, col in enumerate(names):
                    if i != j:
                        blocks[i][j] = self.cross_term(self.children[row], self.children[col], dt)
        return blocks

    def cross_term(self, row, col, dt: float) -> Optional[sp.spmatrix]:
        """d(accumulation of ``row``)/d(primary of ``col``) on the cells"""
        if getattr(row, "conserved_key", None) is None or getattr(row, "is_coupler", False) \
                or getattr(col, "is_coupler", False) or row.domain != col.domain:
            return None
        try:
            d = self.store.get_derivative(row.conserved_key, TAG_NEXT, col.key, requestor=self.name)["cell"]
        except UnsupportedDerivative as exc:
            self.logger.warning(f"Omitting d({row.conserved_key})/d({col.key}): {exc}")
            return None
        n_rows = row.precon_matrix.shape[0]
        n_cols = col.precon_matrix.shape[0]
        cells = np.arange(d.size)
        return sp.coo_matrix((d / dt, (cells, cells)), shape=(n_rows, n_cols))


class SurfaceSubsurfaceOptions(CouplerOptions):
    subsurface: Optional[str] = Field(None, alias="subsurface PK")
    surface: Optional[str] = Field(None, alias="surface PK")


@register_kernel("surface-subsurface coupler")
class SurfaceSubsurfaceCoupler(StrongCoupler):
    """Richards flow coupled to overland flow through the top faces.

    The subsurface pressure on each coupled face equals the pressure of the
    surface cell above it; the flux leaving the subsurface through that face
    is a source of the surface cell.
    """

    options_model = SurfaceSubsurfaceOptions

    def __init__(self, name, plist, kernel_plists):
        super().__init__(name, plist, kernel_plists)
        opts = self.options
        if len(self.children) != 2:
            raise ConfigurationError(
                f"Surface-subsurface coupler needs exactly two kernels, got {len(self.children)}",
                context=ErrorContext(component=name, operation="__init__"),
            )
        order = list(self.children)
        self.sub_name = opts.subsurface or order[0]
        self.surf_name = opts.surface or order[1]
        for child in (self.sub_name, self.surf_name):
            if child not in self.children:
                raise ConfigurationError(
                    f"'{child}' is not in 'PKs order'",
                    context=ErrorContext(component=name, operation="__init__"),
                )
        self.subsurface = self.children[self.sub_name]
        self.surface = self.children[self.surf_name]
        if not getattr(self.subsurface.options, "coupled_via_head", False):
            raise ConfigurationError(
                f"Subsurface kernel '{self.sub_name}' must be 'coupled to surface via head'",
                context=ErrorContext(component=name, operation="__init__"),
            )
        self.exchange_key = get_key(SURFACE_DOMAIN, "surface_subsurface_flux")

    def setup(self, store):
        super().setup(store)
        store.require_primary(self.exchange_key, TAG_NEXT, ("cell",), owner=self.name)
        surface_mesh = store.mesh(self.surface.domain)
        n_surf = surface_mesh.num_entities(EntityKind.CELL)
        self.parent_faces = np.array([surface_mesh.entity_get_parent(c) for c in range(n_surf)], dtype=int)

    def initialize(self):
        self.store.set_primary(self.exchange_key, TAG_NEXT, 0.0)
        super().initialize()

    def fun(self, t_old, t_new, u_old, u_new):
        # surface first: its pressure is the subsurface boundary value
        self.surface.solution_to_state(u_new[self.surf_name])
        self.subsurface.solution_to_state(u_new[self.sub_name])
        r_sub = self.subsurface.fun(t_old, t_new, u_old[self.sub_name], u_new[self.sub_name])
        exchange = self.exchange_flux(u_new[self.sub_name])
        self.store.set_primary(self.exchange_key, TAG_NEXT, exchange)

        r_surf = self.surface.fun(t_old, t_new, u_old[self.surf_name], u_new[self.surf_name])
        r_surf["cell"] -= exchange
        self.logger.debug(f"exchange flux (max) = {np.abs(exchange).max(initial=0.0):g}")

        residuals = {self.sub_name: r_sub, self.surf_name: r_surf}
        return BlockVector({name: residuals[name] for name in self.children})

    def exchange_flux(self, u_sub) -> np.ndarray:
        """Flux out of the subsurface through each coupled face, per surface cell"""
        return self.subsurface.operator.flux(u_sub)[self.parent_faces]

    def update_precon(self, t, u, dt):
        # the surface diagonal needs the subsurface face coefficients
        self.subsurface.update_precon(t, u[self.sub_name], dt)
        self.surface.coupling_diagonal = self.exchange_conductance()
        self.surface.update_precon(t, u[self.surf_name], dt)
        self.assemble_precon(dt)

    def _coupled_pairs(self) -> np.ndarray:
        op = self.subsurface.operator
        pair_of = {int(f): i for i, f in enumerate(op.pair_face)}
        return np.array([pair_of[int(f)] for f in self.parent_faces], dtype=int)

    def exchange_conductance(self) -> np.ndarray:
        """d(-exchange)/d(p_surface) through the head constraint, per surface cell"""
        return self.subsurface.operator.K[self._coupled_pairs()].copy()

    def matrix_blocks(self, dt):
        names = list(self.children)
        i_sub, i_surf = names.index(self.sub_name), names.index(self.surf_name)
        blocks: List[List[Optional[sp.spmatrix]]] = [[None, None], [None, None]]
        blocks[i_sub][i_sub] = self.subsurface.precon_matrix
        blocks[i_surf][i_surf] = self.surface.precon_matrix
        if self.coupled:
            blocks[i_sub][i_surf] = self.head_constraint()
            blocks[i_surf][i_sub] = self.exchange_derivative()
        return blocks

    def head_constraint(self) -> sp.spmatrix:
        """d(u_f - p_surface)/d(p_surface) on the coupled face rows"""
        op = self.subsurface.operator
        n_surf = self.parent_faces.size
        rows = op.n_cells + self.parent_faces
        return sp.coo_matrix((-np.ones(n_surf), (rows, np.arange(n_surf))),
                             shape=(op.size, self.surface.precon_matrix.shape[0]))

    def exchange_derivative(self) -> sp.spmatrix:
        """d(-exchange)/d(subsurface cell pressure) on the surface cell rows.

        The coupled face value is the surface pressure, so the face part of
        the derivative sits on the surface diagonal (``exchange_conductance``).
        """
        op = self.subsurface.operator
        pairs = self._coupled_pairs()
        rows = np.arange(pairs.size)
        return sp.coo_matrix((-op.K[pairs], (rows, op.pair_cell[pairs])),
                             shape=(self.surface.precon_matrix.shape[0], op.size))
