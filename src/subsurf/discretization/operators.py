"""
Discrete operators on the hybrid (cell + face) unknowns of a 1-D mesh.

Diffusion
---------
Each cell-face pair (c, f) carries a two-point coefficient

    K_cf = k_cf * A_f / |x_c - x_f|

and, with a density, a gravity term rho_c (-g . (x_c - x_f)). The flux leaving
cell c through face f is

    q_cf = K_cf (u_c - u_f + rho_c (-g . (x_c - x_f)))

Cell rows of the residual hold sum_f q_cf, face rows hold continuity of the
flux, -sum_c q_cf, plus the prescribed outward flux A_f g_f on Neumann faces.
A Dirichlet face row is u_f - value. Unknowns are ordered cells, then faces.

Advection
---------
First-order upwind transport of a cell quantity by a face flux. ``apply``
returns the net inflow into each cell.
"""
import logging
from typing import Optional

import numpy as np
import scipy.sparse as sp

from subsurf.core.types import EntityKind
from subsurf.discretization.boundary import BCKind, BoundaryConditions
from subsurf.state.composite import CompositeArray

logger = logging.getLogger(__name__)


class DiffusionOperator:
    """Hybrid two-point diffusion with optional gravity"""

    def __init__(self, mesh, gravity: Optional[np.ndarray] = None, name: str = "diffusion"):
        self.mesh = mesh
        self.name = name
        self.n_cells = mesh.num_entities(EntityKind.CELL)
        self.n_faces = mesh.num_entities(EntityKind.FACE)

        cells, faces, trans, offsets = [], [], [], []
        for c in range(self.n_cells):
            xc = np.asarray(mesh.cell_centroid(c))
            for f in mesh.cell_get_faces(c):
                xf = np.asarray(mesh.face_centroid(f))
                cells.append(c)
                faces.append(f)
                trans.append(mesh.face_area(f) / np.linalg.norm(xc - xf))
                offsets.append(xc - xf)
        self.pair_cell = np.asarray(cells, dtype=int)
        self.pair_face = np.asarray(faces, dtype=int)
        self.transmissibility = np.asarray(trans)
        self._offsets = np.asarray(offsets)
        self.face_areas = np.array([mesh.face_area(f) for f in range(self.n_faces)])
        # first cell of each face fixes the sign of recovered fluxes
        self.face_first_cell = np.array([mesh.face_get_cells(f)[0] for f in range(self.n_faces)])

        self.bcs = BoundaryConditions(self.n_faces)
        self.gravity = np.zeros(3) if gravity is None else np.asarray(gravity, dtype=float)
        self.K = self.transmissibility.copy()
        self.gravity_term = np.zeros(self.pair_cell.size)

    @property
    def size(self) -> int:
        return self.n_cells + self.n_faces

    def set_bcs(self, bcs: BoundaryConditions) -> None:
        self.bcs = bcs

    def set_gravity(self, gravity: np.ndarray) -> None:
        self.gravity = np.asarray(gravity, dtype=float)

    def pair_gravity_potential(self) -> np.ndarray:
        """-g . (x_c - x_f) per pair"""
        return -(self._offsets @ self.gravity)

    def update_coefficients(self, k_cell, k_pair=None, density=None) -> None:
        """Set K_cf from a cell coefficient, an optional per-pair factor and density.

        ``k_cell`` may be a scalar. ``k_pair`` multiplies pair by pair, which is
        how upwinded relative permeabilities enter.
        """
        k = np.broadcast_to(np.asarray(k_cell, dtype=float), (self.n_cells,))[self.pair_cell]
        if k_pair is not None:
            k = k * np.asarray(k_pair, dtype=float)
        self.K = k * self.transmissibility
        if density is None:
            self.gravity_term = np.zeros(self.pair_cell.size)
        else:
            rho = np.broadcast_to(np.asarray(density, dtype=float), (self.n_cells,))
            self.gravity_term = rho[self.pair_cell] * self.pair_gravity_potential()

    # -------------------------------------------------------------------------
    # Residual and flux
    # -------------------------------------------------------------------------

    def pair_fluxes(self, u: CompositeArray) -> np.ndarray:
        """q_cf, the flux leaving each cell through each of its faces"""
        return self.K * (u["cell"][self.pair_cell] - u["face"][self.pair_face] + self.gravity_term)

    def apply(self, u: CompositeArray, residual: Optional[CompositeArray] = None) -> CompositeArray:
        """Add the diffusion residual of ``u`` into ``residual`` (a new vector if None)."""
        if residual is None:
            residual = u.zeros_like()
        q = self.pair_fluxes(u)
        r_cell = np.bincount(self.pair_cell, weights=q, minlength=self.n_cells)
        r_face = -np.bincount(self.pair_face, weights=q, minlength=self.n_faces)

        kinds, values = self.bcs.kinds, self.bcs.values
        neumann = kinds == BCKind.NEUMANN
        r_face[neumann] += self.face_areas[neumann] * values[neumann]
        dirichlet = kinds == BCKind.DIRICHLET
        r_face[dirichlet] = u["face"][dirichlet] - values[dirichlet]

        residual["cell"] = residual["cell"] + r_cell
        residual["face"] = residual["face"] + r_face
        return residual

    def flux(self, u: CompositeArray) -> np.ndarray:
        """Face flux, positive out of each face's first cell"""
        q = self.pair_fluxes(u)
        out = np.zeros(self.n_faces)
        first = self.face_first_cell[self.pair_face] == self.pair_cell
        out[self.pair_face[first]] = q[first]
        return out

    # -------------------------------------------------------------------------
    # Matrices
    # -------------------------------------------------------------------------

    def matrix(self, cell_diagonal=None) -> sp.csr_matrix:
        """Jacobian of ``apply`` for fixed coefficients, plus an optional cell diagonal"""
        nc = self.n_cells
        c, f, K = self.pair_cell, self.pair_face, self.K
        dirichlet = self.bcs.kinds == BCKind.DIRICHLET
        free = ~dirichlet[f]

        rows = [c, c, nc + f[free], nc + f[free]]
        cols = [c, nc + f, nc + f[free], c[free]]
        vals = [K, -K, K[free], -K[free]]

        d_faces = np.flatnonzero(dirichlet)
        rows.append(nc + d_faces)
        cols.append(nc + d_faces)
        vals.append(np.ones(d_faces.size))

        if cell_diagonal is not None:
            rows.append(np.arange(nc))
            cols.append(np.arange(nc))
            vals.append(np.broadcast_to(np.asarray(cell_diagonal, dtype=float), (nc,)))

        A = sp.coo_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
            shape=(self.size, self.size),
        )
        return A.tocsr()

    # -------------------------------------------------------------------------
    # Consistent faces
    # -------------------------------------------------------------------------

    def consistent_faces(self, u: CompositeArray) -> None:
        """Overwrite face values of ``u`` so that the face rows of the residual vanish.

        Faces start from the unweighted average of their cells; since faces
        couple only to cells, the face block is diagonal and the local solve
        with the current coefficients is exact.
        """
        counts = np.bincount(self.pair_face, minlength=self.n_faces)
        sums = np.bincount(self.pair_face, weights=u["cell"][self.pair_cell], minlength=self.n_faces)
        faces = sums / np.maximum(counts, 1)

        diag = np.bincount(self.pair_face, weights=self.K, minlength=self.n_faces)
        rhs = np.bincount(self.pair_face,
                          weights=self.K * (u["cell"][self.pair_cell] + self.gravity_term),
                          minlength=self.n_faces)
        kinds, values = self.bcs.kinds, self.bcs.values
        neumann = kinds == BCKind.NEUMANN
        rhs[neumann] -= self.face_areas[neumann] * values[neumann]

        solvable = diag > 0.0
        faces[solvable] = rhs[solvable] / diag[solvable]
        dirichlet = kinds == BCKind.DIRICHLET
        faces[dirichlet] = values[dirichlet]
        u["face"] = faces


class AdvectionOperator:
    """First-order upwind advection of a cell quantity by a face flux"""

    def __init__(self, mesh, name: str = "advection"):
        self.mesh = mesh
        self.name = name
        self.n_cells = mesh.num_entities(EntityKind.CELL)
        self.n_faces = mesh.num_entities(EntityKind.FACE)
        self.first = np.empty(self.n_faces, dtype=int)
        self.second = np.full(self.n_faces, -1, dtype=int)
        for f in range(self.n_faces):
            cells = mesh.face_get_cells(f)
            self.first[f] = cells[0]
            if len(cells) > 1:
                self.second[f] = cells[1]
        self.bcs = BoundaryConditions(self.n_faces)

    def set_bcs(self, bcs: BoundaryConditions) -> None:
        """Dirichlet values are the advected quantity carried in through inflow faces"""
        self.bcs = bcs

    def _upwind_values(self, flux: np.ndarray, field: np.ndarray) -> np.ndarray:
        downstream_cell = np.where(self.second >= 0, self.second, 0)
        values = np.where(flux >= 0.0, field[self.first], field[downstream_cell])
        boundary_in = (self.second < 0) & (flux < 0.0)
        dirichlet = boundary_in & (self.bcs.kinds == BCKind.DIRICHLET)
        values = np.where(boundary_in, field[self.first], values)
        values[dirichlet] = self.bcs.values[dirichlet]
        return values

    def apply(self, flux: np.ndarray, field: np.ndarray) -> np.ndarray:
        """Net inflow of ``flux * field`` into each cell"""
        flux = np.asarray(flux, dtype=float)
        transport = flux * self._upwind_values(flux, np.asarray(field, dtype=float))
        inflow = -np.bincount(self.first, weights=transport, minlength=self.n_cells)
        interior = self.second >= 0
        inflow += np.bincount(self.second[interior], weights=transport[interior],
                              minlength=self.n_cells)
        return inflow

    def matrix(self, flux: np.ndarray) -> sp.csr_matrix:
        """d(apply)/d(field) over cells, for a fixed flux"""
        flux = np.asarray(flux, dtype=float)
        entries = []
        for f in range(self.n_faces):
            c0, c1, F = self.first[f], self.second[f], flux[f]
            if F >= 0.0:
                entries.append((c0, c0, -F))
                if c1 >= 0:
                    entries.append((c1, c0, F))
            elif c1 >= 0:
                entries.append((c0, c1, -F))
                entries.append((c1, c1, F))
            elif self.bcs.kinds[f] != BCKind.DIRICHLET:
                entries.append((c0, c0, -F))
        if not entries:
            return sp.csr_matrix((self.n_cells, self.n_cells))
        rows, cols, vals = zip(*entries)
        return sp.coo_matrix((vals, (rows, cols)), shape=(self.n_cells, self.n_cells)).tocsr()
