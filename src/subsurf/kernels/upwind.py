"""
Relative-permeability upwinding onto the cell-face pairs of a diffusion operator.

Methods:
- ``upwind with gravity``: the cell upstream of gravity (the higher one);
- ``cell centered``: each pair uses its own cell value;
- ``upwind with Darcy flux``: the cell the flux leaves, the mean within the
  flux tolerance;
- ``arithmetic mean``: mean of the values on both sides.

On boundary faces the outside value is the boundary-face relative
permeability.
"""
import logging
from typing import Optional

import numpy as np

from subsurf.core.constants import UPWIND_FLUX_TOLERANCE
from subsurf.discretization.operators import DiffusionOperator

logger = logging.getLogger(__name__)

UPWIND_METHODS = ("upwind with gravity", "cell centered", "upwind with Darcy flux", "arithmetic mean")


class Upwinding:
    """Per-pair coefficient from cell and boundary-face values"""

    def __init__(self, method: str, operator: DiffusionOperator,
                 flux_tolerance: float = UPWIND_FLUX_TOLERANCE):
        if method not in UPWIND_METHODS:
            raise ValueError(f"Unknown relative permeability method '{method}'")
        self.method = method
        self.op = operator
        self.flux_tolerance = flux_tolerance

        mesh = operator.mesh
        n_faces = operator.n_faces
        self.first = np.empty(n_faces, dtype=int)
        self.second = np.full(n_faces, -1, dtype=int)
        for f in range(n_faces):
            cells = mesh.face_get_cells(f)
            self.first[f] = cells[0]
            if len(cells) > 1:
                self.second[f] = cells[1]
        self.boundary = self.second < 0
        # position of each boundary face in the boundary_face component
        self.bf_index = np.full(n_faces, -1, dtype=int)
        for i, f in enumerate(mesh.boundary_faces()):
            self.bf_index[f] = i
        self.z_cell = np.array([mesh.cell_centroid(c)[2] for c in range(operator.n_cells)])
        self.z_face = np.array([mesh.face_centroid(f)[2] for f in range(n_faces)])

    def _sides(self, kr_cell: np.ndarray, kr_boundary: Optional[np.ndarray]):
        """Values on the first and second side of every face"""
        left = kr_cell[self.first]
        right = np.where(self.boundary, left, kr_cell[np.maximum(self.second, 0)])
        if kr_boundary is not None:
            bf = self.boundary
            right[bf] = kr_boundary[self.bf_index[bf]]
        return left, right

    def update(self, kr_cell: np.ndarray, kr_boundary: Optional[np.ndarray] = None,
               flux: Optional[np.ndarray] = None) -> np.ndarray:
        """Upwinded coefficient on every cell-face pair"""
        kr_cell = np.asarray(kr_cell, dtype=float)
        if self.method == "cell centered":
            return kr_cell[self.op.pair_cell]

        left, right = self._sides(kr_cell, kr_boundary)
        mean = 0.5 * (left + right)
        if self.method == "arithmetic mean":
            face = mean
        elif self.method == "upwind with gravity":
            z_left = self.z_cell[self.first]
            z_right = np.where(self.boundary, self.z_face, self.z_cell[np.maximum(self.second, 0)])
            face = np.where(z_left > z_right, left, np.where(z_left < z_right, right, mean))
        else:
            if flux is None:
                raise ValueError("Darcy flux upwinding needs a face flux")
            tol = self.flux_tolerance
            face = np.where(flux > tol, left, np.where(flux < -tol, right, mean))
        return face[self.op.pair_face]
