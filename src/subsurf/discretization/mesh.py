"""
Reference meshes: a vertical soil column and a surface strip over it.

Both are one-dimensional chains of cells. Faces are numbered along the chain,
face ``f`` separates cells ``f - 1`` and ``f``, so faces ``0`` and ``n`` are
the two boundary faces. Coordinates are full 3-vectors so that the gravity
potential is ``-g . x`` regardless of the chain's orientation.
"""
import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from subsurf.core.exceptions import ConfigurationError, ErrorContext
from subsurf.core.types import EntityID, EntityKind

logger = logging.getLogger(__name__)


class Mesh1D:
    """Chain of ``n`` cells and ``n + 1`` faces"""

    def __init__(self, face_centroids: np.ndarray, cell_centroids: np.ndarray,
                 cell_volumes: np.ndarray, face_areas: np.ndarray,
                 regions: Optional[Dict[str, List[EntityID]]] = None):
        self._face_centroids = np.asarray(face_centroids, dtype=float)
        self._cell_centroids = np.asarray(cell_centroids, dtype=float)
        self._cell_volumes = np.asarray(cell_volumes, dtype=float)
        self._face_areas = np.asarray(face_areas, dtype=float)
        self.n_cells = self._cell_centroids.shape[0]
        if self._face_centroids.shape[0] != self.n_cells + 1:
            raise ConfigurationError(
                f"A chain of {self.n_cells} cells needs {self.n_cells + 1} faces, "
                f"got {self._face_centroids.shape[0]}",
                context=ErrorContext(component=type(self).__name__, operation="__init__"),
            )
        self._regions = dict(regions or {})

    # -------------------------------------------------------------------------
    # Topology
    # -------------------------------------------------------------------------

    def num_entities(self, kind: EntityKind) -> int:
        kind = EntityKind(kind)
        if kind == EntityKind.CELL:
            return self.n_cells
        if kind == EntityKind.FACE:
            return self.n_cells + 1
        return 2

    def face_get_cells(self, face: EntityID) -> List[EntityID]:
        return [c for c in (face - 1, face) if 0 <= c < self.n_cells]

    def cell_get_faces(self, cell: EntityID) -> List[EntityID]:
        return [cell, cell + 1]

    def boundary_faces(self) -> Sequence[EntityID]:
        return [0, self.n_cells]

    def is_boundary_face(self, face: EntityID) -> bool:
        return face in (0, self.n_cells)

    # -------------------------------------------------------------------------
    # Geometry
    # -------------------------------------------------------------------------

    def cell_volume(self, cell: EntityID) -> float:
        return float(self._cell_volumes[cell])

    def face_area(self, face: EntityID) -> float:
        return float(self._face_areas[face])

    def cell_centroid(self, cell: EntityID) -> np.ndarray:
        return self._cell_centroids[cell]

    def face_centroid(self, face: EntityID) -> np.ndarray:
        return self._face_centroids[face]

    @property
    def cell_volumes(self) -> np.ndarray:
        return self._cell_volumes

    @property
    def face_areas(self) -> np.ndarray:
        return self._face_areas

    # -------------------------------------------------------------------------
    # Regions
    # -------------------------------------------------------------------------

    @property
    def regions(self) -> List[str]:
        return list(self._regions)

    def region_faces(self, region: str) -> List[EntityID]:
        if region not in self._regions:
            raise ConfigurationError(
                f"Unknown region '{region}'; available: {', '.join(self._regions)}",
                context=ErrorContext(component=type(self).__name__, operation="region_faces"),
            )
        return list(self._regions[region])


class ColumnMesh(Mesh1D):
    """Vertical column, cells numbered from the top down.

    Args:
        thicknesses: cell thicknesses from the top (m)
        area: horizontal cross-section (m^2)
        top_elevation: elevation of face 0 (m)
    """

    def __init__(self, thicknesses: Sequence[float], area: float = 1.0, top_elevation: float = 0.0):
        dz = np.asarray(thicknesses, dtype=float)
        if dz.ndim != 1 or dz.size == 0 or np.any(dz <= 0):
            raise ConfigurationError(
                "Column cell thicknesses must be a non-empty sequence of positive values",
                context=ErrorContext(component="ColumnMesh", operation="__init__"),
            )
        if area <= 0:
            raise ConfigurationError(
                f"Column area must be positive, got {area}",
                context=ErrorContext(component="ColumnMesh", operation="__init__"),
            )
        z_faces = top_elevation - np.concatenate([[0.0], np.cumsum(dz)])
        z_cells = 0.5 * (z_faces[:-1] + z_faces[1:])

        face_centroids = np.zeros((dz.size + 1, 3))
        face_centroids[:, 2] = z_faces
        cell_centroids = np.zeros((dz.size, 3))
        cell_centroids[:, 2] = z_cells

        n = dz.size
        super().__init__(
            face_centroids, cell_centroids,
            cell_volumes=dz * area,
            face_areas=np.full(n + 1, float(area)),
            regions={"top": [0], "surface": [0], "bottom": [n], "boundary": [0, n]},
        )
        self.area = float(area)
        self.thicknesses = dz

    @classmethod
    def uniform(cls, n_cells: int, depth: float, area: float = 1.0,
                top_elevation: float = 0.0) -> "ColumnMesh":
        if n_cells <= 0 or depth <= 0:
            raise ConfigurationError(
                f"Column needs positive n_cells and depth, got {n_cells}, {depth}",
                context=ErrorContext(component="ColumnMesh", operation="uniform"),
            )
        return cls(np.full(n_cells, depth / n_cells), area=area, top_elevation=top_elevation)

    def __repr__(self) -> str:
        return f"ColumnMesh(n_cells={self.n_cells}, depth={self.thicknesses.sum():g})"


class SurfaceMesh(Mesh1D):
    """Horizontal strip of surface cells, each over one subsurface face.

    A surface cell's "volume" is the area of its parent face; a surface face
    is an edge of length ``sqrt(area)`` between two neighbouring cells.
    """

    def __init__(self, parent, parent_faces: Sequence[EntityID]):
        parent_faces = [int(f) for f in parent_faces]
        if not parent_faces:
            raise ConfigurationError(
                "Surface mesh needs at least one parent face",
                context=ErrorContext(component="SurfaceMesh", operation="__init__"),
            )
        for f in parent_faces:
            if len(parent.face_get_cells(f)) != 1:
                raise ConfigurationError(
                    f"Parent face {f} is not a boundary face",
                    context=ErrorContext(component="SurfaceMesh", operation="__init__"),
                )
        self.parent = parent
        self._parents = parent_faces

        areas = np.array([parent.face_area(f) for f in parent_faces])
        widths = np.sqrt(areas)
        elevations = np.array([parent.face_centroid(f)[2] for f in parent_faces])

        x_faces = np.concatenate([[0.0], np.cumsum(widths)])
        cell_centroids = np.zeros((len(parent_faces), 3))
        cell_centroids[:, 0] = 0.5 * (x_faces[:-1] + x_faces[1:])
        cell_centroids[:, 2] = elevations

        face_centroids = np.zeros((len(parent_faces) + 1, 3))
        face_centroids[:, 0] = x_faces
        z_faces = np.concatenate([[elevations[0]], 0.5 * (elevations[:-1] + elevations[1:]),
                                  [elevations[-1]]])
        face_centroids[:, 2] = z_faces

        edge = np.concatenate([[widths[0]], np.minimum(widths[:-1], widths[1:]), [widths[-1]]])
        n = len(parent_faces)
        super().__init__(
            face_centroids, cell_centroids,
            cell_volumes=areas,
            face_areas=edge,
            regions={"left": [0], "right": [n], "boundary": [0, n]},
        )

    @classmethod
    def over_column(cls, column: ColumnMesh) -> "SurfaceMesh":
        """One surface cell over the top face of a column"""
        return cls(column, column.region_faces("top"))

    def entity_get_parent(self, cell: EntityID) -> EntityID:
        return self._parents[cell]

    def __repr__(self) -> str:
        return f"SurfaceMesh(n_cells={self.n_cells})"
