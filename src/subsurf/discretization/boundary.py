"""
Boundary-condition markers and time-dependent boundary functions.

A ``BoundaryConditions`` object holds one marker and one value per face of a
mesh. Kernels reset it and fill it every time their boundary data are
updated; the discrete operators only read it.

Neumann values are outward fluxes per unit face area.
"""
import logging
from enum import IntEnum
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

from subsurf.core.exceptions import ConfigurationError, ErrorContext
from subsurf.core.types import EntityKind

logger = logging.getLogger(__name__)


class BCKind(IntEnum):
    NONE = 0
    DIRICHLET = 1
    NEUMANN = 2


class BoundaryConditions:
    """Per-face markers and values"""

    def __init__(self, n_faces: int):
        self.kinds = np.full(n_faces, BCKind.NONE, dtype=int)
        self.values = np.zeros(n_faces)

    @classmethod
    def for_mesh(cls, mesh) -> "BoundaryConditions":
        return cls(mesh.num_entities(EntityKind.FACE))

    def reset(self) -> None:
        self.kinds[:] = BCKind.NONE
        self.values[:] = 0.0

    def set_dirichlet(self, faces, values) -> None:
        faces = np.atleast_1d(np.asarray(faces, dtype=int))
        self.kinds[faces] = BCKind.DIRICHLET
        self.values[faces] = values

    def set_neumann(self, faces, values) -> None:
        faces = np.atleast_1d(np.asarray(faces, dtype=int))
        self.kinds[faces] = BCKind.NEUMANN
        self.values[faces] = values

    def dirichlet_faces(self) -> np.ndarray:
        return np.flatnonzero(self.kinds == BCKind.DIRICHLET)

    def neumann_faces(self) -> np.ndarray:
        return np.flatnonzero(self.kinds == BCKind.NEUMANN)

    def copy(self) -> "BoundaryConditions":
        other = BoundaryConditions(self.kinds.size)
        other.kinds[:] = self.kinds
        other.values[:] = self.values
        return other

    def __repr__(self) -> str:
        return (f"BoundaryConditions(dirichlet={self.dirichlet_faces().tolist()}, "
                f"neumann={self.neumann_faces().tolist()})")


class BoundaryFunction:
    """A boundary value on the faces of some regions, as a function of time.

    The value is either a constant or a table ``{"times": [...], "values": [...]}``
    interpolated linearly and held constant outside the table.
    """

    def __init__(self, faces: Sequence[int], value: Any, name: str = ""):
        self.name = name
        self.faces = np.asarray(sorted(set(int(f) for f in faces)), dtype=int)
        if isinstance(value, Mapping):
            try:
                self.times = np.asarray(value["times"], dtype=float)
                self.table = np.asarray(value["values"], dtype=float)
            except KeyError as exc:
                raise ConfigurationError(
                    f"Boundary function table needs 'times' and 'values', missing {exc}",
                    context=ErrorContext(component=name, operation="BoundaryFunction"),
                ) from exc
            if self.times.size == 0 or self.times.shape != self.table.shape:
                raise ConfigurationError(
                    "Boundary function 'times' and 'values' must be non-empty and of equal length",
                    context=ErrorContext(component=name, operation="BoundaryFunction"),
                )
            if np.any(np.diff(self.times) < 0):
                raise ConfigurationError(
                    "Boundary function 'times' must be increasing",
                    context=ErrorContext(component=name, operation="BoundaryFunction"),
                )
        else:
            self.times = np.array([0.0])
            self.table = np.array([float(value)])
        self.current = np.full(self.faces.size, self.table[0])

    def compute(self, time: float) -> np.ndarray:
        self.current[:] = np.interp(time, self.times, self.table)
        return self.current

    def items(self):
        return zip(self.faces.tolist(), self.current.tolist())

    def __len__(self) -> int:
        return self.faces.size


def boundary_functions_from_list(mesh, entries: Optional[List[Mapping[str, Any]]],
                                 value_name: str, owner: str = "") -> List[BoundaryFunction]:
    """Build boundary functions from ``[{"regions": [...], value_name: ...}, ...]``."""
    functions = []
    for i, entry in enumerate(entries or []):
        if "regions" not in entry or value_name not in entry:
            raise ConfigurationError(
                f"Boundary condition entry {i} needs 'regions' and '{value_name}'",
                context=ErrorContext(component=owner, operation="boundary_functions_from_list"),
            )
        regions = entry["regions"]
        if isinstance(regions, str):
            regions = [regions]
        faces: List[int] = []
        for region in regions:
            faces.extend(mesh.region_faces(region))
        for f in faces:
            if len(mesh.face_get_cells(f)) != 1:
                raise ConfigurationError(
                    f"Region face {f} of '{owner}' boundary condition is not a boundary face",
                    context=ErrorContext(component=owner, operation="boundary_functions_from_list"),
                )
        functions.append(BoundaryFunction(faces, entry[value_name], name=f"{owner}:{value_name}"))
    return functions


def collect(functions: Sequence[BoundaryFunction]) -> Dict[int, float]:
    """Face -> value over a list of computed boundary functions; later entries win."""
    out: Dict[int, float] = {}
    for function in functions:
        out.update(function.items())
    return out
