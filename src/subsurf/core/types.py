"""
Type definitions and collaborator protocols for the Subsurf system.

The dependency-graph core never talks to a concrete mesh, linear solver or
communicator; it only needs the protocols below.
"""
from typing import NamedTuple, Protocol, runtime_checkable, List, Sequence
from enum import Enum
from typing_extensions import TypeAlias
import numpy as np
import scipy.sparse as sp


# Type aliases for clarity
Key: TypeAlias = str
Tag: TypeAlias = str
EntityID: TypeAlias = int

# Array types
FloatArray: TypeAlias = np.ndarray  # Shape: (n_entities,)
IndexArray: TypeAlias = np.ndarray  # Shape: (n_entities,), integer


class EntityKind(str, Enum):
    """Mesh entity kinds a field component may live on"""
    CELL = "cell"
    FACE = "face"
    BOUNDARY_FACE = "boundary_face"


class FieldKey(NamedTuple):
    """(key, tag) pair identifying a record in the state"""
    key: Key
    tag: Tag

    def __str__(self) -> str:
        return f"{self.key}@{self.tag}" if self.tag else self.key


class DerivativeKey(NamedTuple):
    """(key, tag, wrt) triple identifying a derivative record"""
    key: Key
    tag: Tag
    wrt: Key

    @property
    def name(self) -> str:
        return derivative_name(self.key, self.wrt)


def derivative_name(key: Key, wrt: Key) -> str:
    """Conventional name of d(key)/d(wrt), e.g. ``dwater_content_dpressure``."""
    return f"d{key}_d{wrt}"


@runtime_checkable
class Mesh(Protocol):
    """Protocol for mesh topology and geometry"""

    def num_entities(self, kind: EntityKind) -> int:
        """Number of owned entities of a kind"""
        ...

    def face_get_cells(self, face: EntityID) -> List[EntityID]:
        """Cells adjacent to a face (one for boundary faces)"""
        ...

    def cell_get_faces(self, cell: EntityID) -> List[EntityID]:
        """Faces bounding a cell"""
        ...

    def cell_volume(self, cell: EntityID) -> float:
        ...

    def face_area(self, face: EntityID) -> float:
        ...

    def cell_centroid(self, cell: EntityID) -> np.ndarray:
        ...

    def face_centroid(self, face: EntityID) -> np.ndarray:
        ...

    def boundary_faces(self) -> Sequence[EntityID]:
        """Faces with exactly one adjacent cell, in boundary-face order"""
        ...


@runtime_checkable
class LinearSolver(Protocol):
    """Protocol for the opaque "apply preconditioner inverse" capability"""

    def factorize(self, matrix: sp.spmatrix) -> None:
        ...

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        ...


@runtime_checkable
class Communicator(Protocol):
    """Protocol for global reductions across partitions"""

    def max_all(self, value: float) -> float:
        ...

    def min_all(self, value: float) -> float:
        ...

    def sum_all(self, value: float) -> float:
        ...


@runtime_checkable
class ChildMesh(Mesh, Protocol):
    """A mesh whose cells are children of entities on a parent mesh"""

    def entity_get_parent(self, cell: EntityID) -> EntityID:
        """Parent-mesh face corresponding to a cell of this mesh"""
        ...
