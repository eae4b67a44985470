"""
Vectors over mesh entities.

A ``CompositeArray`` holds one numpy array per entity-kind component
(``cell``, ``face``, ``boundary_face``), each independently sized. A
``BlockVector`` concatenates the solution vectors of several process kernels
so a coupler can present them to the integrator as a single unknown.

Both expose the small algebra the time integrator needs: ``copy``,
``zeros_like``, ``update`` (axpby), ``put_scalar``, ``norm_inf`` and a flat
view for the linear solvers.
"""
from typing import Dict, Iterator, Mapping, Optional, Tuple, Union

import numpy as np


class CompositeArray:
    """Named per-entity-kind components of a field"""

    def __init__(self, components: Mapping[str, np.ndarray]):
        self._data: Dict[str, np.ndarray] = {
            name: np.asarray(values, dtype=float).copy() for name, values in components.items()
        }

    @classmethod
    def from_sizes(cls, sizes: Mapping[str, int], fill: float = 0.0) -> "CompositeArray":
        return cls({name: np.full(int(n), fill, dtype=float) for name, n in sizes.items()})

    # -------------------------------------------------------------------------
    # Component access
    # -------------------------------------------------------------------------

    @property
    def components(self) -> Tuple[str, ...]:
        return tuple(self._data)

    @property
    def sizes(self) -> Dict[str, int]:
        return {name: values.size for name, values in self._data.items()}

    def __contains__(self, name: str) -> bool:
        return name in self._data

    def __getitem__(self, name: str) -> np.ndarray:
        return self._data[name]

    def __setitem__(self, name: str, values) -> None:
        self._data[name][...] = values

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def items(self):
        return self._data.items()

    def __len__(self) -> int:
        return sum(values.size for values in self._data.values())

    def __repr__(self) -> str:
        sizes = ", ".join(f"{name}={n}" for name, n in self.sizes.items())
        return f"CompositeArray({sizes})"

    # -------------------------------------------------------------------------
    # Algebra
    # -------------------------------------------------------------------------

    def copy(self) -> "CompositeArray":
        return CompositeArray(self._data)

    def zeros_like(self) -> "CompositeArray":
        return CompositeArray.from_sizes(self.sizes)

    def put_scalar(self, value: float) -> "CompositeArray":
        for values in self._data.values():
            values.fill(value)
        return self

    def assign(self, other: "CompositeArray") -> "CompositeArray":
        """Copy values of matching components from ``other``."""
        for name, values in self._data.items():
            if name in other:
                values[...] = other[name]
        return self

    def update(self, alpha: float, other: "CompositeArray", beta: float = 1.0) -> "CompositeArray":
        """self <- alpha * other + beta * self"""
        for name, values in self._data.items():
            values *= beta
            values += alpha * other[name]
        return self

    def scale(self, alpha: float) -> "CompositeArray":
        for values in self._data.values():
            values *= alpha
        return self

    def norm_inf(self) -> float:
        norms = [np.max(np.abs(v)) for v in self._data.values() if v.size]
        return float(max(norms)) if norms else 0.0

    def min(self) -> float:
        mins = [v.min() for v in self._data.values() if v.size]
        return float(min(mins)) if mins else np.inf

    def max(self) -> float:
        maxs = [v.max() for v in self._data.values() if v.size]
        return float(max(maxs)) if maxs else -np.inf

    def array_equal(self, other: "CompositeArray") -> bool:
        if self.components != other.components:
            return False
        return all(np.array_equal(self[name], other[name]) for name in self._data)

    # -------------------------------------------------------------------------
    # Flat view, in component order
    # -------------------------------------------------------------------------

    def offsets(self) -> Dict[str, slice]:
        out, start = {}, 0
        for name, values in self._data.items():
            out[name] = slice(start, start + values.size)
            start += values.size
        return out

    def flat(self) -> np.ndarray:
        if not self._data:
            return np.zeros(0)
        return np.concatenate([values for values in self._data.values()])

    def assign_flat(self, vec: np.ndarray) -> "CompositeArray":
        vec = np.asarray(vec, dtype=float)
        if vec.size != len(self):
            raise ValueError(f"Flat vector of size {vec.size} does not match {self!r}")
        for name, sl in self.offsets().items():
            self._data[name][...] = vec[sl]
        return self


class BlockVector:
    """Ordered named sub-vectors, one per coupled process kernel"""

    def __init__(self, blocks: Mapping[str, Union[CompositeArray, "BlockVector"]]):
        self._blocks: Dict[str, Union[CompositeArray, BlockVector]] = dict(blocks)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self._blocks)

    def __getitem__(self, name: str):
        return self._blocks[name]

    def __iter__(self):
        return iter(self._blocks)

    def items(self):
        return self._blocks.items()

    def __len__(self) -> int:
        return sum(len(block) for block in self._blocks.values())

    def __repr__(self) -> str:
        return f"BlockVector({', '.join(self._blocks)})"

    def copy(self) -> "BlockVector":
        return BlockVector({name: block.copy() for name, block in self._blocks.items()})

    def zeros_like(self) -> "BlockVector":
        return BlockVector({name: block.zeros_like() for name, block in self._blocks.items()})

    def put_scalar(self, value: float) -> "BlockVector":
        for block in self._blocks.values():
            block.put_scalar(value)
        return self

    def assign(self, other: "BlockVector") -> "BlockVector":
        for name, block in self._blocks.items():
            block.assign(other[name])
        return self

    def update(self, alpha: float, other: "BlockVector", beta: float = 1.0) -> "BlockVector":
        for name, block in self._blocks.items():
            block.update(alpha, other[name], beta)
        return self

    def scale(self, alpha: float) -> "BlockVector":
        for block in self._blocks.values():
            block.scale(alpha)
        return self

    def norm_inf(self) -> float:
        return max((block.norm_inf() for block in self._blocks.values()), default=0.0)

    def min(self) -> float:
        return min((block.min() for block in self._blocks.values()), default=np.inf)

    def max(self) -> float:
        return max((block.max() for block in self._blocks.values()), default=-np.inf)

    def array_equal(self, other: "BlockVector") -> bool:
        if not isinstance(other, BlockVector) or self.names != other.names:
            return False
        return all(block.array_equal(other[name]) for name, block in self._blocks.items())

    def offsets(self) -> Dict[str, slice]:
        out, start = {}, 0
        for name, block in self._blocks.items():
            out[name] = slice(start, start + len(block))
            start += len(block)
        return out

    def flat(self) -> np.ndarray:
        if not self._blocks:
            return np.zeros(0)
        return np.concatenate([block.flat() for block in self._blocks.values()])

    def assign_flat(self, vec: np.ndarray) -> "BlockVector":
        vec = np.asarray(vec, dtype=float)
        if vec.size != len(self):
            raise ValueError(f"Flat vector of size {vec.size} does not match {self!r}")
        for name, sl in self.offsets().items():
            self._blocks[name].assign_flat(vec[sl])
        return self


Vector = Union[CompositeArray, BlockVector]


def as_composite(values: Union[CompositeArray, Mapping[str, np.ndarray], np.ndarray],
                 default_component: str = "cell",
                 sizes: Optional[Mapping[str, int]] = None) -> CompositeArray:
    """Coerce user-supplied values into a CompositeArray.

    A bare array or scalar is placed on ``default_component``; a scalar is
    broadcast to ``sizes`` when given.
    """
    if isinstance(values, CompositeArray):
        return values
    if isinstance(values, Mapping):
        return CompositeArray(values)
    if np.isscalar(values) and sizes is not None:
        return CompositeArray.from_sizes(sizes, fill=float(values))
    return CompositeArray({default_component: np.atleast_1d(np.asarray(values, dtype=float))})
