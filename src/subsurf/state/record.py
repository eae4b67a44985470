"""
Records held by the state store.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from subsurf.core.types import Key, Tag
from subsurf.state.composite import CompositeArray


@dataclass
class FieldRecord:
    """A named, tagged array over mesh entities plus version bookkeeping.

    ``owner`` is the name of the evaluator (or process kernel, for a primary)
    allowed to write the record; ``None`` means nobody has claimed it yet.
    """
    key: Key
    tag: Tag
    sizes: Dict[str, int] = field(default_factory=dict)
    data: Optional[CompositeArray] = None
    version: int = 0
    owner: Optional[str] = None
    initialized: bool = False
    io_vis: bool = True
    io_checkpoint: bool = False

    def allocate(self) -> CompositeArray:
        """(Re)allocate data for the declared components, keeping old values."""
        old = self.data
        self.data = CompositeArray.from_sizes(self.sizes)
        if old is not None:
            self.data.assign(old)
        return self.data

    def bump(self) -> int:
        self.version += 1
        self.initialized = True
        return self.version


@dataclass
class DerivativeRecord:
    """d(key)/d(wrt) at a tag.

    ``stamp`` holds the versions of every value record the derivative was
    computed from; the record is reused while the stamp is unchanged.
    """
    key: Key
    tag: Tag
    wrt: Key
    data: Optional[CompositeArray] = None
    version: int = 0
    stamp: Optional[Tuple[int, ...]] = None
