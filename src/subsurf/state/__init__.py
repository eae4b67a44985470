"""Simulation state: tagged field records and the evaluator graph."""
from subsurf.state.composite import CompositeArray, BlockVector, as_composite
from subsurf.state.record import FieldRecord, DerivativeRecord
from subsurf.state.store import StateStore
from subsurf.state.keys import get_key, get_domain, DEFAULT_DOMAIN, SURFACE_DOMAIN

__all__ = [
    "CompositeArray",
    "BlockVector",
    "as_composite",
    "FieldRecord",
    "DerivativeRecord",
    "StateStore",
    "get_key",
    "get_domain",
    "DEFAULT_DOMAIN",
    "SURFACE_DOMAIN",
]
