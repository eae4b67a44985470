"""
The simulation state: a single-owner arena of tagged field records and the
evaluator graph that keeps them up to date.

Freshness is resolved lazily. ``update(key, tag)`` walks the dependency graph
depth first, in declared-dependency order; a secondary record is recomputed
only if the versions of its dependencies differ from the ones it was last
computed from. Each walk is memoized against a generation counter that
advances whenever a primary value is written, so repeated queries between
writes cost nothing and a single query is linear in the size of the graph.

Derivatives are assembled by the chain rule from the partial derivatives each
evaluator supplies. A derivative with respect to a key outside the
dependency closure is exactly zero and no evaluator is invoked.
"""
import logging
from typing import Any, Dict, FrozenSet, Hashable, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from subsurf.core.constants import GRAVITY
from subsurf.core.exceptions import (
    ConfigurationError,
    DependencyCycleError,
    DuplicateOwnerError,
    ErrorContext,
    StaleDependency,
    UnresolvedDependency,
)
from subsurf.core.parallel import get_comm
from subsurf.core.types import Communicator, DerivativeKey, EntityKind, FieldKey, Key, Mesh, Tag
from subsurf.state.composite import CompositeArray, as_composite
from subsurf.state.evaluators.base import Evaluator, PrimaryEvaluator
from subsurf.state.keys import DEFAULT_DOMAIN, get_domain
from subsurf.state.record import DerivativeRecord, FieldRecord

logger = logging.getLogger(__name__)


class StateStore:
    """Owns every field record, derivative record and evaluator of a run"""

    def __init__(self, meshes: Union[Mesh, Mapping[str, Mesh]],
                 comm: Optional[Communicator] = None):
        if isinstance(meshes, Mapping):
            self._meshes: Dict[str, Mesh] = dict(meshes)
        else:
            self._meshes = {DEFAULT_DOMAIN: meshes}
        self.comm = comm or get_comm()

        self._records: Dict[FieldKey, FieldRecord] = {}
        self._evaluators: Dict[FieldKey, Evaluator] = {}
        self._derivatives: Dict[DerivativeKey, DerivativeRecord] = {}

        # Graph-walk bookkeeping
        self._generation = 0
        self._visited: Dict[FieldKey, int] = {}
        self._computed_from: Dict[FieldKey, Tuple[int, ...]] = {}
        self._resolving: set = set()
        self._closures: Dict[FieldKey, FrozenSet[FieldKey]] = {}
        self._seen: Dict[Tuple[Hashable, Optional[str]], int] = {}

        self._scalars: Dict[str, float] = {}
        self._gravity = np.array([0.0, 0.0, -GRAVITY])
        self._times: Dict[Tag, float] = {}
        self.initialized = False

    # =========================================================================
    # Meshes
    # =========================================================================

    def mesh(self, domain: str = DEFAULT_DOMAIN) -> Mesh:
        if domain not in self._meshes:
            raise ConfigurationError(
                f"No mesh registered for domain '{domain}'",
                context=ErrorContext(component="StateStore", operation="mesh"),
            )
        return self._meshes[domain]

    def add_mesh(self, domain: str, mesh: Mesh) -> None:
        self._meshes[domain] = mesh

    @property
    def domains(self) -> List[str]:
        return list(self._meshes)

    def sizes_for(self, key: Key, components: Iterable[str]) -> Dict[str, int]:
        mesh = self.mesh(get_domain(key))
        sizes = {}
        for component in components:
            try:
                kind = EntityKind(component)
            except ValueError as exc:
                raise ConfigurationError(
                    f"Unknown entity kind '{component}'",
                    context=ErrorContext(key=key, operation="require"),
                ) from exc
            sizes[component] = mesh.num_entities(kind)
        return sizes

    # =========================================================================
    # Declaration
    # =========================================================================

    def require(self, key: Key, tag: Tag, components: Iterable[str] = ("cell",),
                owner: Optional[str] = None) -> FieldRecord:
        """Declare a record and its components; idempotent.

        Components accumulate across calls. A second, different owner is an error.
        """
        fk = FieldKey(key, tag)
        rec = self._records.get(fk)
        if rec is None:
            rec = FieldRecord(key=key, tag=tag)
            self._records[fk] = rec
            logger.debug(f"Required {fk}")

        if owner is not None:
            if rec.owner is not None and rec.owner != owner:
                raise DuplicateOwnerError(
                    f"{fk} is already owned by '{rec.owner}', cannot be claimed by '{owner}'",
                    context=ErrorContext(key=key, tag=tag, operation="require"),
                )
            rec.owner = owner

        new_sizes = self.sizes_for(key, components)
        grown = False
        for component, n in new_sizes.items():
            if component in rec.sizes:
                if rec.sizes[component] != n:
                    raise ConfigurationError(
                        f"Component '{component}' of {fk} required with size {n}, "
                        f"already has size {rec.sizes[component]}",
                        context=ErrorContext(key=key, tag=tag, operation="require"),
                    )
            else:
                rec.sizes[component] = n
                grown = True
        if grown or rec.data is None:
            rec.allocate()
        return rec

    def require_primary(self, key: Key, tag: Tag, components: Iterable[str] = ("cell",),
                        owner: Optional[str] = None) -> FieldRecord:
        """Declare a primary field, registering a PrimaryEvaluator if none exists."""
        fk = FieldKey(key, tag)
        components = tuple(components)
        evaluator = self._evaluators.get(fk)
        if evaluator is None:
            PrimaryEvaluator.for_key(key, tag, components, owner=owner).setup(self)
        elif not evaluator.is_primary:
            raise DuplicateOwnerError(
                f"{fk} is computed by {evaluator!r} and cannot be a primary variable",
                context=ErrorContext(key=key, tag=tag, operation="require_primary"),
            )
        else:
            self.require(key, tag, components, owner=owner)
        return self._records[fk]

    def set_evaluator(self, evaluator: Evaluator) -> None:
        """Register the evaluator as the sole source of each of its keys"""
        for key in evaluator.my_keys:
            fk = FieldKey(key, evaluator.tag)
            existing = self._evaluators.get(fk)
            if existing is not None and existing is not evaluator:
                raise DuplicateOwnerError(
                    f"{fk} already has evaluator {existing!r}, cannot add {evaluator!r}",
                    context=ErrorContext(key=key, tag=evaluator.tag, operation="set_evaluator"),
                )
            rec = self._records.get(fk) or self.require(key, evaluator.tag, evaluator.components)
            if rec.owner is not None and rec.owner != evaluator.owner:
                raise DuplicateOwnerError(
                    f"{fk} is owned by '{rec.owner}', cannot be computed by {evaluator!r}",
                    context=ErrorContext(key=key, tag=evaluator.tag, operation="set_evaluator"),
                )
            rec.owner = evaluator.owner
            self._evaluators[fk] = evaluator
        self._closures.clear()

    def set_io_flags(self, key: Key, tag: Tag, vis: bool = True, checkpoint: bool = False) -> None:
        rec = self.get_record(key, tag)
        rec.io_vis = vis
        rec.io_checkpoint = checkpoint

    # =========================================================================
    # Queries
    # =========================================================================

    def has_record(self, key: Key, tag: Tag) -> bool:
        return FieldKey(key, tag) in self._records

    def get_record(self, key: Key, tag: Tag) -> FieldRecord:
        try:
            return self._records[FieldKey(key, tag)]
        except KeyError:
            raise UnresolvedDependency(
                f"No record for {FieldKey(key, tag)}",
                context=ErrorContext(key=key, tag=tag, operation="get_record"),
            ) from None

    def has_evaluator(self, key: Key, tag: Tag) -> bool:
        return FieldKey(key, tag) in self._evaluators

    def get_evaluator(self, key: Key, tag: Tag) -> Evaluator:
        try:
            return self._evaluators[FieldKey(key, tag)]
        except KeyError:
            raise UnresolvedDependency(
                f"No evaluator for {FieldKey(key, tag)}",
                context=ErrorContext(key=key, tag=tag, operation="get_evaluator"),
            ) from None

    def evaluators(self) -> List[Evaluator]:
        unique = {}
        for evaluator in self._evaluators.values():
            unique[id(evaluator)] = evaluator
        return list(unique.values())

    def records(self, tag: Optional[Tag] = None) -> List[FieldRecord]:
        return [rec for fk, rec in self._records.items() if tag is None or fk.tag == tag]

    def unsourced(self) -> List[FieldKey]:
        """Required records that no evaluator provides"""
        return [fk for fk in self._records if fk not in self._evaluators]

    def is_dependency(self, key: Key, tag: Tag, wrt: Key) -> bool:
        """True if (wrt, tag) is in the dependency closure of (key, tag)."""
        return FieldKey(wrt, tag) in self._closure(FieldKey(key, tag))

    def _closure(self, fk: FieldKey) -> FrozenSet[FieldKey]:
        if fk in self._closures:
            return self._closures[fk]
        evaluator = self._evaluators.get(fk)
        if evaluator is None or evaluator.is_primary:
            closure: FrozenSet[FieldKey] = frozenset()
        else:
            if fk in self._resolving:
                raise DependencyCycleError(
                    f"Dependency cycle through {fk}",
                    context=ErrorContext(key=fk.key, tag=fk.tag, operation="closure"),
                )
            self._resolving.add(fk)
            try:
                members = set()
                for dep in evaluator.dependencies:
                    members.add(dep)
                    members |= self._closure(dep)
            finally:
                self._resolving.discard(fk)
            closure = frozenset(members)
        self._closures[fk] = closure
        return closure

    # =========================================================================
    # Primary values
    # =========================================================================

    def set_primary(self, key: Key, tag: Tag, values: Any) -> FieldRecord:
        """Write the value of an externally driven field and bump its version."""
        fk = FieldKey(key, tag)
        evaluator = self._evaluators.get(fk)
        if evaluator is not None and not evaluator.is_primary:
            raise ConfigurationError(
                f"{fk} is computed by {evaluator!r} and cannot be set directly",
                context=ErrorContext(key=key, tag=tag, operation="set_primary"),
            )
        rec = self._records.get(fk)
        if rec is None:
            components = values.components if isinstance(values, CompositeArray) else (
                tuple(values) if isinstance(values, Mapping) else ("cell",))
            rec = self.require(key, tag, components)

        if np.isscalar(values):
            rec.data.put_scalar(float(values))
        else:
            incoming = as_composite(values, default_component=rec.data.components[0])
            for component, array in incoming.items():
                if component not in rec.data:
                    raise ConfigurationError(
                        f"{fk} has no component '{component}'",
                        context=ErrorContext(key=key, tag=tag, operation="set_primary"),
                    )
                rec.data[component] = array
        rec.bump()
        self._generation += 1
        return rec

    def mark_changed(self, key: Key, tag: Tag) -> None:
        """Bump a primary after its data was modified in place."""
        fk = FieldKey(key, tag)
        evaluator = self._evaluators.get(fk)
        if evaluator is not None and not evaluator.is_primary:
            raise ConfigurationError(
                f"{fk} is computed by {evaluator!r}; only primaries can be marked changed",
                context=ErrorContext(key=key, tag=tag, operation="mark_changed"),
            )
        self.get_record(key, tag).bump()
        self._generation += 1

    # =========================================================================
    # Resolution
    # =========================================================================

    def update(self, key: Key, tag: Tag, requestor: Optional[str] = None) -> bool:
        """Bring (key, tag) up to date.

        Returns True if its value changed since ``requestor`` last asked.
        """
        fk = FieldKey(key, tag)
        version = self._resolve(fk)
        return self._report(fk, version, requestor)

    def get_field(self, key: Key, tag: Tag, requestor: Optional[str] = None) -> CompositeArray:
        """Up-to-date data of (key, tag)"""
        self.update(key, tag, requestor)
        return self._records[FieldKey(key, tag)].data

    def get_data(self, key: Key, tag: Tag) -> CompositeArray:
        """Data of (key, tag), which must already be up to date."""
        fk = FieldKey(key, tag)
        rec = self.get_record(key, tag)
        evaluator = self._evaluators.get(fk)
        if evaluator is None or evaluator.is_primary:
            if not rec.initialized:
                raise UnresolvedDependency(
                    f"{fk} has no evaluator and was never set",
                    context=ErrorContext(key=key, tag=tag, operation="get_data"),
                )
        elif self._visited.get(fk) != self._generation:
            raise StaleDependency(
                f"{fk} was read before being updated",
                context=ErrorContext(key=key, tag=tag, operation="get_data"),
            )
        return rec.data

    def _resolve(self, fk: FieldKey) -> int:
        rec = self._records.get(fk)
        if rec is None:
            raise UnresolvedDependency(
                f"No record for {fk}",
                context=ErrorContext(key=fk.key, tag=fk.tag, operation="update"),
            )
        if self._visited.get(fk) == self._generation:
            return rec.version

        evaluator = self._evaluators.get(fk)
        if evaluator is None or evaluator.is_primary:
            if not rec.initialized:
                raise UnresolvedDependency(
                    f"{fk} has no evaluator and was never set",
                    context=ErrorContext(key=fk.key, tag=fk.tag, operation="update"),
                )
            self._visited[fk] = self._generation
            return rec.version

        if fk in self._resolving:
            raise DependencyCycleError(
                f"Dependency cycle through {fk}",
                context=ErrorContext(key=fk.key, tag=fk.tag, operation="update"),
            )
        self._resolving.add(fk)
        try:
            stamp = tuple(self._resolve(dep) for dep in evaluator.dependencies)
        finally:
            self._resolving.discard(fk)

        ev_key = FieldKey(evaluator.name, evaluator.tag)
        outputs = [FieldKey(key, evaluator.tag) for key in evaluator.my_keys]
        if (self._computed_from.get(ev_key) != stamp
                or not all(self._records[out].initialized for out in outputs)):
            self._compute(evaluator, outputs)
            self._computed_from[ev_key] = stamp
        for out in outputs:
            self._visited[out] = self._generation
        return rec.version

    def _compute(self, evaluator: Evaluator, outputs: List[FieldKey]) -> None:
        logger.debug(f"Evaluating {evaluator!r}")
        results = {out.key: self._records[out].data for out in outputs}
        evaluator.evaluate(self, results)
        for out in outputs:
            self._records[out].bump()

    def _report(self, ident: Hashable, version: int, requestor: Optional[str]) -> bool:
        seen_key = (ident, requestor)
        changed = self._seen.get(seen_key) != version
        self._seen[seen_key] = version
        return changed

    # =========================================================================
    # Derivatives
    # =========================================================================

    def update_derivative(self, key: Key, tag: Tag, wrt: Key,
                          requestor: Optional[str] = None) -> bool:
        """Bring d(key)/d(wrt) at tag up to date; True if it changed for ``requestor``."""
        fk = FieldKey(key, tag)
        self._resolve(fk)

        closure = self._closure(fk)
        stamp = tuple(self._records[member].version for member in sorted(closure | {fk}))
        dk = DerivativeKey(key, tag, wrt)
        drec = self._derivatives.get(dk)
        if drec is None:
            drec = DerivativeRecord(key=key, tag=tag, wrt=wrt)
            self._derivatives[dk] = drec

        if drec.stamp != stamp:
            if FieldKey(wrt, tag) in closure or fk == FieldKey(wrt, tag):
                drec.data = self._chain(fk, FieldKey(wrt, tag), {})
            else:
                drec.data = self._records[fk].data.zeros_like()
            drec.stamp = stamp
            drec.version += 1
            logger.debug(f"Computed {dk.name}@{tag}")
        return self._report(dk, drec.version, requestor)

    def get_derivative(self, key: Key, tag: Tag, wrt: Key,
                       requestor: Optional[str] = None) -> CompositeArray:
        self.update_derivative(key, tag, wrt, requestor)
        return self._derivatives[DerivativeKey(key, tag, wrt)].data

    def _chain(self, fk: FieldKey, wrt: FieldKey, memo: Dict) -> CompositeArray:
        if (fk, wrt) in memo:
            return memo[(fk, wrt)]
        rec = self._records[fk]
        out = CompositeArray.from_sizes(rec.sizes)
        evaluator = self._evaluators.get(fk)

        if evaluator is None or evaluator.is_primary:
            if fk == wrt:
                out.put_scalar(1.0)
        elif wrt in self._closure(fk):
            for dep in evaluator.dependencies:
                if dep != wrt and wrt not in self._closure(dep):
                    continue
                partial = self._partial(evaluator, dep, memo)[fk.key]
                inner = self._chain(dep, wrt, memo)
                for component in out:
                    if component in inner:
                        out[component] += partial[component] * inner[component]
        memo[(fk, wrt)] = out
        return out

    def _partial(self, evaluator: Evaluator, dep: FieldKey, memo: Dict) -> Dict[Key, CompositeArray]:
        ident = ("partial", id(evaluator), dep)
        if ident not in memo:
            results = {
                key: self._records[FieldKey(key, evaluator.tag)].data.zeros_like()
                for key in evaluator.my_keys
            }
            evaluator.evaluate_partial(self, dep, results)
            memo[ident] = results
        return memo[ident]

    # =========================================================================
    # Scalars, gravity and time
    # =========================================================================

    def set_scalar(self, name: str, value: float) -> None:
        self._scalars[name] = float(value)

    def get_scalar(self, name: str) -> float:
        try:
            return self._scalars[name]
        except KeyError:
            raise UnresolvedDependency(
                f"No scalar named '{name}'",
                context=ErrorContext(key=name, operation="get_scalar"),
            ) from None

    def set_gravity(self, gravity: Union[float, np.ndarray]) -> None:
        """Set the gravity vector; a scalar is its magnitude, pointing down."""
        if np.isscalar(gravity):
            self._gravity = np.array([0.0, 0.0, -abs(float(gravity))])
        else:
            self._gravity = np.asarray(gravity, dtype=float)

    @property
    def gravity(self) -> np.ndarray:
        return self._gravity

    def set_time(self, tag: Tag, time: float) -> None:
        self._times[tag] = float(time)

    def time(self, tag: Tag) -> float:
        try:
            return self._times[tag]
        except KeyError:
            raise UnresolvedDependency(
                f"No time set for tag '{tag}'",
                context=ErrorContext(tag=tag, operation="time"),
            ) from None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(self) -> None:
        """Verify the graph and compute every secondary field once."""
        for evaluator in self.evaluators():
            for dep in evaluator.dependencies:
                if dep not in self._records:
                    raise UnresolvedDependency(
                        f"{evaluator!r} depends on {dep}, which was never required",
                        context=ErrorContext(key=dep.key, tag=dep.tag, operation="initialize"),
                    )
        for fk, rec in self._records.items():
            evaluator = self._evaluators.get(fk)
            if (evaluator is None or evaluator.is_primary) and not rec.initialized:
                raise UnresolvedDependency(
                    f"{fk} has no evaluator and no initial value",
                    context=ErrorContext(key=fk.key, tag=fk.tag, operation="initialize"),
                )
        self._check_acyclic()

        self._generation += 1
        for fk in list(self._records):
            self._resolve(fk)
        self.initialized = True
        logger.info(f"State initialized: {len(self._records)} records, "
                    f"{len(self.evaluators())} evaluators")

    def _check_acyclic(self) -> None:
        white, grey, black = 0, 1, 2
        color = {fk: white for fk in self._records}

        for root in self._records:
            if color[root] != white:
                continue
            stack = [(root, iter(self._dependencies_of(root)))]
            color[root] = grey
            while stack:
                node, children = stack[-1]
                child = next(children, None)
                if child is None:
                    color[node] = black
                    stack.pop()
                elif color.get(child, white) == grey:
                    path = [str(n) for n, _ in stack] + [str(child)]
                    raise DependencyCycleError(
                        "Dependency cycle: " + " -> ".join(path),
                        context=ErrorContext(key=child.key, tag=child.tag, operation="initialize"),
                    )
                elif color.get(child, white) == white:
                    color[child] = grey
                    stack.append((child, iter(self._dependencies_of(child))))

    def _dependencies_of(self, fk: FieldKey) -> List[FieldKey]:
        evaluator = self._evaluators.get(fk)
        if evaluator is None or evaluator.is_primary:
            return []
        return list(evaluator.dependencies)

    def copy_tag(self, src: Tag, dst: Tag) -> None:
        """Copy every initialized record at ``src`` onto its counterpart at ``dst``."""
        copied = set()
        for fk, rec in self._records.items():
            if fk.tag != src or not rec.initialized:
                continue
            target = self._records.get(FieldKey(fk.key, dst))
            if target is None:
                continue
            target.data.assign(rec.data)
            target.bump()
            copied.add(target.key)

        # Secondaries whose inputs were all copied are consistent with them.
        for evaluator in self.evaluators():
            if evaluator.is_primary or evaluator.tag != dst:
                continue
            deps_copied = all(dep.tag == dst and dep.key in copied for dep in evaluator.dependencies)
            outs_copied = all(key in copied for key in evaluator.my_keys)
            if deps_copied and outs_copied:
                self._computed_from[FieldKey(evaluator.name, dst)] = tuple(
                    self._records[dep].version for dep in evaluator.dependencies
                )

        if src in self._times:
            self._times[dst] = self._times[src]
        self._generation += 1
        logger.debug(f"Copied {len(copied)} records from '{src}' to '{dst}'")

    # =========================================================================
    # Visualization and checkpoint surfaces
    # =========================================================================

    def snapshot(self, tag: Tag, domain: str = DEFAULT_DOMAIN) -> pd.DataFrame:
        """Cell values of every visualized field of a domain, one column per key"""
        columns = {}
        for fk in sorted(self._records):
            rec = self._records[fk]
            if (fk.tag == tag and rec.io_vis and rec.initialized
                    and get_domain(fk.key) == domain and "cell" in rec.sizes):
                columns[fk.key] = rec.data["cell"].copy()
        frame = pd.DataFrame(columns)
        frame.index.name = "cell"
        return frame

    def checkpoint(self, tag: Tag) -> Dict[Key, CompositeArray]:
        return {
            fk.key: rec.data.copy()
            for fk, rec in self._records.items()
            if fk.tag == tag and rec.io_checkpoint and rec.initialized
        }
