"""
Evaluator interface, the primary variants, and the evaluator factory.

An evaluator computes one or more fields of the state. Two capabilities are
exposed to the store:

- ``evaluate(store, results)`` fills the arrays in ``results`` (one entry per
  key in ``my_keys``) from the current values of ``dependencies``;
- ``evaluate_partial(store, wrt, results)`` fills the partial derivative of
  each output with respect to one dependency, or raises UnsupportedDerivative.

Variants are selected from configuration by ``"field evaluator type"`` through
a registry populated by ``@register_evaluator``.
"""
import logging
from typing import TYPE_CHECKING, Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Type

from pydantic import Field

from subsurf.core.config import Options, parse_options
from subsurf.core.constants import TAG_NEXT
from subsurf.core.exceptions import ConfigurationError, ErrorContext, UnsupportedDerivative
from subsurf.core.types import FieldKey, Key
from subsurf.state.composite import CompositeArray
from subsurf.state.keys import get_domain

if TYPE_CHECKING:
    from subsurf.state.store import StateStore

logger = logging.getLogger(__name__)


_EVALUATOR_REGISTRY: Dict[str, Type["Evaluator"]] = {}


def register_evaluator(name: str):
    """Class decorator adding an evaluator variant to the factory"""
    def decorator(cls):
        if name in _EVALUATOR_REGISTRY:
            raise ValueError(f"Evaluator type '{name}' registered twice")
        cls.type_name = name
        _EVALUATOR_REGISTRY[name] = cls
        return cls
    return decorator


def available_evaluators() -> List[str]:
    return sorted(_EVALUATOR_REGISTRY)


def create_evaluator(plist: Mapping[str, Any]) -> "Evaluator":
    """Construct the evaluator named by ``"field evaluator type"``."""
    evaluator_type = plist.get("field evaluator type")
    name = plist.get("evaluator name")
    if evaluator_type is None:
        raise ConfigurationError(
            "Missing required option 'field evaluator type'",
            context=ErrorContext(key=name, operation="create_evaluator"),
        )
    if evaluator_type not in _EVALUATOR_REGISTRY:
        raise ConfigurationError(
            f"Unknown field evaluator type '{evaluator_type}'; "
            f"available: {', '.join(available_evaluators())}",
            context=ErrorContext(key=name, operation="create_evaluator"),
        )
    return _EVALUATOR_REGISTRY[evaluator_type](plist)


class EvaluatorOptions(Options):
    evaluator_name: str = Field(alias="evaluator name")
    tag: str = Field(TAG_NEXT, alias="tag")
    evaluator_type: Optional[str] = Field(None, alias="field evaluator type")
    components: Tuple[str, ...] = Field(("cell",), alias="components")


class Evaluator:
    """Common data of all evaluators"""

    type_name: ClassVar[str] = ""
    options_model: ClassVar[Type[EvaluatorOptions]] = EvaluatorOptions
    is_primary: ClassVar[bool] = False

    def __init__(self, plist: Mapping[str, Any]):
        self.plist = dict(plist)
        owner = self.plist.get("evaluator name", type(self).__name__)
        self.options = parse_options(self.options_model, self.plist, owner=owner)
        self.name: Key = self.options.evaluator_name
        self.tag = self.options.tag
        self.components: Tuple[str, ...] = tuple(self.options.components)
        self.my_keys: List[Key] = [self.name]
        self.dependencies: List[FieldKey] = []

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name}@{self.tag})"

    @property
    def domain(self) -> str:
        return get_domain(self.name)

    @property
    def owner(self) -> str:
        return self.name

    def provides(self, key: Key) -> bool:
        return key in self.my_keys

    def add_dependency(self, key: Key, tag: Optional[str] = None) -> FieldKey:
        dep = FieldKey(key, tag or self.tag)
        if dep not in self.dependencies:
            self.dependencies.append(dep)
        return dep

    def dependency_components(self, dep: FieldKey) -> Tuple[str, ...]:
        return ("cell",)

    def setup(self, store: "StateStore") -> None:
        """Claim the output records, register with the store, require dependencies."""
        for key in self.my_keys:
            store.require(key, self.tag, self.components, owner=self.owner)
            store.set_io_flags(
                key, self.tag,
                vis=bool(self.plist.get(f"visualize {key}", True)),
                checkpoint=bool(self.plist.get(f"checkpoint {key}", False)),
            )
        store.set_evaluator(self)
        for dep in self.dependencies:
            store.require(dep.key, dep.tag, self.dependency_components(dep))

    def evaluate(self, store: "StateStore", results: Dict[Key, CompositeArray]) -> None:
        raise NotImplementedError

    def evaluate_partial(self, store: "StateStore", wrt: FieldKey,
                         results: Dict[Key, CompositeArray]) -> None:
        raise UnsupportedDerivative(
            f"{type(self).__name__} does not differentiate with respect to {wrt}",
            context=ErrorContext(key=self.name, tag=self.tag, operation="evaluate_partial"),
        )


@register_evaluator("primary")
class PrimaryEvaluator(Evaluator):
    """Externally supplied field, e.g. a process kernel's solution unknown.

    The ``"owner"`` option names the process kernel allowed to set it.
    """

    is_primary = True

    def __init__(self, plist: Mapping[str, Any]):
        super().__init__(plist)
        self._owner = self.plist.get("owner", self.name)

    @classmethod
    def for_key(cls, key: Key, tag: str, components: Tuple[str, ...] = ("cell",),
                owner: Optional[str] = None) -> "PrimaryEvaluator":
        return cls({
            "evaluator name": key,
            "tag": tag,
            "components": tuple(components),
            "owner": owner or key,
        })

    @property
    def owner(self) -> str:
        return self._owner

    def evaluate(self, store, results):
        pass


@register_evaluator("independent variable")
class IndependentVariableEvaluator(PrimaryEvaluator):
    """Field held at a constant ``"value"``; set once at setup."""

    def __init__(self, plist: Mapping[str, Any]):
        super().__init__(plist)
        if "value" not in self.plist:
            raise ConfigurationError(
                "Independent variable requires option 'value'",
                context=ErrorContext(key=self.name, tag=self.tag, operation="__init__"),
            )
        self.value = float(self.plist["value"])

    def setup(self, store):
        super().setup(store)
        store.set_primary(self.name, self.tag, self.value)


def build_evaluators(store: "StateStore", state_plists: Mapping[str, Mapping[str, Any]]) -> List[Evaluator]:
    """Create evaluators from configuration for every required record lacking a source.

    Each entry of ``state_plists`` is keyed by field name; an entry may provide
    additional keys (e.g. an EOS evaluator in "both" mode), which are found by
    constructing the entry and asking which keys it provides. Setting up a new
    evaluator may require further records, so this iterates to a fixed point.
    """
    created: List[Evaluator] = []
    while True:
        pending = [fk for fk in store.unsourced() if not store.get_record(fk.key, fk.tag).initialized]
        progress = False
        for fk in pending:
            if store.has_evaluator(fk.key, fk.tag):
                continue
            evaluator = _evaluator_for(fk, state_plists)
            if evaluator is None:
                continue
            logger.debug(f"Creating {evaluator!r} for {fk}")
            evaluator.setup(store)
            created.append(evaluator)
            progress = True
        if not progress:
            return created


def _evaluator_for(fk: FieldKey, state_plists: Mapping[str, Mapping[str, Any]]) -> Optional[Evaluator]:
    if fk.key in state_plists:
        plist = dict(state_plists[fk.key])
        plist.setdefault("evaluator name", fk.key)
        plist["tag"] = fk.tag
        return create_evaluator(plist)
    for name, entry in state_plists.items():
        plist = dict(entry)
        plist.setdefault("evaluator name", name)
        plist["tag"] = fk.tag
        candidate = create_evaluator(plist)
        if candidate.provides(fk.key):
            return candidate
    return None
