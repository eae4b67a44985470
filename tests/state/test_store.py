"""
Tests for the state store: declaration, lazy resolution, change reporting,
derivatives and tag lifecycle.
"""
import numpy as np
import pytest

from subsurf.core.constants import TAG_NEXT, TAG_PREVIOUS
from subsurf.core.exceptions import (
    ConfigurationError,
    DependencyCycleError,
    DuplicateOwnerError,
    StaleDependency,
    UnresolvedDependency,
)
from subsurf.discretization.mesh import ColumnMesh
from subsurf.state.evaluators.base import Evaluator
from subsurf.state.store import StateStore


class LinearEvaluator(Evaluator):
    """out = sum(coef * dep), counting its evaluations"""

    def __init__(self, name, coefs, tag=TAG_NEXT):
        super().__init__({"evaluator name": name, "tag": tag})
        self.coefs = dict(coefs)
        for key in self.coefs:
            self.add_dependency(key)
        self.n_evaluations = 0
        self.partials_requested = []

    def evaluate(self, store, results):
        self.n_evaluations += 1
        total = np.zeros_like(results[self.name]["cell"])
        for key, coef in self.coefs.items():
            total = total + coef * store.get_data(key, self.tag)["cell"]
        results[self.name]["cell"] = total

    def evaluate_partial(self, store, wrt, results):
        self.partials_requested.append(wrt.key)
        results[self.name]["cell"] = self.coefs[wrt.key]


class TestStateStore:
    """Test suite for the state store"""

    @pytest.fixture
    def store(self):
        return StateStore(ColumnMesh.uniform(3, 3.0))

    @pytest.fixture
    def graph(self, store):
        """z = y + w, y = 2 x, with x and w primaries"""
        store.require_primary("x", TAG_NEXT)
        store.require_primary("w", TAG_NEXT)
        y = LinearEvaluator("y", {"x": 2.0})
        z = LinearEvaluator("z", {"y": 1.0, "w": 1.0})
        y.setup(store)
        z.setup(store)
        store.set_primary("x", TAG_NEXT, 1.0)
        store.set_primary("w", TAG_NEXT, 0.0)
        return y, z

    def test_require_accumulates_components(self, store):
        store.require("a", TAG_NEXT, ("cell",))
        rec = store.require("a", TAG_NEXT, ("face",))
        assert rec.sizes == {"cell": 3, "face": 4}
        assert rec.data["face"].shape == (4,)

    def test_second_owner_is_rejected(self, store):
        store.require("a", TAG_NEXT, owner="flow")
        store.require("a", TAG_NEXT, owner="flow")
        with pytest.raises(DuplicateOwnerError):
            store.require("a", TAG_NEXT, owner="energy")

    def test_secondary_cannot_be_set(self, store, graph):
        with pytest.raises(ConfigurationError):
            store.set_primary("y", TAG_NEXT, 3.0)

    def test_lazy_evaluation_recomputes_only_changed_branches(self, store, graph):
        y, z = graph
        np.testing.assert_allclose(store.get_field("z", TAG_NEXT)["cell"], 2.0)
        assert (y.n_evaluations, z.n_evaluations) == (1, 1)

        store.get_field("z", TAG_NEXT)
        assert (y.n_evaluations, z.n_evaluations) == (1, 1)

        store.set_primary("w", TAG_NEXT, 1.0)
        np.testing.assert_allclose(store.get_field("z", TAG_NEXT)["cell"], 3.0)
        assert (y.n_evaluations, z.n_evaluations) == (1, 2)

        store.set_primary("x", TAG_NEXT, [1.0, 2.0, 3.0])
        np.testing.assert_allclose(store.get_field("z", TAG_NEXT)["cell"], [3.0, 5.0, 7.0])
        assert (y.n_evaluations, z.n_evaluations) == (2, 3)

    def test_change_reporting_is_per_requestor(self, store, graph):
        assert store.update("z", TAG_NEXT, requestor="flow") is True
        assert store.update("z", TAG_NEXT, requestor="flow") is False
        assert store.update("z", TAG_NEXT, requestor="energy") is True

        store.set_primary("x", TAG_NEXT, 5.0)
        assert store.update("z", TAG_NEXT, requestor="flow") is True
        assert store.update("z", TAG_NEXT, requestor="flow") is False

    def test_mark_changed_after_in_place_edit(self, store, graph):
        store.update("z", TAG_NEXT, requestor="flow")
        store.get_record("x", TAG_NEXT).data["cell"][0] = 10.0
        store.mark_changed("x", TAG_NEXT)
        assert store.update("z", TAG_NEXT, requestor="flow") is True
        assert store.get_data("z", TAG_NEXT)["cell"][0] == pytest.approx(20.0)

    def test_reading_stale_secondary_raises(self, store, graph):
        store.update("z", TAG_NEXT)
        store.set_primary("x", TAG_NEXT, 4.0)
        with pytest.raises(StaleDependency):
            store.get_data("y", TAG_NEXT)

    def test_unset_primary_is_unresolved(self, store):
        store.require_primary("p", TAG_NEXT)
        with pytest.raises(UnresolvedDependency):
            store.get_field("p", TAG_NEXT)
        with pytest.raises(UnresolvedDependency):
            store.initialize()

    def test_chain_rule_derivative(self, store, graph):
        np.testing.assert_allclose(store.get_derivative("z", TAG_NEXT, "x")["cell"], 2.0)
        np.testing.assert_allclose(store.get_derivative("z", TAG_NEXT, "w")["cell"], 1.0)
        np.testing.assert_allclose(store.get_derivative("x", TAG_NEXT, "x")["cell"], 1.0)

    def test_derivative_outside_closure_is_zero_without_evaluation(self, store, graph):
        y, z = graph
        store.require_primary("q", TAG_NEXT)
        store.set_primary("q", TAG_NEXT, 7.0)
        assert not store.is_dependency("z", TAG_NEXT, "q")
        np.testing.assert_array_equal(store.get_derivative("z", TAG_NEXT, "q")["cell"], 0.0)
        assert y.partials_requested == [] and z.partials_requested == []

    def test_derivative_reuse_and_change_reporting(self, store, graph):
        y, z = graph
        assert store.update_derivative("z", TAG_NEXT, "x", requestor="flow") is True
        assert store.update_derivative("z", TAG_NEXT, "x", requestor="flow") is False
        n_partials = len(z.partials_requested)
        store.get_derivative("z", TAG_NEXT, "x")
        assert len(z.partials_requested) == n_partials

    def test_cycle_detected_at_initialize(self, store):
        LinearEvaluator("a", {"b": 1.0}).setup(store)
        LinearEvaluator("b", {"a": 1.0}).setup(store)
        with pytest.raises(DependencyCycleError):
            store.initialize()

    def test_initialize_computes_secondaries(self, store, graph):
        y, z = graph
        store.initialize()
        assert store.initialized
        assert y.n_evaluations == 1 and z.n_evaluations == 1
        np.testing.assert_allclose(store.get_data("z", TAG_NEXT)["cell"], 2.0)

    def test_copy_tag_copies_values_and_time(self, store):
        for tag in (TAG_PREVIOUS, TAG_NEXT):
            store.require_primary("x", tag)
        store.set_primary("x", TAG_PREVIOUS, 0.0)
        store.set_primary("x", TAG_NEXT, 5.0)
        store.set_time(TAG_PREVIOUS, 0.0)
        store.set_time(TAG_NEXT, 10.0)

        store.copy_tag(TAG_NEXT, TAG_PREVIOUS)
        np.testing.assert_allclose(store.get_data("x", TAG_PREVIOUS)["cell"], 5.0)
        assert store.time(TAG_PREVIOUS) == pytest.approx(10.0)

    def test_snapshot_respects_visualization_flags(self, store, graph):
        store.set_io_flags("w", TAG_NEXT, vis=False)
        store.initialize()
        frame = store.snapshot(TAG_NEXT)
        assert set(frame.columns) == {"x", "y", "z"}
        assert len(frame) == 3

    def test_scalars_gravity_and_time(self, store):
        store.set_scalar("atmospheric_pressure", 101325.0)
        assert store.get_scalar("atmospheric_pressure") == pytest.approx(101325.0)
        with pytest.raises(UnresolvedDependency):
            store.get_scalar("missing")

        store.set_gravity(9.8)
        np.testing.assert_allclose(store.gravity, [0.0, 0.0, -9.8])
        with pytest.raises(UnresolvedDependency):
            store.time(TAG_NEXT)
