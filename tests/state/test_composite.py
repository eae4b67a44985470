"""
Tests for the per-entity-kind vectors used as integrator unknowns.
"""
import numpy as np
import pytest

from subsurf.state.composite import BlockVector, CompositeArray, as_composite


class TestCompositeArray:

    @pytest.fixture
    def u(self):
        return CompositeArray({"cell": [1.0, -2.0, 3.0], "face": [0.5, 0.5, -4.0, 1.0]})

    def test_update_is_axpby(self, u):
        other = u.zeros_like().put_scalar(1.0)
        u.update(2.0, other, beta=0.5)
        np.testing.assert_allclose(u["cell"], [2.5, 1.0, 3.5])
        np.testing.assert_allclose(u["face"], [2.25, 2.25, 0.0, 2.5])

    def test_copy_is_independent(self, u):
        v = u.copy()
        v["cell"] = 0.0
        assert u["cell"][0] == pytest.approx(1.0)
        assert not u.array_equal(v)

    def test_norms_and_extrema(self, u):
        assert u.norm_inf() == pytest.approx(4.0)
        assert u.min() == pytest.approx(-4.0)
        assert u.max() == pytest.approx(3.0)

    def test_flat_view_in_component_order(self, u):
        flat = u.flat()
        assert flat.size == len(u) == 7
        v = u.zeros_like().assign_flat(flat)
        assert v.array_equal(u)
        with pytest.raises(ValueError):
            v.assign_flat(np.zeros(3))

    def test_as_composite_places_bare_values_on_default_component(self):
        c = as_composite(np.array([1.0, 2.0]), default_component="face")
        assert c.components == ("face",)
        c = as_composite(3.0, sizes={"cell": 2})
        np.testing.assert_allclose(c["cell"], [3.0, 3.0])


class TestBlockVector:

    @pytest.fixture
    def block(self):
        return BlockVector({
            "flow": CompositeArray({"cell": [1.0, 2.0], "face": [0.0, 0.0, 0.0]}),
            "energy": CompositeArray({"cell": [300.0, 301.0]}),
        })

    def test_offsets_follow_block_order(self, block):
        offsets = block.offsets()
        assert offsets["flow"] == slice(0, 5)
        assert offsets["energy"] == slice(5, 7)

    def test_algebra_applies_to_every_block(self, block):
        du = block.zeros_like().put_scalar(1.0)
        block.update(-1.0, du)
        np.testing.assert_allclose(block["energy"]["cell"], [299.0, 300.0])
        assert block.norm_inf() == pytest.approx(300.0)
        assert block.min() == pytest.approx(-1.0)

    def test_flat_round_trip(self, block):
        other = block.zeros_like().assign_flat(block.flat())
        assert other.array_equal(block)
