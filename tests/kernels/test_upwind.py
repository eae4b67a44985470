"""
Tests for relative-permeability upwinding on a three-cell column.

Pairs are ordered cell by cell, (c0, f0), (c0, f1), (c1, f1), (c1, f2),
(c2, f2), (c2, f3); faces 0 and 3 are the top and bottom boundaries.
"""
import numpy as np
import pytest

from subsurf.discretization import ColumnMesh, DiffusionOperator
from subsurf.kernels.upwind import Upwinding

KR_CELL = np.array([0.2, 0.6, 1.0])
KR_BOUNDARY = np.array([0.1, 0.9])


@pytest.fixture
def operator():
    return DiffusionOperator(ColumnMesh.uniform(3, 3.0))


class TestUpwinding:

    def test_cell_centered(self, operator):
        kr = Upwinding("cell centered", operator).update(KR_CELL, KR_BOUNDARY)
        np.testing.assert_allclose(kr, [0.2, 0.2, 0.6, 0.6, 1.0, 1.0])

    def test_arithmetic_mean(self, operator):
        kr = Upwinding("arithmetic mean", operator).update(KR_CELL, KR_BOUNDARY)
        np.testing.assert_allclose(kr, [0.15, 0.4, 0.4, 0.8, 0.8, 0.95])

    def test_gravity_takes_the_higher_side(self, operator):
        kr = Upwinding("upwind with gravity", operator).update(KR_CELL, KR_BOUNDARY)
        # the top face lies above its cell, the bottom face below
        np.testing.assert_allclose(kr, [0.1, 0.2, 0.2, 0.6, 0.6, 1.0])

    def test_darcy_flux_direction(self, operator):
        upwinding = Upwinding("upwind with Darcy flux", operator, flux_tolerance=1.e-8)
        # out of the first cell, into it, below the tolerance, out of it
        flux = np.array([1.0, -1.0, 1.e-10, 1.0])
        kr = upwinding.update(KR_CELL, KR_BOUNDARY, flux)
        np.testing.assert_allclose(kr, [0.2, 0.6, 0.6, 0.8, 0.8, 1.0])

    def test_boundary_without_values_uses_the_cell(self, operator):
        kr = Upwinding("arithmetic mean", operator).update(KR_CELL)
        np.testing.assert_allclose(kr[[0, 5]], [0.2, 1.0])

    def test_darcy_flux_is_required(self, operator):
        with pytest.raises(ValueError, match="face flux"):
            Upwinding("upwind with Darcy flux", operator).update(KR_CELL, KR_BOUNDARY)

    def test_unknown_method(self, operator):
        with pytest.raises(ValueError, match="Unknown relative permeability method"):
            Upwinding("harmonic mean", operator)
