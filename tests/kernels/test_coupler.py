"""
Tests for the strong coupler and the surface-subsurface coupler.
"""
import numpy as np
import pytest

from subsurf.core.constants import ATMOSPHERIC_PRESSURE, GRAVITY, TAG_NEXT, TAG_PREVIOUS
from subsurf.core.exceptions import ConfigurationError
from subsurf.kernels import StrongCoupler, SurfaceSubsurfaceCoupler, create_kernel
from subsurf.state.composite import BlockVector
from subsurf.time_integration import BDF1TimeIntegrator

PLISTS = {
    "flow": {"PK type": "richards flow"},
    "energy": {"PK type": "energy"},
    "overland": {"PK type": "overland flow"},
}


class TestStrongCouplerConfiguration:

    def test_children_need_option_blocks(self):
        with pytest.raises(ConfigurationError, match="no option block"):
            StrongCoupler("coupled", {"PKs order": ["flow", "transport"]}, PLISTS)

    def test_coupler_cannot_contain_itself(self):
        plists = dict(PLISTS, coupled={"PK type": "strong coupler", "PKs order": ["coupled"]})
        with pytest.raises(ConfigurationError, match="itself"):
            create_kernel("coupled", plists["coupled"], plists)

    def test_order_is_required(self):
        with pytest.raises(ConfigurationError):
            StrongCoupler("coupled", {"PKs order": []}, PLISTS)

    def test_surface_coupling_requires_head_coupled_subsurface(self):
        with pytest.raises(ConfigurationError, match="coupled to surface via head"):
            SurfaceSubsurfaceCoupler("coupled", {"PKs order": ["flow", "overland"]}, PLISTS)

    def test_surface_coupling_needs_two_kernels(self):
        with pytest.raises(ConfigurationError, match="exactly two"):
            SurfaceSubsurfaceCoupler("coupled", {"PKs order": ["flow"]}, PLISTS)


class TestStrongCoupler:

    def test_solution_stacks_children_in_order(self, make_coupled):
        _, coupler = make_coupled()
        u = coupler.solution()
        assert isinstance(u, BlockVector)
        assert u.names == ("flow", "energy")
        assert [k.name for k in coupler.kernels()] == ["flow", "energy"]

    def test_column_at_rest_has_zero_residual(self, make_coupled):
        _, coupler = make_coupled()
        res = coupler.fun(0.0, 10.0, coupler.solution(), coupler.solution())
        np.testing.assert_allclose(res["flow"].flat(), 0.0, atol=1e-8)
        np.testing.assert_allclose(res["energy"].flat(), 0.0, atol=1e-6)
        assert coupler.enorm(coupler.solution(), res) == pytest.approx(0.0, abs=1e-6)

    @pytest.mark.parametrize("preconditioner_type,coupled", [
        ("block diagonal", False),
        ("block coupled", True),
    ])
    def test_cross_terms_only_when_coupled(self, make_coupled, preconditioner_type, coupled):
        _, coupler = make_coupled(preconditioner_type)
        u = coupler.solution()
        coupler.update_precon(10.0, u, 10.0)
        offsets = u.offsets()
        # energy stored in an unsaturated cell depends on pressure through saturation
        cross = coupler.precon_matrix[offsets["energy"], offsets["flow"]]
        assert (cross.count_nonzero() > 0) == coupled

    def test_coupled_preconditioner_solves_the_assembled_system(self, make_coupled):
        _, coupler = make_coupled("block coupled")
        u = coupler.solution()
        u["energy"]["cell"] += 1.0
        res = coupler.fun(0.0, 10.0, coupler.solution(), u)
        coupler.update_precon(10.0, u, 10.0)
        du = coupler.precon(res)
        np.testing.assert_allclose(coupler.precon_matrix @ du.flat(), res.flat(),
                                   rtol=1e-8, atol=1e-8)

    def test_admissibility_requires_every_child(self, make_coupled):
        _, coupler = make_coupled()
        u = coupler.solution()
        assert coupler.is_admissible(u)
        u["energy"]["cell"][0] = 1000.0
        assert not coupler.is_admissible(u)


class TestSurfaceSubsurfaceCoupler:

    PONDED = ATMOSPHERIC_PRESSURE + 1000.0 * GRAVITY * 0.01

    def test_surface_head_is_the_subsurface_boundary_value(self, make_surface_coupled, hydrostatic):
        store, coupler = make_surface_coupled(hydrostatic(ATMOSPHERIC_PRESSURE - 6.e4), self.PONDED)
        u = coupler.solution()
        coupler.fun(0.0, 10.0, coupler.solution(), u)
        assert u["flow"]["face"][0] == pytest.approx(self.PONDED)

    def test_infiltration_is_a_surface_sink(self, make_surface_coupled, hydrostatic):
        store, coupler = make_surface_coupled(hydrostatic(ATMOSPHERIC_PRESSURE - 6.e4), self.PONDED)
        u = coupler.solution()
        res = coupler.fun(0.0, 10.0, coupler.solution(), u)
        exchange = store.get_data("surface-surface_subsurface_flux", TAG_NEXT)["cell"]
        # flux out of the dry subsurface is negative: water moves down
        assert exchange[0] < 0.0
        # nothing else changes the ponded water in this iterate
        assert res["overland"]["cell"][0] == pytest.approx(-exchange[0])

    def test_no_exchange_in_hydrostatic_equilibrium(self, make_surface_coupled, hydrostatic):
        store, coupler = make_surface_coupled(hydrostatic(self.PONDED), self.PONDED)
        res = coupler.fun(0.0, 10.0, coupler.solution(), coupler.solution())
        exchange = store.get_data("surface-surface_subsurface_flux", TAG_NEXT)["cell"]
        assert exchange[0] == pytest.approx(0.0, abs=1e-8)
        np.testing.assert_allclose(res["flow"].flat(), 0.0, atol=1e-8)


class TestDrySurface:
    """A dry surface over an unsaturated column: no ponding, no exchange"""

    DRY = ATMOSPHERIC_PRESSURE - 2.e4
    TOP = ATMOSPHERIC_PRESSURE - 6.e4
    TIGHT = {"absolute error tolerance": 1.e-8, "relative error tolerance": 1.e-8}

    def test_preconditioner_is_nonsingular_on_dry_cells(self, make_surface_coupled, hydrostatic):
        _, coupler = make_surface_coupled(hydrostatic(self.TOP), self.DRY)
        u = coupler.solution()
        coupler.fun(0.0, 10.0, coupler.solution(), u)
        coupler.update_precon(10.0, u, 10.0)

        A = coupler.surface.precon_matrix.toarray()
        # the cell row carries the exchange conductance, the dry faces a unit diagonal
        assert A[0, 0] == pytest.approx(coupler.exchange_conductance()[0])
        assert A[0, 0] > 0.0
        np.testing.assert_allclose(np.diag(A)[1:], 1.0)
        assert np.linalg.matrix_rank(A) == A.shape[0]

    @pytest.mark.parametrize("preconditioner_type", ["block diagonal", "block coupled"])
    def test_step_converges_to_the_hydrostatic_head(self, make_surface_coupled, hydrostatic,
                                                    preconditioner_type):
        column = hydrostatic(self.TOP)
        store, coupler = make_surface_coupled(column, self.DRY, preconditioner_type, self.TIGHT)
        integrator = BDF1TimeIntegrator(coupler)
        integrator.set_initial_state(0.0, coupler.solution(TAG_PREVIOUS))
        u = coupler.solution()

        result = integrator.time_step(10.0, u)
        assert result.converged, result.message

        # with nothing ponded at the end of the step, nothing may cross the surface
        exchange = store.get_data("surface-surface_subsurface_flux", TAG_NEXT)["cell"]
        assert exchange[0] == pytest.approx(0.0, abs=1.e-6)
        assert u["overland"]["cell"][0] == pytest.approx(self.TOP, abs=10.0)
        assert u["overland"]["cell"][0] < ATMOSPHERIC_PRESSURE
        np.testing.assert_allclose(u["flow"]["cell"], column["cell"], atol=0.5)
