"""
Tests for the reference column mesh, the hybrid diffusion operator, upwind
advection and the linear solvers.
"""
import numpy as np
import pytest
import scipy.sparse as sp

from subsurf.core.exceptions import ConfigurationError, LinearSolverError
from subsurf.discretization import (
    AdvectionOperator,
    BoundaryConditions,
    BoundaryFunction,
    ColumnMesh,
    DiffusionOperator,
    DirectSolver,
    SchurComplementSolver,
    SurfaceMesh,
    boundary_functions_from_list,
    create_linear_solver,
)
from subsurf.state.composite import CompositeArray

RHO = 1000.0
G = 9.80665


@pytest.fixture
def column():
    return ColumnMesh.uniform(4, 4.0, area=2.0)


def hybrid(cells, faces):
    return CompositeArray({"cell": np.asarray(cells, float), "face": np.asarray(faces, float)})


class TestMeshes:

    def test_column_geometry(self, column):
        assert column.n_cells == 4
        np.testing.assert_allclose(column.cell_volumes, 2.0)
        assert column.cell_centroid(0)[2] == pytest.approx(-0.5)
        assert column.face_centroid(4)[2] == pytest.approx(-4.0)
        assert column.region_faces("top") == [0]
        assert column.face_get_cells(0) == [0]
        assert column.face_get_cells(2) == [1, 2]

    def test_unknown_region(self, column):
        with pytest.raises(ConfigurationError, match="Unknown region"):
            column.region_faces("left")

    def test_surface_over_column(self, column):
        surface = SurfaceMesh.over_column(column)
        assert surface.n_cells == 1
        assert surface.entity_get_parent(0) == 0
        assert surface.cell_volume(0) == pytest.approx(2.0)

    def test_surface_parent_must_be_boundary(self, column):
        with pytest.raises(ConfigurationError):
            SurfaceMesh(column, [2])


class TestBoundaryFunctions:

    def test_table_is_interpolated_and_held(self):
        function = BoundaryFunction([0], {"times": [0.0, 10.0], "values": [1.0, 3.0]})
        assert function.compute(5.0)[0] == pytest.approx(2.0)
        assert function.compute(50.0)[0] == pytest.approx(3.0)

    def test_entries_need_regions_and_value(self, column):
        with pytest.raises(ConfigurationError):
            boundary_functions_from_list(column, [{"regions": ["top"]}], "boundary pressure")

    def test_interior_faces_are_rejected(self, column):
        column._regions["middle"] = [2]
        with pytest.raises(ConfigurationError, match="not a boundary face"):
            boundary_functions_from_list(column, [{"regions": "middle", "boundary pressure": 1.0}],
                                         "boundary pressure")


class TestDiffusionOperator:

    @pytest.fixture
    def op(self, column):
        op = DiffusionOperator(column, gravity=np.array([0.0, 0.0, -G]))
        op.update_coefficients(1.e-3, None, RHO)
        return op

    def test_hydrostatic_column_has_zero_residual(self, op):
        p0 = 101325.0
        u = hybrid(p0 + RHO * G * (np.arange(4) + 0.5), p0 + RHO * G * np.arange(5))
        r = op.apply(u)
        np.testing.assert_allclose(r.flat(), 0.0, atol=1e-8)
        np.testing.assert_allclose(op.flux(u), 0.0, atol=1e-8)

    def test_flux_is_positive_out_of_first_cell(self, column):
        op = DiffusionOperator(column)
        op.update_coefficients(1.0)
        u = hybrid([2.0, 0.0, 0.0, 0.0], [2.0, 1.0, 0.0, 0.0, 0.0])
        flux = op.flux(u)
        # transmissibility is area / half-thickness
        assert flux[1] == pytest.approx(4.0)
        assert flux[0] == pytest.approx(0.0)

    def test_matrix_is_jacobian_of_apply(self, op):
        bcs = BoundaryConditions(5)
        bcs.set_dirichlet([0], 101325.0)
        bcs.set_neumann([4], 1.e-3)
        op.set_bcs(bcs)

        rng = np.random.default_rng(0)
        u1 = hybrid(rng.normal(1.e5, 1.e3, 4), rng.normal(1.e5, 1.e3, 5))
        u2 = hybrid(rng.normal(1.e5, 1.e3, 4), rng.normal(1.e5, 1.e3, 5))
        du = u1.copy().update(-1.0, u2)
        dr = op.apply(u1).update(-1.0, op.apply(u2))
        np.testing.assert_allclose(op.matrix() @ du.flat(), dr.flat(), rtol=1e-10, atol=1e-6)

    def test_consistent_faces_zero_the_face_rows(self, op):
        bcs = BoundaryConditions(5)
        bcs.set_dirichlet([0], 90000.0)
        bcs.set_neumann([4], -2.e-3)
        op.set_bcs(bcs)
        u = hybrid([95000.0, 97000.0, 99000.0, 101000.0], np.zeros(5))
        op.consistent_faces(u)
        assert u["face"][0] == pytest.approx(90000.0)
        np.testing.assert_allclose(op.apply(u)["face"], 0.0, atol=1e-6)


class TestAdvectionOperator:

    @pytest.fixture
    def adv(self):
        mesh = ColumnMesh.uniform(3, 3.0)
        adv = AdvectionOperator(mesh)
        bcs = BoundaryConditions(4)
        bcs.set_dirichlet([3], 10.0)
        adv.set_bcs(bcs)
        return adv

    def test_upward_flow_takes_upwind_values(self, adv):
        flux = np.array([1.0, -1.0, -1.0, -1.0])
        inflow = adv.apply(flux, np.array([1.0, 2.0, 3.0]))
        np.testing.assert_allclose(inflow, [1.0, 1.0, 7.0])

    def test_matrix_is_jacobian_of_apply(self, adv):
        flux = np.array([0.5, 2.0, -1.0, -0.5])
        f1, f2 = np.array([1.0, 4.0, 2.0]), np.array([-3.0, 0.5, 7.0])
        np.testing.assert_allclose(adv.matrix(flux) @ (f1 - f2),
                                   adv.apply(flux, f1) - adv.apply(flux, f2))


class TestLinearSolvers:

    @pytest.fixture
    def system(self, column):
        op = DiffusionOperator(column)
        op.update_coefficients(np.array([1.0, 2.0, 0.5, 1.5]))
        bcs = BoundaryConditions(5)
        bcs.set_dirichlet([4], 0.0)
        op.set_bcs(bcs)
        A = op.matrix(cell_diagonal=np.full(4, 0.1))
        b = np.linspace(1.0, 2.0, A.shape[0])
        return A, b

    def test_direct_solver(self, system):
        A, b = system
        solver = DirectSolver()
        solver.factorize(A)
        np.testing.assert_allclose(A @ solver.solve(b), b, atol=1e-10)

    def test_assembled_schur_complement_is_exact(self, system):
        # cells couple only through faces, so the cell block is diagonal
        A, b = system
        solver = SchurComplementSolver(4, mode="assembled")
        solver.factorize(A)
        np.testing.assert_allclose(A @ solver.solve(b), b, atol=1e-10)

    def test_local_schur_complement_is_an_approximation(self, system):
        A, b = system
        solver = create_linear_solver("schur local", n_primary=4)
        solver.factorize(A)
        x = solver.solve(b)
        assert np.all(np.isfinite(x))
        assert x.shape == b.shape

    def test_singular_matrix_raises(self):
        solver = DirectSolver()
        with pytest.raises(LinearSolverError):
            solver.factorize(sp.csr_matrix(np.array([[1.0, 1.0], [1.0, 1.0]])))

    def test_solve_before_factorize_raises(self):
        with pytest.raises(LinearSolverError):
            DirectSolver().solve(np.ones(2))

    def test_unknown_solver(self):
        with pytest.raises(ValueError):
            create_linear_solver("multigrid")
