"""Reference meshes, boundary conditions, discrete operators and linear solvers."""
from subsurf.discretization.mesh import Mesh1D, ColumnMesh, SurfaceMesh
from subsurf.discretization.boundary import (
    BCKind,
    BoundaryConditions,
    BoundaryFunction,
    boundary_functions_from_list,
)
from subsurf.discretization.operators import DiffusionOperator, AdvectionOperator
from subsurf.discretization.linear import (
    DirectSolver,
    SchurComplementSolver,
    create_linear_solver,
)

__all__ = [
    "Mesh1D",
    "ColumnMesh",
    "SurfaceMesh",
    "BCKind",
    "BoundaryConditions",
    "BoundaryFunction",
    "boundary_functions_from_list",
    "DiffusionOperator",
    "AdvectionOperator",
    "DirectSolver",
    "SchurComplementSolver",
    "create_linear_solver",
]
