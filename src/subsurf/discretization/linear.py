"""
Linear solvers used to apply the inverse of a preconditioner.

``DirectSolver`` factors the whole matrix with SuperLU. The
``SchurComplementSolver`` eliminates the primary (cell) block onto the face
block, using only the diagonal of the cell block, and either factors the
assembled Schur complement or keeps just its diagonal.
"""
import logging
from typing import Literal, Optional

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import splu

from subsurf.core.exceptions import ErrorContext, LinearSolverError, handle_exception

logger = logging.getLogger(__name__)


def regularize_empty_rows(matrix: sp.spmatrix) -> sp.csr_matrix:
    """Put a unit diagonal on rows whose diagonal is zero (inactive unknowns)"""
    A = sp.csr_matrix(matrix, dtype=float)
    empty = A.diagonal() == 0.0
    if np.any(empty):
        logger.debug(f"Regularizing {int(empty.sum())} empty rows")
        A = A + sp.diags(empty.astype(float))
    return A.tocsr()


class DirectSolver:
    """Sparse LU factorization of the full matrix"""

    def __init__(self, name: str = "direct"):
        self.name = name
        self._lu = None
        self.size = 0

    def factorize(self, matrix: sp.spmatrix) -> None:
        A = regularize_empty_rows(matrix)
        self.size = A.shape[0]
        try:
            self._lu = splu(A.tocsc())
        except (RuntimeError, ValueError) as exc:
            raise LinearSolverError(
                f"Factorization failed: {exc}",
                context=ErrorContext(component=self.name, operation="factorize"),
            ) from exc

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        if self._lu is None:
            raise LinearSolverError(
                "solve called before factorize",
                context=ErrorContext(component=self.name, operation="solve"),
            )
        try:
            return self._lu.solve(np.asarray(rhs, dtype=float))
        except Exception as exc:
            raise handle_exception(exc, ErrorContext(component=self.name, operation="solve")) from exc


class SchurComplementSolver:
    """Block elimination of the first ``n_primary`` unknowns.

    Writing the matrix as [[A_cc, A_cf], [A_fc, A_ff]] with A_cc replaced by
    its diagonal D, the face system is S = A_ff - A_fc D^-1 A_cf. With
    ``mode="assembled"`` S is factored exactly, with ``mode="local"`` only
    its diagonal is kept.
    """

    def __init__(self, n_primary: int, mode: Literal["assembled", "local"] = "assembled",
                 name: str = "schur"):
        if mode not in ("assembled", "local"):
            raise ValueError(f"Unknown Schur complement mode '{mode}'")
        self.n_primary = n_primary
        self.mode = mode
        self.name = name
        self._D_inv: Optional[np.ndarray] = None
        self._A_cf = None
        self._A_fc = None
        self._S_solver: Optional[DirectSolver] = None
        self._S_diag_inv: Optional[np.ndarray] = None

    def factorize(self, matrix: sp.spmatrix) -> None:
        A = regularize_empty_rows(matrix)
        n = self.n_primary
        A_cc = A[:n, :n]
        off_diagonal = A_cc - sp.diags(A_cc.diagonal())
        if off_diagonal.count_nonzero():
            logger.debug(f"{self.name}: dropping off-diagonal entries of the primary block")
        D = A_cc.diagonal()
        if np.any(D == 0.0):
            raise LinearSolverError(
                "Zero on the diagonal of the primary block",
                context=ErrorContext(component=self.name, operation="factorize"),
            )
        self._D_inv = 1.0 / D
        self._A_cf = A[:n, n:]
        self._A_fc = A[n:, :n]
        S = A[n:, n:] - self._A_fc @ sp.diags(self._D_inv) @ self._A_cf

        if self.mode == "assembled":
            self._S_solver = DirectSolver(name=f"{self.name}.S")
            self._S_solver.factorize(S)
        else:
            diag = S.diagonal()
            diag[diag == 0.0] = 1.0
            self._S_diag_inv = 1.0 / diag

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        if self._D_inv is None:
            raise LinearSolverError(
                "solve called before factorize",
                context=ErrorContext(component=self.name, operation="solve"),
            )
        rhs = np.asarray(rhs, dtype=float)
        n = self.n_primary
        r_c, r_f = rhs[:n], rhs[n:]
        b_f = r_f - self._A_fc @ (self._D_inv * r_c)
        if self.mode == "assembled":
            y_f = self._S_solver.solve(b_f)
        else:
            y_f = self._S_diag_inv * b_f
        y_c = self._D_inv * (r_c - self._A_cf @ y_f)
        return np.concatenate([y_c, y_f])


def create_linear_solver(kind: str, n_primary: int = 0, name: str = "") -> object:
    """Solver for a ``"preconditioner"`` option value"""
    if kind == "direct":
        return DirectSolver(name=name or "direct")
    if kind in ("schur assembled", "schur local"):
        return SchurComplementSolver(n_primary, mode=kind.split()[1], name=name or "schur")
    raise ValueError(f"Unknown linear solver '{kind}'")
