"""Dense linear solver for the small normal-equation systems used by WLS.

Uses LAPACK's LU factorization with partial pivoting (scipy.linalg) and
rejects systems whose pivots collapse below a relative tolerance. A collapsed
pivot almost always means duplicated or collinear features in the design.
"""

import logging
import warnings

import numpy as np
from scipy.linalg import LinAlgWarning, lu_factor, lu_solve

from src.calibration.exceptions import SingularMatrixError

logger = logging.getLogger(__name__)

PIVOT_EPS = 1e-10


def solve_linear_system(
    A: np.ndarray,
    b: np.ndarray,
    eps: float = PIVOT_EPS,
) -> np.ndarray:
    """Solve A x = b for square A.

    Args:
        A: Coefficient matrix (n x n)
        b: Right-hand side (n,)
        eps: Pivot tolerance, relative to the largest entry of A

    Returns:
        Solution vector x (n,)

    Raises:
        SingularMatrixError: If a pivot magnitude falls below the tolerance
        ValueError: If shapes are inconsistent
    """
    A = np.asarray(A, dtype=float)
    b = np.asarray(b, dtype=float)

    if A.ndim != 2 or A.shape[0] != A.shape[1]:
        raise ValueError(f"Coefficient matrix must be square, got shape {A.shape}")
    if b.shape != (A.shape[0],):
        raise ValueError(f"Right-hand side has shape {b.shape}, expected ({A.shape[0]},)")
    if not (np.all(np.isfinite(A)) and np.all(np.isfinite(b))):
        raise SingularMatrixError("Linear system contains non-finite entries")

    scale = max(1.0, float(np.max(np.abs(A)))) if A.size else 1.0
    tol = eps * scale

    # lu_factor only warns on an exactly-zero pivot; the tolerance check below
    # covers that case and the near-zero ones.
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", LinAlgWarning)
        lu, piv = lu_factor(A, check_finite=False)

    pivots = np.abs(np.diag(lu))
    if pivots.size and pivots.min() < tol:
        worst = int(np.argmin(pivots))
        raise SingularMatrixError(
            f"Singular matrix: pivot {worst} has magnitude {pivots[worst]:.3e} "
            f"(tolerance {tol:.3e}); check for duplicated or collinear features"
        )

    return lu_solve((lu, piv), b, check_finite=False)
