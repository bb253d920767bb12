"""Weighted least squares fitter.

The unregularized WLS fit on the small core design ([1, rating_diff,
hfa_points]) is the reference model every other fit is measured against.

Columns with zero weighted variance (other than the intercept) carry no
information and would make X'WX singular, so they are dropped before solving
and reported with a coefficient of exactly 0.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from src.calibration.linalg import solve_linear_system
from src.calibration.metrics import FitStatistics, compute_fit_statistics

logger = logging.getLogger(__name__)

ZERO_VARIANCE_EPS = 1e-12


@dataclass(frozen=True)
class WLSResult:
    """Result of a weighted least squares fit."""
    coefficients: np.ndarray  # index 0 is the intercept
    dropped_columns: tuple[int, ...]  # zero-variance columns forced to 0
    stats: FitStatistics  # in-sample statistics
    predictions: np.ndarray  # in-sample predictions

    @property
    def intercept(self) -> float:
        return float(self.coefficients[0])

    def predict(self, X: np.ndarray) -> np.ndarray:
        return np.asarray(X, dtype=float) @ self.coefficients


def _zero_variance_columns(X: np.ndarray, w: np.ndarray) -> list[int]:
    total = w.sum()
    dropped = []
    for j in range(1, X.shape[1]):
        col = X[:, j]
        mean = np.dot(w, col) / total
        var = np.dot(w, (col - mean) ** 2) / total
        if var < ZERO_VARIANCE_EPS:
            dropped.append(j)
    return dropped


def fit_wls(
    X: np.ndarray,
    y: np.ndarray,
    w: Optional[np.ndarray] = None,
) -> WLSResult:
    """Fit y ~ X by weighted least squares via the normal equations.

    Args:
        X: Design matrix (n x p); first column must be all ones
        y: Response (n,)
        w: Non-negative sample weights (n,); None for equal weights

    Returns:
        WLSResult with coefficients in X's column order

    Raises:
        SingularMatrixError: If the reduced normal equations are singular
        ValueError: On shape or weight problems
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    n, p = X.shape
    w = np.ones(n) if w is None else np.asarray(w, dtype=float)

    if len(y) != n or len(w) != n:
        raise ValueError(f"Length mismatch: X has {n} rows, y {len(y)}, w {len(w)}")
    if n == 0:
        raise ValueError("Cannot fit WLS on an empty design")
    if not np.allclose(X[:, 0], 1.0):
        raise ValueError("First design column must be the all-ones intercept")
    if np.any(w < 0) or w.sum() <= 0:
        raise ValueError("Weights must be non-negative with a positive sum")

    dropped = _zero_variance_columns(X, w)
    if dropped:
        logger.debug(f"WLS: dropping zero-variance columns {dropped}")
    keep = [j for j in range(p) if j not in dropped]

    Xk = X[:, keep]
    XtW = Xk.T * w
    beta_k = solve_linear_system(XtW @ Xk, XtW @ y)

    beta = np.zeros(p)
    beta[keep] = beta_k

    predictions = X @ beta
    stats = compute_fit_statistics(y, predictions, w)

    return WLSResult(
        coefficients=beta,
        dropped_columns=tuple(dropped),
        stats=stats,
        predictions=predictions,
    )


def add_intercept(X: np.ndarray) -> np.ndarray:
    """Prepend the all-ones intercept column."""
    X = np.asarray(X, dtype=float)
    return np.column_stack([np.ones(X.shape[0]), X])
