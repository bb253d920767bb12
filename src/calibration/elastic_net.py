"""Elastic-net regression via cyclic coordinate descent.

Objective (weighted, intercept unpenalized):

    0.5 * sum_i w_i (y_i - b0 - x_i.b)^2
        + alpha * l1_ratio * |b|_1
        + 0.5 * alpha * (1 - l1_ratio) * |b|_2^2

Per-feature update, with sumSq_j = sum_i w_i x_ij^2 and the partial residual
r_j that excludes feature j's current contribution:

    z_j  = sum_i w_i x_ij r_ij / sumSq_j
    b_j  = S(z_j, alpha * l1_ratio / sumSq_j) / (1 + alpha * (1 - l1_ratio) / sumSq_j)

where S is soft-thresholding. The design is expected to be standardized and
must not contain an intercept column. The iteration is deterministic and
fails closed: hitting max_iter returns the last iterate with converged=False.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from src.calibration.metrics import FitStatistics, compute_fit_statistics, weighted_mean

logger = logging.getLogger(__name__)

SUM_SQ_EPS = 1e-10
DEFAULT_MAX_ITER = 1000
DEFAULT_TOL = 1e-4


@dataclass(frozen=True)
class ElasticNetResult:
    """Result of an elastic-net fit."""
    coefficients: np.ndarray  # one per design column, intercept excluded
    intercept: float
    alpha: float
    l1_ratio: float
    n_iter: int
    converged: bool
    max_change: float  # largest coefficient change in the final pass
    stats: FitStatistics  # in-sample, includes r2
    predictions: np.ndarray

    def predict(self, X: np.ndarray) -> np.ndarray:
        return np.asarray(X, dtype=float) @ self.coefficients + self.intercept


def soft_threshold(z: float, threshold: float) -> float:
    if z > threshold:
        return z - threshold
    if z < -threshold:
        return z + threshold
    return 0.0


def fit_elastic_net(
    X: np.ndarray,
    y: np.ndarray,
    w: Optional[np.ndarray] = None,
    alpha: float = 0.0,
    l1_ratio: float = 0.0,
    max_iter: int = DEFAULT_MAX_ITER,
    tol: float = DEFAULT_TOL,
) -> ElasticNetResult:
    """Fit an elastic-net model by coordinate descent.

    Args:
        X: Standardized design (n x p), no intercept column
        y: Response (n,)
        w: Non-negative sample weights; None for equal weights
        alpha: Penalty strength (>= 0)
        l1_ratio: L1 share of the penalty in [0, 1] (1 = lasso, 0 = ridge)
        max_iter: Maximum number of full passes
        tol: Convergence tolerance on the max coefficient change per pass

    Returns:
        ElasticNetResult
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    n, p = X.shape
    w = np.ones(n) if w is None else np.asarray(w, dtype=float)

    if len(y) != n or len(w) != n:
        raise ValueError(f"Length mismatch: X has {n} rows, y {len(y)}, w {len(w)}")
    if n == 0:
        raise ValueError("Cannot fit elastic net on an empty design")
    if alpha < 0:
        raise ValueError(f"alpha must be >= 0, got {alpha}")
    if not 0.0 <= l1_ratio <= 1.0:
        raise ValueError(f"l1_ratio must be in [0, 1], got {l1_ratio}")
    if np.any(w < 0) or w.sum() <= 0:
        raise ValueError("Weights must be non-negative with a positive sum")

    l1_penalty = alpha * l1_ratio
    l2_penalty = alpha * (1.0 - l1_ratio)
    sum_sq = (w[:, None] * X * X).sum(axis=0)

    beta = np.zeros(p)
    intercept = weighted_mean(y, w)
    residual = y - intercept

    converged = False
    max_change = 0.0
    n_iter = 0

    for n_iter in range(1, max_iter + 1):
        max_change = 0.0

        for j in range(p):
            if sum_sq[j] < SUM_SQ_EPS:
                continue

            x_j = X[:, j]
            old = beta[j]
            partial = residual + x_j * old

            z = np.dot(w, x_j * partial) / sum_sq[j]
            new = soft_threshold(z, l1_penalty / sum_sq[j]) / (1.0 + l2_penalty / sum_sq[j])

            if new != old:
                beta[j] = new
                residual = partial - x_j * new
                max_change = max(max_change, abs(new - old))

        # Unpenalized intercept tracks the weighted mean residual
        shift = weighted_mean(residual, w)
        intercept += shift
        residual -= shift

        if max_change < tol:
            converged = True
            break

    if not converged:
        logger.warning(
            f"Elastic net did not converge in {max_iter} passes "
            f"(alpha={alpha}, l1_ratio={l1_ratio}, max_change={max_change:.2e}); "
            f"using last iterate"
        )

    # Intercept is fit last, after the penalized coefficients have settled
    intercept = weighted_mean(y - X @ beta, w)
    predictions = X @ beta + intercept

    return ElasticNetResult(
        coefficients=beta,
        intercept=float(intercept),
        alpha=alpha,
        l1_ratio=l1_ratio,
        n_iter=n_iter,
        converged=converged,
        max_change=float(max_change),
        stats=compute_fit_statistics(y, predictions, w),
        predictions=predictions,
    )
