"""Post-hoc affine correction of raw model output.

The head maps raw walk-forward predictions onto the response scale:
    calibrated = intercept + slope * raw
It never changes the underlying feature coefficients.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Optional

import numpy as np

from src.calibration.metrics import VARIANCE_EPS, regression_slope, weighted_mean, weighted_rmse

logger = logging.getLogger(__name__)

# std(raw) / std(response) window inside which a head may be applied
HEAD_VARIANCE_WINDOWS = {
    "core": (0.6, 1.2),
    "extended": (0.4, float("inf")),
}


@dataclass(frozen=True)
class CalibrationHead:
    intercept: float
    slope: float
    rmse: float  # of the corrected predictions on the fitting rows

    def apply(self, raw: np.ndarray) -> np.ndarray:
        return self.intercept + self.slope * np.asarray(raw, dtype=float)

    def to_dict(self) -> dict:
        return asdict(self)


def fit_calibration_head(
    y: np.ndarray,
    raw_pred: np.ndarray,
    w: Optional[np.ndarray] = None,
) -> CalibrationHead:
    """Weighted OLS of y on raw_pred.

    If raw_pred is (nearly) constant the slope falls back to 1.0 and only
    the offset is fitted.
    """
    y = np.asarray(y, dtype=float)
    raw_pred = np.asarray(raw_pred, dtype=float)
    w = np.ones(len(y)) if w is None else np.asarray(w, dtype=float)

    mean_y = weighted_mean(y, w)
    mean_p = weighted_mean(raw_pred, w)
    var_p = weighted_mean((raw_pred - mean_p) ** 2, w)

    if var_p < VARIANCE_EPS:
        logger.warning("Calibration head: raw predictions are constant, using slope 1.0")
        slope = 1.0
    else:
        slope = regression_slope(y, raw_pred, w)
    intercept = mean_y - slope * mean_p

    rmse = weighted_rmse(y, intercept + slope * raw_pred, w)
    logger.info(f"Calibration head: {intercept:+.4f} + {slope:.4f} * raw (RMSE={rmse:.4f})")
    return CalibrationHead(intercept=float(intercept), slope=slope, rmse=rmse)


def head_allowed(variance_ratio: float, track: str) -> bool:
    """Whether raw predictions have enough spread for a head to be meaningful."""
    low, high = HEAD_VARIANCE_WINDOWS[track]
    return low <= variance_ratio <= high
