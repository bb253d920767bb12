"""Spread model calibration engine.

Components:
- linalg / wls: weighted least squares via the normal equations
- elastic_net: coordinate-descent elastic net (intercept unpenalized)
- features: core/extended feature sets, hinge terms, residualization
- cross_validation: week-grouped CV grid search over (alpha, l1_ratio)
- walk_forward: train on weeks < k, predict week k
- baselines / calibration_head / gates: acceptance against reference models
- orchestrator: core + extended tracks, persistence only when gates pass
- artifacts / reports: saved artifacts and per-track report files
"""

from .exceptions import (
    CalibrationError,
    CoefficientSignViolation,
    GateFailure,
    InsufficientDataError,
    SingularMatrixError,
)
from .orchestrator import CalibrationConfig, CalibrationRunResult, TrackResult, run_calibration

__all__ = [
    "CalibrationError",
    "CoefficientSignViolation",
    "GateFailure",
    "InsufficientDataError",
    "SingularMatrixError",
    "CalibrationConfig",
    "CalibrationRunResult",
    "TrackResult",
    "run_calibration",
]
