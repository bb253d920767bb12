"""Error types raised by the calibration engine.

Fatal errors (abort the run, nothing is persisted):
- SingularMatrixError: normal equations are rank deficient
- InsufficientDataError: too few usable rows after filtering
- CoefficientSignViolation: primary rating coefficient is not positive

Non-fatal:
- GateFailure: model rejected by the acceptance gates. The run completes and
  reports diagnostics, but the model is never handed to the store.
"""


class CalibrationError(Exception):
    """Base class for calibration engine errors."""


class SingularMatrixError(CalibrationError):
    """Raised when a linear system has a pivot below the tolerance."""


class InsufficientDataError(CalibrationError):
    """Raised when fewer than the minimum number of rows survive filtering."""

    def __init__(self, n_rows: int, min_rows: int, context: str = ""):
        self.n_rows = n_rows
        self.min_rows = min_rows
        where = f" ({context})" if context else ""
        super().__init__(
            f"Insufficient training data{where}: {n_rows} rows (need >= {min_rows})"
        )


class CoefficientSignViolation(CalibrationError):
    """Raised when the primary covariate's coefficient is not strictly positive."""

    def __init__(self, feature: str, coefficient: float):
        self.feature = feature
        self.coefficient = coefficient
        super().__init__(
            f"Coefficient on '{feature}' must be positive, got {coefficient:.6f}"
        )


class GateFailure(CalibrationError):
    """Raised when a model that failed its gates is offered for persistence."""

    def __init__(self, failed_checks: list[str]):
        self.failed_checks = list(failed_checks)
        super().__init__(f"Gate checks failed: {', '.join(self.failed_checks) or 'unknown'}")
