"""Acceptance gates for a calibrated spread model.

A candidate is accepted only if every check passes:
    slope         slope of response on prediction within [slope_min, slope_max]
    rmse          at or below the ceiling
    sign          sign agreement at or above the floor
    pearson       Pearson correlation at or above the floor
    spearman      Spearman correlation at or above the floor
    primary_coef  primary rating coefficient strictly positive
    hfa_coef      home-field coefficient >= -hfa_tolerance
    variance      std(raw) / std(response) inside the track window
    bucket_*      mean signed residual within +/- bound in each |residual| bucket

Floors and ceilings come from GatePolicy. In "relative" mode they are
derived from the baselines; in "absolute" mode they are fixed numbers.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Optional

import numpy as np

from src.calibration.baselines import Baselines
from src.calibration.metrics import (
    FitStatistics,
    compute_fit_statistics,
    regression_slope,
    std_ratio,
    weighted_mean,
)
from src.calibration.model import FittedModel

logger = logging.getLogger(__name__)

GATE_MODES = ("relative", "absolute")

# Lower edges of the absolute-residual buckets; the last is open-ended
RESIDUAL_BUCKET_EDGES = (0.0, 7.0, 14.0, 28.0)

TRACK_DEFAULTS = {
    "core": {"rmse_ceiling": 8.8, "variance_ratio_min": 0.6, "variance_ratio_max": 1.2},
    "extended": {"rmse_ceiling": 9.0, "variance_ratio_min": 0.4, "variance_ratio_max": float("inf")},
}


@dataclass(frozen=True)
class GatePolicy:
    """Gate thresholds for one track."""
    track: str = "core"
    mode: str = "relative"
    slope_min: float = 0.90
    slope_max: float = 1.10
    # absolute mode
    rmse_ceiling: float = 8.8
    min_sign_agreement: float = 70.0
    min_correlation: float = 0.30
    # relative mode: allowed shortfall against the WLS core baseline
    rmse_margin: float = 0.25
    sign_margin: float = 2.0
    correlation_margin: float = 0.05
    # shared
    hfa_tolerance: float = 0.1
    variance_ratio_min: float = 0.6
    variance_ratio_max: float = 1.2
    residual_bucket_bound: float = 2.0
    residual_bucket_edges: tuple[float, ...] = RESIDUAL_BUCKET_EDGES

    def __post_init__(self):
        if self.mode not in GATE_MODES:
            raise ValueError(f"Unknown gate mode '{self.mode}', expected one of {GATE_MODES}")
        if self.track not in TRACK_DEFAULTS:
            raise ValueError(f"Unknown track '{self.track}'")

    @classmethod
    def for_track(cls, track: str, mode: str = "relative", **overrides) -> "GatePolicy":
        params = dict(TRACK_DEFAULTS[track])
        params.update(overrides)
        return cls(track=track, mode=mode, **params)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class GateCheck:
    name: str
    value: float
    threshold: str  # human readable, e.g. ">= 0.30"
    passed: bool

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ResidualBucket:
    label: str
    low: float
    high: float
    count: int
    mean_residual: float  # signed, response - prediction

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class GateResult:
    """Computed statistics and per-check outcomes. Never mutated."""
    track: str
    mode: str
    statistics: FitStatistics
    slope: float
    variance_ratio: float
    checks: dict[str, GateCheck]
    residual_buckets: tuple[ResidualBucket, ...] = field(default_factory=tuple)

    @property
    def all_passed(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks.values())

    @property
    def failed_checks(self) -> list[str]:
        return [name for name, c in self.checks.items() if not c.passed]

    def to_dict(self) -> dict:
        return {
            "track": self.track,
            "mode": self.mode,
            "all_passed": self.all_passed,
            "failed_checks": self.failed_checks,
            "slope": self.slope,
            "variance_ratio": self.variance_ratio,
            "statistics": self.statistics.to_dict(),
            "checks": {name: c.to_dict() for name, c in self.checks.items()},
            "residual_buckets": [b.to_dict() for b in self.residual_buckets],
        }


def bucket_label(low: float, high: float) -> str:
    return f"{low:g}-{high:g}" if np.isfinite(high) else f">{low:g}"


def residual_buckets(
    y: np.ndarray,
    pred: np.ndarray,
    w: Optional[np.ndarray] = None,
    edges: tuple[float, ...] = RESIDUAL_BUCKET_EDGES,
) -> list[ResidualBucket]:
    """Weighted mean signed residual within each absolute-residual bucket [low, high)."""
    residuals = np.asarray(y, dtype=float) - np.asarray(pred, dtype=float)
    w = np.ones(len(residuals)) if w is None else np.asarray(w, dtype=float)
    abs_res = np.abs(residuals)
    bounds = list(edges) + [float("inf")]

    buckets = []
    for low, high in zip(bounds[:-1], bounds[1:]):
        in_bucket = (abs_res >= low) & (abs_res < high)
        count = int(in_bucket.sum())
        mean = weighted_mean(residuals[in_bucket], w[in_bucket]) if count else 0.0
        buckets.append(ResidualBucket(bucket_label(low, high), float(low), float(high), count, mean))
    return buckets


def check_gates(
    y: np.ndarray,
    predictions: np.ndarray,
    w: Optional[np.ndarray],
    model: FittedModel,
    baselines: Baselines,
    policy: GatePolicy,
    raw_predictions: Optional[np.ndarray] = None,
) -> GateResult:
    """Evaluate every gate on the rows that have a prediction.

    Args:
        y: Responses
        predictions: Candidate predictions (head-corrected if a head was
            applied); NaN rows are ignored
        w: Row weights, or None for equal weights
        model: Final fitted model (for coefficient sanity)
        baselines: Zero and WLS core baselines on the same rows
        policy: Thresholds
        raw_predictions: Predictions before the head, for the variance
            ratio. Defaults to predictions.

    Returns:
        GateResult
    """
    y = np.asarray(y, dtype=float)
    predictions = np.asarray(predictions, dtype=float)
    raw = predictions if raw_predictions is None else np.asarray(raw_predictions, dtype=float)
    w = np.ones(len(y)) if w is None else np.asarray(w, dtype=float)

    mask = np.isfinite(predictions) & np.isfinite(y)
    y, pred, raw, w = y[mask], predictions[mask], raw[mask], w[mask]

    stats = compute_fit_statistics(y, pred, w)
    slope = regression_slope(y, pred, w)
    variance_ratio = std_ratio(raw, y)

    if policy.mode == "relative":
        ref = baselines.wls_core.stats
        rmse_ceiling = min(baselines.zero.stats.rmse, ref.rmse + policy.rmse_margin)
        sign_floor = ref.sign_agreement - policy.sign_margin
        pearson_floor = ref.pearson - policy.correlation_margin
        spearman_floor = ref.spearman - policy.correlation_margin
    else:
        rmse_ceiling = policy.rmse_ceiling
        sign_floor = policy.min_sign_agreement
        pearson_floor = policy.min_correlation
        spearman_floor = policy.min_correlation

    feature_set = model.transform.feature_set
    primary_coef = model.coefficient(feature_set.primary)
    table = model.coefficient_table()
    secondary = feature_set.secondary
    hfa_coef = table[secondary]["original"] if secondary in table else 0.0

    checks = [
        GateCheck(
            "slope", slope, f"[{policy.slope_min:.2f}, {policy.slope_max:.2f}]",
            policy.slope_min <= slope <= policy.slope_max,
        ),
        GateCheck("rmse", stats.rmse, f"<= {rmse_ceiling:.4f}", stats.rmse <= rmse_ceiling),
        GateCheck(
            "sign_agreement", stats.sign_agreement, f">= {sign_floor:.2f}",
            stats.sign_agreement >= sign_floor,
        ),
        GateCheck("pearson", stats.pearson, f">= {pearson_floor:.4f}", stats.pearson >= pearson_floor),
        GateCheck("spearman", stats.spearman, f">= {spearman_floor:.4f}", stats.spearman >= spearman_floor),
        GateCheck("primary_coef", primary_coef, "> 0", primary_coef > 0),
        GateCheck(
            "hfa_coef", hfa_coef, f">= {-policy.hfa_tolerance:.2f}",
            hfa_coef >= -policy.hfa_tolerance,
        ),
        GateCheck(
            "variance_ratio", variance_ratio,
            f"[{policy.variance_ratio_min:.2f}, {policy.variance_ratio_max:.2f}]",
            policy.variance_ratio_min <= variance_ratio <= policy.variance_ratio_max,
        ),
    ]

    buckets = residual_buckets(y, pred, w, policy.residual_bucket_edges)
    bound = policy.residual_bucket_bound
    for bucket in buckets:
        checks.append(GateCheck(
            f"bucket_{bucket.label}", bucket.mean_residual, f"|x| <= {bound:.2f}",
            abs(bucket.mean_residual) <= bound,
        ))

    result = GateResult(
        track=policy.track,
        mode=policy.mode,
        statistics=stats,
        slope=slope,
        variance_ratio=variance_ratio,
        checks={c.name: c for c in checks},
        residual_buckets=tuple(buckets),
    )

    for check in checks:
        status = "PASS" if check.passed else "FAIL"
        logger.debug(f"  [{status}] {check.name}: {check.value:.4f} ({check.threshold})")
    if result.all_passed:
        logger.info(f"Gates ({policy.track}, {policy.mode}): all {len(checks)} checks passed")
    else:
        logger.info(f"Gates ({policy.track}, {policy.mode}): failed {result.failed_checks}")
    return result
