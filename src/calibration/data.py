"""Observation table handling: validation, filtering and sanity checks.

Rows arrive either as a list of ObservationRow or as a DataFrame with columns:
    row_id, period, response, weight, partition, <covariate columns...>

Sign convention (home-minus-away frame):
    response  > 0 : home team better by that many points
    rating_diff > 0 : home team rated higher
so the rating coefficient is expected to be positive.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from src.calibration.exceptions import InsufficientDataError
from src.calibration.metrics import weighted_pearson, weighted_spearman

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["row_id", "period", "response", "weight", "partition"]


@dataclass
class ObservationRow:
    """One historical matchup."""
    row_id: str
    period: int  # week; temporal grouping key, never shuffled
    response: Optional[float]  # None = exclude from fitting
    weight: float = 1.0
    covariates: dict[str, Optional[float]] = field(default_factory=dict)
    partition: str = "A"


def rows_to_frame(rows: Iterable[ObservationRow]) -> pd.DataFrame:
    """Flatten ObservationRows into the tabular form used by the engine."""
    records = []
    for row in rows:
        record = {
            "row_id": row.row_id,
            "period": row.period,
            "response": row.response,
            "weight": row.weight,
            "partition": row.partition,
        }
        record.update(row.covariates)
        records.append(record)
    if not records:
        return pd.DataFrame(columns=REQUIRED_COLUMNS)
    return pd.DataFrame.from_records(records)


def normalize_observations(df: pd.DataFrame) -> pd.DataFrame:
    """Validate columns and put rows in deterministic (period, row_id) order.

    Missing weights default to 1.0. Missing partition labels default to "A".
    """
    df = df.copy()
    if "weight" not in df.columns:
        df["weight"] = 1.0
    if "partition" not in df.columns:
        df["partition"] = "A"

    missing = set(REQUIRED_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {sorted(missing)}")

    df["weight"] = pd.to_numeric(df["weight"], errors="coerce").fillna(1.0).astype(float)
    if (df["weight"] < 0).any():
        raise ValueError("Row weights must be non-negative")
    df["partition"] = df["partition"].fillna("A").astype(str)
    df["response"] = pd.to_numeric(df["response"], errors="coerce")
    df["period"] = df["period"].astype(int)
    df["row_id"] = df["row_id"].astype(str)

    df = df.sort_values(["period", "row_id"], kind="mergesort").reset_index(drop=True)
    return df


def filter_observations(
    df: pd.DataFrame,
    partitions: Iterable[str],
    max_abs_response: Optional[float] = None,
) -> pd.DataFrame:
    """Keep rows in the requested partitions with a usable response.

    Args:
        df: Normalized observation frame
        partitions: Partition labels to include (e.g. ["A", "B"])
        max_abs_response: If set, exclude rows with |response| above it
            (the rows are dropped, not clipped)

    Returns:
        Filtered copy, index reset
    """
    partitions = list(partitions)
    mask = df["partition"].isin(partitions) & df["response"].notna()
    out = df[mask]

    n_before_trim = len(out)
    if max_abs_response is not None:
        out = out[out["response"].abs() <= max_abs_response]
        n_trimmed = n_before_trim - len(out)
        if n_trimmed:
            logger.info(f"Trimmed {n_trimmed} rows with |response| > {max_abs_response}")

    out = out.reset_index(drop=True)

    counts = out.groupby(["period", "partition"]).size().unstack(fill_value=0)
    logger.info(f"Filtered to {len(out)} rows (partitions={partitions})")
    for period, row in counts.iterrows():
        parts = ", ".join(f"{label}={int(n)}" for label, n in row.items())
        logger.debug(f"  Period {period}: {parts}")

    return out


def require_min_rows(df: pd.DataFrame, min_rows: int, context: str = "") -> None:
    """Raise InsufficientDataError if df has fewer than min_rows rows."""
    if len(df) < min_rows:
        raise InsufficientDataError(len(df), min_rows, context)


@dataclass(frozen=True)
class TargetSummary:
    """Distribution of the response for one subset of rows."""
    label: str
    count: int
    mean: float
    std: float
    pct_positive: float
    pct_negative: float
    pct_zero: float

    def to_dict(self) -> dict:
        return asdict(self)


def summarize_target(df: pd.DataFrame, label: str) -> TargetSummary:
    """Summarize the response distribution and warn on a suspicious frame.

    More than 95% negative targets almost always means the response was
    loaded in the wrong (away-minus-home) frame.
    """
    y = df["response"].to_numpy(dtype=float)
    n = len(y)
    if n == 0:
        return TargetSummary(label, 0, 0.0, 0.0, 0.0, 0.0, 0.0)

    summary = TargetSummary(
        label=label,
        count=n,
        mean=float(y.mean()),
        std=float(y.std()),
        pct_positive=100.0 * float((y > 0).sum()) / n,
        pct_negative=100.0 * float((y < 0).sum()) / n,
        pct_zero=100.0 * float((y == 0).sum()) / n,
    )
    logger.info(
        f"Target {label}: n={n}, mean={summary.mean:.3f}, std={summary.std:.3f}, "
        f"y>0={summary.pct_positive:.1f}%, y<0={summary.pct_negative:.1f}%, "
        f"y=0={summary.pct_zero:.1f}%"
    )
    if summary.pct_negative > 95.0:
        logger.warning(
            f"Target {label}: {summary.pct_negative:.1f}% negative - possible frame bug"
        )
    return summary


def raw_signal_check(df: pd.DataFrame, primary: str) -> dict:
    """Pre-model correlation of the primary covariate with the response."""
    y = df["response"].to_numpy(dtype=float)
    x = df[primary].fillna(0.0).to_numpy(dtype=float) if primary in df.columns else np.zeros(len(y))

    result = {
        "pearson": weighted_pearson(x, y),
        "spearman": weighted_spearman(x, y),
        "std_primary": float(np.std(x)) if len(x) else 0.0,
        "std_target": float(np.std(y)) if len(y) else 0.0,
    }
    logger.info(
        f"Raw signal ({primary}): pearson={result['pearson']:.4f}, "
        f"spearman={result['spearman']:.4f}"
    )
    if result["std_primary"] < 0.3 * result["std_target"]:
        logger.warning(
            f"{primary} std ({result['std_primary']:.3f}) is under 30% of target std "
            f"({result['std_target']:.3f}); ratings may be compressed"
        )
    return result
