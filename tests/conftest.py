"""Shared synthetic observation tables."""

import numpy as np
import pandas as pd
import pytest


def make_rows(
    n_periods: int = 12,
    rows_per_period: int = 40,
    rating_coef: float = 1.0,
    hfa_coef: float = 1.0,
    noise: float = 2.0,
    seed: int = 42,
) -> pd.DataFrame:
    """Matchup rows with a linear home-minus-away response.

    Noise is uniform in [-noise, noise] so every residual stays in the
    smallest residual bucket.
    """
    rng = np.random.default_rng(seed)
    n = n_periods * rows_per_period
    period = np.repeat(np.arange(1, n_periods + 1), rows_per_period)
    rating_diff = rng.normal(0.0, 12.0, n)
    neutral = (rng.random(n) < 0.1).astype(float)
    hfa = np.where(neutral == 1.0, 0.0, rng.uniform(1.5, 3.5, n))
    p5_vs_g5 = (rng.random(n) < 0.2).astype(float)
    response = rating_coef * rating_diff + hfa_coef * hfa + rng.uniform(-noise, noise, n)

    return pd.DataFrame({
        "row_id": [f"g{i:04d}" for i in range(n)],
        "period": period,
        "response": response,
        "weight": rng.uniform(0.5, 1.5, n),
        "partition": np.where(rng.random(n) < 0.5, "A", "B"),
        "rating_diff": rating_diff,
        "mftr_rating_diff": rating_diff + rng.normal(0.0, 1.0, n),
        "hfa_points": hfa,
        "neutral_site": neutral,
        "p5_vs_g5": p5_vs_g5,
        "off_adj_sr_diff": 0.01 * rating_diff + rng.normal(0.0, 0.05, n),
        "havoc_front7_diff": rng.normal(0.0, 0.02, n),
    })


@pytest.fixture
def synthetic_rows() -> pd.DataFrame:
    return make_rows()
