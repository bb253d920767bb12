"""Fitted spread model: feature transform + elastic-net coefficients."""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from src.calibration.elastic_net import (
    DEFAULT_MAX_ITER,
    DEFAULT_TOL,
    ElasticNetResult,
    fit_elastic_net,
)
from src.calibration.features import FeatureBuilder, FeatureSet, FeatureTransform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SolverSettings:
    """Coordinate-descent controls, fixed for a run so fits are reproducible."""
    max_iter: int = DEFAULT_MAX_ITER
    tol: float = DEFAULT_TOL


def sample_weights(frame: pd.DataFrame, use_weights: bool = True) -> np.ndarray:
    """Row weights from the frame, or all ones for the unweighted variant."""
    if not use_weights:
        return np.ones(len(frame))
    return frame["weight"].to_numpy(dtype=float)


@dataclass(frozen=True)
class FittedModel:
    """Immutable fitted model. A new fit always produces a new instance."""
    transform: FeatureTransform
    coefficients: np.ndarray  # standardized space, feature order
    intercept: float
    alpha: float
    l1_ratio: float
    converged: bool = True
    n_iter: int = 0

    @property
    def feature_names(self) -> list[str]:
        return self.transform.feature_names

    def coefficient(self, name: str) -> float:
        return float(self.coefficients[self.feature_names.index(name)])

    def predict(self, frame: pd.DataFrame) -> np.ndarray:
        return self.transform.transform(frame) @ self.coefficients + self.intercept

    def destandardized(self) -> tuple[np.ndarray, float]:
        return self.transform.destandardize(self.coefficients, self.intercept)

    def coefficient_table(self) -> dict[str, dict[str, float]]:
        """{feature: {"standardized": b, "original": b / std}} plus the intercept."""
        raw_coefs, raw_intercept = self.destandardized()
        table = {"intercept": {"standardized": self.intercept, "original": raw_intercept}}
        for name, std_coef, raw_coef in zip(self.feature_names, self.coefficients, raw_coefs):
            table[name] = {"standardized": float(std_coef), "original": float(raw_coef)}
        return table


def fit_model(
    frame: pd.DataFrame,
    feature_set: FeatureSet,
    alpha: float,
    l1_ratio: float,
    use_weights: bool = True,
    solver: SolverSettings = SolverSettings(),
) -> tuple[FittedModel, ElasticNetResult]:
    """Fit transform + elastic net on frame (all rows are training rows)."""
    transform = FeatureBuilder(feature_set).fit(frame)
    X = transform.transform(frame)
    y = frame["response"].to_numpy(dtype=float)
    w = sample_weights(frame, use_weights)

    result = fit_elastic_net(
        X, y, w,
        alpha=alpha,
        l1_ratio=l1_ratio,
        max_iter=solver.max_iter,
        tol=solver.tol,
    )
    model = FittedModel(
        transform=transform,
        coefficients=result.coefficients.copy(),
        intercept=result.intercept,
        alpha=alpha,
        l1_ratio=l1_ratio,
        converged=result.converged,
        n_iter=result.n_iter,
    )
    return model, result
