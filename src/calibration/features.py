"""Feature construction: transforms, residualization and standardization.

Core features (small trusted set):
    rating_diff (or a blend of two rating sources), hfa_points,
    neutral_site, p5_vs_g5, abs_rating_diff, hinge7, optional hinge14

Monotone curvature uses |rating_diff| and hinges max(|rating_diff| - t, 0)
instead of a squared term. Under collinearity with the linear term a squared
coefficient can flip sign; hinge terms stay monotone.

Extended features add team-efficiency differentials. The efficiency family
(success rate, PPA, EPA, EWMA EPA, talent) tracks rating_diff closely, so each
of those is replaced by its residual from a regression on the primary rating
signal. The regression line comes from the training rows of the current fold
only and is re-fit every time a FeatureTransform is fit.

Standardization parameters are likewise computed from training rows only.
Binary indicators are never standardized (mean 0, std 1).
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np
import pandas as pd

from src.calibration.metrics import regression_slope

logger = logging.getLogger(__name__)

STD_EPS = 1e-10

PRIMARY_COVARIATE = "rating_diff"
BLEND_COVARIATE = "mftr_rating_diff"
HFA_COVARIATE = "hfa_points"

EXTENDED_COVARIATES = [
    # (covariate, residualize against primary)
    ("off_adj_sr_diff", True),
    ("def_adj_sr_diff", True),
    ("off_adj_explosiveness_diff", False),
    ("def_adj_explosiveness_diff", False),
    ("off_adj_ppa_diff", True),
    ("def_adj_ppa_diff", True),
    ("off_adj_epa_diff", True),
    ("def_adj_epa_diff", True),
    ("havoc_front7_diff", False),
    ("havoc_db_diff", False),
    ("edge_sr_diff", True),
    ("ewma3_off_adj_epa_diff", True),
    ("ewma5_off_adj_epa_diff", True),
    ("talent_247_diff", True),
    ("returning_prod_off_diff", False),
    ("returning_prod_def_diff", False),
]


class TransformKind(Enum):
    """How a feature is derived from its source covariate(s)."""
    IDENTITY = "identity"
    ABS = "abs"  # |signal|
    HINGE = "hinge"  # max(|signal| - threshold, 0)
    BLEND = "blend"  # w * a + (1 - w) * b


@dataclass(frozen=True)
class FeatureSpec:
    """Descriptor for one design column.

    With two sources the signal is the blend w * a + (1 - w) * b; ABS and
    HINGE are then applied to the blended signal.
    """
    name: str
    sources: tuple[str, ...]
    kind: TransformKind = TransformKind.IDENTITY
    threshold: float = 0.0
    blend_weight: float = 1.0
    residualize: bool = False
    standardize: bool = True


@dataclass(frozen=True)
class FeatureSet:
    """Ordered feature specs plus the names the gates care about."""
    name: str  # "core" or "extended"
    specs: tuple[FeatureSpec, ...]
    primary: str  # feature whose coefficient must stay positive
    secondary: Optional[str] = HFA_COVARIATE  # home-field style feature

    @property
    def feature_names(self) -> list[str]:
        return [s.name for s in self.specs]

    def spec(self, name: str) -> FeatureSpec:
        for s in self.specs:
            if s.name == name:
                return s
        raise KeyError(name)


def _rating_sources(blend_weight: Optional[float]) -> tuple[tuple[str, ...], float]:
    if blend_weight is None:
        return (PRIMARY_COVARIATE,), 1.0
    return (PRIMARY_COVARIATE, BLEND_COVARIATE), blend_weight


def core_feature_specs(
    include_hinge14: bool = False,
    blend_weight: Optional[float] = None,
) -> list[FeatureSpec]:
    """Core specs: rating signal, HFA, indicators, monotone curvature terms."""
    sources, w = _rating_sources(blend_weight)
    if blend_weight is None:
        primary = FeatureSpec(PRIMARY_COVARIATE, sources)
    else:
        primary = FeatureSpec("rating_blend", sources, TransformKind.BLEND, blend_weight=w)

    specs = [
        primary,
        FeatureSpec(HFA_COVARIATE, (HFA_COVARIATE,)),
        FeatureSpec("neutral_site", ("neutral_site",), standardize=False),
        FeatureSpec("p5_vs_g5", ("p5_vs_g5",), standardize=False),
        FeatureSpec("abs_rating_diff", sources, TransformKind.ABS, blend_weight=w),
        FeatureSpec("hinge7", sources, TransformKind.HINGE, threshold=7.0, blend_weight=w),
    ]
    if include_hinge14:
        specs.append(
            FeatureSpec("hinge14", sources, TransformKind.HINGE, threshold=14.0, blend_weight=w)
        )
    return specs


def extended_feature_specs(
    include_hinge14: bool = False,
    blend_weight: Optional[float] = None,
) -> list[FeatureSpec]:
    """Core specs followed by the efficiency/havoc/talent differentials."""
    specs = core_feature_specs(include_hinge14, blend_weight)
    for covariate, residualize in EXTENDED_COVARIATES:
        specs.append(FeatureSpec(covariate, (covariate,), residualize=residualize))
    return specs


def make_feature_set(
    fit_type: str,
    include_hinge14: bool = False,
    blend_weight: Optional[float] = None,
) -> FeatureSet:
    """Build the feature set for a fit mode ("core" or "extended")."""
    if fit_type == "core":
        specs = core_feature_specs(include_hinge14, blend_weight)
    elif fit_type == "extended":
        specs = extended_feature_specs(include_hinge14, blend_weight)
    else:
        raise ValueError(f"Unknown fit type: {fit_type}")
    return FeatureSet(name=fit_type, specs=tuple(specs), primary=specs[0].name)


# =============================================================================
# Raw feature evaluation
# =============================================================================

def _covariate(frame: pd.DataFrame, name: str) -> np.ndarray:
    """Covariate column with nulls imputed to the neutral value 0."""
    if name not in frame.columns:
        return np.zeros(len(frame))
    col = frame[name]
    if col.dtype == bool:
        col = col.astype(float)
    return pd.to_numeric(col, errors="coerce").fillna(0.0).to_numpy(dtype=float)


def evaluate_spec(spec: FeatureSpec, frame: pd.DataFrame) -> np.ndarray:
    """Evaluate one spec on raw rows (imputed, transformed, not standardized)."""
    if len(spec.sources) == 2:
        a = _covariate(frame, spec.sources[0])
        b = _covariate(frame, spec.sources[1])
        signal = spec.blend_weight * a + (1.0 - spec.blend_weight) * b
    elif len(spec.sources) == 1:
        if spec.kind == TransformKind.BLEND:
            raise ValueError(f"Blend feature '{spec.name}' needs two sources")
        signal = _covariate(frame, spec.sources[0])
    else:
        raise ValueError(f"Feature '{spec.name}' has {len(spec.sources)} sources")

    if spec.kind in (TransformKind.IDENTITY, TransformKind.BLEND):
        return signal
    if spec.kind == TransformKind.ABS:
        return np.abs(signal)
    if spec.kind == TransformKind.HINGE:
        return np.maximum(np.abs(signal) - spec.threshold, 0.0)
    raise ValueError(f"Unsupported transform: {spec.kind}")


@dataclass(frozen=True)
class ScalerParams:
    mean: float
    std: float


@dataclass(frozen=True)
class ResidualLine:
    """feature ~ intercept + slope * primary, fit on training rows."""
    intercept: float
    slope: float


def fit_residual_line(feature: np.ndarray, primary: np.ndarray) -> ResidualLine:
    """OLS line of feature on primary (population moments).

    A constant primary gives slope 0, so the line is just the feature mean.
    """
    slope = regression_slope(feature, primary)
    return ResidualLine(intercept=float(feature.mean()) - slope * float(primary.mean()), slope=slope)


# =============================================================================
# Fitted transform
# =============================================================================

@dataclass(frozen=True)
class FeatureTransform:
    """Training-fold feature statistics, applied identically to any rows."""
    feature_set: FeatureSet
    scalers: dict[str, ScalerParams] = field(default_factory=dict)
    residual_lines: dict[str, ResidualLine] = field(default_factory=dict)

    @property
    def feature_names(self) -> list[str]:
        return self.feature_set.feature_names

    def raw_matrix(self, frame: pd.DataFrame) -> np.ndarray:
        """Imputed, transformed and residualized values, not standardized."""
        values = {spec.name: evaluate_spec(spec, frame) for spec in self.feature_set.specs}
        primary = values[self.feature_set.primary]
        for name, line in self.residual_lines.items():
            values[name] = values[name] - (line.intercept + line.slope * primary)
        if not values:
            return np.zeros((len(frame), 0))
        return np.column_stack([values[name] for name in self.feature_names])

    def standardize(self, raw: np.ndarray) -> np.ndarray:
        X = np.empty_like(raw, dtype=float)
        for j, name in enumerate(self.feature_names):
            params = self.scalers[name]
            if params.std > STD_EPS:
                X[:, j] = (raw[:, j] - params.mean) / params.std
            else:
                X[:, j] = 0.0
        return X

    def transform(self, frame: pd.DataFrame) -> np.ndarray:
        """Standardized design matrix for frame (no intercept column)."""
        return self.standardize(self.raw_matrix(frame))

    def destandardize(
        self,
        coefficients: np.ndarray,
        intercept: float,
    ) -> tuple[np.ndarray, float]:
        """Map standardized-space coefficients to raw-feature space.

        raw_matrix(rows) @ raw_coefs + raw_intercept reproduces
        transform(rows) @ coefficients + intercept.
        """
        raw_coefs = np.zeros(len(coefficients))
        raw_intercept = float(intercept)
        for j, name in enumerate(self.feature_names):
            params = self.scalers[name]
            if params.std > STD_EPS:
                raw_coefs[j] = coefficients[j] / params.std
                raw_intercept -= raw_coefs[j] * params.mean
        return raw_coefs, raw_intercept

    def to_dict(self) -> dict:
        return {
            "feature_set": self.feature_set.name,
            "feature_names": self.feature_names,
            "scalers": {k: {"mean": v.mean, "std": v.std} for k, v in self.scalers.items()},
            "residual_lines": {
                k: {"intercept": v.intercept, "slope": v.slope}
                for k, v in self.residual_lines.items()
            },
        }


class FeatureBuilder:
    """Fits FeatureTransforms for a feature set on training rows."""

    def __init__(self, feature_set: FeatureSet):
        self.feature_set = feature_set

    def fit(self, frame: pd.DataFrame) -> FeatureTransform:
        """Compute residualization lines and scaler params from frame.

        Args:
            frame: Training rows only

        Returns:
            FeatureTransform
        """
        specs = self.feature_set.specs
        values = {spec.name: evaluate_spec(spec, frame) for spec in specs}
        primary = values[self.feature_set.primary]

        residual_lines = {}
        for spec in specs:
            if spec.residualize and spec.name != self.feature_set.primary:
                line = fit_residual_line(values[spec.name], primary)
                residual_lines[spec.name] = line
                values[spec.name] = values[spec.name] - (line.intercept + line.slope * primary)

        scalers = {}
        for spec in specs:
            if not spec.standardize:
                scalers[spec.name] = ScalerParams(mean=0.0, std=1.0)
                continue
            col = values[spec.name]
            mean = float(col.mean()) if len(col) else 0.0
            std = float(col.std()) if len(col) else 0.0
            if std <= STD_EPS:
                logger.debug(f"Feature {spec.name} has zero variance in training rows")
            scalers[spec.name] = ScalerParams(mean=mean, std=std)

        return FeatureTransform(
            feature_set=self.feature_set,
            scalers=scalers,
            residual_lines=residual_lines,
        )
