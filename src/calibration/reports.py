"""Per-track calibration reports.

Files written for each track (core / extended):
    cal_fit_<track>.json             full fit report
    residuals_<track>.csv            residual bucket summary
    top_outliers_<track>.csv         largest absolute residuals
    feature_importance_<track>.csv   ranked by |standardized coefficient|
    MODEL_CARD_<TRACK>.md            human-readable summary
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import numpy as np
import pandas as pd
from jinja2 import Template

from src.calibration.artifacts import to_python_type
from src.calibration.gates import residual_buckets
from src.calibration.metrics import weighted_mean
from src.calibration.model import sample_weights

if TYPE_CHECKING:
    from src.calibration.orchestrator import TrackResult

logger = logging.getLogger(__name__)

N_TOP_OUTLIERS = 20

MODEL_CARD_TEMPLATE = """# Spread Model Card: {{ track|upper }}

Generated {{ generated }} | season {{ season }} | feature version `{{ feature_version }}`

## Status

{% if passed -%}
**ACCEPTED** - all {{ n_checks }} gates passed{% if persisted_path %}; saved to `{{ persisted_path }}`{% endif %}.
{%- else -%}
**GATE FAILURE** - not persisted. Failed: {{ failed_checks|join(", ") }}.
{%- endif %}

## Model

| Setting | Value |
|---|---|
| Rows | {{ n_rows }} |
| Weighted | {{ use_weights }} |
| hinge14 | {{ include_hinge14 }} |
| alpha | {{ "%.4g"|format(alpha) }} |
| l1_ratio | {{ "%.2f"|format(l1_ratio) }} |
| CV RMSE ({{ n_folds }} folds) | {{ "%.4f"|format(cv_rmse) }} |
| Converged | {{ converged }} ({{ n_iter }} iterations) |
| Calibration head | {% if head %}{{ "%+.4f"|format(head.intercept) }} + {{ "%.4f"|format(head.slope) }} x raw{% else %}not applied{% endif %} |

## Coefficients

| Feature | Standardized | Original |
|---|---:|---:|
{% for row in coefficients -%}
| {{ row.feature }} | {{ "%.4f"|format(row.standardized) }} | {{ "%.4f"|format(row.original) }} |
{% endfor %}
## Walk-forward performance

| Metric | Model | WLS core | Zero |
|---|---:|---:|---:|
| RMSE | {{ "%.4f"|format(metrics.rmse) }} | {{ "%.4f"|format(wls.rmse) }} | {{ "%.4f"|format(zero.rmse) }} |
| MAE | {{ "%.4f"|format(metrics.mae) }} | {{ "%.4f"|format(wls.mae) }} | {{ "%.4f"|format(zero.mae) }} |
| Pearson | {{ "%.4f"|format(metrics.pearson) }} | {{ "%.4f"|format(wls.pearson) }} | {{ "%.4f"|format(zero.pearson) }} |
| Spearman | {{ "%.4f"|format(metrics.spearman) }} | {{ "%.4f"|format(wls.spearman) }} | {{ "%.4f"|format(zero.spearman) }} |
| Sign agreement % | {{ "%.1f"|format(metrics.sign_agreement) }} | {{ "%.1f"|format(wls.sign_agreement) }} | {{ "%.1f"|format(zero.sign_agreement) }} |

## Gates ({{ gate_mode }})

| Check | Value | Threshold | Result |
|---|---:|---|---|
{% for check in checks -%}
| {{ check.name }} | {{ "%.4f"|format(check.value) }} | {{ check.threshold }} | {{ "PASS" if check.passed else "FAIL" }} |
{% endfor %}
{%- if head %}

The calibration head is fit by weighted OLS on the same walk-forward rows and weights the slope gate measures, so the slope check is 1.0 by construction and is not independent evidence of calibration.
{% endif %}
{%- if variants %}
## Variants tried

| Weighted | hinge14 | alpha | l1_ratio | WF RMSE | Gates |
|---|---|---:|---:|---:|---|
{% for v in variants -%}
| {{ v.use_weights }} | {{ v.include_hinge14 }} | {{ "%.4g"|format(v.alpha) }} | {{ "%.2f"|format(v.l1_ratio) }} | {{ "%.4f"|format(v.rmse) }} | {{ "PASS" if v.passed else "FAIL" }} |
{% endfor %}
{%- endif %}
"""


def residual_table(y: np.ndarray, predictions: np.ndarray, w: Optional[np.ndarray] = None) -> pd.DataFrame:
    """Bucket summary of weighted signed residuals on predicted rows, plus a global row."""
    w = np.ones(len(y)) if w is None else np.asarray(w, dtype=float)
    mask = np.isfinite(predictions)
    y, pred, w = y[mask], predictions[mask], w[mask]
    rows = [
        {"bucket": b.label, "count": b.count, "mean_residual": b.mean_residual}
        for b in residual_buckets(y, pred, w)
    ]
    residuals = y - pred
    rows.append({
        "bucket": "all",
        "count": int(len(residuals)),
        "mean_residual": weighted_mean(residuals, w),
    })
    return pd.DataFrame(rows, columns=["bucket", "count", "mean_residual"])


def top_outliers(frame: pd.DataFrame, predictions: np.ndarray, n: int = N_TOP_OUTLIERS) -> pd.DataFrame:
    """The n rows with the largest absolute residual."""
    df = pd.DataFrame({
        "row_id": frame["row_id"].to_numpy(),
        "period": frame["period"].to_numpy(),
        "actual": frame["response"].to_numpy(dtype=float),
        "predicted": predictions,
    })
    df = df[np.isfinite(df["predicted"])]
    df["residual"] = df["actual"] - df["predicted"]
    df["abs_residual"] = df["residual"].abs()
    df = df.sort_values("abs_residual", ascending=False, kind="mergesort").head(n)
    df.insert(0, "rank", np.arange(1, len(df) + 1))
    return df.reset_index(drop=True)


def feature_importance(coefficients: dict[str, dict[str, float]]) -> pd.DataFrame:
    """Features ranked by absolute standardized coefficient."""
    rows = [
        {
            "feature": name,
            "standardized_coeff": values["standardized"],
            "original_coeff": values["original"],
            "abs_standardized": abs(values["standardized"]),
        }
        for name, values in coefficients.items()
        if name != "intercept"
    ]
    df = pd.DataFrame(rows, columns=["feature", "standardized_coeff", "original_coeff", "abs_standardized"])
    return df.sort_values("abs_standardized", ascending=False, kind="mergesort").reset_index(drop=True)


def fit_report(result: "TrackResult") -> dict:
    """JSON-ready fit report for one track."""
    return to_python_type({
        "track": result.track,
        "variant": result.variant,
        "n_rows": len(result.frame),
        "hyperparameters": {
            "alpha": result.model.alpha,
            "l1_ratio": result.model.l1_ratio,
        },
        "grid_search": result.grid.to_dict(),
        "coefficients": result.model.coefficient_table(),
        "transform": result.model.transform.to_dict(),
        "convergence": {
            "final_fit": {
                "converged": result.train_fit.converged,
                "n_iter": result.train_fit.n_iter,
                "max_change": result.train_fit.max_change,
            },
            "walk_forward": [
                {"period": f["period"], "converged": f.get("converged", True)}
                for f in result.walk_forward.fold_summaries
            ],
        },
        "train_metrics": result.train_fit.stats.to_dict(),
        "walk_forward": result.walk_forward.to_dict(),
        "baselines": result.baselines.to_dict(),
        "head": result.head.to_dict() if result.head else None,
        "head_applied": result.head_applied,
        # the head is fit on the rows and weights the slope gate measures
        "slope_gate_by_construction": result.head_applied,
        "gates": result.gates.to_dict(),
        "variants": result.variants,
        "persisted_path": str(result.persisted_path) if result.persisted_path else None,
    })


class CalibrationReporter:
    """Write the per-track report files."""

    def __init__(self, output_dir: Path, season: int, feature_version: str):
        self.output_dir = Path(output_dir)
        self.season = season
        self.feature_version = feature_version
        self.template = Template(MODEL_CARD_TEMPLATE)

    def render_model_card(self, result: "TrackResult") -> str:
        coefficients = [
            {"feature": name, **values}
            for name, values in result.model.coefficient_table().items()
        ]
        return self.template.render(
            track=result.track,
            generated=datetime.now().strftime("%Y-%m-%d %H:%M"),
            season=self.season,
            feature_version=self.feature_version,
            passed=result.gates.all_passed,
            n_checks=len(result.gates.checks),
            failed_checks=result.gates.failed_checks,
            persisted_path=result.persisted_path,
            n_rows=len(result.frame),
            use_weights=result.variant["use_weights"],
            include_hinge14=result.variant["include_hinge14"],
            alpha=result.model.alpha,
            l1_ratio=result.model.l1_ratio,
            cv_rmse=result.grid.cv_rmse,
            n_folds=result.grid.n_folds,
            converged=result.train_fit.converged,
            n_iter=result.train_fit.n_iter,
            head=result.head if result.head_applied else None,
            coefficients=coefficients,
            metrics=result.gates.statistics,
            wls=result.baselines.wls_core.stats,
            zero=result.baselines.zero.stats,
            gate_mode=result.gates.mode,
            checks=list(result.gates.checks.values()),
            variants=result.variants,
        )

    def generate(self, result: "TrackResult") -> dict[str, Path]:
        """Write every report file for one track.

        Returns:
            Mapping of report kind to written path
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        track = result.track
        y = result.frame["response"].to_numpy(dtype=float)
        paths = {
            "fit": self.output_dir / f"cal_fit_{track}.json",
            "residuals": self.output_dir / f"residuals_{track}.csv",
            "outliers": self.output_dir / f"top_outliers_{track}.csv",
            "importance": self.output_dir / f"feature_importance_{track}.csv",
            "model_card": self.output_dir / f"MODEL_CARD_{track.upper()}.md",
        }

        with open(paths["fit"], "w") as f:
            json.dump(fit_report(result), f, indent=2)
        w = sample_weights(result.frame, result.variant["use_weights"])
        residual_table(y, result.predictions, w).to_csv(paths["residuals"], index=False)
        top_outliers(result.frame, result.predictions).to_csv(paths["outliers"], index=False)
        feature_importance(result.model.coefficient_table()).to_csv(paths["importance"], index=False)
        with open(paths["model_card"], "w") as f:
            f.write(self.render_model_card(result))

        logger.info(f"Wrote {len(paths)} {track} reports to {self.output_dir}")
        return paths
