"""Calibration run: core fit, extended fit, gates, persistence, reports.

Sequence for one (season, feature_version):

1. Filter rows to the requested partitions with a usable response and run
   target / raw-signal sanity checks.
2. Core track. For each variant (weighted / unweighted x hinge14 options):
   grid search -> final fit -> walk-forward -> baselines -> calibration
   head -> gates. Passing variants win (unweighted first, then lowest
   walk-forward RMSE); if none pass, the lowest RMSE variant is reported.
3. A non-positive primary rating coefficient on the selected core model is
   fatal: nothing is persisted and the extended track is skipped.
4. Extended track on rows with |response| <= the trim, same steps.
5. Each track is persisted only if all its gates passed. Reports are
   written for every track that was fitted.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from src.calibration.artifacts import (
    ArtifactStore,
    CalibrationArtifact,
    compute_frame_hash,
    generate_artifact_id,
    get_git_commit_hash,
)
from src.calibration.baselines import Baselines, compute_baselines
from src.calibration.calibration_head import CalibrationHead, fit_calibration_head, head_allowed
from src.calibration.cross_validation import (
    DEFAULT_TIE_TOLERANCE,
    GridSearchResult,
    get_grid,
    grid_search,
)
from src.calibration.data import (
    filter_observations,
    normalize_observations,
    raw_signal_check,
    require_min_rows,
    summarize_target,
)
from src.calibration.elastic_net import DEFAULT_MAX_ITER, DEFAULT_TOL, ElasticNetResult
from src.calibration.exceptions import CoefficientSignViolation, SingularMatrixError
from src.calibration.features import PRIMARY_COVARIATE, make_feature_set
from src.calibration.gates import GatePolicy, GateResult, check_gates
from src.calibration.metrics import std_ratio
from src.calibration.model import FittedModel, SolverSettings, fit_model, sample_weights
from src.calibration.reports import CalibrationReporter
from src.calibration.walk_forward import WalkForwardResult, walk_forward_elastic_net

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalibrationConfig:
    """Run policy. Passed explicitly; never read from the environment here."""
    season: int = 0
    feature_version: str = "v1"
    grid: str = "coarse"
    set_labels: tuple[str, ...] = ("A", "B")
    n_folds: int = 5
    hinge14: Optional[bool] = None  # None = try with and without
    weight_variants: tuple[bool, ...] = (True, False)
    skip_extended: bool = False
    min_rows: int = 100
    extended_max_abs_response: float = 35.0
    blend_weight: Optional[float] = None  # weight on rating_diff vs mftr_rating_diff
    max_iter: int = DEFAULT_MAX_ITER
    tol: float = DEFAULT_TOL
    tie_tolerance: float = DEFAULT_TIE_TOLERANCE
    core_policy: GatePolicy = field(default_factory=lambda: GatePolicy.for_track("core"))
    extended_policy: GatePolicy = field(default_factory=lambda: GatePolicy.for_track("extended"))

    @property
    def solver(self) -> SolverSettings:
        return SolverSettings(max_iter=self.max_iter, tol=self.tol)

    @property
    def hinge14_options(self) -> tuple[bool, ...]:
        return (False, True) if self.hinge14 is None else (self.hinge14,)

    def policy(self, track: str) -> GatePolicy:
        return self.core_policy if track == "core" else self.extended_policy


@dataclass(frozen=True)
class TrackResult:
    """Everything produced for one track's selected variant."""
    track: str
    variant: dict  # {"use_weights": bool, "include_hinge14": bool}
    frame: pd.DataFrame  # rows the track was fitted on
    grid: GridSearchResult
    model: FittedModel
    train_fit: ElasticNetResult
    walk_forward: WalkForwardResult
    baselines: Baselines
    head: Optional[CalibrationHead]
    head_applied: bool
    predictions: np.ndarray  # gated predictions; NaN where not predicted
    gates: GateResult
    variants: list[dict] = field(default_factory=list)  # summary of every variant tried
    artifact: Optional[CalibrationArtifact] = None
    persisted_path: Optional[Path] = None

    @property
    def rmse(self) -> float:
        return self.gates.statistics.rmse

    def summary(self) -> dict:
        return {
            **self.variant,
            "alpha": self.model.alpha,
            "l1_ratio": self.model.l1_ratio,
            "rmse": self.rmse,
            "passed": self.gates.all_passed,
        }


@dataclass
class CalibrationRunResult:
    core: TrackResult
    extended: Optional[TrackResult] = None
    persisted_paths: list[Path] = field(default_factory=list)
    report_paths: dict[str, dict[str, Path]] = field(default_factory=dict)


def fit_variant(
    frame: pd.DataFrame,
    track: str,
    use_weights: bool,
    include_hinge14: bool,
    config: CalibrationConfig,
) -> TrackResult:
    """Grid search, final fit, walk-forward, baselines, head and gates for one variant."""
    feature_set = make_feature_set(track, include_hinge14, config.blend_weight)
    alphas, l1_ratios = get_grid(config.grid)
    label = f"{track} (weighted={use_weights}, hinge14={include_hinge14})"
    logger.info(f"Fitting {label}: {len(feature_set.feature_names)} features")

    grid = grid_search(
        frame, feature_set, alphas, l1_ratios,
        n_folds=config.n_folds,
        use_weights=use_weights,
        solver=config.solver,
        tie_tolerance=config.tie_tolerance,
    )
    model, train_fit = fit_model(
        frame, feature_set, grid.alpha, grid.l1_ratio, use_weights, config.solver
    )
    if not train_fit.converged:
        logger.warning(f"{label}: final fit hit the iteration cap ({train_fit.n_iter})")

    wf = walk_forward_elastic_net(
        frame, feature_set, grid.alpha, grid.l1_ratio, use_weights, config.solver
    )
    mask = wf.predicted_mask
    baselines = compute_baselines(frame, feature_set, mask, use_weights)

    y = frame["response"].to_numpy(dtype=float)
    w = sample_weights(frame, use_weights)
    raw = wf.predictions

    head = None
    head_applied = False
    if mask.any():
        variance_ratio = std_ratio(raw[mask], y[mask])
        head = fit_calibration_head(y[mask], raw[mask], w[mask])
        head_applied = head_allowed(variance_ratio, track)
        if not head_applied:
            logger.info(
                f"{label}: variance ratio {variance_ratio:.3f} outside the head window, "
                "using raw predictions"
            )
    predictions = head.apply(raw) if head_applied else raw

    gates = check_gates(y, predictions, w, model, baselines, config.policy(track), raw)

    return TrackResult(
        track=track,
        variant={"use_weights": use_weights, "include_hinge14": include_hinge14},
        frame=frame,
        grid=grid,
        model=model,
        train_fit=train_fit,
        walk_forward=wf,
        baselines=baselines,
        head=head,
        head_applied=head_applied,
        predictions=predictions,
        gates=gates,
    )


def select_variant(results: list[TrackResult]) -> TrackResult:
    """Passing variants first (unweighted preferred, then lowest RMSE), else lowest RMSE."""
    passing = [r for r in results if r.gates.all_passed]
    if passing:
        return min(passing, key=lambda r: (r.variant["use_weights"], r.rmse))
    return min(results, key=lambda r: r.rmse)


def calibrate_track(frame: pd.DataFrame, track: str, config: CalibrationConfig) -> TrackResult:
    """Fit every configured variant for a track and return the selected one.

    A variant whose fit hits a singular system is skipped; if every variant
    does, the last SingularMatrixError is raised.
    """
    results = []
    last_error = None
    for use_weights in config.weight_variants:
        for include_hinge14 in config.hinge14_options:
            try:
                results.append(fit_variant(frame, track, use_weights, include_hinge14, config))
            except SingularMatrixError as e:
                logger.warning(
                    f"{track} (weighted={use_weights}, hinge14={include_hinge14}) skipped: {e}"
                )
                last_error = e
    if not results:
        raise last_error or ValueError("No variants configured")

    selected = select_variant(results)
    summaries = [r.summary() for r in results]
    logger.info(
        f"Selected {track} variant {selected.variant}: alpha={selected.model.alpha}, "
        f"l1_ratio={selected.model.l1_ratio}, RMSE={selected.rmse:.4f}, "
        f"gates={'PASS' if selected.gates.all_passed else 'FAIL'}"
    )
    return replace(selected, variants=summaries)


def build_artifact(
    result: TrackResult,
    config: CalibrationConfig,
    data_hash: str,
    git_commit: Optional[str],
) -> CalibrationArtifact:
    return CalibrationArtifact(
        artifact_id=generate_artifact_id(result.track, config.season, config.feature_version),
        created_at=datetime.now().isoformat(),
        track=result.track,
        season=config.season,
        feature_version=config.feature_version,
        data_hash=data_hash,
        git_commit=git_commit,
        variant=result.variant,
        hyperparameters={
            "alpha": result.model.alpha,
            "l1_ratio": result.model.l1_ratio,
            "cv_rmse": result.grid.cv_rmse,
            "grid": config.grid,
            "n_folds": result.grid.n_folds,
        },
        coefficients=result.model.coefficient_table(),
        transform=result.model.transform.to_dict(),
        head=result.head.to_dict() if result.head_applied else None,
        gates_passed=result.gates.all_passed,
        failed_checks=result.gates.failed_checks,
        gate_diagnostics=result.gates.to_dict(),
    )


def persist_track(
    result: TrackResult,
    config: CalibrationConfig,
    store: Optional[ArtifactStore],
    data_hash: str,
) -> TrackResult:
    """Attach an artifact and save it if (and only if) the gates passed."""
    artifact = build_artifact(result, config, data_hash, get_git_commit_hash())
    if not result.gates.all_passed:
        logger.warning(
            f"GATE FAILURE ({result.track}): not persisted; failed checks: "
            f"{', '.join(result.gates.failed_checks)}"
        )
        return replace(result, artifact=artifact)
    if store is None:
        logger.info(f"{result.track} passed all gates; no artifact store configured")
        return replace(result, artifact=artifact)

    path = store.save(artifact)
    return replace(result, artifact=artifact, persisted_path=path)


def check_primary_sign(result: TrackResult) -> None:
    primary = result.model.transform.feature_set.primary
    coefficient = result.model.coefficient(primary)
    if coefficient <= 0:
        logger.error(
            f"{result.track}: coefficient on {primary} is {coefficient:.6f}; "
            "aborting without persisting"
        )
        raise CoefficientSignViolation(primary, coefficient)


def run_calibration(
    frame: pd.DataFrame,
    config: CalibrationConfig,
    store: Optional[ArtifactStore] = None,
    report_dir: Optional[Path] = None,
) -> CalibrationRunResult:
    """Run the full calibration for one season / feature version.

    Args:
        frame: Observation rows (see src.calibration.data)
        config: Run policy
        store: Where accepted artifacts are saved; None to skip saving
        report_dir: Where reports are written; None to skip reports

    Returns:
        CalibrationRunResult

    Raises:
        InsufficientDataError: Too few rows after filtering
        CoefficientSignViolation: Core primary coefficient not positive
        SingularMatrixError: Every variant of a track hit a singular system
    """
    frame = normalize_observations(frame)
    rows = filter_observations(frame, config.set_labels)
    require_min_rows(rows, config.min_rows, "core")

    for label in config.set_labels:
        summarize_target(rows[rows["partition"] == label], f"set {label}")
    summarize_target(rows, "all")
    raw_signal_check(rows, PRIMARY_COVARIATE)

    data_hash = compute_frame_hash(rows)

    core = calibrate_track(rows, "core", config)
    check_primary_sign(core)
    core = persist_track(core, config, store, data_hash)
    run = CalibrationRunResult(core=core)

    if config.skip_extended:
        logger.info("Skipping extended track")
    else:
        extended_rows = filter_observations(
            frame, config.set_labels, max_abs_response=config.extended_max_abs_response
        )
        require_min_rows(extended_rows, config.min_rows, "extended")
        extended = calibrate_track(extended_rows, "extended", config)
        run.extended = persist_track(extended, config, store, compute_frame_hash(extended_rows))

    for result in (run.core, run.extended):
        if result is not None and result.persisted_path is not None:
            run.persisted_paths.append(result.persisted_path)

    if report_dir is not None:
        reporter = CalibrationReporter(report_dir, config.season, config.feature_version)
        for result in (run.core, run.extended):
            if result is not None:
                run.report_paths[result.track] = reporter.generate(result)

    logger.info(
        f"Calibration complete: core={'PASS' if run.core.gates.all_passed else 'FAIL'}"
        + (
            f", extended={'PASS' if run.extended.gates.all_passed else 'FAIL'}"
            if run.extended is not None else ""
        )
        + f", {len(run.persisted_paths)} artifacts saved"
    )
    return run
