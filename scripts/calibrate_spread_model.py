#!/usr/bin/env python3
"""Calibrate the spread model for one season / feature version.

Reads historical matchup rows from CSV, fits the core and extended tracks,
checks the acceptance gates, saves accepted artifacts and writes reports.

Usage:
    python3 scripts/calibrate_spread_model.py --input data/rows_2025.csv --season 2025

Input columns:
    row_id, period, response, weight (optional), partition (optional),
    rating_diff, hfa_points, neutral_site, p5_vs_g5, ... covariates

Exit codes:
    0  run completed (gate failures are reported, not fatal)
    1  fatal data error (insufficient rows, sign violation, singular system)
"""

import argparse
import logging
import sys
from pathlib import Path

import pandas as pd

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config.settings import get_settings
from src.calibration.artifacts import ArtifactStore
from src.calibration.exceptions import (
    CoefficientSignViolation,
    InsufficientDataError,
    SingularMatrixError,
)
from src.calibration.gates import GatePolicy
from src.calibration.orchestrator import CalibrationConfig, run_calibration

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

HINGE14_CHOICES = {"auto": None, "on": True, "off": False}


def parse_args(argv=None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Calibrate the spread model")
    parser.add_argument("--input", type=str, required=True, help="CSV of observation rows")
    parser.add_argument("--season", type=int, required=True, help="Season being calibrated")
    parser.add_argument(
        "--feature-version", type=str, default="v1",
        help="Feature version label (default: v1)"
    )
    parser.add_argument(
        "--grid", choices=["coarse", "fine"], default=settings.grid,
        help=f"Hyperparameter grid (default: {settings.grid})"
    )
    parser.add_argument(
        "--sets", type=str, default=",".join(settings.set_labels),
        help="Comma-separated partition labels to include (default: A,B)"
    )
    parser.add_argument(
        "--folds", type=int, default=settings.n_folds,
        help=f"Number of week-grouped CV folds (default: {settings.n_folds})"
    )
    parser.add_argument(
        "--hinge14", choices=sorted(HINGE14_CHOICES), default="auto",
        help="Include the 14-point hinge term; auto tries both (default: auto)"
    )
    parser.add_argument(
        "--gate-mode", choices=["relative", "absolute"], default=settings.gate_mode,
        help=f"Gate thresholds vs baselines or fixed (default: {settings.gate_mode})"
    )
    parser.add_argument("--skip-extended", action="store_true", help="Fit the core track only")
    parser.add_argument(
        "--output-dir", type=str, default=str(settings.output_dir),
        help=f"Report directory (default: {settings.output_dir})"
    )
    parser.add_argument(
        "--artifact-dir", type=str, default=str(settings.artifact_dir),
        help=f"Artifact directory (default: {settings.artifact_dir})"
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    errors = settings.validate()
    if errors:
        for error in errors:
            logger.error(error)
        return 1
    if args.folds < 2:
        logger.error(f"--folds must be >= 2, got {args.folds}")
        return 1

    config = CalibrationConfig(
        season=args.season,
        feature_version=args.feature_version,
        grid=args.grid,
        set_labels=tuple(s.strip() for s in args.sets.split(",") if s.strip()),
        n_folds=args.folds,
        hinge14=HINGE14_CHOICES[args.hinge14],
        skip_extended=args.skip_extended,
        min_rows=settings.min_rows,
        extended_max_abs_response=settings.extended_max_abs_response,
        core_policy=GatePolicy.for_track("core", mode=args.gate_mode),
        extended_policy=GatePolicy.for_track("extended", mode=args.gate_mode),
    )

    logger.info(f"Loading rows from {args.input}")
    frame = pd.read_csv(args.input)

    try:
        run = run_calibration(
            frame,
            config,
            store=ArtifactStore(args.artifact_dir),
            report_dir=Path(args.output_dir),
        )
    except (InsufficientDataError, CoefficientSignViolation, SingularMatrixError) as e:
        logger.error(f"Calibration aborted: {e}")
        return 1

    print("\n" + "=" * 60)
    print(f"SPREAD MODEL CALIBRATION - season {args.season} ({args.feature_version})")
    print("=" * 60)
    for result in (run.core, run.extended):
        if result is None:
            continue
        status = "PASS" if result.gates.all_passed else "GATE FAILURE"
        print(
            f"{result.track:<10} {status:<14} RMSE={result.rmse:.4f} "
            f"alpha={result.model.alpha:g} l1_ratio={result.model.l1_ratio:g}"
        )
        if not result.gates.all_passed:
            print(f"{'':<10} failed: {', '.join(result.gates.failed_checks)}")
    for path in run.persisted_paths:
        print(f"Saved: {path}")
    print(f"Reports: {args.output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
