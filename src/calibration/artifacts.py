"""Persistence of accepted spread model calibrations.

Only artifacts whose gates all passed may be written. A failing artifact is
still built (the reports use it) but ArtifactStore.save refuses it.

Artifacts are immutable once saved: each is identified by a unique
artifact_id and saving over an existing id is an error.
"""

import hashlib
import json
import logging
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from src.calibration.exceptions import GateFailure

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_DIR = "data/calibration/artifacts"


def compute_frame_hash(frame: pd.DataFrame) -> str:
    """MD5 of the observation rows, for tying an artifact to its data."""
    hasher = hashlib.md5()
    hasher.update(",".join(map(str, frame.columns)).encode())
    hasher.update(pd.util.hash_pandas_object(frame, index=False).to_numpy().tobytes())
    return hasher.hexdigest()


def get_git_commit_hash() -> Optional[str]:
    """Get current git commit hash if in a git repository."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode == 0:
        return result.stdout.strip()[:12]  # Short hash
    return None


def generate_artifact_id(track: str, season: int, feature_version: str) -> str:
    """Generate unique artifact ID."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"cal_{track}_{season}_{feature_version}_{timestamp}"


def to_python_type(val):
    """Convert numpy types to Python native types for JSON serialization."""
    if isinstance(val, np.integer):
        return int(val)
    if isinstance(val, np.floating):
        return float(val)
    if isinstance(val, np.bool_):
        return bool(val)
    if isinstance(val, np.ndarray):
        return [to_python_type(v) for v in val.tolist()]
    if isinstance(val, dict):
        return {str(k): to_python_type(v) for k, v in val.items()}
    if isinstance(val, (list, tuple)):
        return [to_python_type(v) for v in val]
    if isinstance(val, float) and not np.isfinite(val):
        return None if np.isnan(val) else str(val)
    return val


@dataclass
class CalibrationArtifact:
    """Everything needed to reproduce a track's predictions."""
    # Identification
    artifact_id: str
    created_at: str  # ISO timestamp
    track: str  # "core" or "extended"
    season: int
    feature_version: str

    # Data integrity
    data_hash: str
    git_commit: Optional[str]

    # Model
    variant: dict  # {"use_weights": bool, "include_hinge14": bool}
    hyperparameters: dict  # {"alpha", "l1_ratio", "cv_rmse", "grid"}
    coefficients: dict  # {feature: {"standardized", "original"}} incl. intercept
    transform: dict  # scalers and residual lines
    head: Optional[dict]

    # Acceptance
    gates_passed: bool
    failed_checks: list[str] = field(default_factory=list)
    gate_diagnostics: dict = field(default_factory=dict)

    description: str = ""

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        return to_python_type({
            "artifact_id": self.artifact_id,
            "created_at": self.created_at,
            "track": self.track,
            "season": self.season,
            "feature_version": self.feature_version,
            "data_hash": self.data_hash,
            "git_commit": self.git_commit,
            "variant": self.variant,
            "hyperparameters": self.hyperparameters,
            "coefficients": self.coefficients,
            "transform": self.transform,
            "head": self.head,
            "gates_passed": self.gates_passed,
            "failed_checks": self.failed_checks,
            "gate_diagnostics": self.gate_diagnostics,
            "description": self.description,
        })

    @classmethod
    def from_dict(cls, data: dict) -> "CalibrationArtifact":
        return cls(
            artifact_id=data["artifact_id"],
            created_at=data["created_at"],
            track=data["track"],
            season=data["season"],
            feature_version=data["feature_version"],
            data_hash=data["data_hash"],
            git_commit=data.get("git_commit"),
            variant=data["variant"],
            hyperparameters=data["hyperparameters"],
            coefficients=data["coefficients"],
            transform=data["transform"],
            head=data.get("head"),
            gates_passed=data["gates_passed"],
            failed_checks=data.get("failed_checks", []),
            gate_diagnostics=data.get("gate_diagnostics", {}),
            description=data.get("description", ""),
        )


class ArtifactStore:
    """Storage and retrieval of accepted calibration artifacts."""

    def __init__(self, artifact_dir: str | Path = DEFAULT_ARTIFACT_DIR):
        self.artifact_dir = Path(artifact_dir)
        self.artifact_dir.mkdir(parents=True, exist_ok=True)

    def _artifact_path(self, artifact_id: str) -> Path:
        return self.artifact_dir / f"{artifact_id}.json"

    def save(self, artifact: CalibrationArtifact) -> Path:
        """Save an accepted artifact to JSON.

        Raises:
            GateFailure: If the artifact did not pass its gates
            FileExistsError: If an artifact with the same id exists
        """
        if not artifact.gates_passed:
            raise GateFailure(artifact.failed_checks)

        path = self._artifact_path(artifact.artifact_id)
        if path.exists():
            raise FileExistsError(
                f"Artifact already exists: {path}. "
                "Artifacts are immutable - create a new one instead."
            )

        with open(path, "w") as f:
            json.dump(artifact.to_dict(), f, indent=2)

        logger.info(f"Saved calibration artifact: {path}")
        return path

    def load(self, artifact_id: str) -> CalibrationArtifact:
        path = self._artifact_path(artifact_id)
        if not path.exists():
            raise FileNotFoundError(f"Artifact not found: {path}")

        with open(path) as f:
            data = json.load(f)

        artifact = CalibrationArtifact.from_dict(data)
        logger.info(f"Loaded calibration artifact: {artifact_id}")
        return artifact

    def list_artifacts(self, track: Optional[str] = None) -> list[str]:
        """List artifact IDs in descending id order."""
        pattern = f"cal_{track}_*.json" if track else "cal_*.json"
        files = sorted(self.artifact_dir.glob(pattern), reverse=True)
        return [f.stem for f in files]

    def load_latest(self, track: str = "core") -> Optional[CalibrationArtifact]:
        """Load the most recent artifact for a track, or None."""
        ids = self.list_artifacts(track)
        if not ids:
            return None
        return self.load(ids[0])
