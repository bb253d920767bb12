"""Application settings and configuration."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

VALID_GRIDS = ("coarse", "fine")


@dataclass
class Settings:
    """Application configuration settings.

    Read once at the script edge and turned into a CalibrationConfig; the
    engine itself never reads the environment.
    """

    # Output locations
    output_dir: Path = field(
        default_factory=lambda: Path(os.getenv("CALIBRATION_OUTPUT_DIR", "reports/calibration"))
    )
    artifact_dir: Path = field(
        default_factory=lambda: Path(os.getenv("CALIBRATION_ARTIFACT_DIR", "data/calibration/artifacts"))
    )

    # Search defaults (CLI flags override)
    grid: str = field(default_factory=lambda: os.getenv("CALIBRATION_GRID", "coarse"))
    n_folds: int = field(
        default_factory=lambda: int(os.getenv("CALIBRATION_FOLDS", "5"))
    )

    # Row filtering
    set_labels: tuple = ("A", "B")
    min_rows: int = 100
    extended_max_abs_response: float = 35.0  # extended track drops larger blowouts

    # Gate mode: "relative" (vs baselines) or "absolute" (fixed thresholds)
    gate_mode: str = field(default_factory=lambda: os.getenv("CALIBRATION_GATE_MODE", "relative"))

    # Paths
    @property
    def project_root(self) -> Path:
        return Path(__file__).parent.parent

    def validate(self) -> list[str]:
        """Validate settings. Returns list of errors."""
        errors = []
        if self.grid not in VALID_GRIDS:
            errors.append(f"CALIBRATION_GRID must be one of {VALID_GRIDS}, got '{self.grid}'")
        if self.n_folds < 2:
            errors.append(f"CALIBRATION_FOLDS must be >= 2, got {self.n_folds}")
        if self.gate_mode not in ("relative", "absolute"):
            errors.append(f"CALIBRATION_GATE_MODE must be relative or absolute, got '{self.gate_mode}'")
        return errors


# Singleton instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
