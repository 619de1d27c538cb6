"""
Exception hierarchy for calibox.

Configuration errors are fatal and raised before any image is processed.
Detection misses and reconciliation losses are not exceptions; they are
counted on the CalibrationResult.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path


class CaliboxError(Exception):
    """Base class for all calibox errors."""


class ConfigurationError(CaliboxError):
    """Invalid or inconsistent configuration."""


class SettingsIssue(str, Enum):
    INVALID_MODE = "invalid_mode"
    INVALID_PATTERN = "invalid_pattern"
    INVALID_BOARD_SIZE = "invalid_board_size"
    INVALID_SQUARE_SIZE = "invalid_square_size"
    NO_IMAGES = "no_images"
    ODD_IMAGE_COUNT = "odd_image_count"
    MARKER_MAP_COUNT = "marker_map_count"
    MISSING_INTRINSIC_GUESS = "missing_intrinsic_guess"
    INVALID_FLAG_DIGITS = "invalid_flag_digits"
    INVALID_LATTICE = "invalid_lattice"
    INVALID_SECTION = "invalid_section"
    INVALID_VALUE = "invalid_value"


class SettingsError(ConfigurationError):
    """A single failed settings rule."""

    def __init__(self, issue: SettingsIssue, message: str):
        super().__init__(message)
        self.issue = issue
        self.message = message

    def __repr__(self) -> str:
        return f"SettingsError({self.issue.value!r}, {self.message!r})"


class MarkerMapError(ConfigurationError):
    """Marker map file is missing or malformed."""

    def __init__(self, path: Path | str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = Path(path)
        self.reason = reason


class SolverError(CaliboxError):
    """The calibration solver failed or produced unusable output."""


class PersistenceError(CaliboxError):
    """Writing or reading a calibration file failed."""
