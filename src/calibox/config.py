"""
Configuration loading and result saving.

Pure functions operating on dataclasses.
- TOML settings file -> validated Settings
- TOML intrinsic estimate file -> CameraIntrinsics
- CalibrationResult -> TOML result file
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import numpy as np
import rtoml

from .errors import ConfigurationError, PersistenceError
from .settings import Settings, validate_settings
from .types import CalibrationResult, CameraIntrinsics, View


VIEW_KEYS = {View.LEFT: "left", View.RIGHT: "right"}


# ============================================================================
# Settings file
# ============================================================================


def load_settings_data(path: Path) -> dict:
    """
    Read a settings TOML file without validating it.

    Raises:
        ConfigurationError: If the file is missing or not valid TOML
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Settings file not found: {path}")
    try:
        return rtoml.load(path)
    except rtoml.TomlParsingError as e:
        raise ConfigurationError(f"{path}: invalid TOML: {e}") from e


def load_settings(path: Path) -> Settings:
    """
    Load and validate a settings TOML file.

    Relative paths inside the file are resolved against its directory.

    Raises:
        ConfigurationError: If the file cannot be read or fails validation
    """
    path = Path(path)
    return validate_settings(load_settings_data(path), base_dir=path.parent)


# ============================================================================
# Intrinsic estimate
# ============================================================================


def load_intrinsic_estimate(path: Path) -> CameraIntrinsics:
    """
    Load a pre-supplied camera matrix and distortion vector.

    Accepts a file with top-level ``camera_matrix`` and
    ``distortion_coefficients`` keys, or a previous intrinsic result file
    (same keys under ``[camera]``).

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Intrinsic estimate not found: {path}")
    try:
        data = rtoml.load(path)
    except rtoml.TomlParsingError as e:
        raise ConfigurationError(f"{path}: invalid TOML: {e}") from e

    section = data.get("camera", data)
    try:
        matrix = np.array(section["camera_matrix"], dtype=np.float64).reshape(3, 3)
        distortion = np.array(section["distortion_coefficients"], dtype=np.float64).ravel()
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(
            f"{path}: needs camera_matrix (3x3) and distortion_coefficients"
        ) from e

    if not (np.all(np.isfinite(matrix)) and np.all(np.isfinite(distortion))):
        raise ConfigurationError(f"{path}: non-finite intrinsic estimate")

    return CameraIntrinsics(
        matrix=matrix,
        distortion=distortion,
        error=float(section.get("avg_reprojection_error", 0.0)),
        image_size=tuple(section.get("image_size", (0, 0))),
    )


# ============================================================================
# Result file
# ============================================================================


def _intrinsics_to_dict(intrinsics: CameraIntrinsics) -> dict:
    return {
        "camera_matrix": intrinsics.matrix.tolist(),
        "distortion_coefficients": np.asarray(intrinsics.distortion).ravel().tolist(),
        "image_size": list(intrinsics.image_size),
        "avg_reprojection_error": float(intrinsics.error),
        "per_view_reprojection_errors": list(intrinsics.per_view_errors),
        "view_count": intrinsics.view_count,
    }


def result_to_dict(result: CalibrationResult) -> dict:
    """
    Arrange a result in the field groups downstream tools read.
    """
    data = {
        "calibration": {
            "mode": result.mode.value,
            "success": result.success,
            "calibration_time": datetime.now().isoformat(timespec="seconds"),
            "images_used": result.images_used,
            "detection_misses": result.detection_misses,
            "points_dropped": result.points_dropped,
        },
    }

    if result.extrinsics is None and View.LEFT in result.intrinsics:
        data["camera"] = _intrinsics_to_dict(result.intrinsics[View.LEFT])
    elif result.intrinsics:
        data["cameras"] = {
            VIEW_KEYS[view]: _intrinsics_to_dict(intrinsics)
            for view, intrinsics in result.intrinsics.items()
        }

    if result.extrinsics is not None:
        ext = result.extrinsics
        data["stereo"] = {
            "R": ext.rotation.tolist(),
            "T": ext.translation.ravel().tolist(),
            "E": ext.essential.tolist(),
            "F": ext.fundamental.tolist(),
            "avg_reprojection_error": ext.error,
        }

    if result.rectification is not None:
        rect = result.rectification
        data["rectification"] = {
            "R1": rect.r1.tolist(),
            "R2": rect.r2.tolist(),
            "P1": rect.p1.tolist(),
            "P2": rect.p2.tolist(),
            "Q": rect.q.tolist(),
            "roi1": list(rect.roi1),
            "roi2": list(rect.roi2),
        }

    return data


def save_calibration_result(result: CalibrationResult, path: Path) -> None:
    """
    Save a calibration result to a TOML file.

    Raises:
        PersistenceError: If the file cannot be written
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            rtoml.dump(result_to_dict(result), f)
    except (OSError, rtoml.TomlSerializationError) as e:
        raise PersistenceError(f"Could not write {path}: {e}") from e
