"""
Settings validation.

Turns a raw mapping (as loaded from a TOML file) into a frozen, internally
consistent Settings object. Pure functions - no printing, no logging.
Diagnostics are SettingsError values, raised by validate_settings and
returned as a list by check_settings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import cv2

from .errors import SettingsError, SettingsIssue
from .types import BoxLattice, ChessboardConfig, Mode, PatternType


MIN_SQUARE_SIZE = 1e-5

DEFAULT_LATTICE = BoxLattice()

# Solver bit for fixing distortion coefficient k1..k5, in digit order.
DISTORTION_FIX_BITS = (
    cv2.CALIB_FIX_K1,
    cv2.CALIB_FIX_K2,
    cv2.CALIB_FIX_K3,
    cv2.CALIB_FIX_K4,
    cv2.CALIB_FIX_K5,
)

MARKER_MAP_COUNTS = {
    PatternType.ARUCO_SINGLE: 1,
    PatternType.ARUCO_BOX: 3,
}


# ============================================================================
# Settings
# ============================================================================


@dataclass(frozen=True, slots=True)
class SolverSettings:
    fix_dist_coeffs: str = "00000"
    fix_principal_point: bool = False
    zero_tangent_dist: bool = False
    fix_aspect_ratio: bool = False
    aspect_ratio: float = 1.0
    fix_intrinsic: bool = False  # stereo: keep the estimate, skip per-view calibration

    @property
    def flags(self) -> int:
        return build_flag_mask(
            self.fix_dist_coeffs,
            self.fix_principal_point,
            self.zero_tangent_dist,
            self.fix_aspect_ratio,
        )


@dataclass(frozen=True, slots=True)
class PreviewSettings:
    camera: int = 0
    poll_ms: int = 30  # bounded wait for the next frame
    undistort: bool = True


@dataclass(frozen=True, slots=True)
class ExportSettings:
    """Where to write corrected images after a successful run."""

    undistorted_dir: Path | None = None  # INTRINSIC
    rectified_dir: Path | None = None  # STEREO
    show: bool = False  # step through the corrected images

    @property
    def enabled(self) -> bool:
        return self.show or self.undistorted_dir is not None or self.rectified_dir is not None


@dataclass(frozen=True)
class Settings:
    """
    Validated configuration of one calibration run.
    """

    mode: Mode
    pattern_type: PatternType
    images: tuple[Path, ...] = ()
    chessboard: ChessboardConfig | None = None
    marker_maps: tuple[Path, ...] = ()
    lattice: BoxLattice = field(default_factory=BoxLattice)
    solver: SolverSettings = field(default_factory=SolverSettings)
    intrinsic_estimates: tuple[Path, ...] = ()  # (left,) or (left, right)
    output: Path | None = None
    min_points: int = 4
    show_detections: bool = False
    review_wait_ms: int = 0  # 0 waits for a key press
    detected_dir: Path | None = None  # annotated detections, detected_<i>.jpg
    show_marker_coordinates: bool = False  # label markers with their object point, not their id
    preview: PreviewSettings = field(default_factory=PreviewSettings)
    export: ExportSettings = field(default_factory=ExportSettings)

    @property
    def flags(self) -> int:
        return self.solver.flags

    @property
    def has_intrinsic_estimate(self) -> bool:
        return len(self.intrinsic_estimates) > 0


# ============================================================================
# Flag mask
# ============================================================================


def build_flag_mask(
    digits: str,
    fix_principal_point: bool,
    zero_tangent_dist: bool,
    fix_aspect_ratio: bool,
) -> int:
    """
    Build the calibration solver flag bitmask.

    Args:
        digits: Five '0'/'1' characters; digit i fixes distortion k(i+1)
        fix_principal_point: Keep the principal point at its initial value
        zero_tangent_dist: Force tangential distortion to zero
        fix_aspect_ratio: Keep fx/fy at its initial ratio

    Returns:
        Bitmask in OpenCV CALIB_* encoding

    Raises:
        SettingsError: If digits is not five 0/1 characters
    """
    if not _valid_digits(digits):
        raise SettingsError(
            SettingsIssue.INVALID_FLAG_DIGITS,
            f"fix_dist_coeffs must be five 0/1 digits, got {digits!r}",
        )

    mask = 0
    for digit, bit in zip(digits, DISTORTION_FIX_BITS):
        if digit == "1":
            mask |= bit

    if fix_principal_point:
        mask |= cv2.CALIB_FIX_PRINCIPAL_POINT
    if zero_tangent_dist:
        mask |= cv2.CALIB_ZERO_TANGENT_DIST
    if fix_aspect_ratio:
        mask |= cv2.CALIB_FIX_ASPECT_RATIO

    return mask


def _valid_digits(digits: Any) -> bool:
    return (
        isinstance(digits, str)
        and len(digits) == len(DISTORTION_FIX_BITS)
        and set(digits) <= {"0", "1"}
    )


# ============================================================================
# Validation
# ============================================================================


def validate_settings(raw: dict, base_dir: Path | None = None) -> Settings:
    """
    Validate a raw settings mapping.

    Args:
        raw: Mapping as loaded from the settings TOML file
        base_dir: Directory relative paths are resolved against

    Returns:
        Settings

    Raises:
        SettingsError: The first rule that failed
    """
    settings, issues = _parse(raw, base_dir)
    if issues:
        raise issues[0]
    return settings


def check_settings(raw: dict, base_dir: Path | None = None) -> list[SettingsError]:
    """
    Run every settings rule and return all failures (empty list if valid).
    """
    _, issues = _parse(raw, base_dir)
    return issues


def _parse(raw: dict, base_dir: Path | None) -> tuple[Settings | None, list[SettingsError]]:
    issues: list[SettingsError] = []

    mode = _parse_enum(Mode, raw.get("mode"))
    if mode is None:
        issues.append(SettingsError(
            SettingsIssue.INVALID_MODE,
            f"mode must be one of {[m.value for m in Mode]}, got {raw.get('mode')!r}",
        ))

    pattern_type = _parse_enum(PatternType, raw.get("pattern"))
    if pattern_type is None:
        issues.append(SettingsError(
            SettingsIssue.INVALID_PATTERN,
            f"pattern must be one of {[p.value for p in PatternType]}, "
            f"got {raw.get('pattern')!r}",
        ))

    # Chessboard geometry
    chessboard = None
    if pattern_type is PatternType.CHESSBOARD:
        board = _section(raw, "chessboard", issues)
        columns = board.get("columns", 0)
        rows = board.get("rows", 0)
        square_size = board.get("square_size", 0.0)
        if not (_is_number(columns) and _is_number(rows)) or columns <= 0 or rows <= 0:
            issues.append(SettingsError(
                SettingsIssue.INVALID_BOARD_SIZE,
                f"chessboard size must be positive, got {columns}x{rows}",
            ))
        if not _is_number(square_size) or square_size <= MIN_SQUARE_SIZE:
            issues.append(SettingsError(
                SettingsIssue.INVALID_SQUARE_SIZE,
                f"chessboard square_size must be > {MIN_SQUARE_SIZE}, got {square_size}",
            ))
        if not issues:
            chessboard = ChessboardConfig(int(columns), int(rows), float(square_size))

    # Images
    images = _paths(raw, "images", base_dir, issues)
    if mode in (Mode.INTRINSIC, Mode.STEREO) and not images:
        issues.append(SettingsError(
            SettingsIssue.NO_IMAGES,
            "image list is empty",
        ))
    elif mode is Mode.STEREO and len(images) % 2 != 0:
        issues.append(SettingsError(
            SettingsIssue.ODD_IMAGE_COUNT,
            f"stereo needs left/right image pairs, got {len(images)} images",
        ))

    # Marker maps
    aruco = _section(raw, "aruco", issues)
    marker_maps = _paths(aruco, "marker_maps", base_dir, issues)
    expected_maps = MARKER_MAP_COUNTS.get(pattern_type)
    if expected_maps is not None and len(marker_maps) != expected_maps:
        issues.append(SettingsError(
            SettingsIssue.MARKER_MAP_COUNT,
            f"{pattern_type.value} needs {expected_maps} marker map file(s), "
            f"got {len(marker_maps)}",
        ))

    # Intrinsic estimate
    estimate = _section(raw, "intrinsic_estimate", issues)
    intrinsic_estimates = tuple(
        _resolve(estimate[key], base_dir) for key in ("left", "right") if key in estimate
    )
    if pattern_type is PatternType.ARUCO_BOX and not intrinsic_estimates:
        issues.append(SettingsError(
            SettingsIssue.MISSING_INTRINSIC_GUESS,
            "ARUCO_BOX cannot self-calibrate intrinsics; "
            "set [intrinsic_estimate] left = <file>",
        ))

    # Solver flags
    solver_data = _section(raw, "solver", issues)
    solver = SolverSettings(
        fix_dist_coeffs=solver_data.get("fix_dist_coeffs", "00000"),
        fix_principal_point=bool(solver_data.get("fix_principal_point", False)),
        zero_tangent_dist=bool(solver_data.get("zero_tangent_dist", False)),
        fix_aspect_ratio=bool(solver_data.get("fix_aspect_ratio", False)),
        aspect_ratio=_number(solver_data, "aspect_ratio", 1.0, issues, positive=True),
        fix_intrinsic=bool(solver_data.get("fix_intrinsic", False)),
    )
    if not _valid_digits(solver.fix_dist_coeffs):
        issues.append(SettingsError(
            SettingsIssue.INVALID_FLAG_DIGITS,
            f"fix_dist_coeffs must be five 0/1 digits, got {solver.fix_dist_coeffs!r}",
        ))

    # Box lattice
    box = _section(raw, "box", issues)
    offset = box.get("offset", DEFAULT_LATTICE.offset)
    denominator = box.get("denominator", DEFAULT_LATTICE.denominator)
    if not (_is_number(offset) and _is_number(denominator)) or denominator <= 0:
        issues.append(SettingsError(
            SettingsIssue.INVALID_LATTICE,
            f"box lattice denominator must be positive, got {denominator!r}",
        ))

    # Run options
    min_points = _integer(raw, "min_points", 4, issues, minimum=1)
    review = _section(raw, "review", issues)
    review_wait_ms = _integer(review, "wait_ms", 0, issues, minimum=0)
    preview_data = _section(raw, "preview", issues)
    camera = _integer(preview_data, "camera", 0, issues, minimum=0)
    poll_ms = _integer(preview_data, "poll_ms", 30, issues, minimum=1)
    export = _section(raw, "export", issues)

    if issues:
        return None, issues

    output = raw.get("output")
    detected_dir = review.get("detected_dir")
    undistorted_dir = export.get("undistorted_dir")
    rectified_dir = export.get("rectified_dir")

    settings = Settings(
        mode=mode,
        pattern_type=pattern_type,
        images=images,
        chessboard=chessboard,
        marker_maps=marker_maps,
        lattice=BoxLattice(offset=float(offset), denominator=float(denominator)),
        solver=solver,
        intrinsic_estimates=intrinsic_estimates,
        output=_resolve(output, base_dir) if output else None,
        min_points=min_points,
        show_detections=bool(review.get("show_detections", False)),
        review_wait_ms=review_wait_ms,
        detected_dir=_resolve(detected_dir, base_dir) if detected_dir else None,
        show_marker_coordinates=bool(review.get("show_marker_coordinates", False)),
        preview=PreviewSettings(
            camera=camera,
            poll_ms=poll_ms,
            undistort=bool(preview_data.get("undistort", True)),
        ),
        export=ExportSettings(
            undistorted_dir=_resolve(undistorted_dir, base_dir) if undistorted_dir else None,
            rectified_dir=_resolve(rectified_dir, base_dir) if rectified_dir else None,
            show=bool(export.get("show", False)),
        ),
    )
    return settings, []


def _section(raw: dict, name: str, issues: list[SettingsError]) -> dict:
    value = raw.get(name, {})
    if isinstance(value, dict):
        return value
    issues.append(SettingsError(
        SettingsIssue.INVALID_SECTION,
        f"[{name}] must be a table, got {value!r}",
    ))
    return {}


def _paths(
    data: dict,
    key: str,
    base_dir: Path | None,
    issues: list[SettingsError],
) -> tuple[Path, ...]:
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(p, (str, Path)) for p in value):
        issues.append(SettingsError(
            SettingsIssue.INVALID_VALUE,
            f"{key} must be a list of paths, got {value!r}",
        ))
        return ()
    return tuple(_resolve(p, base_dir) for p in value)


def _number(
    data: dict,
    key: str,
    default: float,
    issues: list[SettingsError],
    positive: bool = False,
) -> float:
    value = data.get(key, default)
    if not _is_number(value) or (positive and value <= 0):
        issues.append(SettingsError(
            SettingsIssue.INVALID_VALUE,
            f"{key} must be a {'positive ' if positive else ''}number, got {value!r}",
        ))
        return default
    return float(value)


def _integer(
    data: dict,
    key: str,
    default: int,
    issues: list[SettingsError],
    minimum: int = 0,
) -> int:
    value = data.get(key, default)
    if not (_is_number(value) and float(value).is_integer()) or value < minimum:
        issues.append(SettingsError(
            SettingsIssue.INVALID_VALUE,
            f"{key} must be an integer >= {minimum}, got {value!r}",
        ))
        return default
    return int(value)


def _parse_enum(enum_cls, value):
    if not isinstance(value, str):
        return None
    try:
        return enum_cls(value.strip().upper())
    except ValueError:
        return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _resolve(path: str | Path, base_dir: Path | None) -> Path:
    path = Path(path)
    if base_dir is not None and not path.is_absolute():
        return base_dir / path
    return path
