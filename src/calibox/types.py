"""
Core data structures for calibox.

Containers are frozen dataclasses; logic lives in separate pure functions.
CalibrationSession is the one mutable aggregate, owned by the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path

import numpy as np


# ============================================================================
# Enumerations
# ============================================================================


class Mode(str, Enum):
    INTRINSIC = "INTRINSIC"
    STEREO = "STEREO"
    PREVIEW = "PREVIEW"


class PatternType(str, Enum):
    CHESSBOARD = "CHESSBOARD"
    ARUCO_SINGLE = "ARUCO_SINGLE"
    ARUCO_BOX = "ARUCO_BOX"


class Plane(str, Enum):
    """Box rig face a marker map is glued to."""

    XY = "XY"
    YZ = "YZ"
    XZ = "XZ"


class View(IntEnum):
    LEFT = 0
    RIGHT = 1


# Marker maps of a box rig are supplied in this order.
BOX_FACE_ORDER = (Plane.XY, Plane.YZ, Plane.XZ)


# ============================================================================
# Pattern Configuration
# ============================================================================


@dataclass(frozen=True, slots=True)
class ChessboardConfig:
    """
    Chessboard geometry.

    columns/rows count inner corners, square_size is in the user's unit.
    """

    columns: int
    rows: int
    square_size: float

    @property
    def size(self) -> tuple[int, int]:
        return (self.columns, self.rows)


@dataclass(frozen=True)
class MarkerMapConfig:
    """
    A set of ArUco markers with a known 3D corner layout on a rigid plane.

    markers maps marker id -> (4, 3) corner array, ordered as the detector
    reports corners (top-left, top-right, bottom-right, bottom-left).
    """

    dictionary: str
    markers: dict[int, np.ndarray]
    source: Path | None = None

    @property
    def marker_ids(self) -> set[int]:
        return set(self.markers)


@dataclass(frozen=True, slots=True)
class BoxLattice:
    """
    Shared integer lattice for box rig object points.

    Coordinates are translated by offset then divided by denominator and
    rounded, so independently authored faces compare exactly equal.
    """

    offset: float = 1000.0
    denominator: float = 10.0


@dataclass(frozen=True, slots=True)
class FaceAssignment:
    """Binds a box face plane to the marker map at map_index."""

    plane: Plane
    map_index: int


# ============================================================================
# Correspondences
# ============================================================================


def _empty_img() -> np.ndarray:
    return np.zeros((0, 2), dtype=np.float32)


def _empty_obj() -> np.ndarray:
    return np.zeros((0, 3), dtype=np.float32)


@dataclass(frozen=True, slots=True)
class PointPacket:
    """
    Ordered 2D <-> 3D correspondences of a single image.

    Row k of img_loc observes the object point in row k of obj_loc.
    """

    img_loc: np.ndarray = field(default_factory=_empty_img)  # (n, 2)
    obj_loc: np.ndarray = field(default_factory=_empty_obj)  # (n, 3)

    def __len__(self) -> int:
        return int(self.obj_loc.shape[0])

    @property
    def is_empty(self) -> bool:
        return len(self) == 0


# ============================================================================
# Calibration Results
# ============================================================================


@dataclass(frozen=True, slots=True)
class CameraIntrinsics:
    """
    Intrinsic parameters of one camera.
    """

    matrix: np.ndarray  # 3x3 camera matrix
    distortion: np.ndarray  # (k1, k2, p1, p2, k3[, ...])
    error: float  # RMS reprojection error reported by the solver
    per_view_errors: tuple[float, ...] = ()
    image_size: tuple[int, int] = (0, 0)  # (width, height)
    view_count: int = 0


@dataclass(frozen=True, slots=True)
class StereoExtrinsics:
    """
    Pose of the right camera relative to the left one.
    """

    rotation: np.ndarray  # 3x3
    translation: np.ndarray  # (3,)
    essential: np.ndarray  # 3x3
    fundamental: np.ndarray  # 3x3
    error: float


@dataclass(frozen=True, slots=True)
class Rectification:
    """
    Rectifying transforms for an epipolar-aligned image pair.
    """

    r1: np.ndarray
    r2: np.ndarray
    p1: np.ndarray
    p2: np.ndarray
    q: np.ndarray  # disparity-to-depth
    roi1: tuple[int, int, int, int] = (0, 0, 0, 0)
    roi2: tuple[int, int, int, int] = (0, 0, 0, 0)


@dataclass(frozen=True)
class CalibrationResult:
    """
    Outcome of a calibration run.

    On failure the best available diagnostics are still attached.
    """

    success: bool
    mode: Mode
    intrinsics: dict[View, CameraIntrinsics] = field(default_factory=dict)
    extrinsics: StereoExtrinsics | None = None
    rectification: Rectification | None = None
    per_view_errors: tuple[float, ...] = ()
    images_used: int = 0
    detection_misses: int = 0
    points_dropped: int = 0
    message: str = ""

    @property
    def error(self) -> float | None:
        if self.extrinsics is not None:
            return self.extrinsics.error
        if View.LEFT in self.intrinsics:
            return self.intrinsics[View.LEFT].error
        return None


# ============================================================================
# Session
# ============================================================================


@dataclass
class CalibrationSession:
    """
    Mutable state of one run.

    views[v][i] is the correspondence list of image (or pair) i seen by
    view v. Both views always hold the same number of entries in STEREO mode.
    """

    mode: Mode
    pattern_type: PatternType
    views: dict[View, list[PointPacket]] = field(
        default_factory=lambda: {View.LEFT: [], View.RIGHT: []}
    )
    image_size: tuple[int, int] | None = None
    detection_misses: int = 0
    points_dropped: int = 0
    result: CalibrationResult | None = None

    def record(self, view: View, pair_index: int, packet: PointPacket) -> None:
        packets = self.views[view]
        while len(packets) <= pair_index:
            packets.append(PointPacket())
        packets[pair_index] = packet
        if packet.is_empty:
            self.detection_misses += 1

    @property
    def packet_count(self) -> int:
        """Total correspondences recorded across both views."""
        return sum(len(packet) for packets in self.views.values() for packet in packets)
