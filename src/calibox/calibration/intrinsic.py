"""
Intrinsic camera calibration.

Pure functions - no threading, no state. Caller manages image collection.
"""

from __future__ import annotations

import cv2
import numpy as np

from ..errors import SolverError
from ..types import CameraIntrinsics


CALIBRATION_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 100, 1e-9)

# Above this RMS (pixels) a solution is treated as diverged
MAX_REPROJECTION_ERROR = 100.0


# ============================================================================
# Calibration
# ============================================================================


def calibrate_intrinsics(
    object_points: list[np.ndarray],
    image_points: list[np.ndarray],
    image_size: tuple[int, int],
    flags: int = 0,
    initial_matrix: np.ndarray | None = None,
    initial_distortion: np.ndarray | None = None,
    aspect_ratio: float = 1.0,
) -> CameraIntrinsics:
    """
    Calibrate camera intrinsics from per-image correspondences.

    Args:
        object_points: Per image (n, 3) float32 object points
        image_points: Per image (n, 2) float32 image points, row-aligned
        image_size: (width, height) of the images
        flags: OpenCV CALIB_* bitmask
        initial_matrix: Initial camera matrix; enables CALIB_USE_INTRINSIC_GUESS
        initial_distortion: Initial distortion coefficients
        aspect_ratio: fx/fy used when CALIB_FIX_ASPECT_RATIO is set

    Returns:
        CameraIntrinsics with per-view reprojection errors

    Raises:
        SolverError: If the solver fails or returns an unusable solution
    """
    if not object_points:
        raise SolverError("No views to calibrate from")

    camera_matrix = np.eye(3, dtype=np.float64)
    distortion = np.zeros(5, dtype=np.float64)

    if initial_matrix is not None:
        camera_matrix = np.array(initial_matrix, dtype=np.float64).reshape(3, 3)
        if initial_distortion is not None:
            distortion = np.array(initial_distortion, dtype=np.float64).ravel()
        flags |= cv2.CALIB_USE_INTRINSIC_GUESS
    elif flags & cv2.CALIB_FIX_ASPECT_RATIO:
        camera_matrix[0, 0] = aspect_ratio

    obj = [np.asarray(p, dtype=np.float32).reshape(-1, 3) for p in object_points]
    img = [np.asarray(p, dtype=np.float32).reshape(-1, 2) for p in image_points]

    try:
        (
            error,
            matrix,
            dist,
            _rvecs,
            _tvecs,
            _std_intrinsics,
            _std_extrinsics,
            per_view,
        ) = cv2.calibrateCameraExtended(
            obj,
            img,
            tuple(image_size),
            camera_matrix,
            distortion,
            flags=flags,
            criteria=CALIBRATION_CRITERIA,
        )
    except cv2.error as e:
        raise SolverError(f"calibrateCamera failed: {e}") from e

    return CameraIntrinsics(
        matrix=matrix,
        distortion=np.asarray(dist, dtype=np.float64).ravel(),
        error=float(error),
        per_view_errors=tuple(float(e) for e in np.asarray(per_view).ravel()),
        image_size=tuple(image_size),
        view_count=len(obj),
    )


def intrinsics_look_valid(intrinsics: CameraIntrinsics) -> bool:
    """
    Sanity check a solver result.

    All values finite, positive focal lengths, principal point inside the
    image and a bounded reprojection error. Not a proof of quality.
    """
    values = [intrinsics.matrix, intrinsics.distortion, np.asarray(intrinsics.per_view_errors)]
    if not all(np.all(np.isfinite(v)) for v in values):
        return False
    if not np.isfinite(intrinsics.error) or not (0 <= intrinsics.error < MAX_REPROJECTION_ERROR):
        return False

    fx, fy = intrinsics.matrix[0, 0], intrinsics.matrix[1, 1]
    cx, cy = intrinsics.matrix[0, 2], intrinsics.matrix[1, 2]
    if fx <= 0 or fy <= 0:
        return False

    width, height = intrinsics.image_size
    if width > 0 and height > 0:
        if not (0 <= cx <= width and 0 <= cy <= height):
            return False

    return True


def undistort_image(
    image: np.ndarray,
    matrix: np.ndarray,
    distortion: np.ndarray,
) -> np.ndarray:
    """Undistort an image, keeping the original camera matrix."""
    return cv2.undistort(image, matrix, distortion)
