"""
Stereo calibration and rectification.

Pure functions - no classes, no state.
"""

from __future__ import annotations

import cv2
import numpy as np

from ..errors import SolverError
from ..types import CameraIntrinsics, Rectification, StereoExtrinsics


STEREO_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 1000, 1e-10)


def stereo_calibrate(
    object_points: list[np.ndarray],
    left_points: list[np.ndarray],
    right_points: list[np.ndarray],
    left: CameraIntrinsics,
    right: CameraIntrinsics,
    image_size: tuple[int, int],
    flags: int = cv2.CALIB_FIX_INTRINSIC,
) -> StereoExtrinsics:
    """
    Estimate the pose of the right camera relative to the left one.

    Args:
        object_points: Per pair (n, 3) object points shared by both views
        left_points: Per pair (n, 2) left image points, row-aligned
        right_points: Per pair (n, 2) right image points, row-aligned
        left: Left camera intrinsics
        right: Right camera intrinsics
        image_size: (width, height)
        flags: OpenCV CALIB_* bitmask

    Returns:
        StereoExtrinsics

    Raises:
        SolverError: If the solver fails or returns non-finite output
    """
    if not object_points:
        raise SolverError("No image pairs to calibrate from")

    obj = [np.asarray(p, dtype=np.float32).reshape(-1, 3) for p in object_points]
    img_l = [np.asarray(p, dtype=np.float32).reshape(-1, 2) for p in left_points]
    img_r = [np.asarray(p, dtype=np.float32).reshape(-1, 2) for p in right_points]

    try:
        error, _, _, _, _, R, T, E, F = cv2.stereoCalibrate(
            obj,
            img_l,
            img_r,
            left.matrix,
            left.distortion,
            right.matrix,
            right.distortion,
            tuple(image_size),
            criteria=STEREO_CRITERIA,
            flags=flags,
        )
    except cv2.error as e:
        raise SolverError(f"stereoCalibrate failed: {e}") from e

    extrinsics = StereoExtrinsics(
        rotation=R,
        translation=np.asarray(T, dtype=np.float64).ravel(),
        essential=E,
        fundamental=F,
        error=float(error),
    )

    values = (R, T, E, F, np.array([error]))
    if not all(np.all(np.isfinite(v)) for v in values):
        raise SolverError("stereoCalibrate returned non-finite values")

    return extrinsics


def rectify(
    left: CameraIntrinsics,
    right: CameraIntrinsics,
    extrinsics: StereoExtrinsics,
    image_size: tuple[int, int],
    alpha: float = 1.0,
) -> Rectification:
    """
    Compute rectifying transforms for the calibrated pair.

    Args:
        left: Left camera intrinsics
        right: Right camera intrinsics
        extrinsics: Right-relative-to-left pose
        image_size: (width, height)
        alpha: Free scaling parameter (1 keeps every source pixel, 0 crops to valid pixels)

    Returns:
        Rectification with disparity-to-depth matrix Q

    Raises:
        SolverError: If rectification fails
    """
    try:
        R1, R2, P1, P2, Q, roi1, roi2 = cv2.stereoRectify(
            left.matrix,
            left.distortion,
            right.matrix,
            right.distortion,
            tuple(image_size),
            extrinsics.rotation,
            extrinsics.translation.reshape(3, 1),
            flags=cv2.CALIB_ZERO_DISPARITY,
            alpha=alpha,
        )
    except cv2.error as e:
        raise SolverError(f"stereoRectify failed: {e}") from e

    return Rectification(
        r1=R1,
        r2=R2,
        p1=P1,
        p2=P2,
        q=Q,
        roi1=tuple(int(v) for v in roi1),
        roi2=tuple(int(v) for v in roi2),
    )


# ============================================================================
# Rectified images
# ============================================================================


# Spacing of the horizontal guide lines on the side-by-side canvas
EPIPOLAR_LINE_STEP = 16


def rectification_maps(
    left: CameraIntrinsics,
    right: CameraIntrinsics,
    rectification: Rectification,
    image_size: tuple[int, int],
) -> tuple[tuple[np.ndarray, np.ndarray], tuple[np.ndarray, np.ndarray]]:
    """
    Precompute cv2.remap lookup tables for both cameras.

    Returns:
        ((left_map1, left_map2), (right_map1, right_map2))
    """
    left_maps = cv2.initUndistortRectifyMap(
        left.matrix, left.distortion, rectification.r1, rectification.p1,
        tuple(image_size), cv2.CV_16SC2,
    )
    right_maps = cv2.initUndistortRectifyMap(
        right.matrix, right.distortion, rectification.r2, rectification.p2,
        tuple(image_size), cv2.CV_16SC2,
    )
    return left_maps, right_maps


def remap_image(image: np.ndarray, maps: tuple[np.ndarray, np.ndarray]) -> np.ndarray:
    return cv2.remap(image, maps[0], maps[1], cv2.INTER_LINEAR)


def draw_rectified_pair(
    left_image: np.ndarray,
    right_image: np.ndarray,
    rectification: Rectification,
    max_side: int = 600,
) -> np.ndarray:
    """
    Side-by-side canvas of a rectified pair for visual inspection.

    Each half is scaled so its longer side is max_side. The valid region of
    each view is outlined in red; green horizontal lines should cross the
    same features in both halves when the calibration is good.
    """
    height, width = left_image.shape[:2]
    scale = max_side / max(width, height)
    w = int(round(width * scale))
    h = int(round(height * scale))

    canvas = np.zeros((h, 2 * w, 3), dtype=np.uint8)
    for k, (image, roi) in enumerate(
        ((left_image, rectification.roi1), (right_image, rectification.roi2))
    ):
        if image.ndim == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        canvas[:, k * w:(k + 1) * w] = cv2.resize(image, (w, h), interpolation=cv2.INTER_AREA)

        x, y, rw, rh = (int(round(v * scale)) for v in roi)
        cv2.rectangle(canvas, (k * w + x, y), (k * w + x + rw, y + rh), (0, 0, 255), 2)

    for y in range(0, h, EPIPOLAR_LINE_STEP):
        cv2.line(canvas, (0, y), (2 * w, y), (0, 255, 0), 1)

    return canvas
