"""
Chessboard corner detection and board geometry.

Pure functions - no classes, no state.
"""

from __future__ import annotations

import cv2
import numpy as np

from ..types import ChessboardConfig


SUBPIX_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.0001)


def find_chessboard_corners(
    image: np.ndarray,
    board_size: tuple[int, int],
) -> np.ndarray | None:
    """
    Locate inner chessboard corners with sub-pixel refinement.

    Args:
        image: BGR or grayscale image
        board_size: (columns, rows) of inner corners

    Returns:
        (columns * rows, 2) corners in row-major order, or None if not found
    """
    gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)

    flags = cv2.CALIB_CB_ADAPTIVE_THRESH | cv2.CALIB_CB_NORMALIZE_IMAGE
    found, corners = cv2.findChessboardCorners(gray, board_size, flags=flags)
    if not found or corners is None:
        return None

    try:
        corners = cv2.cornerSubPix(gray, corners, (11, 11), (-1, -1), SUBPIX_CRITERIA)
    except cv2.error:
        pass  # Sub-pixel refinement failed, use raw corners

    return corners.reshape(-1, 2).astype(np.float32)


def get_chessboard_object_points(config: ChessboardConfig) -> np.ndarray:
    """
    3D positions of the inner corners in the board frame.

    Row-major (x varies fastest), z = 0, spacing = square_size. Matches the
    order cv2.findChessboardCorners reports corners in.

    Returns:
        (columns * rows, 3) float32 array
    """
    xs, ys = np.meshgrid(np.arange(config.columns), np.arange(config.rows))
    points = np.zeros((config.columns * config.rows, 3), dtype=np.float32)
    points[:, 0] = xs.ravel() * config.square_size
    points[:, 1] = ys.ravel() * config.square_size
    return points


def draw_chessboard(
    image: np.ndarray,
    board_size: tuple[int, int],
    corners: np.ndarray | None,
) -> np.ndarray:
    """Draw detected corners on a copy of the image."""
    canvas = image.copy()
    if canvas.ndim == 2:
        canvas = cv2.cvtColor(canvas, cv2.COLOR_GRAY2BGR)
    if corners is not None:
        cv2.drawChessboardCorners(canvas, board_size, corners.reshape(-1, 1, 2), True)
    return canvas
