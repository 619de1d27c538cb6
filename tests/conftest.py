"""
Pytest configuration and shared fixtures.
"""

import tempfile
from pathlib import Path

import cv2
import numpy as np
import pytest


IMAGE_SIZE = (640, 480)  # (width, height)

# Board poses (rvec, tvec) used to synthesize calibration views
BOARD_POSES = [
    ((0.10, 0.20, 0.00), (-0.10, -0.06, 0.60)),
    ((-0.20, 0.10, 0.05), (-0.10, -0.06, 0.65)),
    ((0.30, -0.10, 0.00), (-0.12, -0.05, 0.55)),
    ((0.00, -0.30, 0.10), (-0.08, -0.07, 0.60)),
    ((-0.10, -0.20, -0.05), (-0.10, -0.04, 0.70)),
    ((0.25, 0.25, 0.00), (-0.11, -0.06, 0.62)),
    ((-0.30, 0.00, 0.02), (-0.09, -0.06, 0.58)),
]


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after test."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def sample_intrinsics_matrix():
    """Typical camera intrinsics matrix for a 640x480 sensor."""
    return np.array([
        [800.0, 0.0, 320.0],
        [0.0, 800.0, 240.0],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)


@pytest.fixture
def sample_distortion():
    """Typical distortion coefficients (k1, k2, p1, p2, k3)."""
    return np.array([0.1, -0.25, 0.001, -0.001, 0.1], dtype=np.float64)


@pytest.fixture
def sample_camera_intrinsics(sample_intrinsics_matrix):
    """Distortion-free CameraIntrinsics dataclass."""
    from calibox.types import CameraIntrinsics
    return CameraIntrinsics(
        matrix=sample_intrinsics_matrix,
        distortion=np.zeros(5, dtype=np.float64),
        error=0.2,
        per_view_errors=(0.1, 0.2, 0.3),
        image_size=IMAGE_SIZE,
        view_count=3,
    )


@pytest.fixture
def sample_chessboard_config():
    """9x6 inner corners, 25 mm squares (in meters)."""
    from calibox.types import ChessboardConfig
    return ChessboardConfig(columns=9, rows=6, square_size=0.025)


def project(obj_points, rvec, tvec, matrix, distortion=None):
    """Project object points into an image as (n, 2) float32."""
    if distortion is None:
        distortion = np.zeros(5)
    projected, _ = cv2.projectPoints(
        np.asarray(obj_points, dtype=np.float64),
        np.asarray(rvec, dtype=np.float64),
        np.asarray(tvec, dtype=np.float64),
        matrix,
        distortion,
    )
    return projected.reshape(-1, 2).astype(np.float32)


@pytest.fixture
def raw_settings():
    """Minimal valid raw settings for an intrinsic chessboard run."""
    return {
        "mode": "INTRINSIC",
        "pattern": "CHESSBOARD",
        "images": ["left01.png", "left02.png"],
        "chessboard": {"columns": 9, "rows": 6, "square_size": 0.025},
    }


@pytest.fixture
def write_marker_map(temp_dir):
    """Write a TOML marker map and return its path."""
    import rtoml

    def _write(name, markers, dictionary="DICT_4X4_50"):
        path = temp_dir / name
        data = {
            "dictionary": dictionary,
            "markers": [
                {"id": marker_id, "corners": np.asarray(corners).tolist()}
                for marker_id, corners in markers.items()
            ],
        }
        with open(path, "w") as f:
            rtoml.dump(data, f)
        return path

    return _write


def square_corners(x, y, size):
    """Four corners of an axis-aligned marker, detector order, z = 0."""
    return np.array([
        [x, y, 0.0],
        [x + size, y, 0.0],
        [x + size, y + size, 0.0],
        [x, y + size, 0.0],
    ])
