"""
Calibration module for calibox.

Detectors, geometry and solver wrappers are pure functions; the pattern
builders are small classes selected once per run.
"""

from .box import (
    PLANE_AXES,
    lattice_to_metric,
    map_point,
    map_points,
)

from .chessboard import (
    find_chessboard_corners,
    get_chessboard_object_points,
)

from .markers import (
    ARUCO_DICTIONARIES,
    detect_markers,
    load_marker_map,
)

from .patterns import (
    BoxRigPattern,
    ChessboardPattern,
    MarkerMapPattern,
    build_pattern,
)

from .reconcile import (
    ReconciledViews,
    reconcile_packets,
    reconcile_views,
)

from .intrinsic import (
    calibrate_intrinsics,
    intrinsics_look_valid,
    undistort_image,
)

from .stereo import (
    draw_rectified_pair,
    rectification_maps,
    rectify,
    remap_image,
    stereo_calibrate,
)

__all__ = [
    # Box rig geometry
    "PLANE_AXES",
    "lattice_to_metric",
    "map_point",
    "map_points",
    # Chessboard
    "find_chessboard_corners",
    "get_chessboard_object_points",
    # Markers
    "ARUCO_DICTIONARIES",
    "detect_markers",
    "load_marker_map",
    # Patterns
    "BoxRigPattern",
    "ChessboardPattern",
    "MarkerMapPattern",
    "build_pattern",
    # Reconciliation
    "ReconciledViews",
    "reconcile_packets",
    "reconcile_views",
    # Solvers
    "calibrate_intrinsics",
    "intrinsics_look_valid",
    "undistort_image",
    "rectify",
    "stereo_calibrate",
    # Rectified images
    "draw_rectified_pair",
    "rectification_maps",
    "remap_image",
]
