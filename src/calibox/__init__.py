# calibox - camera intrinsic and stereo calibration from chessboards and ArUco rigs

__version__ = "0.1.0"

# Core types
from calibox.types import (
    BoxLattice,
    CalibrationResult,
    CalibrationSession,
    CameraIntrinsics,
    ChessboardConfig,
    FaceAssignment,
    MarkerMapConfig,
    Mode,
    PatternType,
    Plane,
    PointPacket,
    Rectification,
    StereoExtrinsics,
    View,
)

# Errors
from calibox.errors import (
    CaliboxError,
    ConfigurationError,
    MarkerMapError,
    PersistenceError,
    SettingsError,
    SettingsIssue,
    SolverError,
)

# Settings
from calibox.settings import (
    Settings,
    build_flag_mask,
    check_settings,
    validate_settings,
)

# Configuration files
from calibox.config import (
    load_intrinsic_estimate,
    load_settings,
    save_calibration_result,
)

# Orchestration
from calibox.orchestrator import (
    CalibrationRunner,
    run_calibration,
)

__all__ = [
    # Core types
    "BoxLattice",
    "CalibrationResult",
    "CalibrationSession",
    "CameraIntrinsics",
    "ChessboardConfig",
    "FaceAssignment",
    "MarkerMapConfig",
    "Mode",
    "PatternType",
    "Plane",
    "PointPacket",
    "Rectification",
    "StereoExtrinsics",
    "View",
    # Errors
    "CaliboxError",
    "ConfigurationError",
    "MarkerMapError",
    "PersistenceError",
    "SettingsError",
    "SettingsIssue",
    "SolverError",
    # Settings
    "Settings",
    "build_flag_mask",
    "check_settings",
    "validate_settings",
    # Configuration files
    "load_intrinsic_estimate",
    "load_settings",
    "save_calibration_result",
    # Orchestration
    "CalibrationRunner",
    "run_calibration",
]
