"""
ArUco marker detection and marker map loading.

Pure functions - no classes, no state beyond a detector cache.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import cv2
import numpy as np
import rtoml

from ..errors import MarkerMapError
from ..types import MarkerMapConfig


# ============================================================================
# ArUco Dictionary Reference
# ============================================================================

ARUCO_DICTIONARIES = {
    "DICT_4X4_50": cv2.aruco.DICT_4X4_50,
    "DICT_4X4_100": cv2.aruco.DICT_4X4_100,
    "DICT_4X4_250": cv2.aruco.DICT_4X4_250,
    "DICT_4X4_1000": cv2.aruco.DICT_4X4_1000,
    "DICT_5X5_50": cv2.aruco.DICT_5X5_50,
    "DICT_5X5_100": cv2.aruco.DICT_5X5_100,
    "DICT_5X5_250": cv2.aruco.DICT_5X5_250,
    "DICT_5X5_1000": cv2.aruco.DICT_5X5_1000,
    "DICT_6X6_50": cv2.aruco.DICT_6X6_50,
    "DICT_6X6_100": cv2.aruco.DICT_6X6_100,
    "DICT_6X6_250": cv2.aruco.DICT_6X6_250,
    "DICT_6X6_1000": cv2.aruco.DICT_6X6_1000,
    "DICT_7X7_50": cv2.aruco.DICT_7X7_50,
    "DICT_7X7_100": cv2.aruco.DICT_7X7_100,
    "DICT_7X7_250": cv2.aruco.DICT_7X7_250,
    "DICT_7X7_1000": cv2.aruco.DICT_7X7_1000,
    "DICT_ARUCO_ORIGINAL": cv2.aruco.DICT_ARUCO_ORIGINAL,
    "DICT_APRILTAG_16h5": cv2.aruco.DICT_APRILTAG_16h5,
    "DICT_APRILTAG_25h9": cv2.aruco.DICT_APRILTAG_25h9,
    "DICT_APRILTAG_36h10": cv2.aruco.DICT_APRILTAG_36h10,
    "DICT_APRILTAG_36h11": cv2.aruco.DICT_APRILTAG_36h11,
}

# Dictionary names written by the ArUco library's marker map tools.
DICTIONARY_ALIASES = {
    "ARUCO": "DICT_ARUCO_ORIGINAL",
    "TAG16h5": "DICT_APRILTAG_16h5",
    "TAG25h9": "DICT_APRILTAG_25h9",
    "TAG36h10": "DICT_APRILTAG_36h10",
    "TAG36h11": "DICT_APRILTAG_36h11",
}

# BGR; marker outlines are green, orientation corners red
COORDINATE_LABEL_COLOR = (255, 0, 255)


def resolve_dictionary(name: str) -> int:
    """
    Map a dictionary name to its OpenCV predefined dictionary id.

    Raises:
        KeyError: If the name is unknown
    """
    name = DICTIONARY_ALIASES.get(name, name)
    return ARUCO_DICTIONARIES[name]


@lru_cache(maxsize=None)
def _get_detector(dictionary: str) -> cv2.aruco.ArucoDetector:
    predefined = cv2.aruco.getPredefinedDictionary(resolve_dictionary(dictionary))
    return cv2.aruco.ArucoDetector(predefined, cv2.aruco.DetectorParameters())


# ============================================================================
# Detection
# ============================================================================


def detect_markers(
    image: np.ndarray,
    dictionary: str,
) -> list[tuple[int, np.ndarray]]:
    """
    Detect ArUco markers in an image.

    Args:
        image: BGR or grayscale image
        dictionary: Dictionary name (see ARUCO_DICTIONARIES)

    Returns:
        List of (marker_id, (4, 2) corner array) in detector corner order
    """
    gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    corners, ids, _ = _get_detector(dictionary).detectMarkers(gray)

    if ids is None or len(corners) == 0:
        return []

    return [
        (int(marker_id), np.asarray(marker_corners, dtype=np.float32).reshape(4, 2))
        for marker_id, marker_corners in zip(ids.ravel(), corners)
    ]


def draw_marker_quads(
    image: np.ndarray,
    img_loc: np.ndarray,
    obj_loc: np.ndarray | None = None,
) -> np.ndarray:
    """
    Outline matched markers on a copy of the image.

    img_loc holds 4 consecutive corners per marker, as produced by the
    marker pattern builders. When obj_loc is given, each marker is labelled
    with the object point of its first corner.
    """
    canvas = image.copy()
    if canvas.ndim == 2:
        canvas = cv2.cvtColor(canvas, cv2.COLOR_GRAY2BGR)
    if len(img_loc) == 0:
        return canvas

    quads = np.asarray(img_loc, dtype=np.float32).reshape(-1, 4, 2)
    cv2.polylines(canvas, [np.rint(q).astype(np.int32) for q in quads], True, (0, 255, 0), 2)
    for quad in quads:
        # first corner marks the marker orientation
        x, y = np.rint(quad[0]).astype(int)
        cv2.circle(canvas, (int(x), int(y)), 4, (0, 0, 255), -1)

    if obj_loc is not None:
        anchors = np.asarray(obj_loc, dtype=np.float64).reshape(-1, 4, 3)[:, 0]
        for quad, anchor in zip(quads, anchors):
            cx, cy = np.rint(quad.mean(axis=0)).astype(int)
            ax, ay, az = (int(c) for c in anchor)
            label = f"({ax},{ay},{az})"
            cv2.putText(
                canvas, label, (int(cx), int(cy)),
                cv2.FONT_HERSHEY_SIMPLEX, 0.5, COORDINATE_LABEL_COLOR, 2,
            )
    return canvas


# ============================================================================
# Marker Map Loading
# ============================================================================


def load_marker_map(path: Path) -> MarkerMapConfig:
    """
    Load a marker map file.

    Two formats are accepted:
    - TOML: ``dictionary = "..."`` plus ``[[markers]]`` tables with
      ``id`` and ``corners`` (four [x, y, z] rows)
    - YAML/XML written by the ArUco library (``aruco_bc_dict``,
      ``aruco_bc_markers``), read with cv2.FileStorage

    Args:
        path: Marker map file

    Returns:
        MarkerMapConfig

    Raises:
        MarkerMapError: If the file is missing or malformed
    """
    path = Path(path)
    if not path.exists():
        raise MarkerMapError(path, "file not found")

    if path.suffix.lower() == ".toml":
        dictionary, entries = _read_toml_map(path)
    else:
        dictionary, entries = _read_aruco_map(path)

    return _build_marker_map(path, dictionary, entries)


def _read_toml_map(path: Path) -> tuple[str, list[tuple[object, object]]]:
    try:
        data = rtoml.load(path)
    except rtoml.TomlParsingError as e:
        raise MarkerMapError(path, f"invalid TOML: {e}") from e

    markers = data.get("markers", [])
    if not isinstance(markers, list):
        raise MarkerMapError(path, "'markers' must be an array of tables")

    entries = []
    for marker in markers:
        if not isinstance(marker, dict) or "id" not in marker or "corners" not in marker:
            raise MarkerMapError(path, "each marker needs 'id' and 'corners'")
        entries.append((marker["id"], marker["corners"]))

    return data.get("dictionary", ""), entries


def _read_aruco_map(path: Path) -> tuple[str, list[tuple[object, object]]]:
    try:
        fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    except cv2.error as e:
        raise MarkerMapError(path, f"unreadable marker map: {e}") from e

    if not fs.isOpened():
        raise MarkerMapError(path, "unreadable marker map")

    try:
        dictionary = fs.getNode("aruco_bc_dict").string()
        markers_node = fs.getNode("aruco_bc_markers")
        if markers_node.empty() or not markers_node.isSeq():
            raise MarkerMapError(path, "missing 'aruco_bc_markers' sequence")

        entries = []
        for i in range(markers_node.size()):
            marker = markers_node.at(i)
            id_node = marker.getNode("id")
            corners_node = marker.getNode("corners")
            if id_node.empty() or corners_node.empty():
                raise MarkerMapError(path, f"marker #{i} needs 'id' and 'corners'")
            corners = [
                [corners_node.at(j).at(k).real() for k in range(corners_node.at(j).size())]
                for j in range(corners_node.size())
            ]
            entries.append((id_node.real(), corners))
    finally:
        fs.release()

    return dictionary, entries


def _build_marker_map(
    path: Path,
    dictionary: str,
    entries: list[tuple[object, object]],
) -> MarkerMapConfig:
    try:
        resolve_dictionary(dictionary)
    except (KeyError, TypeError):
        raise MarkerMapError(path, f"unknown dictionary {dictionary!r}") from None

    if not entries:
        raise MarkerMapError(path, "marker map contains no markers")

    markers: dict[int, np.ndarray] = {}
    for raw_id, raw_corners in entries:
        try:
            marker_id = int(raw_id)
            corners = np.asarray(raw_corners, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise MarkerMapError(path, f"marker {raw_id!r}: non-numeric data") from e

        if corners.shape != (4, 3):
            raise MarkerMapError(
                path, f"marker {marker_id}: expected 4 corners of [x, y, z], got {corners.shape}"
            )
        if not np.all(np.isfinite(corners)):
            raise MarkerMapError(path, f"marker {marker_id}: non-finite corner")
        if marker_id in markers:
            raise MarkerMapError(path, f"duplicate marker id {marker_id}")

        markers[marker_id] = corners

    return MarkerMapConfig(
        dictionary=DICTIONARY_ALIASES.get(dictionary, dictionary),
        markers=markers,
        source=path,
    )
