"""
Correspondence builders, one per calibration pattern.

The pattern variant is selected once by build_pattern() when the run is
configured; the per-image loop only calls pattern.detect(image).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Protocol

import numpy as np

from ..errors import ConfigurationError
from ..settings import Settings
from ..types import (
    BOX_FACE_ORDER,
    BoxLattice,
    ChessboardConfig,
    FaceAssignment,
    MarkerMapConfig,
    PatternType,
    PointPacket,
)
from .box import lattice_to_metric, map_points
from .chessboard import draw_chessboard, find_chessboard_corners, get_chessboard_object_points
from .markers import detect_markers, draw_marker_quads, load_marker_map


logger = logging.getLogger(__name__)

ChessboardDetector = Callable[[np.ndarray, tuple[int, int]], "np.ndarray | None"]
MarkerDetector = Callable[[np.ndarray, str], "list[tuple[int, np.ndarray]]"]


class Pattern(Protocol):
    pattern_type: PatternType

    def detect(self, image: np.ndarray) -> PointPacket:
        """Build the correspondence list of one image (empty on a miss)."""

    def annotate(self, image: np.ndarray, packet: PointPacket) -> np.ndarray:
        """Return a copy of the image with the packet's image points drawn."""

    def to_solver(self, obj_loc: np.ndarray) -> np.ndarray:
        """Convert stored object points to the unit handed to the solver."""


# ============================================================================
# Chessboard
# ============================================================================


@dataclass
class ChessboardPattern:
    config: ChessboardConfig
    detector: ChessboardDetector = find_chessboard_corners
    pattern_type: PatternType = field(default=PatternType.CHESSBOARD, init=False)

    def __post_init__(self):
        self._object_points = get_chessboard_object_points(self.config)

    def detect(self, image: np.ndarray) -> PointPacket:
        corners = self.detector(image, self.config.size)
        if corners is None:
            return PointPacket()

        corners = np.asarray(corners, dtype=np.float32).reshape(-1, 2)
        if len(corners) != len(self._object_points):
            logger.warning(
                f"Detector returned {len(corners)} corners, "
                f"expected {len(self._object_points)}; ignoring image"
            )
            return PointPacket()

        return PointPacket(img_loc=corners, obj_loc=self._object_points.copy())

    def annotate(self, image: np.ndarray, packet: PointPacket) -> np.ndarray:
        corners = None if packet.is_empty else packet.img_loc
        return draw_chessboard(image, self.config.size, corners)

    def to_solver(self, obj_loc: np.ndarray) -> np.ndarray:
        return np.asarray(obj_loc, dtype=np.float32)


# ============================================================================
# ArUco marker maps
# ============================================================================


def _marker_correspondences(
    detections: list[tuple[int, np.ndarray]],
    marker_map: MarkerMapConfig,
) -> tuple[np.ndarray, np.ndarray]:
    """Pair each mapped marker's 4 image corners with its 4 map corners."""
    img = []
    obj = []
    for marker_id, corners in detections:
        layout = marker_map.markers.get(marker_id)
        if layout is None:
            continue  # marker not part of this map
        img.append(corners.reshape(4, 2))
        obj.append(layout)

    if not img:
        return np.zeros((0, 2), dtype=np.float32), np.zeros((0, 3), dtype=np.float64)
    return np.vstack(img).astype(np.float32), np.vstack(obj).astype(np.float64)


@dataclass
class MarkerMapPattern:
    marker_map: MarkerMapConfig
    detector: MarkerDetector = detect_markers
    show_coordinates: bool = False
    pattern_type: PatternType = field(default=PatternType.ARUCO_SINGLE, init=False)

    def detect(self, image: np.ndarray) -> PointPacket:
        detections = self.detector(image, self.marker_map.dictionary)
        img_loc, obj_loc = _marker_correspondences(detections, self.marker_map)
        return PointPacket(img_loc=img_loc, obj_loc=obj_loc)

    def annotate(self, image: np.ndarray, packet: PointPacket) -> np.ndarray:
        obj_loc = packet.obj_loc if self.show_coordinates else None
        return draw_marker_quads(image, packet.img_loc, obj_loc)

    def to_solver(self, obj_loc: np.ndarray) -> np.ndarray:
        return np.asarray(obj_loc, dtype=np.float32)


@dataclass
class BoxRigPattern:
    """
    Three orthogonal marker maps forming a partial cube.

    Object points are kept on the shared lattice so views and faces can be
    matched by exact equality; to_solver() converts them back to metric.
    """

    marker_maps: list[MarkerMapConfig]
    faces: list[FaceAssignment]
    lattice: BoxLattice = field(default_factory=BoxLattice)
    detector: MarkerDetector = detect_markers
    show_coordinates: bool = False
    pattern_type: PatternType = field(default=PatternType.ARUCO_BOX, init=False)

    def __post_init__(self):
        if len(self.faces) != len(self.marker_maps):
            raise ConfigurationError(
                f"{len(self.marker_maps)} marker maps but {len(self.faces)} face assignments"
            )
        for face in self.faces:
            self._check_resolution(face)

    def _check_resolution(self, face: FaceAssignment) -> None:
        marker_map = self.marker_maps[face.map_index]
        for marker_id, layout in marker_map.markers.items():
            nodes = {tuple(p) for p in map_points(layout, face.plane, self.lattice)}
            if len(nodes) < 4:
                raise ConfigurationError(
                    f"{marker_map.source}: corners of marker {marker_id} collapse onto "
                    f"shared lattice nodes; lower [box] denominator "
                    f"(currently {self.lattice.denominator})"
                )

    def detect(self, image: np.ndarray) -> PointPacket:
        img_parts = []
        obj_parts = []
        detections_by_dict: dict[str, list[tuple[int, np.ndarray]]] = {}

        for face in self.faces:
            marker_map = self.marker_maps[face.map_index]
            if marker_map.dictionary not in detections_by_dict:
                detections_by_dict[marker_map.dictionary] = self.detector(
                    image, marker_map.dictionary
                )

            img_loc, obj_loc = _marker_correspondences(
                detections_by_dict[marker_map.dictionary], marker_map
            )
            if len(obj_loc) == 0:
                continue
            img_parts.append(img_loc)
            obj_parts.append(map_points(obj_loc, face.plane, self.lattice))

        if not img_parts:
            return PointPacket()
        return PointPacket(img_loc=np.vstack(img_parts), obj_loc=np.vstack(obj_parts))

    def annotate(self, image: np.ndarray, packet: PointPacket) -> np.ndarray:
        obj_loc = packet.obj_loc if self.show_coordinates else None
        return draw_marker_quads(image, packet.img_loc, obj_loc)

    def to_solver(self, obj_loc: np.ndarray) -> np.ndarray:
        return lattice_to_metric(obj_loc, self.lattice).astype(np.float32)


# ============================================================================
# Selection
# ============================================================================


def build_pattern(
    settings: Settings,
    chessboard_detector: ChessboardDetector | None = None,
    marker_detector: MarkerDetector | None = None,
) -> ChessboardPattern | MarkerMapPattern | BoxRigPattern:
    """
    Build the pattern variant for a validated configuration.

    Marker maps are loaded here, so a malformed map file fails the run
    before any image is processed.

    Args:
        settings: Validated settings
        chessboard_detector: Replacement for find_chessboard_corners
        marker_detector: Replacement for detect_markers

    Returns:
        Pattern variant

    Raises:
        MarkerMapError: If a marker map file is missing or malformed
        ConfigurationError: If box rig maps do not fit the lattice
    """
    chessboard_detector = chessboard_detector or find_chessboard_corners
    marker_detector = marker_detector or detect_markers

    if settings.pattern_type is PatternType.CHESSBOARD:
        return ChessboardPattern(settings.chessboard, detector=chessboard_detector)

    marker_maps = [load_marker_map(path) for path in settings.marker_maps]
    for marker_map in marker_maps:
        logger.info(
            f"Loaded marker map {marker_map.source} "
            f"({len(marker_map.markers)} markers, {marker_map.dictionary})"
        )

    if settings.pattern_type is PatternType.ARUCO_SINGLE:
        return MarkerMapPattern(
            marker_maps[0],
            detector=marker_detector,
            show_coordinates=settings.show_marker_coordinates,
        )

    # Box rig maps arrive in BOX_FACE_ORDER
    faces = [FaceAssignment(plane, index) for index, plane in enumerate(BOX_FACE_ORDER)]
    return BoxRigPattern(
        marker_maps=marker_maps,
        faces=faces,
        lattice=settings.lattice,
        detector=marker_detector,
        show_coordinates=settings.show_marker_coordinates,
    )
