"""
Tests for calibox.calibration.patterns and the detectors behind them.
"""

import cv2
import numpy as np
import pytest

from conftest import square_corners

from calibox.calibration.box import lattice_to_metric, map_points
from calibox.calibration.chessboard import find_chessboard_corners, get_chessboard_object_points
from calibox.calibration.markers import COORDINATE_LABEL_COLOR, detect_markers
from calibox.calibration.patterns import (
    BoxRigPattern,
    ChessboardPattern,
    MarkerMapPattern,
    build_pattern,
)
from calibox.errors import ConfigurationError, MarkerMapError
from calibox.settings import validate_settings
from calibox.types import (
    BoxLattice,
    ChessboardConfig,
    FaceAssignment,
    MarkerMapConfig,
    PatternType,
    Plane,
)


BLANK = np.full((480, 640, 3), 255, dtype=np.uint8)


def synthetic_chessboard(squares_x=8, squares_y=6, square_px=40, origin=(120, 100)):
    """White image with a black/white board; inner corners (squares - 1)."""
    image = np.full((480, 640), 255, dtype=np.uint8)
    x0, y0 = origin
    for row in range(squares_y):
        for col in range(squares_x):
            if (row + col) % 2 == 0:
                x = x0 + col * square_px
                y = y0 + row * square_px
                image[y:y + square_px, x:x + square_px] = 0
    return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)


def fake_marker_detector(detections):
    calls = []

    def _detect(image, dictionary):
        calls.append(dictionary)
        return [(marker_id, np.asarray(c, dtype=np.float32)) for marker_id, c in detections]

    _detect.calls = calls
    return _detect


def image_quad(x, y, size=20.0):
    return np.array([[x, y], [x + size, y], [x + size, y + size], [x, y + size]])


# ============================================================================
# Chessboard
# ============================================================================


class TestChessboardObjectPoints:
    def test_row_major_grid(self):
        points = get_chessboard_object_points(ChessboardConfig(3, 2, 0.5))
        np.testing.assert_array_almost_equal(points, [
            [0.0, 0.0, 0.0],
            [0.5, 0.0, 0.0],
            [1.0, 0.0, 0.0],
            [0.0, 0.5, 0.0],
            [0.5, 0.5, 0.0],
            [1.0, 0.5, 0.0],
        ])

    def test_size_and_dtype(self, sample_chessboard_config):
        points = get_chessboard_object_points(sample_chessboard_config)
        assert points.shape == (54, 3)
        assert points.dtype == np.float32
        assert np.all(points[:, 2] == 0)


class TestChessboardPattern:
    def test_found_gives_full_grid(self, sample_chessboard_config):
        corners = np.random.default_rng(0).uniform(0, 400, (54, 2)).astype(np.float32)
        pattern = ChessboardPattern(sample_chessboard_config, detector=lambda image, size: corners)

        packet = pattern.detect(BLANK)

        assert len(packet) == 9 * 6
        np.testing.assert_array_equal(packet.img_loc, corners)
        np.testing.assert_array_almost_equal(packet.obj_loc[1], [0.025, 0.0, 0.0])
        np.testing.assert_array_almost_equal(packet.obj_loc[9], [0.0, 0.025, 0.0])

    def test_miss_gives_empty_packet(self, sample_chessboard_config):
        pattern = ChessboardPattern(sample_chessboard_config, detector=lambda image, size: None)
        packet = pattern.detect(BLANK)
        assert packet.is_empty

    def test_wrong_corner_count_gives_empty_packet(self, sample_chessboard_config):
        pattern = ChessboardPattern(
            sample_chessboard_config,
            detector=lambda image, size: np.zeros((10, 2), dtype=np.float32),
        )
        assert pattern.detect(BLANK).is_empty

    def test_packets_do_not_share_object_points(self, sample_chessboard_config):
        corners = np.zeros((54, 2), dtype=np.float32)
        pattern = ChessboardPattern(sample_chessboard_config, detector=lambda image, size: corners)
        first = pattern.detect(BLANK)
        first.obj_loc[0, 0] = 99.0
        assert pattern.detect(BLANK).obj_loc[0, 0] == 0.0

    def test_annotate_returns_copy(self, sample_chessboard_config):
        pattern = ChessboardPattern(sample_chessboard_config, detector=lambda image, size: None)
        image = BLANK.copy()
        canvas = pattern.annotate(image, pattern.detect(image))
        assert canvas is not image
        assert canvas.shape == image.shape


class TestFindChessboardCorners:
    def test_detects_synthetic_board(self):
        image = synthetic_chessboard()
        corners = find_chessboard_corners(image, (7, 5))

        assert corners is not None
        assert corners.shape == (35, 2)

        expected = np.array(
            [[120 + 40 * i, 100 + 40 * j] for j in range(1, 6) for i in range(1, 8)],
            dtype=np.float64,
        )
        for corner in corners:
            distances = np.linalg.norm(expected - corner, axis=1)
            assert distances.min() < 1.5

    def test_blank_image_not_found(self):
        assert find_chessboard_corners(BLANK, (7, 5)) is None

    def test_wrong_size_not_found(self):
        assert find_chessboard_corners(synthetic_chessboard(), (9, 6)) is None


# ============================================================================
# ArUco marker maps
# ============================================================================


class TestDetectMarkers:
    def test_detects_generated_marker(self):
        dictionary = cv2.aruco.getPredefinedDictionary(cv2.aruco.DICT_4X4_50)
        marker = cv2.aruco.generateImageMarker(dictionary, 7, 200)
        image = np.full((480, 640), 255, dtype=np.uint8)
        image[100:300, 150:350] = marker

        detections = detect_markers(image, "DICT_4X4_50")

        assert [marker_id for marker_id, _ in detections] == [7]
        corners = detections[0][1]
        assert corners.shape == (4, 2)
        expected = [[150, 100], [350, 100], [350, 300], [150, 300]]
        np.testing.assert_allclose(corners, expected, atol=2.0)

    def test_blank_image(self):
        assert detect_markers(BLANK, "DICT_4X4_50") == []


class TestMarkerMapPattern:
    @pytest.fixture
    def marker_map(self):
        return MarkerMapConfig(
            dictionary="DICT_4X4_50",
            markers={
                1: square_corners(0.0, 0.0, 0.05),
                2: square_corners(0.1, 0.0, 0.05),
            },
        )

    def test_pairs_mapped_markers(self, marker_map):
        detector = fake_marker_detector([(2, image_quad(300, 100)), (1, image_quad(100, 100))])
        packet = MarkerMapPattern(marker_map, detector=detector).detect(BLANK)

        assert len(packet) == 8
        # Detection order is kept, four corners per marker
        np.testing.assert_array_almost_equal(packet.obj_loc[:4], marker_map.markers[2])
        np.testing.assert_array_almost_equal(packet.obj_loc[4:], marker_map.markers[1])
        np.testing.assert_array_almost_equal(packet.img_loc[:4], image_quad(300, 100))
        assert detector.calls == ["DICT_4X4_50"]

    def test_unmapped_markers_dropped(self, marker_map):
        detector = fake_marker_detector([(1, image_quad(100, 100)), (42, image_quad(300, 100))])
        packet = MarkerMapPattern(marker_map, detector=detector).detect(BLANK)
        assert len(packet) == 4
        np.testing.assert_array_almost_equal(packet.obj_loc, marker_map.markers[1])

    def test_no_mapped_markers_is_a_miss(self, marker_map):
        detector = fake_marker_detector([(42, image_quad(300, 100))])
        packet = MarkerMapPattern(marker_map, detector=detector).detect(BLANK)
        assert packet.is_empty
        assert packet.img_loc.shape == (0, 2)

    def test_annotate_draws_quads(self, marker_map):
        detector = fake_marker_detector([(1, image_quad(100, 100))])
        pattern = MarkerMapPattern(marker_map, detector=detector)
        canvas = pattern.annotate(BLANK, pattern.detect(BLANK))
        assert not np.array_equal(canvas, BLANK)

    def test_annotate_labels_marker_coordinates(self, marker_map):
        detector = fake_marker_detector([(2, image_quad(100, 100, size=80.0))])
        plain = MarkerMapPattern(marker_map, detector=detector)
        labelled = MarkerMapPattern(marker_map, detector=detector, show_coordinates=True)
        packet = plain.detect(BLANK)

        def has_label(canvas):
            return np.any(np.all(canvas == COORDINATE_LABEL_COLOR, axis=-1))

        assert not has_label(plain.annotate(BLANK, packet))
        assert has_label(labelled.annotate(BLANK, packet))


# ============================================================================
# Box rig
# ============================================================================


@pytest.fixture
def box_maps():
    return [
        MarkerMapConfig("DICT_4X4_50", {1: square_corners(0.0, 0.0, 100.0)}),
        MarkerMapConfig("DICT_4X4_50", {2: square_corners(200.0, 0.0, 100.0)}),
        MarkerMapConfig("DICT_4X4_50", {3: square_corners(0.0, 200.0, 100.0)}),
    ]


@pytest.fixture
def box_faces():
    return [
        FaceAssignment(Plane.XY, 0),
        FaceAssignment(Plane.YZ, 1),
        FaceAssignment(Plane.XZ, 2),
    ]


class TestBoxRigPattern:
    def test_maps_every_face_onto_lattice(self, box_maps, box_faces):
        lattice = BoxLattice()
        detector = fake_marker_detector([
            (1, image_quad(100, 100)),
            (2, image_quad(200, 100)),
            (3, image_quad(300, 100)),
            (99, image_quad(400, 100)),
        ])
        pattern = BoxRigPattern(box_maps, box_faces, lattice, detector=detector)

        packet = pattern.detect(BLANK)

        assert len(packet) == 12
        np.testing.assert_array_equal(
            packet.obj_loc[:4], map_points(box_maps[0].markers[1], Plane.XY, lattice)
        )
        np.testing.assert_array_equal(
            packet.obj_loc[4:8], map_points(box_maps[1].markers[2], Plane.YZ, lattice)
        )
        np.testing.assert_array_equal(
            packet.obj_loc[8:], map_points(box_maps[2].markers[3], Plane.XZ, lattice)
        )
        np.testing.assert_array_almost_equal(packet.img_loc[4:8], image_quad(200, 100))

    def test_detects_once_per_dictionary(self, box_maps, box_faces):
        detector = fake_marker_detector([(1, image_quad(100, 100))])
        BoxRigPattern(box_maps, box_faces, detector=detector).detect(BLANK)
        assert detector.calls == ["DICT_4X4_50"]

    def test_face_with_no_markers_skipped(self, box_maps, box_faces):
        detector = fake_marker_detector([(2, image_quad(200, 100))])
        packet = BoxRigPattern(box_maps, box_faces, detector=detector).detect(BLANK)
        assert len(packet) == 4

    def test_miss(self, box_maps, box_faces):
        detector = fake_marker_detector([])
        assert BoxRigPattern(box_maps, box_faces, detector=detector).detect(BLANK).is_empty

    def test_to_solver_returns_rig_frame(self, box_maps, box_faces):
        lattice = BoxLattice()
        pattern = BoxRigPattern(box_maps, box_faces, lattice)
        lattice_points = map_points(box_maps[1].markers[2], Plane.YZ, lattice)

        metric = pattern.to_solver(lattice_points)

        assert metric.dtype == np.float32
        np.testing.assert_array_almost_equal(metric, lattice_to_metric(lattice_points, lattice))
        # YZ face: local (u, v) -> (0, v, -u)
        np.testing.assert_array_almost_equal(metric[2], [0.0, 100.0, -300.0])

    def test_face_count_mismatch(self, box_maps, box_faces):
        with pytest.raises(ConfigurationError):
            BoxRigPattern(box_maps, box_faces[:2])

    def test_lattice_too_coarse(self, box_faces):
        maps = [
            MarkerMapConfig("DICT_4X4_50", {1: square_corners(0.0, 0.0, 5.0)}),
            MarkerMapConfig("DICT_4X4_50", {2: square_corners(200.0, 0.0, 100.0)}),
            MarkerMapConfig("DICT_4X4_50", {3: square_corners(0.0, 200.0, 100.0)}),
        ]
        with pytest.raises(ConfigurationError, match="denominator"):
            BoxRigPattern(maps, box_faces, BoxLattice(denominator=10.0))

        # A finer lattice resolves the same marker
        BoxRigPattern(maps, box_faces, BoxLattice(denominator=1.0))


# ============================================================================
# Selection
# ============================================================================


class TestBuildPattern:
    def test_chessboard(self, raw_settings):
        pattern = build_pattern(validate_settings(raw_settings))
        assert isinstance(pattern, ChessboardPattern)
        assert pattern.pattern_type is PatternType.CHESSBOARD

    def test_aruco_single(self, temp_dir, write_marker_map):
        write_marker_map("map.toml", {5: square_corners(0.0, 0.0, 0.05)})
        raw = {
            "mode": "INTRINSIC",
            "pattern": "ARUCO_SINGLE",
            "images": ["a.png"],
            "aruco": {"marker_maps": ["map.toml"]},
        }
        pattern = build_pattern(validate_settings(raw, base_dir=temp_dir))
        assert isinstance(pattern, MarkerMapPattern)
        assert pattern.marker_map.marker_ids == {5}
        assert not pattern.show_coordinates

    def test_marker_coordinates_option(self, temp_dir, write_marker_map):
        write_marker_map("map.toml", {5: square_corners(0.0, 0.0, 0.05)})
        raw = {
            "mode": "PREVIEW",
            "pattern": "ARUCO_SINGLE",
            "aruco": {"marker_maps": ["map.toml"]},
            "review": {"show_marker_coordinates": True},
        }
        pattern = build_pattern(validate_settings(raw, base_dir=temp_dir))
        assert pattern.show_coordinates

    def test_aruco_box_faces_in_order(self, temp_dir, write_marker_map):
        for name, marker_id in (("xy.toml", 1), ("yz.toml", 2), ("xz.toml", 3)):
            write_marker_map(name, {marker_id: square_corners(0.0, 0.0, 100.0)})
        raw = {
            "mode": "STEREO",
            "pattern": "ARUCO_BOX",
            "images": ["l.png", "r.png"],
            "aruco": {"marker_maps": ["xy.toml", "yz.toml", "xz.toml"]},
            "intrinsic_estimate": {"left": "cam.toml"},
        }
        pattern = build_pattern(validate_settings(raw, base_dir=temp_dir))

        assert isinstance(pattern, BoxRigPattern)
        assert [face.plane for face in pattern.faces] == [Plane.XY, Plane.YZ, Plane.XZ]
        assert [m.marker_ids for m in pattern.marker_maps] == [{1}, {2}, {3}]

    def test_malformed_map_fails(self, temp_dir):
        (temp_dir / "map.toml").write_text('dictionary = "DICT_4X4_50"\n[[markers]]\nid = 1\n')
        raw = {
            "mode": "INTRINSIC",
            "pattern": "ARUCO_SINGLE",
            "images": ["a.png"],
            "aruco": {"marker_maps": ["map.toml"]},
        }
        with pytest.raises(MarkerMapError):
            build_pattern(validate_settings(raw, base_dir=temp_dir))

    def test_coarse_box_lattice_fails(self, temp_dir, write_marker_map):
        for name in ("xy.toml", "yz.toml", "xz.toml"):
            write_marker_map(name, {1: square_corners(0.0, 0.0, 0.05)})
        raw = {
            "mode": "INTRINSIC",
            "pattern": "ARUCO_BOX",
            "images": ["a.png"],
            "aruco": {"marker_maps": ["xy.toml", "yz.toml", "xz.toml"]},
            "intrinsic_estimate": {"left": "cam.toml"},
        }
        with pytest.raises(ConfigurationError, match="denominator"):
            build_pattern(validate_settings(raw, base_dir=temp_dir))
