"""
Tests for marker map loading in calibox.calibration.markers.
"""

import numpy as np
import pytest

from conftest import square_corners

from calibox.calibration.markers import load_marker_map, resolve_dictionary
from calibox.errors import ConfigurationError, MarkerMapError


ARUCO_YAML = """%YAML:1.0
---
aruco_bc_dict: "ARUCO"
aruco_bc_nmarkers: 2
aruco_bc_mInfoType: 1
aruco_bc_markers:
   - { id: 3, corners: [ [ -0.05, 0.05, 0. ], [ 0.05, 0.05, 0. ], [ 0.05, -0.05, 0. ], [ -0.05, -0.05, 0. ] ] }
   - { id: 8, corners: [ [ 0.1, 0.05, 0. ], [ 0.2, 0.05, 0. ], [ 0.2, -0.05, 0. ], [ 0.1, -0.05, 0. ] ] }
"""


class TestResolveDictionary:
    def test_opencv_name(self):
        import cv2
        assert resolve_dictionary("DICT_4X4_50") == cv2.aruco.DICT_4X4_50

    def test_aruco_alias(self):
        import cv2
        assert resolve_dictionary("ARUCO") == cv2.aruco.DICT_ARUCO_ORIGINAL
        assert resolve_dictionary("TAG36h11") == cv2.aruco.DICT_APRILTAG_36h11

    def test_unknown(self):
        with pytest.raises(KeyError):
            resolve_dictionary("DICT_9X9_1")


class TestLoadTomlMap:
    def test_loads_markers(self, write_marker_map):
        path = write_marker_map("map.toml", {
            1: square_corners(0.0, 0.0, 0.05),
            4: square_corners(0.1, 0.0, 0.05),
        })

        marker_map = load_marker_map(path)

        assert marker_map.dictionary == "DICT_4X4_50"
        assert marker_map.marker_ids == {1, 4}
        assert marker_map.source == path
        np.testing.assert_array_almost_equal(marker_map.markers[4], square_corners(0.1, 0.0, 0.05))
        assert marker_map.markers[4].dtype == np.float64

    def test_alias_normalized(self, write_marker_map):
        path = write_marker_map("map.toml", {1: square_corners(0, 0, 1)}, dictionary="ARUCO")
        assert load_marker_map(path).dictionary == "DICT_ARUCO_ORIGINAL"

    def test_unknown_dictionary(self, write_marker_map):
        path = write_marker_map("map.toml", {1: square_corners(0, 0, 1)}, dictionary="NOPE")
        with pytest.raises(MarkerMapError, match="unknown dictionary"):
            load_marker_map(path)

    def test_wrong_corner_count(self, write_marker_map):
        path = write_marker_map("map.toml", {1: square_corners(0, 0, 1)[:3]})
        with pytest.raises(MarkerMapError, match="expected 4 corners"):
            load_marker_map(path)

    def test_two_dimensional_corners_rejected(self, write_marker_map):
        path = write_marker_map("map.toml", {1: square_corners(0, 0, 1)[:, :2]})
        with pytest.raises(MarkerMapError):
            load_marker_map(path)

    def test_duplicate_id(self, temp_dir):
        corners = square_corners(0, 0, 1).tolist()
        path = temp_dir / "map.toml"
        path.write_text(
            'dictionary = "DICT_4X4_50"\n'
            f"[[markers]]\nid = 2\ncorners = {corners}\n"
            f"[[markers]]\nid = 2\ncorners = {corners}\n"
        )
        with pytest.raises(MarkerMapError, match="duplicate"):
            load_marker_map(path)

    def test_empty_map(self, temp_dir):
        path = temp_dir / "map.toml"
        path.write_text('dictionary = "DICT_4X4_50"\n')
        with pytest.raises(MarkerMapError, match="no markers"):
            load_marker_map(path)

    def test_invalid_toml(self, temp_dir):
        path = temp_dir / "map.toml"
        path.write_text("dictionary = \n")
        with pytest.raises(MarkerMapError, match="invalid TOML"):
            load_marker_map(path)

    def test_missing_file(self, temp_dir):
        with pytest.raises(MarkerMapError, match="not found") as excinfo:
            load_marker_map(temp_dir / "missing.toml")
        assert excinfo.value.path == temp_dir / "missing.toml"

    def test_is_a_configuration_error(self, temp_dir):
        with pytest.raises(ConfigurationError):
            load_marker_map(temp_dir / "missing.toml")


class TestLoadArucoMap:
    def test_loads_yaml(self, temp_dir):
        path = temp_dir / "map.yml"
        path.write_text(ARUCO_YAML)

        marker_map = load_marker_map(path)

        assert marker_map.dictionary == "DICT_ARUCO_ORIGINAL"
        assert marker_map.marker_ids == {3, 8}
        np.testing.assert_array_almost_equal(marker_map.markers[8], [
            [0.1, 0.05, 0.0],
            [0.2, 0.05, 0.0],
            [0.2, -0.05, 0.0],
            [0.1, -0.05, 0.0],
        ])

    def test_missing_markers_sequence(self, temp_dir):
        path = temp_dir / "map.yml"
        path.write_text('%YAML:1.0\n---\naruco_bc_dict: "ARUCO"\n')
        with pytest.raises(MarkerMapError, match="aruco_bc_markers"):
            load_marker_map(path)

    def test_missing_dictionary(self, temp_dir):
        path = temp_dir / "map.yml"
        path.write_text(ARUCO_YAML.replace('aruco_bc_dict: "ARUCO"\n', ""))
        with pytest.raises(MarkerMapError, match="unknown dictionary"):
            load_marker_map(path)
