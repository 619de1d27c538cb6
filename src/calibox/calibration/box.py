"""
Box rig geometry.

Each face of the box rig is described by its own planar marker map. These
functions place a face's local (u, v) map coordinates into the rig frame and
snap them onto a shared integer lattice, so that a corner on the edge between
two faces comes out bit-identical from either face.

A corner shared by two faces must be authored with identical pre-offset
coordinates in both maps; otherwise it lands on different lattice nodes and
is dropped during stereo reconciliation.
"""

from __future__ import annotations

import numpy as np

from ..types import BoxLattice, Plane


# plane -> (rig axis for u, sign of u, rig axis for v, sign of v)
PLANE_AXES = {
    Plane.XY: (0, 1.0, 1, 1.0),   # (u, v, 0)
    Plane.YZ: (2, -1.0, 1, 1.0),  # (0, v, -u)
    Plane.XZ: (0, 1.0, 2, -1.0),  # (u, 0, -v)
}


def map_points(
    points: np.ndarray,
    plane: Plane,
    lattice: BoxLattice,
) -> np.ndarray:
    """
    Map local marker map points of one face onto the rig lattice.

    Args:
        points: (n, 3) or (n, 2) local coordinates; only x and y are used
        plane: Face the map is attached to
        lattice: Shared offset and denominator

    Returns:
        (n, 3) float64 lattice coordinates (integer valued)
    """
    points = np.asarray(points, dtype=np.float64)
    points = points.reshape(-1, points.shape[-1])
    u_axis, u_sign, v_axis, v_sign = PLANE_AXES[Plane(plane)]

    rig = np.zeros((points.shape[0], 3), dtype=np.float64)
    rig[:, u_axis] = u_sign * points[:, 0]
    rig[:, v_axis] = v_sign * points[:, 1]

    # 0.0 + rint() normalizes -0.0 so equal nodes are equal tuples too
    return np.rint((rig + lattice.offset) / lattice.denominator) + 0.0


def map_point(point, plane: Plane, lattice: BoxLattice) -> np.ndarray:
    """Single point version of map_points. Returns a (3,) array."""
    return map_points(np.asarray(point, dtype=np.float64).reshape(1, -1), plane, lattice)[0]


def lattice_to_metric(points: np.ndarray, lattice: BoxLattice) -> np.ndarray:
    """
    Convert lattice coordinates back to the marker maps' metric unit.

    Result is the rig frame position, snapped to the lattice resolution.
    """
    return np.asarray(points, dtype=np.float64) * lattice.denominator - lattice.offset
