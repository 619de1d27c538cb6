"""
Stereo correspondence reconciliation.

Restricts two views' per-image correspondence lists to the object points
both cameras observed, keeping the two outputs index-aligned. Object points
are compared by exact equality, which is why box rig points live on an
integer lattice.

Pure functions - no classes, no state.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ..types import PointPacket


@dataclass(frozen=True, slots=True)
class ReconciledViews:
    """
    Index-aligned correspondence lists of both views.

    Row k of left[i].obj_loc equals row k of right[i].obj_loc for every i.
    """

    left: list[PointPacket]
    right: list[PointPacket]
    dropped: int  # observations without a partner in the other view


def reconcile_packets(
    packet_a: PointPacket,
    packet_b: PointPacket,
) -> tuple[PointPacket, PointPacket, int]:
    """
    Intersect the object points of two packets of the same image index.

    Each point of packet_a is matched to the first not yet consumed equal
    point of packet_b. Output order follows packet_a.

    Args:
        packet_a: Correspondences of view A
        packet_b: Correspondences of view B

    Returns:
        (filtered_a, filtered_b, dropped) where dropped counts points of
        either view that found no partner
    """
    keys_b = [tuple(p) for p in np.asarray(packet_b.obj_loc).tolist()]
    consumed = [False] * len(keys_b)

    index_a = []
    index_b = []
    for i, key in enumerate(tuple(p) for p in np.asarray(packet_a.obj_loc).tolist()):
        for j, candidate in enumerate(keys_b):
            if not consumed[j] and candidate == key:
                consumed[j] = True
                index_a.append(i)
                index_b.append(j)
                break

    dropped = (len(packet_a) - len(index_a)) + (len(packet_b) - len(index_b))

    filtered_a = PointPacket(
        img_loc=packet_a.img_loc[index_a].reshape(-1, 2),
        obj_loc=packet_a.obj_loc[index_a].reshape(-1, 3),
    )
    filtered_b = PointPacket(
        img_loc=packet_b.img_loc[index_b].reshape(-1, 2),
        obj_loc=packet_b.obj_loc[index_b].reshape(-1, 3),
    )
    return filtered_a, filtered_b, dropped


def reconcile_views(
    view_a: list[PointPacket],
    view_b: list[PointPacket],
) -> ReconciledViews:
    """
    Reconcile two views image by image.

    Args:
        view_a: Per-image packets of the left camera
        view_b: Per-image packets of the right camera (same length)

    Returns:
        ReconciledViews with each view's own filtered list

    Raises:
        ValueError: If the views hold a different number of images
    """
    if len(view_a) != len(view_b):
        raise ValueError(
            f"Views hold a different number of images: {len(view_a)} vs {len(view_b)}"
        )

    left = []
    right = []
    dropped = 0
    for packet_a, packet_b in zip(view_a, view_b):
        filtered_a, filtered_b, lost = reconcile_packets(packet_a, packet_b)
        left.append(filtered_a)
        right.append(filtered_b)
        dropped += lost

    return ReconciledViews(left=left, right=right, dropped=dropped)
