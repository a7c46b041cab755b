"""Covisibility graph maintenance.

The covisibility graph is a weighted undirected graph where:
- Nodes are keyframes
- Edges connect keyframes that share observations of the same landmarks
- Edge weights represent the number of shared landmarks

Edges live on the keyframes themselves; this module recomputes them from
the landmark observations and maintains the spanning tree on first
connection.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .keyframe import Keyframe
    from .slam_map import Map

MIN_SHARED_LANDMARKS = 15


def count_shared_landmarks(slam_map: Map, keyframe: Keyframe) -> dict[int, int]:
    """Count landmarks shared between ``keyframe`` and every other keyframe.

    Args:
        slam_map: Map used to resolve landmark ids
        keyframe: Keyframe whose neighbourhood is counted

    Returns:
        Mapping other keyframe id -> number of shared landmarks
    """
    shared_counts: dict[int, int] = defaultdict(int)

    for lm_id in keyframe.get_landmark_ids():
        landmark = slam_map.get_landmark(lm_id)
        if landmark is None or landmark.bad:
            continue

        for other_kf_id in landmark.get_observations():
            if other_kf_id != keyframe.id:
                shared_counts[other_kf_id] += 1

    return dict(shared_counts)


def update_connections(
    slam_map: Map,
    keyframe: Keyframe,
    min_shared: int = MIN_SHARED_LANDMARKS,
) -> None:
    """Recompute the covisibility edges of a keyframe.

    Edges to keyframes sharing at least ``min_shared`` landmarks are kept.
    When none reaches the threshold the single strongest edge is kept so the
    keyframe stays connected. The first time a non-origin keyframe is
    connected its strongest neighbour becomes its spanning tree parent.

    Args:
        slam_map: Map used to resolve ids
        keyframe: Keyframe to update
        min_shared: Minimum shared landmarks to create an edge
    """
    shared_counts = count_shared_landmarks(slam_map, keyframe)
    if not shared_counts:
        return

    connections: dict[int, int] = {}
    for other_kf_id, count in shared_counts.items():
        other = slam_map.get_keyframe(other_kf_id)
        if other is None or other.bad:
            continue
        if count >= min_shared:
            connections[other_kf_id] = count
            other.add_connection(keyframe.id, count)

    if not connections:
        live = {
            k: c for k, c in shared_counts.items()
            if (kf := slam_map.get_keyframe(k)) is not None and not kf.bad
        }
        if not live:
            return
        best_id = max(live, key=lambda k: (live[k], -k))
        connections[best_id] = live[best_id]
        slam_map.get_keyframe(best_id).add_connection(keyframe.id, live[best_id])

    first = keyframe.set_connections(connections)

    if (
        first
        and keyframe.parent_id is None
        and keyframe.id not in slam_map.keyframe_origins
    ):
        best_id = keyframe.get_covisible_ids()[0]
        parent = slam_map.get_keyframe(best_id)
        if parent is not None:
            keyframe.set_parent(best_id)
            parent.add_child(keyframe.id)
