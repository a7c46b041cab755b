"""Keyframe data structure.

A keyframe carries a camera pose, its feature observations and the graph
edges loop closing relies on: weighted covisibility edges, a spanning-tree
parent and children, and loop edges. All cross references are keyframe or
landmark ids; resolve them through the owning Map.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

import numpy as np

from ..geometry import SE3


@dataclass(eq=False)
class Keyframe:
    """A keyframe in the shared map.

    Pose, feature associations and graph edges are read and written from the
    tracking, local mapping and loop closing threads, so every accessor takes
    the keyframe's own lock. No method holds that lock while calling into
    another entity.
    """

    id: int
    pose: SE3  # Camera pose T_camera_world
    keypoints: np.ndarray  # (N, 2) keypoint pixel coordinates
    descriptors: np.ndarray  # (N, 32) ORB descriptors
    bow_vector: np.ndarray | None = None  # place recognition descriptor
    feature_words: np.ndarray | None = None  # (N,) visual word per keypoint
    # Landmark associations: keypoint slot -> landmark id
    slot_to_landmark: dict[int, int] = field(default_factory=dict)
    timestamp_ns: int = 0

    # Covisibility: keyframe id -> number of shared landmarks
    _connections: dict[int, int] = field(default_factory=dict, init=False, repr=False)
    _ordered_connections: list[int] = field(default_factory=list, init=False, repr=False)
    _first_connection: bool = field(default=True, init=False, repr=False)

    # Spanning tree and loop edges
    parent_id: int | None = field(default=None, init=False)
    _children: set[int] = field(default_factory=set, init=False, repr=False)
    _loop_edges: set[int] = field(default_factory=set, init=False, repr=False)

    # Erase protection
    not_erase: bool = field(default=False, init=False)
    to_be_erased: bool = field(default=False, init=False)
    bad: bool = field(default=False, init=False)
    # Pose relative to the parent, stored when the keyframe is erased
    pose_relative_to_parent: SE3 | None = field(default=None, init=False, repr=False)

    # Global optimization bookkeeping
    pose_gba: SE3 | None = field(default=None, init=False, repr=False)
    pose_before_gba: SE3 | None = field(default=None, init=False, repr=False)
    ba_global_for_kf: int | None = field(default=None, init=False, repr=False)

    _lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False
    )

    def __post_init__(self) -> None:
        """Ensure arrays are proper types."""
        self.keypoints = np.asarray(self.keypoints, dtype=np.float64).reshape(-1, 2)
        self.descriptors = np.asarray(self.descriptors, dtype=np.uint8)
        if self.descriptors.ndim == 1:
            self.descriptors = self.descriptors.reshape(-1, 32)
        if len(self.descriptors) != len(self.keypoints):
            raise ValueError(
                f"Keyframe {self.id}: {len(self.keypoints)} keypoints but "
                f"{len(self.descriptors)} descriptors"
            )

    # Pose

    def get_pose(self) -> SE3:
        """Return a copy of T_camera_world."""
        with self._lock:
            return self.pose.copy()

    def set_pose(self, pose: SE3) -> None:
        """Replace T_camera_world."""
        with self._lock:
            self.pose = pose.copy()

    # Landmark associations

    @property
    def num_keypoints(self) -> int:
        """Return number of keypoints."""
        return len(self.keypoints)

    def landmark_at(self, slot: int) -> int | None:
        """Return the landmark id associated with a keypoint slot."""
        with self._lock:
            return self.slot_to_landmark.get(slot)

    def get_landmark_ids(self) -> list[int]:
        """Return ids of all associated landmarks."""
        with self._lock:
            return list(self.slot_to_landmark.values())

    def get_slot_landmarks(self) -> dict[int, int]:
        """Return a copy of the slot -> landmark id association."""
        with self._lock:
            return dict(self.slot_to_landmark)

    def set_landmark(self, slot: int, landmark_id: int) -> None:
        """Associate a landmark with a keypoint slot."""
        with self._lock:
            self.slot_to_landmark[slot] = landmark_id

    def erase_landmark_at(self, slot: int) -> None:
        """Remove the association held by a keypoint slot."""
        with self._lock:
            self.slot_to_landmark.pop(slot, None)

    def erase_landmark(self, landmark_id: int) -> None:
        """Remove every slot associated with ``landmark_id``."""
        with self._lock:
            for slot in [s for s, lm in self.slot_to_landmark.items() if lm == landmark_id]:
                del self.slot_to_landmark[slot]

    # Covisibility

    def add_connection(self, keyframe_id: int, weight: int) -> None:
        """Add or update a covisibility edge."""
        with self._lock:
            self._connections[keyframe_id] = weight
            self._update_best_covisibles()

    def erase_connection(self, keyframe_id: int) -> None:
        """Remove a covisibility edge if present."""
        with self._lock:
            if self._connections.pop(keyframe_id, None) is not None:
                self._update_best_covisibles()

    def set_connections(self, connections: dict[int, int]) -> bool:
        """Replace all covisibility edges.

        Returns:
            True if this was the first time connections were set
        """
        with self._lock:
            self._connections = dict(connections)
            self._update_best_covisibles()
            first = self._first_connection
            self._first_connection = False
            return first

    def clear_connections(self) -> None:
        """Drop all covisibility edges."""
        with self._lock:
            self._connections.clear()
            self._ordered_connections.clear()

    def _update_best_covisibles(self) -> None:
        self._ordered_connections = sorted(
            self._connections, key=lambda kf_id: (-self._connections[kf_id], kf_id)
        )

    def get_connected_ids(self) -> set[int]:
        """Return ids of all covisible keyframes."""
        with self._lock:
            return set(self._connections)

    def get_covisible_ids(self) -> list[int]:
        """Return covisible keyframe ids ordered by decreasing weight."""
        with self._lock:
            return list(self._ordered_connections)

    def get_best_covisibles(self, n: int) -> list[int]:
        """Return the ``n`` most covisible keyframe ids."""
        with self._lock:
            return self._ordered_connections[:n]

    def get_covisibles_by_weight(self, min_weight: int) -> list[int]:
        """Return covisible keyframe ids whose weight is at least ``min_weight``."""
        with self._lock:
            return [k for k in self._ordered_connections if self._connections[k] >= min_weight]

    def get_weight(self, keyframe_id: int) -> int:
        """Return the covisibility weight to another keyframe (0 if none)."""
        with self._lock:
            return self._connections.get(keyframe_id, 0)

    # Spanning tree

    def set_parent(self, parent_id: int | None) -> None:
        with self._lock:
            self.parent_id = parent_id

    def add_child(self, keyframe_id: int) -> None:
        with self._lock:
            self._children.add(keyframe_id)

    def erase_child(self, keyframe_id: int) -> None:
        with self._lock:
            self._children.discard(keyframe_id)

    def get_children(self) -> set[int]:
        with self._lock:
            return set(self._children)

    # Loop edges

    def add_loop_edge(self, keyframe_id: int) -> None:
        """Record a loop edge; keyframes with loop edges are never erased."""
        with self._lock:
            self.not_erase = True
            self._loop_edges.add(keyframe_id)

    def get_loop_edges(self) -> set[int]:
        with self._lock:
            return set(self._loop_edges)

    def __repr__(self) -> str:
        """Return string representation."""
        return f"Keyframe(id={self.id}, landmarks={len(self.slot_to_landmark)})"
