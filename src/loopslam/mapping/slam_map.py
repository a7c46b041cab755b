"""Shared map of keyframes and landmarks.

The map is read and mutated concurrently by tracking, local mapping, loop
closing and global optimization. Two public locks coordinate them:

- ``update_lock``: held for any structural mutation performed as part of a
  loop correction or an optimization commit, and by readers that need a
  globally consistent snapshot.
- ``point_creation_lock``: serializes landmark id allocation only.

Keyframes and landmarks reference each other by id. An erased entity is
removed from the arena and its id resolves to None afterwards.
"""

from __future__ import annotations

import itertools
import threading

from .covisibility import MIN_SHARED_LANDMARKS, update_connections
from .keyframe import Keyframe
from .landmark import Landmark


class Map:
    """Arena of keyframes and landmarks plus the structural version counter."""

    def __init__(self, min_shared_landmarks: int = MIN_SHARED_LANDMARKS) -> None:
        """Initialize empty map.

        Args:
            min_shared_landmarks: Minimum shared landmarks for a covisibility edge
        """
        self._keyframes: dict[int, Keyframe] = {}
        self._landmarks: dict[int, Landmark] = {}
        self._keyframe_origins: list[int] = []
        self._retired: dict[int, Keyframe] = {}  # erased keyframes, for parent walks
        self._max_keyframe_id: int = 0
        self._version: int = 0
        self._landmark_ids = itertools.count()
        self._min_shared = min_shared_landmarks

        self.update_lock = threading.Lock()
        self.point_creation_lock = threading.Lock()
        self._lock = threading.Lock()  # guards the containers above

    # Containers

    def add_keyframe(self, keyframe: Keyframe) -> None:
        """Insert a keyframe. The first keyframe of an empty map becomes an origin."""
        with self._lock:
            if not self._keyframes and not self._keyframe_origins:
                self._keyframe_origins.append(keyframe.id)
            self._keyframes[keyframe.id] = keyframe
            self._max_keyframe_id = max(self._max_keyframe_id, keyframe.id)

    def add_landmark(self, landmark: Landmark) -> None:
        with self._lock:
            self._landmarks[landmark.id] = landmark

    def erase_keyframe(self, keyframe: Keyframe) -> None:
        """Remove a keyframe from the arena (no graph bookkeeping)."""
        with self._lock:
            self._keyframes.pop(keyframe.id, None)

    def erase_landmark(self, landmark: Landmark) -> None:
        """Remove a landmark from the arena (no graph bookkeeping)."""
        with self._lock:
            self._landmarks.pop(landmark.id, None)

    def get_keyframe(self, keyframe_id: int | None) -> Keyframe | None:
        if keyframe_id is None:
            return None
        with self._lock:
            return self._keyframes.get(keyframe_id)

    def get_landmark(self, landmark_id: int | None) -> Landmark | None:
        if landmark_id is None:
            return None
        with self._lock:
            return self._landmarks.get(landmark_id)

    def get_all_keyframes(self) -> list[Keyframe]:
        """Snapshot of all keyframes ordered by id."""
        with self._lock:
            return [self._keyframes[k] for k in sorted(self._keyframes)]

    def get_all_landmarks(self) -> list[Landmark]:
        """Snapshot of all landmarks."""
        with self._lock:
            return list(self._landmarks.values())

    def new_landmark_id(self) -> int:
        """Allocate a fresh landmark id."""
        with self.point_creation_lock:
            return next(self._landmark_ids)

    @property
    def keyframe_origins(self) -> list[int]:
        with self._lock:
            return list(self._keyframe_origins)

    def add_origin(self, keyframe_id: int) -> None:
        """Register an additional origin keyframe (a new map initialization)."""
        with self._lock:
            if keyframe_id not in self._keyframe_origins:
                self._keyframe_origins.append(keyframe_id)

    @property
    def max_keyframe_id(self) -> int:
        with self._lock:
            return self._max_keyframe_id

    @property
    def num_keyframes(self) -> int:
        with self._lock:
            return len(self._keyframes)

    @property
    def num_landmarks(self) -> int:
        with self._lock:
            return len(self._landmarks)

    # Structural version

    def inform_structural_change(self) -> None:
        """Record that poses or landmark positions changed wholesale."""
        with self._lock:
            self._version += 1

    def get_version(self) -> int:
        with self._lock:
            return self._version

    @property
    def version(self) -> int:
        return self.get_version()

    # Observations

    def add_observation(self, landmark: Landmark, keyframe: Keyframe, slot: int) -> None:
        """Associate ``landmark`` with keypoint ``slot`` of ``keyframe`` on both sides."""
        keyframe.set_landmark(slot, landmark.id)
        landmark.add_observation(keyframe.id, slot)

    def erase_observation(self, landmark: Landmark, keyframe: Keyframe) -> None:
        """Drop the association on both sides; a landmark left with fewer
        than two observations is culled."""
        keyframe.erase_landmark(landmark.id)
        if landmark.erase_observation(keyframe.id) < 2:
            self.set_bad_landmark(landmark)

    def set_bad_landmark(self, landmark: Landmark) -> None:
        """Cull a landmark: detach it from every observer and erase it."""
        with landmark._lock:
            observations = dict(landmark.observations)
            landmark.observations.clear()
            landmark.bad = True

        for kf_id in observations:
            keyframe = self.get_keyframe(kf_id)
            if keyframe is not None:
                keyframe.erase_landmark(landmark.id)
        self.erase_landmark(landmark)

    def replace_landmark(self, old: Landmark, new: Landmark) -> None:
        """Merge ``old`` into ``new``.

        Every keyframe observing ``old`` is moved to ``new``; where a keyframe
        already observes ``new`` the duplicate association is dropped. ``old``
        is marked bad and erased.
        """
        if old.id == new.id:
            return

        with old._lock:
            observations = dict(old.observations)
            old.observations.clear()
            old.bad = True
            old.replaced_by = new.id

        for kf_id, slot in observations.items():
            keyframe = self.get_keyframe(kf_id)
            if keyframe is None:
                continue
            if not new.is_in_keyframe(kf_id):
                keyframe.set_landmark(slot, new.id)
                new.add_observation(kf_id, slot)
            else:
                keyframe.erase_landmark_at(slot)

        self.erase_landmark(old)

    # Covisibility and spanning tree

    def update_connections(self, keyframe: Keyframe) -> None:
        """Recompute covisibility edges of ``keyframe`` from its landmarks."""
        update_connections(self, keyframe, self._min_shared)

    def set_not_erase(self, keyframe: Keyframe) -> None:
        """Protect a keyframe from being erased while loop closing uses it."""
        with keyframe._lock:
            keyframe.not_erase = True

    def set_erase(self, keyframe: Keyframe) -> None:
        """Release erase protection; performs a deferred erase if one is pending.

        Keyframes with loop edges stay protected.
        """
        with keyframe._lock:
            if not keyframe.get_loop_edges():
                keyframe.not_erase = False
            pending = keyframe.to_be_erased and not keyframe.not_erase

        if pending:
            self.set_bad_keyframe(keyframe)

    def set_bad_keyframe(self, keyframe: Keyframe) -> None:
        """Erase a keyframe, keeping the spanning tree connected.

        A protected keyframe is only flagged ``to_be_erased``; the erase runs
        when protection is released. Origin keyframes are never erased.
        """
        if keyframe.id in self.keyframe_origins:
            return
        with keyframe._lock:
            if keyframe.not_erase:
                keyframe.to_be_erased = True
                return

        for other_id in keyframe.get_connected_ids():
            other = self.get_keyframe(other_id)
            if other is not None:
                other.erase_connection(keyframe.id)

        for lm_id in keyframe.get_landmark_ids():
            landmark = self.get_landmark(lm_id)
            if landmark is not None:
                self.erase_observation(landmark, keyframe)

        keyframe.clear_connections()
        parent = self.get_keyframe(keyframe.parent_id)
        self._reparent_children(keyframe, parent)

        if parent is not None:
            parent.erase_child(keyframe.id)
            keyframe.pose_relative_to_parent = keyframe.get_pose() @ parent.get_pose().inverse()
        keyframe.bad = True
        self.erase_keyframe(keyframe)
        with self._lock:
            self._retired[keyframe.id] = keyframe

    def _reparent_children(self, keyframe: Keyframe, parent: Keyframe | None) -> None:
        # Each child is attached to its most covisible keyframe already in the
        # tree; the candidate set grows as children are attached.
        candidates = {parent.id} if parent is not None else set()
        children = {
            c for c in keyframe.get_children()
            if (kf := self.get_keyframe(c)) is not None and not kf.bad
        }

        while children:
            best: tuple[int, int, int] | None = None  # (weight, child, new parent)
            for child_id in children:
                child = self.get_keyframe(child_id)
                for covisible_id in child.get_covisible_ids():
                    if covisible_id not in candidates:
                        continue
                    weight = child.get_weight(covisible_id)
                    if best is None or weight > best[0]:
                        best = (weight, child_id, covisible_id)
            if best is None:
                break

            _, child_id, new_parent_id = best
            self.get_keyframe(child_id).set_parent(new_parent_id)
            self.get_keyframe(new_parent_id).add_child(child_id)
            candidates.add(child_id)
            children.remove(child_id)

        for child_id in children:
            child = self.get_keyframe(child_id)
            child.set_parent(parent.id if parent is not None else None)
            if parent is not None:
                parent.add_child(child_id)

    def _lookup_any(self, keyframe_id: int | None) -> Keyframe | None:
        if keyframe_id is None:
            return None
        with self._lock:
            keyframe = self._keyframes.get(keyframe_id)
            return keyframe if keyframe is not None else self._retired.get(keyframe_id)

    def live_ancestor(self, keyframe_id: int | None) -> Keyframe | None:
        """Resolve a keyframe id, walking up the parent chain past erased keyframes.

        The walk is bounded by the number of keyframes ever inserted.
        """
        current = self._lookup_any(keyframe_id)
        for _ in range(self.max_keyframe_id + 2):
            if current is None:
                return None
            if not current.bad:
                return current
            current = self._lookup_any(current.parent_id)
        return None

    def clear(self) -> None:
        """Remove every keyframe and landmark and reset the counters."""
        with self._lock:
            self._keyframes.clear()
            self._landmarks.clear()
            self._retired.clear()
            self._keyframe_origins.clear()
            self._max_keyframe_id = 0
        with self.point_creation_lock:
            self._landmark_ids = itertools.count()

    def __repr__(self) -> str:
        """Return string representation."""
        return (
            f"Map(keyframes={self.num_keyframes}, landmarks={self.num_landmarks}, "
            f"version={self.version})"
        )
