"""Landmark (3D map point) data structure."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

import numpy as np


@dataclass(eq=False)
class Landmark:
    """A 3D landmark in the map with its observations.

    Attributes:
        id: Unique identifier for this landmark
        position: 3D position in world frame
        descriptor: Representative ORB descriptor (32 bytes) for matching
        observations: Observing keyframe id -> keypoint slot
        reference_kf_id: Keyframe the position is anchored to
        bad: True once culled or merged into another landmark
        replaced_by: Id of the landmark this one was merged into
    """

    id: int
    position: np.ndarray  # (3,) float64
    descriptor: np.ndarray  # (32,) uint8
    observations: dict[int, int] = field(default_factory=dict)
    reference_kf_id: int | None = None
    bad: bool = False
    replaced_by: int | None = None

    # Loop correction bookkeeping (keyframe ids of the pass that touched it)
    corrected_by_kf: int | None = field(default=None, repr=False)
    corrected_reference: int | None = field(default=None, repr=False)
    loop_point_for_kf: int | None = field(default=None, repr=False)

    # Global optimization bookkeeping
    position_gba: np.ndarray | None = field(default=None, repr=False)
    ba_global_for_kf: int | None = field(default=None, repr=False)

    _lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False
    )

    def __post_init__(self) -> None:
        """Ensure arrays are proper types."""
        self.position = np.asarray(self.position, dtype=np.float64).flatten()
        self.descriptor = np.asarray(self.descriptor, dtype=np.uint8).flatten()

    def get_position(self) -> np.ndarray:
        with self._lock:
            return self.position.copy()

    def set_position(self, position: np.ndarray) -> None:
        with self._lock:
            self.position = np.asarray(position, dtype=np.float64).flatten()

    def add_observation(self, keyframe_id: int, slot: int) -> None:
        """Record that ``keyframe_id`` observes this landmark at ``slot``."""
        with self._lock:
            if keyframe_id in self.observations:
                return
            self.observations[keyframe_id] = slot
            if self.reference_kf_id is None:
                self.reference_kf_id = keyframe_id

    def erase_observation(self, keyframe_id: int) -> int:
        """Forget an observation, moving the reference if needed.

        Returns:
            Number of observations left
        """
        with self._lock:
            if self.observations.pop(keyframe_id, None) is not None:
                if self.reference_kf_id == keyframe_id:
                    self.reference_kf_id = next(iter(self.observations), None)
            return len(self.observations)

    def get_observations(self) -> dict[int, int]:
        with self._lock:
            return dict(self.observations)

    def is_in_keyframe(self, keyframe_id: int) -> bool:
        with self._lock:
            return keyframe_id in self.observations

    def slot_in(self, keyframe_id: int) -> int | None:
        """Return the slot this landmark occupies in a keyframe."""
        with self._lock:
            return self.observations.get(keyframe_id)

    @property
    def num_observations(self) -> int:
        """Return number of keyframes observing this landmark."""
        return len(self.observations)

    def __repr__(self) -> str:
        """Return string representation."""
        p = self.position
        return f"Landmark(id={self.id}, position=[{p[0]:.3f}, {p[1]:.3f}, {p[2]:.3f}])"
