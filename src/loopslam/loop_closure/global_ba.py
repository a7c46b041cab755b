"""Cancellable global bundle adjustment rounds.

Every loop correction launches a full bundle adjustment on a background
worker. A newer correction may supersede a running round: ``stop`` cancels
the round and bumps the round index without waiting for the worker, and a
worker whose round index is no longer current discards its result instead
of committing it. At most one round is ever authoritative.

Committing a round propagates the optimized poses down the spanning tree to
keyframes created while the solver ran, and moves landmarks the solver did
not see along with their reference keyframe.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import TYPE_CHECKING

from ..config import LoopClosingConfig
from .protocols import wait_for_pause

if TYPE_CHECKING:
    from ..mapping import Map
    from ..optimizer import BAResult
    from .protocols import LocalMapper, Optimizer

logger = logging.getLogger(__name__)


class GlobalOptimizationTask:
    """Round-versioned handle on the global bundle adjustment worker."""

    def __init__(
        self,
        slam_map: Map,
        optimizer: Optimizer,
        local_mapper: LocalMapper,
        config: LoopClosingConfig | None = None,
    ) -> None:
        """Initialize task handle.

        Args:
            slam_map: Shared map
            optimizer: Provides full bundle adjustment
            local_mapper: Paused while a round is committed
            config: Iterations and kernel settings (defaults if None)
        """
        self._map = slam_map
        self._optimizer = optimizer
        self._local_mapper = local_mapper
        self._config = config or LoopClosingConfig()

        self._lock = threading.Lock()
        self._round = 0
        self._running = False
        self._finished = True
        self._stop_event: threading.Event | None = None
        self._worker: threading.Thread | None = None

        # Statistics
        self._num_committed = 0
        self._num_discarded = 0

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._finished

    @property
    def round_index(self) -> int:
        with self._lock:
            return self._round

    @property
    def num_committed(self) -> int:
        with self._lock:
            return self._num_committed

    @property
    def num_discarded(self) -> int:
        with self._lock:
            return self._num_discarded

    def run(self, anchor_id: int) -> None:
        """Start a new round on a fresh worker.

        Args:
            anchor_id: Id of the keyframe whose loop correction triggered the round
        """
        with self._lock:
            self._running = True
            self._finished = False
            stop_event = threading.Event()
            self._stop_event = stop_event
            round_index = self._round
            worker = threading.Thread(
                target=self._run_round,
                args=(anchor_id, round_index, stop_event),
                name=f"GlobalBA-{round_index}",
                daemon=True,
            )
            self._worker = worker
        worker.start()

    def stop(self) -> None:
        """Cancel the current round and detach its worker. Does not block on
        the solver."""
        with self._lock:
            if self._stop_event is not None:
                self._stop_event.set()
            self._round += 1
            self._running = False
            self._worker = None
        logger.debug("Global bundle adjustment aborted")

    def join(self, timeout: float | None = None) -> None:
        """Wait for the current (non-detached) worker to exit."""
        with self._lock:
            worker = self._worker
        if worker is not None:
            worker.join(timeout)

    def _run_round(
        self, anchor_id: int, round_index: int, stop_event: threading.Event
    ) -> None:
        cfg = self._config
        logger.info(f"Starting global bundle adjustment (anchor keyframe {anchor_id})")

        try:
            result = self._optimizer.full_bundle_adjustment(
                self._map,
                cfg.global_ba_iterations,
                stop_event,
                anchor_id,
                cfg.global_ba_robust,
            )
        except Exception:
            logger.exception(f"Global bundle adjustment round {round_index} failed")
            result = None

        with self._lock:
            try:
                if round_index != self._round or stop_event.is_set():
                    self._num_discarded += 1
                    logger.debug(f"Discarding stale global bundle adjustment round {round_index}")
                    return

                if result is not None and result.optimized_poses:
                    self._commit(result, anchor_id)
                    self._num_committed += 1
                    logger.info("Map updated by global bundle adjustment")
            finally:
                # A superseded round leaves the flags to its successor
                if round_index == self._round:
                    self._finished = True
                    self._running = False

    def _commit(self, result: BAResult, anchor_id: int) -> None:
        """Write an authoritative round into the map."""
        self._local_mapper.request_pause()
        wait_for_pause(self._local_mapper, self._config.pause_poll_interval)

        try:
            with self._map.update_lock:
                self._record_result(result, anchor_id)
                self._correct_keyframes(anchor_id)
                self._correct_landmarks(anchor_id)
                self._map.inform_structural_change()
        finally:
            self._local_mapper.resume()

    def _record_result(self, result: BAResult, anchor_id: int) -> None:
        for kf_id, pose in result.optimized_poses.items():
            keyframe = self._map.get_keyframe(kf_id)
            if keyframe is None:
                continue
            keyframe.pose_gba = pose.copy()
            keyframe.ba_global_for_kf = anchor_id

        for lm_id, position in result.optimized_points.items():
            landmark = self._map.get_landmark(lm_id)
            if landmark is None:
                continue
            landmark.position_gba = position.copy()
            landmark.ba_global_for_kf = anchor_id

    def _correct_keyframes(self, anchor_id: int) -> None:
        """Breadth-first from the origins: keyframes the solver did not see
        keep their pose relative to their parent."""
        queue = deque(
            kf for kf_id in self._map.keyframe_origins
            if (kf := self._map.get_keyframe(kf_id)) is not None
        )
        visited: set[int] = set()

        while queue:
            keyframe = queue.popleft()
            if keyframe.id in visited:
                continue
            visited.add(keyframe.id)

            if keyframe.ba_global_for_kf != anchor_id or keyframe.pose_gba is None:
                # Not reached by this round; keep it where it is
                keyframe.pose_gba = keyframe.get_pose()
                keyframe.ba_global_for_kf = anchor_id

            T_wp = keyframe.get_pose().inverse()
            for child_id in sorted(keyframe.get_children()):
                child = self._map.get_keyframe(child_id)
                if child is None or child.bad:
                    continue
                if child.ba_global_for_kf != anchor_id:
                    T_child_parent = child.get_pose() @ T_wp
                    child.pose_gba = T_child_parent @ keyframe.pose_gba
                    child.ba_global_for_kf = anchor_id
                queue.append(child)

            keyframe.pose_before_gba = keyframe.get_pose()
            keyframe.set_pose(keyframe.pose_gba)

    def _correct_landmarks(self, anchor_id: int) -> None:
        for landmark in self._map.get_all_landmarks():
            if landmark.bad:
                continue

            if landmark.ba_global_for_kf == anchor_id and landmark.position_gba is not None:
                landmark.set_position(landmark.position_gba)
                continue

            reference = self._map.live_ancestor(landmark.reference_kf_id)
            if reference is None or reference.ba_global_for_kf != anchor_id:
                continue
            if reference.pose_before_gba is None:
                continue

            # Map to the non-corrected camera, then back with the corrected pose
            X_c = reference.pose_before_gba.transform_points(landmark.get_position())
            landmark.set_position(reference.get_pose().inverse().transform_points(X_c))
