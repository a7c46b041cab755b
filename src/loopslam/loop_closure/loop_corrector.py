"""Loop correction.

Once a loop is verified, the current keyframe and its covisible
neighbourhood are moved onto the loop side of the map:

1. Pause local mapping and abort any running global bundle adjustment
2. Compute the corrected similarity of every neighbour from the loop
   similarity and its pose relative to the current keyframe
3. Move the neighbourhood's landmarks and keyframes
4. Fuse loop landmarks with the duplicates observed on the current side
5. Optimize the essential graph with the new loop connections
6. Add the loop edge and start a new global bundle adjustment round
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..config import LoopClosingConfig
from ..geometry import Sim3
from .protocols import wait_for_pause

if TYPE_CHECKING:
    from ..mapping import Keyframe, Map
    from .global_ba import GlobalOptimizationTask
    from .loop_detector import Loop
    from .protocols import LocalMapper, Matcher, Optimizer

logger = logging.getLogger(__name__)


class LoopCorrector:
    """Applies a verified loop to the shared map."""

    def __init__(
        self,
        slam_map: Map,
        matcher: Matcher,
        optimizer: Optimizer,
        local_mapper: LocalMapper,
        global_optimization: GlobalOptimizationTask,
        config: LoopClosingConfig | None = None,
    ) -> None:
        """Initialize loop corrector.

        Args:
            slam_map: Shared map
            matcher: Provides landmark fusion by projection
            optimizer: Provides essential graph optimization
            local_mapper: Paused for the duration of the correction
            global_optimization: Round handle started after the correction
            config: Thresholds (defaults if None)
        """
        self._map = slam_map
        self._matcher = matcher
        self._optimizer = optimizer
        self._local_mapper = local_mapper
        self._global_optimization = global_optimization
        self._config = config or LoopClosingConfig()

        # Snapshot of the last correction: keyframe id -> S_iw
        self.corrected_transforms: dict[int, Sim3] = {}
        self.non_corrected_transforms: dict[int, Sim3] = {}
        self.loop_connections: dict[int, set[int]] = {}

    def correct(self, current: Keyframe, loop: Loop) -> None:
        """Correct the map for a loop closed by ``current``.

        Args:
            current: Keyframe that closed the loop
            loop: Verified loop
        """
        cfg = self._config
        matched = loop.matched_keyframe
        logger.info(f"Correcting loop {current.id} <-> {matched.id}")

        # A committing round resumes local mapping on its way out, so the
        # round is settled before the pause is requested
        if self._global_optimization.running:
            self._global_optimization.stop()

        # Local mapping must not insert keyframes while the map is moved
        self._local_mapper.request_pause()
        wait_for_pause(self._local_mapper, cfg.pause_poll_interval)

        try:
            self._correct_map(current, loop)
            self._global_optimization.run(current.id)
        finally:
            self._local_mapper.resume()
        logger.info(f"Loop closed at keyframe {current.id}")

    def _correct_map(self, current: Keyframe, loop: Loop) -> None:
        cfg = self._config
        matched = loop.matched_keyframe
        self._map.update_connections(current)

        connected = [current.id] + current.get_covisible_ids()
        corrected, non_corrected = self._propagate_transform(current, connected, loop.Scw)
        self.corrected_transforms = corrected
        self.non_corrected_transforms = non_corrected

        with self._map.update_lock:
            self._apply_corrections(current, corrected, non_corrected)
            self.fuse_matched_landmarks(current, loop)

        self.search_and_fuse(corrected, loop.loop_landmarks)

        loop_connections = self._compute_loop_connections(connected)
        self.loop_connections = loop_connections

        self._optimizer.optimize_pose_graph(
            self._map,
            matched,
            current,
            non_corrected,
            corrected,
            loop_connections,
            cfg.fix_scale,
        )
        self._map.inform_structural_change()

        matched.add_loop_edge(current.id)
        current.add_loop_edge(matched.id)

    def _propagate_transform(
        self, current: Keyframe, connected: list[int], Scw: Sim3
    ) -> tuple[dict[int, Sim3], dict[int, Sim3]]:
        """Corrected and uncorrected S_iw for the current keyframe's neighbourhood."""
        corrected: dict[int, Sim3] = {current.id: Scw}
        non_corrected: dict[int, Sim3] = {}
        T_wc = current.get_pose().inverse()

        with self._map.update_lock:
            for kf_id in connected:
                keyframe = self._map.get_keyframe(kf_id)
                if keyframe is None or keyframe.bad:
                    continue
                T_iw = keyframe.get_pose()
                if keyframe is not current:
                    S_ic = Sim3.from_se3(T_iw @ T_wc)
                    corrected[kf_id] = S_ic @ Scw
                non_corrected[kf_id] = Sim3.from_se3(T_iw)

        return corrected, non_corrected

    def _apply_corrections(
        self,
        current: Keyframe,
        corrected: dict[int, Sim3],
        non_corrected: dict[int, Sim3],
    ) -> None:
        """Move landmarks and keyframes of the neighbourhood. Caller holds
        the map update lock."""
        for kf_id, S_iw_corrected in corrected.items():
            keyframe = self._map.get_keyframe(kf_id)
            if keyframe is None:
                continue
            S_iw = non_corrected[kf_id]
            correction = S_iw_corrected.inverse() @ S_iw

            for lm_id in keyframe.get_landmark_ids():
                landmark = self._map.get_landmark(lm_id)
                if landmark is None or landmark.bad:
                    continue
                if landmark.corrected_by_kf == current.id:
                    continue

                landmark.set_position(correction.map(landmark.get_position()))
                landmark.corrected_by_kf = current.id
                landmark.corrected_reference = kf_id

            keyframe.set_pose(S_iw_corrected.to_se3())
            self._map.update_connections(keyframe)

    def fuse_matched_landmarks(self, current: Keyframe, loop: Loop) -> None:
        """Attach each verified loop landmark to its slot in the current keyframe.

        A different landmark already in the slot is replaced by the loop
        landmark. Applying the same loop twice changes nothing.
        """
        for slot, lm_id in loop.matched_points.items():
            loop_landmark = self._map.get_landmark(lm_id)
            if loop_landmark is None or loop_landmark.bad:
                continue

            current_id = current.landmark_at(slot)
            if current_id is None and loop_landmark.is_in_keyframe(current.id):
                continue
            if current_id is None:
                self._map.add_observation(loop_landmark, current, slot)
                continue

            existing = self._map.get_landmark(current_id)
            if existing is None:
                self._map.add_observation(loop_landmark, current, slot)
            elif existing.id != loop_landmark.id:
                self._map.replace_landmark(existing, loop_landmark)

    def search_and_fuse(self, corrected: dict[int, Sim3], loop_landmarks: list[int]) -> None:
        """Project loop landmarks into every corrected keyframe and merge duplicates."""
        for kf_id, S_cw in corrected.items():
            keyframe = self._map.get_keyframe(kf_id)
            if keyframe is None or keyframe.bad:
                continue

            replacements = self._matcher.fuse(
                keyframe, S_cw, loop_landmarks, self._config.fuse_search_radius
            )
            if not replacements:
                continue

            with self._map.update_lock:
                for loop_id, duplicate_id in replacements.items():
                    loop_landmark = self._map.get_landmark(loop_id)
                    duplicate = self._map.get_landmark(duplicate_id)
                    if loop_landmark is None or duplicate is None:
                        continue
                    if loop_landmark.bad or duplicate.bad:
                        continue
                    self._map.replace_landmark(duplicate, loop_landmark)

    def _compute_loop_connections(self, connected: list[int]) -> dict[int, set[int]]:
        """New covisibility edges created by fusion, excluding the neighbourhood itself."""
        connected_set = set(connected)
        loop_connections: dict[int, set[int]] = {}

        for kf_id in connected:
            keyframe = self._map.get_keyframe(kf_id)
            if keyframe is None:
                continue
            previous = set(keyframe.get_covisible_ids())

            self._map.update_connections(keyframe)
            new = keyframe.get_connected_ids() - previous - connected_set
            loop_connections[kf_id] = new

        return loop_connections
