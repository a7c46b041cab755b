"""Optimizer backend for loop closing built on scipy.optimize."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from .pose_graph import optimize_essential_graph
from .scipy_ba import BAResult, ScipyBundleAdjustment
from .sim3_optimizer import Sim3Refiner

if TYPE_CHECKING:
    from ..geometry import PinholeCamera, Sim3
    from ..mapping import Keyframe, Map

logger = logging.getLogger(__name__)


class ScipyOptimizer:
    """Sim3 refinement, essential graph and global bundle adjustment.

    Example:
        >>> optimizer = ScipyOptimizer(slam_map, camera)
        >>> n_inliers, S12 = optimizer.refine_transform(kf1, kf2, matches, S12, 10.0, True)
    """

    def __init__(
        self,
        slam_map: Map,
        camera: PinholeCamera,
        evaluations_per_iteration: int = 5,
        pose_graph_iterations: int = 20,
    ) -> None:
        """Initialize optimizer backend.

        Args:
            slam_map: Map used to resolve ids during refinement
            camera: Pinhole intrinsics
            evaluations_per_iteration: Bundle adjustment evaluations between
                cancellation checks
            pose_graph_iterations: Bound on essential graph iterations
        """
        self._camera = camera
        self._refiner = Sim3Refiner(slam_map, camera)
        self._bundle_adjustment = ScipyBundleAdjustment(
            camera, evaluations_per_iteration=evaluations_per_iteration
        )
        self._pose_graph_iterations = pose_graph_iterations

    def refine_transform(
        self,
        keyframe1: Keyframe,
        keyframe2: Keyframe,
        matches: dict[int, int],
        S12: Sim3,
        max_error: float,
        fix_scale: bool,
    ) -> tuple[int, Sim3]:
        """Refine S12 from the matches; outlier matches are removed in place."""
        return self._refiner.refine(keyframe1, keyframe2, matches, S12, max_error, fix_scale)

    def full_bundle_adjustment(
        self,
        slam_map: Map,
        iterations: int,
        stop_event: threading.Event | None,
        anchor_id: int | None,
        robust: bool,
    ) -> BAResult | None:
        """Bundle-adjust every live keyframe and landmark.

        With an ``anchor_id`` (the keyframe that triggered the round) the
        result is only returned; the caller commits it. Without one the
        optimized poses and positions are written into the map directly.

        Returns:
            BAResult, or None if the stop event fired
        """
        keyframes = [kf for kf in slam_map.get_all_keyframes() if not kf.bad]
        landmarks = [lm for lm in slam_map.get_all_landmarks() if not lm.bad]

        result = self._bundle_adjustment.optimize(
            keyframes,
            landmarks,
            fixed_keyframe_ids=set(slam_map.keyframe_origins),
            iterations=iterations,
            robust=robust,
            stop_event=stop_event,
        )
        if result is None:
            logger.debug("Global bundle adjustment cancelled")
            return None

        logger.debug(
            f"Global bundle adjustment: cost {result.initial_cost:.2f} -> "
            f"{result.final_cost:.2f} ({result.iterations} evaluations)"
        )

        if anchor_id is None and result.success:
            with slam_map.update_lock:
                for kf in keyframes:
                    pose = result.optimized_poses.get(kf.id)
                    if pose is not None:
                        kf.set_pose(pose)
                for lm in landmarks:
                    position = result.optimized_points.get(lm.id)
                    if position is not None:
                        lm.set_position(position)
        return result

    def optimize_pose_graph(
        self,
        slam_map: Map,
        loop_keyframe: Keyframe,
        current_keyframe: Keyframe,
        non_corrected: dict[int, Sim3],
        corrected: dict[int, Sim3],
        loop_connections: dict[int, set[int]],
        fix_scale: bool,
    ) -> None:
        """Optimize the essential graph and write poses and landmarks back."""
        optimize_essential_graph(
            slam_map,
            loop_keyframe,
            current_keyframe,
            non_corrected,
            corrected,
            loop_connections,
            fix_scale,
            max_iterations=self._pose_graph_iterations,
        )
