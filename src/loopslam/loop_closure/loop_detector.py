"""Loop detection for Visual SLAM.

The detection pipeline for each new keyframe:
1. Temporal guard: skip keyframes too close to the last accepted loop
2. Place recognition: query the keyframe database for candidates scoring
   at least as well as the keyframe's own covisible neighbours
3. Consistency: a candidate is only trusted once its covisibility group has
   been re-detected over several consecutive keyframes
4. Geometric verification: RANSAC similarity, guided matching and
   refinement on each consistent candidate, first success wins
5. Loop landmarks: project the matched neighbourhood into the current
   keyframe and require enough total matches
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..config import LoopClosingConfig
from ..geometry import Sim3

if TYPE_CHECKING:
    from ..mapping import Keyframe, Map
    from .protocols import Matcher, Optimizer, PlaceRecognition, TransformSolver, TransformSolverFactory

logger = logging.getLogger(__name__)


@dataclass
class ConsistentGroup:
    """Covisibility group of a past candidate and how often it recurred.

    Attributes:
        keyframe_ids: Candidate keyframe and its connected keyframes
        consistency: Consecutive detections consistent with this group
    """

    keyframe_ids: set[int]
    consistency: int = 0


@dataclass
class Loop:
    """A verified loop between the current keyframe and a past keyframe.

    Attributes:
        matched_keyframe: Past keyframe the current one was matched to
        Scw: Corrected similarity world -> current camera
        S_cm: Similarity matched camera -> current camera
        matched_points: Slot in the current keyframe -> loop landmark id
        loop_landmarks: Landmarks of the matched keyframe and its neighbours
    """

    matched_keyframe: Keyframe
    Scw: Sim3
    S_cm: Sim3
    matched_points: dict[int, int] = field(default_factory=dict)
    loop_landmarks: list[int] = field(default_factory=list)

    @property
    def num_matches(self) -> int:
        return len(self.matched_points)


class LoopDetector:
    """Detects and verifies loops for incoming keyframes.

    Example:
        >>> detector = LoopDetector(slam_map, database, matcher, solver_factory, optimizer)
        >>> found, loop = detector.detect(keyframe, last_loop_keyframe_id)
        >>> if found:
        ...     print(f"Loop with keyframe {loop.matched_keyframe.id}")
    """

    def __init__(
        self,
        slam_map: Map,
        database: PlaceRecognition,
        matcher: Matcher,
        solver_factory: TransformSolverFactory,
        optimizer: Optimizer,
        config: LoopClosingConfig | None = None,
    ) -> None:
        """Initialize loop detector.

        Args:
            slam_map: Shared map
            database: Place recognition index
            matcher: Feature matcher
            solver_factory: Builds a RANSAC similarity solver per candidate
            optimizer: Provides similarity refinement
            config: Thresholds (defaults if None)
        """
        self._map = slam_map
        self._database = database
        self._matcher = matcher
        self._solver_factory = solver_factory
        self._optimizer = optimizer
        self._config = config or LoopClosingConfig()

        self._consistent_groups: list[ConsistentGroup] = []

        # Statistics
        self._num_queries = 0
        self._num_detections = 0

    @property
    def consistent_groups(self) -> list[ConsistentGroup]:
        return list(self._consistent_groups)

    @property
    def num_queries(self) -> int:
        return self._num_queries

    @property
    def num_detections(self) -> int:
        return self._num_detections

    def reset(self) -> None:
        """Forget all consistency state."""
        self._consistent_groups = []

    def detect(
        self, current: Keyframe, last_loop_keyframe_id: int
    ) -> tuple[bool, Loop | None]:
        """Run the detection pipeline on a keyframe.

        Args:
            current: Keyframe being processed (erase-protected by the caller)
            last_loop_keyframe_id: Id of the keyframe that closed the last loop

        Returns:
            (True, Loop) on success, (False, None) otherwise
        """
        cfg = self._config

        if current.id < last_loop_keyframe_id + cfg.min_keyframes_since_loop:
            return False, None

        self._num_queries += 1

        min_score = self._min_covisible_score(current)
        candidates = self._database.query_candidates(current, min_score)
        if not candidates:
            self._consistent_groups = []
            return False, None

        consistent = self._check_consistency(candidates)
        if not consistent:
            return False, None

        loop = self._find_loop_in_candidates(current, consistent)
        if loop is None:
            return False, None

        self._num_detections += 1
        logger.info(
            f"Loop detected: keyframe {current.id} <-> {loop.matched_keyframe.id} "
            f"({loop.num_matches} matches)"
        )
        return True, loop

    def _min_covisible_score(self, current: Keyframe) -> float:
        """Lowest BoW similarity between the keyframe and its live neighbours."""
        min_score = 1.0
        if current.bow_vector is None:
            return min_score

        for kf_id in current.get_covisible_ids():
            neighbour = self._map.get_keyframe(kf_id)
            if neighbour is None or neighbour.bad or neighbour.bow_vector is None:
                continue
            score = self._database.score(current.bow_vector, neighbour.bow_vector)
            min_score = min(min_score, score)
        return min_score

    def _check_consistency(self, candidates: list[Keyframe]) -> list[Keyframe]:
        """Update consistent groups and return candidates consistent enough.

        Each previous group can be extended at most once per call; a
        candidate becomes eligible the first time one of its extended
        groups reaches the configured consistency.

        A group's first sighting counts 0, so with ``min_consistency=3`` a
        loop becomes eligible on the fourth consecutive detection, not the
        third.
        """
        current_groups: list[ConsistentGroup] = []
        extended = [False] * len(self._consistent_groups)
        enough_consistent: list[Keyframe] = []

        for candidate in candidates:
            group = candidate.get_connected_ids()
            group.add(candidate.id)

            is_enough = False
            consistent_for_some = False
            for i, previous in enumerate(self._consistent_groups):
                if group.isdisjoint(previous.keyframe_ids):
                    continue

                consistent_for_some = True
                consistency = previous.consistency + 1
                if not extended[i]:
                    current_groups.append(ConsistentGroup(group, consistency))
                    extended[i] = True
                if consistency >= self._config.min_consistency and not is_enough:
                    enough_consistent.append(candidate)
                    is_enough = True

            if not consistent_for_some:
                current_groups.append(ConsistentGroup(group, 0))

        self._consistent_groups = current_groups
        return enough_consistent

    def _find_loop_in_candidates(
        self, current: Keyframe, candidates: list[Keyframe]
    ) -> Loop | None:
        """Geometric verification of consistent candidates."""
        cfg = self._config

        solvers: list[TransformSolver | None] = [None] * len(candidates)
        match_sets: list[dict[int, int]] = [{} for _ in candidates]
        discarded = [False] * len(candidates)
        n_active = 0

        for i, candidate in enumerate(candidates):
            # Keep the candidate alive while it is being verified
            self._map.set_not_erase(candidate)

            if candidate.bad:
                discarded[i] = True
                continue

            matches = self._matcher.match_by_index(current, candidate)
            if len(matches) < cfg.min_index_matches:
                discarded[i] = True
                continue

            solvers[i] = self._solver_factory(current, candidate, matches, cfg.fix_scale)
            match_sets[i] = matches
            n_active += 1

        matched: Keyframe | None = None
        S_cm: Sim3 | None = None
        loop_matches: dict[int, int] = {}

        # Interleave RANSAC rounds until one candidate verifies or all are exhausted
        while n_active > 0 and matched is None:
            for i, candidate in enumerate(candidates):
                if discarded[i]:
                    continue

                solver = solvers[i]
                found, inlier_mask = solver.iterate(cfg.ransac_iterations_per_round)
                if solver.terminate():
                    discarded[i] = True
                    n_active -= 1
                if not found:
                    continue

                S12 = solver.get_estimated_transform()
                matches = {
                    slot: lm_id
                    for (slot, lm_id), inlier in zip(match_sets[i].items(), inlier_mask)
                    if inlier
                }
                self._matcher.match_by_transform(
                    current, candidate, matches, S12, cfg.transform_search_radius
                )
                n_inliers, S12 = self._optimizer.refine_transform(
                    current, candidate, matches, S12, cfg.refine_max_error, cfg.fix_scale
                )

                if n_inliers >= cfg.min_refined_inliers:
                    matched = candidate
                    S_cm = S12
                    loop_matches = matches
                    break

                logger.debug(
                    f"Candidate {candidate.id} rejected: {n_inliers} refined inliers"
                )

        if matched is None:
            for candidate in candidates:
                self._map.set_erase(candidate)
            return None

        Scw = S_cm @ Sim3.from_se3(matched.get_pose())
        loop_landmarks = self._collect_loop_landmarks(current, matched)

        self._matcher.match_by_projection(
            current, Scw, loop_landmarks, loop_matches, cfg.projection_search_radius
        )

        if len(loop_matches) < cfg.min_total_matches:
            logger.debug(
                f"Candidate {matched.id} rejected: {len(loop_matches)} total matches"
            )
            for candidate in candidates:
                self._map.set_erase(candidate)
            return None

        for candidate in candidates:
            if candidate is not matched:
                self._map.set_erase(candidate)

        return Loop(
            matched_keyframe=matched,
            Scw=Scw,
            S_cm=S_cm,
            matched_points=loop_matches,
            loop_landmarks=loop_landmarks,
        )

    def _collect_loop_landmarks(self, current: Keyframe, matched: Keyframe) -> list[int]:
        """Landmarks of the matched keyframe and its covisible neighbours, once each."""
        loop_landmarks: list[int] = []
        for kf_id in matched.get_covisible_ids() + [matched.id]:
            keyframe = self._map.get_keyframe(kf_id)
            if keyframe is None:
                continue
            for lm_id in keyframe.get_landmark_ids():
                landmark = self._map.get_landmark(lm_id)
                if landmark is None or landmark.bad:
                    continue
                if landmark.loop_point_for_kf != current.id:
                    loop_landmarks.append(lm_id)
                    landmark.loop_point_for_kf = current.id
        return loop_landmarks
