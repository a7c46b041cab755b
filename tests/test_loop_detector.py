"""Tests for LoopDetector."""

import numpy as np
import pytest

from loopslam.config import LoopClosingConfig
from loopslam.geometry import SE3, Sim3
from loopslam.loop_closure import LoopDetector
from loopslam.mapping import Map

from conftest import (
    FakeDatabase,
    FakeMatcher,
    FakeOptimizer,
    FakeSolverFactory,
    add_keyframe,
    add_landmarks,
    bare_keyframe,
    rotation_about_y,
    scene_points,
)


class DetectorScene:
    """Map with a loop candidate (keyframe 3) and a stream of new keyframes."""

    def __init__(self) -> None:
        self.map = Map()
        bare_keyframe(self.map, 0)
        pose = SE3(rotation=rotation_about_y(0.1), translation=np.array([1.0, 0.0, 0.0]))
        self.landmarks = add_landmarks(self.map, scene_points(5))
        self.candidate = add_keyframe(self.map, 3, pose, self.landmarks)
        self.database = FakeDatabase([self.candidate])
        self.matcher = FakeMatcher()
        self.solver_factory = FakeSolverFactory()
        self.optimizer = FakeOptimizer()

    def detector(self, **overrides) -> LoopDetector:
        config = LoopClosingConfig(**overrides)
        return LoopDetector(
            self.map, self.database, self.matcher, self.solver_factory, self.optimizer, config
        )

    def keyframe(self, keyframe_id: int):
        return bare_keyframe(self.map, keyframe_id)


@pytest.fixture
def scene() -> DetectorScene:
    return DetectorScene()


def detect_until_consistent(detector: LoopDetector, scene: DetectorScene, first_id: int = 20):
    """Feed four keyframes seeing the same candidate; return the last result."""
    result = (False, None)
    for offset in range(4):
        result = detector.detect(scene.keyframe(first_id + offset), 0)
    return result


class TestTemporalGuard:
    """Test suite for the gap after an accepted loop."""

    def test_too_close_to_last_loop(self, scene: DetectorScene):
        """Test that keyframes within the gap are not even queried."""
        detector = scene.detector()

        found, loop = detector.detect(scene.keyframe(19), last_loop_keyframe_id=10)

        assert not found
        assert loop is None
        assert detector.num_queries == 0

    def test_exactly_at_gap_is_queried(self, scene: DetectorScene):
        """Test that the first keyframe past the gap is processed."""
        detector = scene.detector()

        detector.detect(scene.keyframe(20), last_loop_keyframe_id=10)

        assert detector.num_queries == 1


class TestConsistency:
    """Test suite for covisibility group consistency."""

    def test_first_sighting_starts_group(self, scene: DetectorScene):
        """Test that a new candidate starts a group at zero."""
        detector = scene.detector()

        found, _ = detector.detect(scene.keyframe(20), 0)

        assert not found
        groups = detector.consistent_groups
        assert len(groups) == 1
        assert groups[0].consistency == 0
        assert 3 in groups[0].keyframe_ids

    def test_verified_on_fourth_consistent_detection(self, scene: DetectorScene):
        """Test that verification starts only once a group reaches consistency 3."""
        detector = scene.detector()

        for offset in range(3):
            found, _ = detector.detect(scene.keyframe(20 + offset), 0)
            assert not found
        assert scene.matcher.index_calls == []
        assert detector.consistent_groups[0].consistency == 2

        found, loop = detector.detect(scene.keyframe(23), 0)

        assert found
        assert scene.matcher.index_calls == [(23, 3)]
        assert loop.matched_keyframe is scene.candidate

    def test_no_candidates_clears_groups(self, scene: DetectorScene):
        """Test that an empty query resets consistency."""
        detector = scene.detector()
        detector.detect(scene.keyframe(20), 0)
        detector.detect(scene.keyframe(21), 0)

        scene.database.candidates = []
        detector.detect(scene.keyframe(22), 0)
        assert detector.consistent_groups == []

        scene.database.candidates = [scene.candidate]
        for offset in range(3):
            found, _ = detector.detect(scene.keyframe(23 + offset), 0)
            assert not found

    def test_disjoint_candidate_starts_new_group(self, scene: DetectorScene):
        """Test that an unrelated candidate does not inherit consistency."""
        detector = scene.detector()
        other = bare_keyframe(scene.map, 7)
        detector.detect(scene.keyframe(20), 0)
        detector.detect(scene.keyframe(21), 0)

        scene.database.candidates = [other]
        detector.detect(scene.keyframe(22), 0)

        groups = detector.consistent_groups
        assert [g.consistency for g in groups] == [0]
        assert groups[0].keyframe_ids == {7}

    def test_reset_forgets_groups(self, scene: DetectorScene):
        """Test that reset drops consistency state."""
        detector = scene.detector()
        detector.detect(scene.keyframe(20), 0)

        detector.reset()

        assert detector.consistent_groups == []


class TestVerification:
    """Test suite for geometric verification thresholds."""

    @pytest.mark.parametrize("inliers, expected", [(19, False), (20, True), (21, True)])
    def test_refined_inlier_threshold(self, scene: DetectorScene, inliers, expected):
        """Test the refined inlier boundary."""
        scene.optimizer.refined_inliers = inliers
        detector = scene.detector()

        found, _ = detect_until_consistent(detector, scene)

        assert found is expected

    @pytest.mark.parametrize("total, expected", [(39, False), (40, True), (41, True)])
    def test_total_match_threshold(self, scene: DetectorScene, total, expected):
        """Test the total loop match boundary."""
        scene.matcher.total_matches = total
        detector = scene.detector()

        found, loop = detect_until_consistent(detector, scene)

        assert found is expected
        if expected:
            assert loop.num_matches == total

    def test_too_few_index_matches_skips_solver(self, scene: DetectorScene):
        """Test that candidates with few descriptor matches are discarded."""
        scene.matcher.index_matches = 19
        detector = scene.detector()

        found, _ = detect_until_consistent(detector, scene)

        assert not found
        assert scene.solver_factory.calls == []

    def test_solver_failure(self, scene: DetectorScene):
        """Test that an exhausted solver without a hypothesis rejects the loop."""
        scene.solver_factory.found = False
        detector = scene.detector()

        found, loop = detect_until_consistent(detector, scene)

        assert not found
        assert loop is None

    def test_loop_similarity_composition(self, scene: DetectorScene):
        """Test Scw = S_cm @ S_mw."""
        S_cm = Sim3(rotation=rotation_about_y(0.3), translation=np.array([0.1, 0.2, 0.3]), scale=1.0)
        scene.solver_factory.transform = S_cm
        detector = scene.detector()

        found, loop = detect_until_consistent(detector, scene)

        assert found
        expected = S_cm @ Sim3.from_se3(scene.candidate.get_pose())
        np.testing.assert_allclose(loop.Scw.rotation, expected.rotation)
        np.testing.assert_allclose(loop.Scw.translation, expected.translation)
        assert loop.S_cm is S_cm

    def test_loop_landmarks_collected_once(self, scene: DetectorScene):
        """Test that the matched neighbourhood's landmarks are tagged."""
        detector = scene.detector()

        found, loop = detect_until_consistent(detector, scene)

        assert found
        assert sorted(loop.loop_landmarks) == sorted(lm.id for lm in scene.landmarks)
        assert all(lm.loop_point_for_kf == 23 for lm in scene.landmarks)
        assert detector.num_detections == 1


class TestErasureProtection:
    """Test suite for candidate protection during verification."""

    def test_failed_candidates_released(self, scene: DetectorScene):
        """Test that rejected candidates become erasable again."""
        scene.matcher.total_matches = 10
        detector = scene.detector()

        detect_until_consistent(detector, scene)

        assert not scene.candidate.not_erase

    def test_matched_candidate_stays_protected(self, scene: DetectorScene):
        """Test that the accepted candidate keeps its protection."""
        detector = scene.detector()

        found, loop = detect_until_consistent(detector, scene)

        assert found
        assert scene.candidate.not_erase

    def test_deferred_erase_runs_on_release(self, scene: DetectorScene):
        """Test that an erase requested during verification runs afterwards."""
        scene.matcher.total_matches = 10
        detector = scene.detector()
        scene.candidate.to_be_erased = True

        detect_until_consistent(detector, scene)

        assert scene.candidate.bad
