"""Tests for Sim3 refinement, essential graph and bundle adjustment."""

import threading

import numpy as np
import pytest

from loopslam.geometry import SE3, PinholeCamera, Sim3
from loopslam.mapping import Map
from loopslam.optimizer import (
    EssentialGraph,
    ScipyBundleAdjustment,
    ScipyOptimizer,
    Sim3Refiner,
    optimize_essential_graph,
)

from conftest import TwoViewScene, add_keyframe, add_landmarks, rotation_about_y, scene_points


def perturbed(S: Sim3, angle: float = 0.01, offset: float = 0.05) -> Sim3:
    delta = Sim3(rotation=rotation_about_y(angle), translation=np.full(3, offset))
    return delta @ S


def three_view_map(camera: PinholeCamera) -> tuple[Map, list]:
    """Three keyframes observing the same 30 landmarks with exact keypoints."""
    slam_map = Map()
    landmarks = add_landmarks(slam_map, scene_points(30))
    keyframes = []
    for kf_id, x in enumerate([0.0, 0.5, 1.0]):
        pose = SE3(rotation=rotation_about_y(0.02 * kf_id), translation=np.array([-x, 0.0, 0.0]))
        keyframes.append(add_keyframe(slam_map, kf_id, pose, landmarks, camera))
    return slam_map, keyframes


class TestSim3Refiner:
    """Test suite for Sim3Refiner."""

    def test_converges_to_true_transform(self, two_view: TwoViewScene, slam_map, camera):
        """Test refinement from a perturbed initial estimate."""
        refiner = Sim3Refiner(slam_map, camera)
        matches = dict(two_view.matches)

        n_inliers, S12 = refiner.refine(
            two_view.keyframe1, two_view.keyframe2, matches, perturbed(two_view.S12), 10.0, True
        )

        assert n_inliers == 30
        assert len(matches) == 30
        np.testing.assert_allclose(S12.translation, two_view.S12.translation, atol=1e-3)
        np.testing.assert_allclose(S12.rotation, two_view.S12.rotation, atol=1e-4)

    def test_drops_outliers_in_place(self, two_view: TwoViewScene, slam_map, camera):
        """Test that outlier correspondences are removed from the matches."""
        refiner = Sim3Refiner(slam_map, camera)
        matches = dict(two_view.matches)
        corrupted = [3, 11, 19]
        for slot in corrupted:
            matches[slot] = two_view.landmarks2[(slot + 15) % 30].id

        n_inliers, _ = refiner.refine(
            two_view.keyframe1, two_view.keyframe2, matches, two_view.S12, 10.0, True
        )

        assert n_inliers == 27
        assert all(slot not in matches for slot in corrupted)

    def test_too_few_correspondences(self, two_view: TwoViewScene, slam_map, camera):
        """Test that refinement gives up below the minimum correspondences."""
        refiner = Sim3Refiner(slam_map, camera)
        matches = {slot: two_view.matches[slot] for slot in range(9)}
        initial = perturbed(two_view.S12)

        n_inliers, S12 = refiner.refine(
            two_view.keyframe1, two_view.keyframe2, matches, initial, 10.0, True
        )

        assert n_inliers == 0
        assert S12 is initial


class TestEssentialGraph:
    """Test suite for the Sim(3) pose graph."""

    def test_recovers_consistent_chain(self):
        """Test that a perturbed vertex returns to the measured chain."""
        S0 = Sim3.identity()
        S1 = Sim3(rotation=rotation_about_y(0.1), translation=np.array([-1.0, 0.0, 0.0]))
        S2 = Sim3(rotation=rotation_about_y(0.2), translation=np.array([-2.0, 0.0, 0.1]))

        graph = EssentialGraph(fix_scale=True)
        graph.add_vertex(0, S0, fixed=True)
        graph.add_vertex(1, perturbed(S1, 0.05, 0.3))
        graph.add_vertex(2, S2, fixed=True)
        graph.add_edge(0, 1, S1 @ S0.inverse())
        graph.add_edge(1, 2, S2 @ S1.inverse())

        optimized = graph.optimize(max_iterations=50)

        np.testing.assert_allclose(optimized[1].translation, S1.translation, atol=1e-5)
        np.testing.assert_allclose(optimized[1].rotation, S1.rotation, atol=1e-5)
        np.testing.assert_allclose(optimized[0].translation, np.zeros(3))

    def test_no_edges_returns_vertices(self):
        """Test that a graph without edges is returned unchanged."""
        graph = EssentialGraph()
        graph.add_vertex(0, Sim3.identity())

        optimized = graph.optimize()

        assert optimized[0].scale == 1.0
        assert graph.num_edges == 0

    def test_loop_keyframe_fixed_and_loop_pulled(self, camera: PinholeCamera):
        """Test optimization driven by a corrected current keyframe."""
        slam_map, (kf0, kf1, kf2) = three_view_map(camera)
        kf1.set_parent(0)
        kf0.add_child(1)
        kf2.set_parent(1)
        kf1.add_child(2)
        pose0 = kf0.get_pose()
        pose2 = kf2.get_pose()

        corrected_pose = SE3(rotation=pose2.rotation, translation=pose2.translation + [0.3, 0.0, 0.0])
        corrected = {2: Sim3.from_se3(corrected_pose)}
        non_corrected = {2: Sim3.from_se3(pose2)}

        optimize_essential_graph(
            slam_map, kf0, kf2, non_corrected, corrected, {2: {0}}, True, max_iterations=50
        )

        np.testing.assert_allclose(kf0.get_pose().to_matrix(), pose0.to_matrix())
        assert not np.allclose(kf2.get_pose().translation, pose2.translation)


class TestBundleAdjustment:
    """Test suite for ScipyBundleAdjustment."""

    def test_reduces_reprojection_error(self, camera: PinholeCamera):
        """Test that perturbed landmarks are pulled back onto the observations."""
        slam_map, keyframes = three_view_map(camera)
        landmarks = slam_map.get_all_landmarks()
        rng = np.random.default_rng(3)
        for landmark in landmarks:
            landmark.set_position(landmark.get_position() + rng.normal(0.0, 0.05, 3))

        ba = ScipyBundleAdjustment(camera)
        result = ba.optimize(keyframes, landmarks, fixed_keyframe_ids={0, 1}, iterations=20)

        assert result.success
        assert result.final_cost < 0.01 * result.initial_cost
        assert set(result.optimized_poses) == {0, 1, 2}
        assert len(result.optimized_points) == 30

    def test_cancelled_before_start(self, camera: PinholeCamera):
        """Test that a set stop event aborts the optimization."""
        slam_map, keyframes = three_view_map(camera)
        stop_event = threading.Event()
        stop_event.set()

        ba = ScipyBundleAdjustment(camera)
        result = ba.optimize(
            keyframes, slam_map.get_all_landmarks(), {0}, stop_event=stop_event
        )

        assert result is None

    def test_too_few_observations(self, camera: PinholeCamera, slam_map: Map):
        """Test that a tiny problem is rejected."""
        landmarks = add_landmarks(slam_map, scene_points(3))
        keyframe = add_keyframe(slam_map, 0, SE3.identity(), landmarks, camera)

        result = ScipyBundleAdjustment(camera).optimize([keyframe], landmarks, {0})

        assert not result.success
        assert result.message == "Too few observations"


class TestScipyOptimizer:
    """Test suite for the combined optimizer backend."""

    def test_global_ba_with_anchor_does_not_write(self, camera: PinholeCamera):
        """Test that a round result is returned for the caller to commit."""
        slam_map, keyframes = three_view_map(camera)
        landmark = slam_map.get_all_landmarks()[0]
        landmark.set_position(landmark.get_position() + 0.1)
        before = landmark.get_position()

        optimizer = ScipyOptimizer(slam_map, camera)
        result = optimizer.full_bundle_adjustment(slam_map, 10, None, 2, False)

        assert result is not None
        np.testing.assert_allclose(landmark.get_position(), before)
        assert not np.allclose(result.optimized_points[landmark.id], before)

    def test_global_ba_without_anchor_writes(self, camera: PinholeCamera):
        """Test that a standalone run updates the map."""
        slam_map, keyframes = three_view_map(camera)
        landmark = slam_map.get_all_landmarks()[0]
        original = landmark.get_position()
        landmark.set_position(original + 0.1)

        optimizer = ScipyOptimizer(slam_map, camera)
        result = optimizer.full_bundle_adjustment(slam_map, 10, None, None, False)

        assert result.success
        assert np.linalg.norm(landmark.get_position() - original) < 0.05

    def test_refine_transform_delegates(self, two_view: TwoViewScene, slam_map, camera):
        """Test the refinement entry point."""
        optimizer = ScipyOptimizer(slam_map, camera)
        matches = dict(two_view.matches)

        n_inliers, S12 = optimizer.refine_transform(
            two_view.keyframe1, two_view.keyframe2, matches, two_view.S12, 10.0, True
        )

        assert n_inliers == 30
        assert S12.scale == pytest.approx(1.0)
