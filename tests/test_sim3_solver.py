"""Tests for the closed-form similarity and the RANSAC solver."""

import numpy as np
import pytest

from loopslam.geometry import Sim3
from loopslam.loop_closure import Sim3Solver, estimate_similarity

from conftest import TwoViewScene, rotation_about_y, scene_points


class TestEstimateSimilarity:
    """Test suite for the Horn/Umeyama closed form."""

    def test_recovers_similarity(self):
        """Test exact recovery from noise-free correspondences."""
        truth = Sim3(rotation=rotation_about_y(0.4), translation=np.array([1.0, -2.0, 0.5]), scale=1.8)
        source = scene_points(10)

        estimate = estimate_similarity(source, truth.map(source), with_scale=True)

        np.testing.assert_allclose(estimate.rotation, truth.rotation, atol=1e-9)
        np.testing.assert_allclose(estimate.translation, truth.translation, atol=1e-9)
        assert estimate.scale == pytest.approx(1.8)

    def test_fixed_scale(self):
        """Test that the scale stays at one when not estimated."""
        truth = Sim3(rotation=rotation_about_y(-0.2), translation=np.array([0.0, 1.0, 0.0]))
        source = scene_points(6)

        estimate = estimate_similarity(source, truth.map(source), with_scale=False)

        assert estimate.scale == 1.0
        np.testing.assert_allclose(estimate.map(source), truth.map(source), atol=1e-9)

    def test_degenerate_input(self):
        """Test that coincident points give no estimate."""
        source = np.ones((3, 3))

        assert estimate_similarity(source, source) is None


class TestSim3Solver:
    """Test suite for Sim3Solver."""

    def test_finds_transform_on_clean_matches(self, two_view: TwoViewScene, slam_map, camera):
        """Test RANSAC on outlier-free correspondences."""
        solver = Sim3Solver(
            two_view.keyframe1, two_view.keyframe2, two_view.matches, True,
            slam_map, camera, seed=0,
        )

        found, mask = solver.iterate(20)

        assert found
        assert mask.all()
        S12 = solver.get_estimated_transform()
        np.testing.assert_allclose(S12.rotation, two_view.S12.rotation, atol=1e-6)
        np.testing.assert_allclose(S12.translation, two_view.S12.translation, atol=1e-6)

    def test_flags_outliers(self, two_view: TwoViewScene, slam_map, camera):
        """Test that corrupted correspondences are excluded from the inliers."""
        matches = dict(two_view.matches)
        corrupted = [0, 7, 14, 21, 28]
        for slot in corrupted:
            matches[slot] = two_view.landmarks2[(slot + 15) % 30].id

        solver = Sim3Solver(
            two_view.keyframe1, two_view.keyframe2, matches, True,
            slam_map, camera, max_iterations=300, seed=1,
        )
        found, mask = solver.iterate(300)

        assert found
        assert mask.sum() == 25
        assert not mask[corrupted].any()

    def test_too_few_matches_terminates(self, two_view: TwoViewScene, slam_map, camera):
        """Test that a solver with fewer matches than required gives up at once."""
        matches = {slot: two_view.matches[slot] for slot in range(19)}
        solver = Sim3Solver(
            two_view.keyframe1, two_view.keyframe2, matches, True,
            slam_map, camera, min_inliers=20, seed=0,
        )

        found, mask = solver.iterate(5)

        assert not found
        assert solver.terminate()
        assert not mask.any()
        assert solver.get_estimated_transform() is None

    def test_exactly_min_inliers_is_enough(self, two_view: TwoViewScene, slam_map, camera):
        """Test the inlier threshold boundary."""
        matches = {slot: two_view.matches[slot] for slot in range(20)}
        solver = Sim3Solver(
            two_view.keyframe1, two_view.keyframe2, matches, True,
            slam_map, camera, min_inliers=20, seed=0,
        )

        found, mask = solver.iterate(5)

        assert found
        assert mask.sum() == 20

    def test_skips_unusable_matches(self, two_view: TwoViewScene, slam_map, camera):
        """Test that matches to erased landmarks are not used."""
        slam_map.set_bad_landmark(two_view.landmarks2[0])

        solver = Sim3Solver(
            two_view.keyframe1, two_view.keyframe2, two_view.matches, True,
            slam_map, camera, seed=0,
        )

        assert solver.num_correspondences == 29
        found, mask = solver.iterate(20)
        assert found
        assert not mask[0]
