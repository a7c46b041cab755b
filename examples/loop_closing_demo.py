#!/usr/bin/env python3
"""Demo script for loop closing on a synthetic revisit.

A camera observes a planar patch of landmarks twice. The first pass is
drift free; the second pass revisits the same place but its poses and
landmarks are expressed in a drifted world frame, as odometry would leave
them. Loop closing detects the revisit, corrects the second pass onto the
first and runs a global bundle adjustment round.

Usage:
    uv run python examples/loop_closing_demo.py
"""

import logging
import time

import numpy as np

from loopslam import (
    SE3,
    FeatureMatcher,
    Keyframe,
    KeyframeDatabase,
    Landmark,
    LoopClosing,
    LoopClosingConfig,
    Map,
    PinholeCamera,
    ScipyOptimizer,
    Sim3Solver,
    VisualVocabulary,
)


class IdleLocalMapper:
    """Local mapping stand-in that pauses immediately."""

    def __init__(self) -> None:
        self._paused = False

    def request_pause(self) -> None:
        self._paused = True

    def is_paused(self) -> bool:
        return self._paused

    def is_finished(self) -> bool:
        return False

    def resume(self) -> None:
        self._paused = False


def rotation_about_y(angle: float) -> np.ndarray:
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


def make_points(n: int, rng: np.random.Generator) -> np.ndarray:
    """Landmarks spread over a slanted patch about 8 m in front of the camera."""
    x = rng.uniform(-2.5, 2.5, n)
    y = rng.uniform(-1.5, 1.5, n)
    z = 8.0 + 0.3 * x + rng.uniform(-0.5, 0.5, n)
    return np.column_stack([x, y, z])


def add_pass(
    slam_map: Map,
    camera: PinholeCamera,
    vocabulary: VisualVocabulary,
    first_id: int,
    poses: list[SE3],
    points: np.ndarray,
    descriptors: np.ndarray,
) -> list[Keyframe]:
    """Insert one pass: a landmark per point and a keyframe per pose."""
    landmarks = []
    for position, descriptor in zip(points, descriptors):
        landmark = Landmark(id=slam_map.new_landmark_id(), position=position, descriptor=descriptor)
        slam_map.add_landmark(landmark)
        landmarks.append(landmark)

    keyframes = []
    for offset, pose in enumerate(poses):
        keyframe = Keyframe(
            id=first_id + offset,
            pose=pose,
            keypoints=camera.project(pose.transform_points(points)),
            descriptors=descriptors,
            bow_vector=vocabulary.describe(descriptors),
            feature_words=vocabulary.assign_words(descriptors),
        )
        slam_map.add_keyframe(keyframe)
        for slot, landmark in enumerate(landmarks):
            slam_map.add_observation(landmark, keyframe, slot)
        slam_map.update_connections(keyframe)
        keyframes.append(keyframe)
    return keyframes


def main() -> None:
    """Run the loop closing demo."""
    logging.basicConfig(level=logging.INFO, format="%(threadName)s %(name)s: %(message)s")

    rng = np.random.default_rng(7)
    camera = PinholeCamera(fx=450.0, fy=450.0, cx=320.0, cy=240.0, width=640, height=480)
    vocabulary = VisualVocabulary.from_words(rng.integers(0, 256, size=(32, 32)))
    config = LoopClosingConfig(global_ba_iterations=5)

    n_points = 80
    points = make_points(n_points, rng)
    descriptors = rng.integers(0, 256, size=(n_points, 32), dtype=np.uint8)

    true_poses = [
        SE3(rotation=rotation_about_y(0.02 * i), translation=np.array([-0.3 * i, 0.0, 0.0]))
        for i in range(4)
    ]
    drift = SE3(rotation=rotation_about_y(0.15), translation=np.array([0.8, -0.2, 0.5]))

    slam_map = Map()
    first_pass = add_pass(slam_map, camera, vocabulary, 0, true_poses, points, descriptors)
    second_pass = add_pass(
        slam_map,
        camera,
        vocabulary,
        10,
        [pose @ drift.inverse() for pose in true_poses],
        drift.transform_points(points),
        descriptors,
    )
    # Tracking continuity: the second pass hangs off the end of the first
    second_pass[0].set_parent(first_pass[-1].id)
    first_pass[-1].add_child(second_pass[0].id)

    database = KeyframeDatabase(slam_map)
    database.add(first_pass[0])  # origins are never queued

    def solver_factory(keyframe1, keyframe2, matches, fix_scale):
        return Sim3Solver(
            keyframe1, keyframe2, matches, fix_scale, slam_map, camera,
            probability=config.ransac_probability,
            min_inliers=config.ransac_min_inliers,
            max_iterations=config.ransac_max_iterations,
            seed=0,
        )

    loop_closing = LoopClosing(
        slam_map,
        database,
        FeatureMatcher(slam_map, camera),
        solver_factory,
        ScipyOptimizer(slam_map, camera),
        IdleLocalMapper(),
        config,
    )

    last = second_pass[-1]
    error_before = np.linalg.norm(last.get_pose().camera_center - true_poses[-1].camera_center)

    print("=" * 60)
    print("LOOP CLOSING DEMO")
    print("=" * 60)
    print(f"  Map:             {slam_map}")
    print(f"  Drift at KF {last.id}:  {error_before:.3f} m")
    print()

    with loop_closing:
        for keyframe in first_pass[1:] + second_pass:
            loop_closing.insert_keyframe(keyframe)

        while loop_closing.queue_size > 0 or loop_closing.stats.keyframes_processed < 7:
            time.sleep(0.05)
        while loop_closing.is_optimization_running:
            time.sleep(0.05)

    stats = loop_closing.stats
    error_after = np.linalg.norm(last.get_pose().camera_center - true_poses[-1].camera_center)
    print()
    print(f"  Keyframes processed:  {stats.keyframes_processed}")
    print(f"  Loops detected:       {stats.loops_detected}")
    print(f"  Last loop keyframe:   {loop_closing.last_loop_keyframe_id}")
    print(f"  Error at KF {last.id}:     {error_before:.3f} m -> {error_after:.3f} m")
    print(f"  Map:                  {slam_map}")


if __name__ == "__main__":
    main()
