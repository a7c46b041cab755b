"""Shared fixtures: synthetic scenes and fake loop closing collaborators."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import numpy as np
import pytest

from loopslam.geometry import SE3, PinholeCamera, Sim3
from loopslam.mapping import Keyframe, Landmark, Map
from loopslam.optimizer import BAResult


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def rotation_about_y(angle: float) -> np.ndarray:
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


def scene_points(n: int = 30) -> np.ndarray:
    """Deterministic, well separated points about 8 m in front of the origin."""
    points = []
    for i in range(n):
        x = -2.0 + 4.0 * (i % 6) / 5.0
        y = -1.5 + 3.0 * ((i // 6) % 5) / 4.0
        z = 8.0 + 0.37 * ((i * i) % 7)
        points.append([x, y, z])
    return np.asarray(points, dtype=np.float64)


def random_descriptors(n: int, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(n, 32), dtype=np.uint8)


def add_landmarks(
    slam_map: Map, positions: np.ndarray, descriptors: np.ndarray | None = None
) -> list[Landmark]:
    """Create one landmark per position and insert it in the map."""
    if descriptors is None:
        descriptors = random_descriptors(len(positions), seed=len(positions))
    landmarks = []
    for position, descriptor in zip(positions, descriptors):
        landmark = Landmark(
            id=slam_map.new_landmark_id(), position=position, descriptor=descriptor
        )
        slam_map.add_landmark(landmark)
        landmarks.append(landmark)
    return landmarks


def add_keyframe(
    slam_map: Map,
    keyframe_id: int,
    pose: SE3,
    landmarks: list[Landmark],
    camera: PinholeCamera | None = None,
    extra_slots: int = 0,
) -> Keyframe:
    """Create a keyframe observing ``landmarks`` at slots 0..n-1.

    Keypoints are the exact projections when a camera is given. Extra empty
    slots are appended after the observed ones.
    """
    n = len(landmarks) + extra_slots
    keypoints = np.zeros((n, 2), dtype=np.float64)
    descriptors = np.zeros((n, 32), dtype=np.uint8)
    for slot, landmark in enumerate(landmarks):
        if camera is not None:
            keypoints[slot] = camera.project(pose.transform_points(landmark.get_position()))
        descriptors[slot] = landmark.descriptor

    keyframe = Keyframe(id=keyframe_id, pose=pose, keypoints=keypoints, descriptors=descriptors)
    slam_map.add_keyframe(keyframe)
    for slot, landmark in enumerate(landmarks):
        slam_map.add_observation(landmark, keyframe, slot)
    return keyframe


def bare_keyframe(slam_map: Map, keyframe_id: int, pose: SE3 | None = None) -> Keyframe:
    """Keyframe without features."""
    keyframe = Keyframe(
        id=keyframe_id,
        pose=pose if pose is not None else SE3.identity(),
        keypoints=np.zeros((0, 2)),
        descriptors=np.zeros((0, 32), dtype=np.uint8),
    )
    slam_map.add_keyframe(keyframe)
    return keyframe


@pytest.fixture
def camera() -> PinholeCamera:
    return PinholeCamera(fx=400.0, fy=400.0, cx=320.0, cy=240.0, width=640, height=480)


@pytest.fixture
def slam_map() -> Map:
    return Map()


class TwoViewScene:
    """Two keyframes observing the same points through duplicated landmarks.

    Keyframe 1 observes landmarks at the true positions. Keyframe 2 observes
    a second set of landmarks expressed in a drifted world frame, so both
    keyframes see identical camera-frame points. The true S12 maps camera 2
    into camera 1.
    """

    def __init__(self, slam_map: Map, camera: PinholeCamera, n_points: int = 30) -> None:
        points = scene_points(n_points)
        self.T1 = SE3(rotation=rotation_about_y(0.05), translation=np.array([0.2, 0.0, 0.0]))
        T2_true = SE3(rotation=rotation_about_y(-0.05), translation=np.array([-0.3, 0.1, 0.2]))
        drift = SE3(rotation=rotation_about_y(0.2), translation=np.array([1.0, -0.5, 2.0]))

        # Keyframe 2 pose and landmarks in the drifted frame
        self.T2 = T2_true @ drift.inverse()
        drifted = drift.transform_points(points)

        self.landmarks1 = add_landmarks(slam_map, points, random_descriptors(n_points, 1))
        self.landmarks2 = add_landmarks(slam_map, drifted, random_descriptors(n_points, 2))
        self.keyframe1 = add_keyframe(slam_map, 1, self.T1, self.landmarks1, camera)
        self.keyframe2 = add_keyframe(slam_map, 2, self.T2, self.landmarks2, camera)

        self.S12 = Sim3.from_se3(self.T1 @ self.T2.inverse())
        self.matches = {slot: lm.id for slot, lm in enumerate(self.landmarks2)}


@pytest.fixture
def two_view(slam_map: Map, camera: PinholeCamera) -> TwoViewScene:
    return TwoViewScene(slam_map, camera)


# Fake collaborators


class FakeLocalMapper:
    """Local mapping that stops as soon as it is asked to."""

    def __init__(self) -> None:
        self.paused = False
        self.finished = False
        self.pause_requests = 0
        self.resumes = 0

    def request_pause(self) -> None:
        self.pause_requests += 1
        self.paused = True

    def is_paused(self) -> bool:
        return self.paused

    def is_finished(self) -> bool:
        return self.finished

    def resume(self) -> None:
        self.resumes += 1
        self.paused = False


class FakeDatabase:
    """Place recognition returning a configured candidate list."""

    def __init__(self, candidates: list[Keyframe] | None = None) -> None:
        self.candidates = candidates or []
        self.added: list[int] = []
        self.error: Exception | None = None

    def query_candidates(self, keyframe: Keyframe, min_score: float) -> list[Keyframe]:
        if self.error is not None:
            raise self.error
        return list(self.candidates)

    def add(self, keyframe: Keyframe) -> None:
        self.added.append(keyframe.id)

    def erase(self, keyframe: Keyframe) -> None:
        pass

    def clear(self) -> None:
        self.added.clear()

    def score(self, bow1: np.ndarray, bow2: np.ndarray) -> float:
        return 1.0


class FakeMatcher:
    """Matcher with configurable match counts.

    ``match_by_projection`` tops the matches up to ``total_matches`` using
    synthetic slots.
    """

    def __init__(self, index_matches: int = 30, total_matches: int = 50) -> None:
        self.index_matches = index_matches
        self.total_matches = total_matches
        self.replacements: dict[int, dict[int, int]] = {}
        self.index_calls: list[tuple[int, int]] = []
        self.fuse_calls: list[int] = []

    def match_by_index(self, keyframe1: Keyframe, keyframe2: Keyframe) -> dict[int, int]:
        self.index_calls.append((keyframe1.id, keyframe2.id))
        return {slot: 10_000 + slot for slot in range(self.index_matches)}

    def match_by_transform(self, keyframe1, keyframe2, matches, S12, radius) -> int:
        return 0

    def match_by_projection(self, keyframe, Scw, landmark_ids, matches, radius) -> int:
        found = 0
        slot = 1000
        while len(matches) < self.total_matches:
            matches[slot] = 20_000 + slot
            slot += 1
            found += 1
        return found

    def fuse(self, keyframe, Scw, landmark_ids, radius) -> dict[int, int]:
        self.fuse_calls.append(keyframe.id)
        return dict(self.replacements.get(keyframe.id, {}))


class FakeSolver:
    """Solver that succeeds on the first batch and is then exhausted."""

    def __init__(self, n_matches: int, transform: Sim3, found: bool = True) -> None:
        self._n_matches = n_matches
        self._transform = transform
        self._found = found
        self._exhausted = False

    def iterate(self, n_iterations: int) -> tuple[bool, np.ndarray]:
        self._exhausted = True
        return self._found, np.full(self._n_matches, self._found, dtype=bool)

    def terminate(self) -> bool:
        return self._exhausted

    def get_estimated_transform(self) -> Sim3:
        return self._transform


class FakeSolverFactory:
    def __init__(self, transform: Sim3 | None = None, found: bool = True) -> None:
        self.transform = transform or Sim3(
            rotation=np.eye(3), translation=np.array([0.5, 0.0, 0.0]), scale=1.0
        )
        self.found = found
        self.calls: list[tuple[int, int]] = []

    def __call__(self, keyframe1, keyframe2, matches, fix_scale) -> FakeSolver:
        self.calls.append((keyframe1.id, keyframe2.id))
        return FakeSolver(len(matches), self.transform, self.found)


class FakeOptimizer:
    """Optimizer stand-in.

    ``full_bundle_adjustment`` optionally blocks on ``gate`` before returning
    ``ba_result``; ``optimize_pose_graph`` only records its arguments.
    """

    def __init__(self, refined_inliers: int = 30, ba_result: BAResult | None = None) -> None:
        self.refined_inliers = refined_inliers
        self.ba_result = ba_result
        self.gate: threading.Event | None = None
        self.ba_calls: list[tuple[int, bool, int | None]] = []
        self.pose_graph_calls: list[dict] = []

    def refine_transform(self, keyframe1, keyframe2, matches, S12, max_error, fix_scale):
        return self.refined_inliers, S12

    def full_bundle_adjustment(self, slam_map, iterations, stop_event, anchor_id, robust):
        self.ba_calls.append((iterations, robust, anchor_id))
        if self.gate is not None:
            self.gate.wait(5.0)
        return self.ba_result

    def optimize_pose_graph(
        self, slam_map, loop_keyframe, current_keyframe, non_corrected, corrected,
        loop_connections, fix_scale,
    ) -> None:
        self.pose_graph_calls.append(
            {
                "loop_keyframe": loop_keyframe.id,
                "current_keyframe": current_keyframe.id,
                "corrected": dict(corrected),
                "loop_connections": loop_connections,
            }
        )


class FakeGlobalOptimization:
    """Records how the corrector drives global optimization."""

    def __init__(self, running: bool = False) -> None:
        self.running = running
        self.stops = 0
        self.runs: list[int] = []

    def stop(self) -> None:
        self.stops += 1
        self.running = False

    def run(self, anchor_id: int) -> None:
        self.runs.append(anchor_id)
        self.running = True


@pytest.fixture
def local_mapper() -> FakeLocalMapper:
    return FakeLocalMapper()
