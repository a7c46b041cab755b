"""Collaborator contracts consumed by loop closing.

Loop closing depends only on these structural interfaces; the package ships
a default implementation of each (KeyframeDatabase, FeatureMatcher,
Sim3Solver, ScipyOptimizer) and local mapping is provided by the host
system.
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from ..geometry import Sim3
    from ..mapping import Keyframe, Map
    from ..optimizer import BAResult


class PlaceRecognition(Protocol):
    def query_candidates(self, keyframe: Keyframe, min_score: float) -> list[Keyframe]: ...

    def add(self, keyframe: Keyframe) -> None: ...

    def erase(self, keyframe: Keyframe) -> None: ...

    def clear(self) -> None: ...

    def score(self, bow1: np.ndarray, bow2: np.ndarray) -> float: ...


class Matcher(Protocol):
    def match_by_index(self, keyframe1: Keyframe, keyframe2: Keyframe) -> dict[int, int]: ...

    def match_by_transform(
        self,
        keyframe1: Keyframe,
        keyframe2: Keyframe,
        matches: dict[int, int],
        S12: Sim3,
        radius: float,
    ) -> int: ...

    def match_by_projection(
        self,
        keyframe: Keyframe,
        Scw: Sim3,
        landmark_ids: list[int],
        matches: dict[int, int],
        radius: float,
    ) -> int: ...

    def fuse(
        self, keyframe: Keyframe, Scw: Sim3, landmark_ids: list[int], radius: float
    ) -> dict[int, int]: ...


class TransformSolver(Protocol):
    def iterate(self, n_iterations: int) -> tuple[bool, np.ndarray]: ...

    def terminate(self) -> bool: ...

    def get_estimated_transform(self) -> Sim3 | None: ...


class TransformSolverFactory(Protocol):
    def __call__(
        self,
        keyframe1: Keyframe,
        keyframe2: Keyframe,
        matches: dict[int, int],
        fix_scale: bool,
    ) -> TransformSolver: ...


class Optimizer(Protocol):
    def refine_transform(
        self,
        keyframe1: Keyframe,
        keyframe2: Keyframe,
        matches: dict[int, int],
        S12: Sim3,
        max_error: float,
        fix_scale: bool,
    ) -> tuple[int, Sim3]: ...

    def full_bundle_adjustment(
        self,
        slam_map: Map,
        iterations: int,
        stop_event: threading.Event | None,
        anchor_id: int | None,
        robust: bool,
    ) -> BAResult | None: ...

    def optimize_pose_graph(
        self,
        slam_map: Map,
        loop_keyframe: Keyframe,
        current_keyframe: Keyframe,
        non_corrected: dict[int, Sim3],
        corrected: dict[int, Sim3],
        loop_connections: dict[int, set[int]],
        fix_scale: bool,
    ) -> None: ...


class LocalMapper(Protocol):
    def request_pause(self) -> None: ...

    def is_paused(self) -> bool: ...

    def is_finished(self) -> bool: ...

    def resume(self) -> None: ...


def wait_for_pause(local_mapper: LocalMapper, poll_interval: float) -> None:
    """Block until local mapping has paused (or has finished for good)."""
    while not local_mapper.is_paused() and not local_mapper.is_finished():
        time.sleep(poll_interval)
