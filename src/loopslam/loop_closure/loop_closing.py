"""Loop closing thread.

Keyframes produced by local mapping are queued here and processed one at a
time: detection, registration in the place recognition index and, when a
loop is verified, correction of the map followed by a global bundle
adjustment round.

Example:
    >>> loop_closing = LoopClosing.create(slam_map, camera, local_mapper)
    >>> with loop_closing:
    ...     loop_closing.insert_keyframe(keyframe)
"""

from __future__ import annotations

import functools
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..config import LoopClosingConfig
from ..optimizer import ScipyOptimizer
from .global_ba import GlobalOptimizationTask
from .loop_corrector import LoopCorrector
from .loop_detector import LoopDetector
from .matcher import FeatureMatcher
from .place_recognition import KeyframeDatabase
from .sim3_solver import Sim3Solver

if TYPE_CHECKING:
    from ..geometry import PinholeCamera
    from ..mapping import Keyframe, Map
    from .protocols import LocalMapper, Matcher, Optimizer, PlaceRecognition, TransformSolverFactory

logger = logging.getLogger(__name__)


@dataclass
class LoopClosingStats:
    """Counters of the loop closing thread."""

    keyframes_processed: int = 0
    loops_detected: int = 0
    errors: int = 0
    resets: int = 0


class LoopClosing:
    """Consumes keyframes and sequences loop detection and correction."""

    def __init__(
        self,
        slam_map: Map,
        database: PlaceRecognition,
        matcher: Matcher,
        solver_factory: TransformSolverFactory,
        optimizer: Optimizer,
        local_mapper: LocalMapper,
        config: LoopClosingConfig | None = None,
    ) -> None:
        """Initialize loop closing.

        Args:
            slam_map: Shared map
            database: Place recognition index
            matcher: Feature matcher
            solver_factory: Builds a similarity solver per loop candidate
            optimizer: Refinement, pose graph and global bundle adjustment
            local_mapper: Local mapping thread, paused during corrections
            config: Thresholds (defaults if None)
        """
        self._map = slam_map
        self._database = database
        self._config = config or LoopClosingConfig()

        self.detector = LoopDetector(
            slam_map, database, matcher, solver_factory, optimizer, self._config
        )
        self.global_optimization = GlobalOptimizationTask(
            slam_map, optimizer, local_mapper, self._config
        )
        self.corrector = LoopCorrector(
            slam_map, matcher, optimizer, local_mapper, self.global_optimization, self._config
        )

        self._queue: deque[Keyframe] = deque()
        self._condition = threading.Condition()
        self._reset_requested = False
        self._finish_requested = False
        self._finished = True
        self._last_loop_keyframe_id = 0
        self._thread: threading.Thread | None = None

        self._stats = LoopClosingStats()

    @classmethod
    def create(
        cls,
        slam_map: Map,
        camera: PinholeCamera,
        local_mapper: LocalMapper,
        config: LoopClosingConfig | None = None,
        seed: int | None = None,
    ) -> LoopClosing:
        """Build loop closing with the default collaborators.

        Args:
            slam_map: Shared map
            camera: Pinhole intrinsics
            local_mapper: Local mapping thread
            config: Thresholds (defaults if None)
            seed: RANSAC seed for reproducible runs
        """
        config = config or LoopClosingConfig()
        solver_factory = functools.partial(
            Sim3Solver,
            slam_map=slam_map,
            camera=camera,
            probability=config.ransac_probability,
            min_inliers=config.ransac_min_inliers,
            max_iterations=config.ransac_max_iterations,
            seed=seed,
        )
        return cls(
            slam_map,
            KeyframeDatabase(slam_map),
            FeatureMatcher(slam_map, camera),
            solver_factory,
            ScipyOptimizer(slam_map, camera),
            local_mapper,
            config,
        )

    # Queue

    def insert_keyframe(self, keyframe: Keyframe) -> None:
        """Queue a keyframe for loop detection. Origin keyframes are ignored."""
        if keyframe.id in self._map.keyframe_origins:
            return
        with self._condition:
            self._queue.append(keyframe)
            self._condition.notify_all()

    @property
    def queue_size(self) -> int:
        with self._condition:
            return len(self._queue)

    @property
    def last_loop_keyframe_id(self) -> int:
        return self._last_loop_keyframe_id

    @property
    def stats(self) -> LoopClosingStats:
        return self._stats

    # Lifecycle

    def run(self) -> None:
        """Process keyframes until a finish is requested."""
        with self._condition:
            self._finished = False

        while True:
            keyframe = self._pop_keyframe()
            if keyframe is not None:
                self._process_keyframe(keyframe)

            with self._condition:
                if self._reset_requested:
                    self._reset()
                if self._finish_requested:
                    break
                if not self._queue:
                    self._condition.wait(self._config.idle_wait)

        with self._condition:
            self._finished = True
            # Consumed; a later run() starts afresh
            self._finish_requested = False
            self._condition.notify_all()
        logger.info("Loop closing finished")

    def start(self) -> None:
        """Run the loop on a dedicated thread."""
        if self._thread is not None:
            return
        with self._condition:
            self._finished = False
            self._finish_requested = False
        self._thread = threading.Thread(target=self.run, name="LoopClosing", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Request a finish and join the thread."""
        if self._thread is None:
            return
        self.request_finish()
        self._thread.join(timeout)
        self._thread = None

    def __enter__(self) -> LoopClosing:
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    def request_reset(self) -> None:
        """Ask the loop to drop its queue and loop state; blocks until done."""
        with self._condition:
            self._reset_requested = True
            self._condition.notify_all()
            self._condition.wait_for(lambda: not self._reset_requested)

    def request_finish(self) -> None:
        with self._condition:
            self._finish_requested = True
            self._condition.notify_all()

    @property
    def is_finished(self) -> bool:
        with self._condition:
            return self._finished

    @property
    def is_optimization_running(self) -> bool:
        return self.global_optimization.running

    @property
    def is_optimization_finished(self) -> bool:
        return self.global_optimization.finished

    # Internals

    def _pop_keyframe(self) -> Keyframe | None:
        with self._condition:
            if not self._queue:
                return None
            return self._queue.popleft()

    def _process_keyframe(self, keyframe: Keyframe) -> None:
        self._map.set_not_erase(keyframe)

        try:
            found, loop = self.detector.detect(keyframe, self._last_loop_keyframe_id)
            self._database.add(keyframe)

            if found:
                self._stats.loops_detected += 1
                self.corrector.correct(keyframe, loop)
                self._last_loop_keyframe_id = keyframe.id
            else:
                self._map.set_erase(keyframe)
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Loop closing failed for keyframe {keyframe.id}: {e}")
            self._map.set_erase(keyframe)
        self._stats.keyframes_processed += 1

    def _reset(self) -> None:
        """Caller holds the condition."""
        self._queue.clear()
        self._last_loop_keyframe_id = 0
        self.detector.reset()
        self._stats.resets += 1
        self._reset_requested = False
        self._condition.notify_all()
        logger.info("Loop closing reset")
