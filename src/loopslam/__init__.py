"""Loop closing and map correction for online visual SLAM."""

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .config import LoopClosingConfig
from .geometry import SE3, PinholeCamera, Sim3
from .mapping import Keyframe, Landmark, Map
from .optimizer import BAResult, ScipyBundleAdjustment, ScipyOptimizer
from .loop_closure import (
    FeatureMatcher,
    GlobalOptimizationTask,
    KeyframeDatabase,
    Loop,
    LoopClosing,
    LoopClosingStats,
    LoopCorrector,
    LoopDetector,
    Sim3Solver,
    VisualVocabulary,
)

__all__ = [
    "__version__",
    # Configuration
    "LoopClosingConfig",
    # Geometry
    "SE3",
    "Sim3",
    "PinholeCamera",
    # Map
    "Map",
    "Keyframe",
    "Landmark",
    # Optimization
    "ScipyOptimizer",
    "ScipyBundleAdjustment",
    "BAResult",
    # Loop Closing
    "LoopClosing",
    "LoopClosingStats",
    "LoopDetector",
    "Loop",
    "LoopCorrector",
    "GlobalOptimizationTask",
    "KeyframeDatabase",
    "VisualVocabulary",
    "FeatureMatcher",
    "Sim3Solver",
]
