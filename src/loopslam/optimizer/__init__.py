"""Optimizers: bundle adjustment, essential graph and Sim3 refinement."""

from .pose_graph import EssentialGraph, Sim3Edge, optimize_essential_graph
from .scipy_ba import BAResult, ScipyBundleAdjustment
from .scipy_optimizer import ScipyOptimizer
from .sim3_optimizer import Sim3Refiner

__all__ = [
    # Bundle adjustment
    "ScipyBundleAdjustment",
    "BAResult",
    # Pose graph
    "EssentialGraph",
    "Sim3Edge",
    "optimize_essential_graph",
    # Sim3
    "Sim3Refiner",
    # Backend
    "ScipyOptimizer",
]
