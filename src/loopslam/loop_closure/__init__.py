"""Loop closing for Visual SLAM.

This module detects when the camera revisits a previously mapped place and
corrects the accumulated drift of the shared map.

Key components:
- VisualVocabulary / KeyframeDatabase: Bag of Words place recognition
- FeatureMatcher: ORB matching between keyframes and landmarks
- Sim3Solver: RANSAC similarity between two keyframes
- LoopDetector: Candidate consistency and geometric verification
- LoopCorrector: Map correction, landmark fusion and essential graph
- GlobalOptimizationTask: Cancellable global bundle adjustment rounds
- LoopClosing: Thread consuming keyframes from local mapping
"""

from .global_ba import GlobalOptimizationTask
from .loop_closing import LoopClosing, LoopClosingStats
from .loop_corrector import LoopCorrector
from .loop_detector import ConsistentGroup, Loop, LoopDetector
from .matcher import FeatureMatcher
from .place_recognition import KeyframeDatabase
from .protocols import (
    LocalMapper,
    Matcher,
    Optimizer,
    PlaceRecognition,
    TransformSolver,
    TransformSolverFactory,
)
from .sim3_solver import Sim3Solver, estimate_similarity
from .vocabulary import VisualVocabulary

__all__ = [
    # Place recognition
    "VisualVocabulary",
    "KeyframeDatabase",
    # Matching
    "FeatureMatcher",
    # Geometric verification
    "Sim3Solver",
    "estimate_similarity",
    # Detection
    "LoopDetector",
    "Loop",
    "ConsistentGroup",
    # Correction
    "LoopCorrector",
    "GlobalOptimizationTask",
    # Thread
    "LoopClosing",
    "LoopClosingStats",
    # Collaborator contracts
    "PlaceRecognition",
    "Matcher",
    "TransformSolver",
    "TransformSolverFactory",
    "Optimizer",
    "LocalMapper",
]
