"""Shared map: keyframes, landmarks, covisibility graph and spanning tree."""

from .covisibility import MIN_SHARED_LANDMARKS, count_shared_landmarks, update_connections
from .keyframe import Keyframe
from .landmark import Landmark
from .slam_map import Map

__all__ = [
    # Entities
    "Keyframe",
    "Landmark",
    # Map
    "Map",
    # Covisibility
    "MIN_SHARED_LANDMARKS",
    "count_shared_landmarks",
    "update_connections",
]
