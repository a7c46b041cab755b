"""Geometry primitives: rigid and similarity transforms, pinhole camera."""

from .camera import PinholeCamera
from .pose import SE3
from .sim3 import Sim3

__all__ = [
    "SE3",
    "Sim3",
    "PinholeCamera",
]
