"""Similarity transformation Sim(3) for loop correction.

A Sim(3) element maps points as

    p' = s * R @ p + t

Monocular maps drift in scale as well as in pose, so loop corrections are
expressed as similarities. Stereo and RGB-D maps keep s = 1.
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from .pose import SE3


@dataclass
class Sim3:
    """Similarity transformation (rotation, translation, scale).

    Attributes:
        rotation: 3x3 rotation matrix
        translation: 3D translation vector
        scale: Positive scale factor
    """

    rotation: np.ndarray
    translation: np.ndarray
    scale: float = 1.0

    def __post_init__(self) -> None:
        """Validate and normalize inputs."""
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64).flatten()
        self.scale = float(self.scale)

        if self.rotation.shape != (3, 3):
            raise ValueError(f"Rotation must be 3x3, got {self.rotation.shape}")
        if self.translation.shape != (3,):
            raise ValueError(
                f"Translation must be (3,), got {self.translation.shape}"
            )
        if not self.scale > 0.0:
            raise ValueError(f"Scale must be positive, got {self.scale}")

    @classmethod
    def identity(cls) -> Sim3:
        """Create identity similarity."""
        return cls(rotation=np.eye(3), translation=np.zeros(3), scale=1.0)

    @classmethod
    def from_se3(cls, pose: SE3) -> Sim3:
        """Lift a rigid transformation to Sim(3) with unit scale."""
        return cls(
            rotation=pose.rotation.copy(),
            translation=pose.translation.copy(),
            scale=1.0,
        )

    @classmethod
    def from_vector(cls, params: np.ndarray, fix_scale: bool = False) -> Sim3:
        """Build from a parameter vector [rvec(3), t(3), log_s(1)].

        Used by the least-squares solvers. With ``fix_scale`` the vector has
        six entries and the scale is 1.
        """
        R, _ = cv2.Rodrigues(np.asarray(params[:3], dtype=np.float64))
        scale = 1.0 if fix_scale else float(np.exp(params[6]))
        return cls(rotation=R, translation=params[3:6], scale=scale)

    def to_vector(self, fix_scale: bool = False) -> np.ndarray:
        """Inverse of ``from_vector``."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        parts = [rvec.flatten(), self.translation]
        if not fix_scale:
            parts.append(np.array([np.log(self.scale)]))
        return np.concatenate(parts)

    def log(self) -> np.ndarray:
        """7D error vector [rotation, translation, log scale] around identity."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        return np.concatenate([rvec.flatten(), self.translation, [np.log(self.scale)]])

    def compose(self, other: Sim3) -> Sim3:
        """Compose with another similarity: self @ other (other applied first)."""
        return Sim3(
            rotation=self.rotation @ other.rotation,
            translation=self.scale * (self.rotation @ other.translation)
            + self.translation,
            scale=self.scale * other.scale,
        )

    def inverse(self) -> Sim3:
        """Compute the inverse similarity."""
        R_inv = self.rotation.T
        s_inv = 1.0 / self.scale
        return Sim3(
            rotation=R_inv,
            translation=-s_inv * (R_inv @ self.translation),
            scale=s_inv,
        )

    def map(self, points: np.ndarray) -> np.ndarray:
        """Apply the similarity to an Nx3 array or a single (3,) point."""
        points = np.asarray(points, dtype=np.float64)
        if points.ndim == 1:
            return self.scale * (self.rotation @ points) + self.translation
        return self.scale * (points @ self.rotation.T) + self.translation

    def to_se3(self) -> SE3:
        """Rigid pose [R | t/s] carried by this similarity.

        A corrected Sim(3) camera pose S_cw is converted back to a keyframe
        pose by dividing the translation by the scale.
        """
        return SE3(rotation=self.rotation.copy(), translation=self.translation / self.scale)

    def copy(self) -> Sim3:
        """Return a deep copy."""
        return Sim3(self.rotation.copy(), self.translation.copy(), self.scale)

    def __matmul__(self, other: Sim3) -> Sim3:
        """Matrix multiplication operator for composition."""
        return self.compose(other)

    def __repr__(self) -> str:
        """Return string representation."""
        t = self.translation
        return f"Sim3(t=[{t[0]:.3f}, {t[1]:.3f}, {t[2]:.3f}], s={self.scale:.4f})"
