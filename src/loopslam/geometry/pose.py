"""Rigid camera poses."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np


@dataclass
class SE3:
    """Rotation and translation of a rigid motion.

    Keyframe poses are T_cw, taking world points into the camera:

        p_c = R @ p_w + t

    Attributes:
        rotation: (3, 3) proper rotation
        translation: (3,) translation
    """

    rotation: np.ndarray
    translation: np.ndarray

    def __post_init__(self) -> None:
        self.rotation = np.array(self.rotation, dtype=np.float64)
        self.translation = np.array(self.translation, dtype=np.float64).reshape(-1)
        if self.rotation.shape != (3, 3) or self.translation.shape != (3,):
            raise ValueError(
                f"SE3 needs a (3, 3) rotation and a (3,) translation, "
                f"got {self.rotation.shape} and {self.translation.shape}"
            )

    @classmethod
    def identity(cls) -> SE3:
        return cls(rotation=np.eye(3), translation=np.zeros(3))

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> SE3:
        """Build a pose from a homogeneous [[R, t], [0, 1]] matrix."""
        matrix = np.asarray(matrix)
        if matrix.shape != (4, 4):
            raise ValueError(f"Expected a 4x4 matrix, got {matrix.shape}")
        return cls(rotation=matrix[:3, :3], translation=matrix[:3, 3])

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> SE3:
        """Build a pose from an axis-angle vector, as used by the optimizer."""
        rotation, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3))
        return cls(rotation=rotation, translation=tvec)

    def to_matrix(self) -> np.ndarray:
        matrix = np.eye(4)
        matrix[:3, :3] = self.rotation
        matrix[:3, 3] = self.translation
        return matrix

    def to_rvec_tvec(self) -> tuple[np.ndarray, np.ndarray]:
        """Axis-angle vector and translation, the optimizer parameterization."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        return rvec.reshape(3), self.translation.copy()

    def inverse(self) -> SE3:
        rotation_t = self.rotation.T
        return SE3(rotation=rotation_t, translation=-(rotation_t @ self.translation))

    def compose(self, other: SE3) -> SE3:
        """Return ``self @ other``; ``other`` is applied first.

        T_cw of a child follows from its parent as
        ``T_child_parent.compose(T_parent_world)``.
        """
        return SE3(
            rotation=self.rotation @ other.rotation,
            translation=self.rotation @ other.translation + self.translation,
        )

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Move a (3,) point or an (N, 3) array of points; the shape is kept."""
        points = np.asarray(points, dtype=np.float64)
        if points.ndim == 1:
            return self.rotation @ points + self.translation
        if points.shape[1] != 3:
            raise ValueError(f"Expected (N, 3) points, got {points.shape}")
        return points @ self.rotation.T + self.translation

    def copy(self) -> SE3:
        return SE3(rotation=self.rotation.copy(), translation=self.translation.copy())

    @property
    def camera_center(self) -> np.ndarray:
        """Optical center in world coordinates, -R^T t."""
        return -(self.rotation.T @ self.translation)

    def __matmul__(self, other: SE3) -> SE3:
        return self.compose(other)

    def __repr__(self) -> str:
        x, y, z = self.camera_center
        return f"SE3(center=[{x:.3f}, {y:.3f}, {z:.3f}])"
