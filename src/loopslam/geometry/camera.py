"""Pinhole camera model used for reprojection during matching and optimization."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np
import yaml


@dataclass
class PinholeCamera:
    """Camera intrinsic parameters (pinhole model, rectified images)."""

    fx: float  # Focal length x (pixels)
    fy: float  # Focal length y (pixels)
    cx: float  # Principal point x (pixels)
    cy: float  # Principal point y (pixels)
    width: int  # Image width (pixels)
    height: int  # Image height (pixels)

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> PinholeCamera:
        """Load intrinsics from a EuRoC-style sensor.yaml.

        The file must contain ``intrinsics: [fu, fv, cu, cv]`` and
        ``resolution: [width, height]``.

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If file format is invalid
        """
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"Calibration file not found: {yaml_path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ValueError(f"Invalid calibration file: {yaml_path}")

        intrinsics = data.get("intrinsics")
        if intrinsics is None or len(intrinsics) != 4:
            raise ValueError(f"Invalid intrinsics in {yaml_path}")

        resolution = data.get("resolution")
        if resolution is None or len(resolution) != 2:
            raise ValueError(f"Invalid resolution in {yaml_path}")

        return cls(
            fx=float(intrinsics[0]),
            fy=float(intrinsics[1]),
            cx=float(intrinsics[2]),
            cy=float(intrinsics[3]),
            width=int(resolution[0]),
            height=int(resolution[1]),
        )

    def to_matrix(self) -> np.ndarray:
        """Return 3x3 camera intrinsic matrix K."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def project(self, points_camera: np.ndarray) -> np.ndarray:
        """Project camera-frame points to pixels.

        Points at or behind the camera plane project to (inf, inf).

        Args:
            points_camera: Nx3 (or (3,)) points in the camera frame

        Returns:
            Nx2 (or (2,)) pixel coordinates
        """
        points = np.asarray(points_camera, dtype=np.float64)
        single = points.ndim == 1
        points = points.reshape(-1, 3)

        z = points[:, 2]
        valid = z > 1e-6
        safe_z = np.where(valid, z, 1.0)
        u = self.fx * points[:, 0] / safe_z + self.cx
        v = self.fy * points[:, 1] / safe_z + self.cy
        pixels = np.stack([u, v], axis=1)
        pixels[~valid] = np.inf

        return pixels[0] if single else pixels

    def is_in_image(self, pixels: np.ndarray) -> np.ndarray:
        """Boolean mask of pixels that fall inside the image bounds."""
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
        return (
            np.isfinite(pixels).all(axis=1)
            & (pixels[:, 0] >= 0.0)
            & (pixels[:, 0] < self.width)
            & (pixels[:, 1] >= 0.0)
            & (pixels[:, 1] < self.height)
        )
