"""Loop closing configuration.

All thresholds of detection, verification, correction and global
optimization live in one dataclass that can be loaded from YAML:

    loop_closing:
      min_consistency: 3
      fix_scale: false
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml


@dataclass
class LoopClosingConfig:
    """Configuration for loop detection, correction and global BA."""

    # Detection
    min_keyframes_since_loop: int = 10  # temporal gap after an accepted loop
    min_consistency: int = 3  # consecutive consistent detections required

    # Geometric verification
    min_index_matches: int = 20  # descriptor matches to build a solver
    ransac_probability: float = 0.99
    ransac_min_inliers: int = 20
    ransac_max_iterations: int = 300
    ransac_iterations_per_round: int = 5
    transform_search_radius: float = 7.5  # pixels, guided matching
    refine_max_error: float = 10.0  # chi2 threshold for Sim3 refinement
    min_refined_inliers: int = 20
    projection_search_radius: float = 10.0  # pixels, loop landmark projection
    min_total_matches: int = 40

    # Correction
    fuse_search_radius: float = 4.0  # pixels
    fix_scale: bool = True  # stereo / RGB-D maps have observable scale

    # Global optimization
    global_ba_iterations: int = 10
    global_ba_robust: bool = False

    # Threading
    idle_wait: float = 0.005  # seconds between queue checks when idle
    pause_poll_interval: float = 0.001  # seconds between local mapping pause checks

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoopClosingConfig:
        """Create a config from a mapping, rejecting unknown keys.

        Raises:
            ValueError: If a key is not a configuration field
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown loop closing config keys: {unknown}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> LoopClosingConfig:
        """Load config from a YAML file.

        The settings may sit at top level or under a ``loop_closing`` key.
        An empty file yields the defaults.

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If file format is invalid
        """
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {yaml_path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f)

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError(f"Config must be a mapping: {yaml_path}")

        section = data.get("loop_closing", data)
        if not isinstance(section, dict):
            raise ValueError(f"Invalid loop_closing section in {yaml_path}")
        return cls.from_dict(section)
