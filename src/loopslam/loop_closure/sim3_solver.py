"""RANSAC estimation of the similarity between two keyframes.

Each hypothesis is computed in closed form (Horn / Umeyama) from three
landmark correspondences expressed in both camera frames, and scored by
reprojecting every correspondence into both images. The solver is iterated
in small batches so the loop detector can interleave several candidates.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

import numpy as np

from ..geometry import Sim3

if TYPE_CHECKING:
    from ..geometry import PinholeCamera
    from ..mapping import Keyframe, Map

# Chi-square 99% for 2 DoF at unit pixel noise
CHI2_2DOF = 9.210


def estimate_similarity(
    source: np.ndarray, target: np.ndarray, with_scale: bool = True
) -> Sim3 | None:
    """Closed-form similarity mapping ``source`` points onto ``target``.

    Args:
        source: Nx3 points (N >= 3)
        target: Nx3 points
        with_scale: Estimate the scale, otherwise keep it at 1

    Returns:
        Sim3 with target ~ s * R @ source + t, or None for degenerate input
    """
    n = len(source)
    mu_source = source.mean(axis=0)
    mu_target = target.mean(axis=0)
    src = source - mu_source
    dst = target - mu_target

    var_source = float(np.sum(src**2)) / n
    if var_source < 1e-12:
        return None

    covariance = dst.T @ src / n
    U, D, Vt = np.linalg.svd(covariance)
    S = np.eye(3)
    if np.linalg.det(U) * np.linalg.det(Vt) < 0:
        S[2, 2] = -1.0
    R = U @ S @ Vt

    scale = float(np.trace(np.diag(D) @ S)) / var_source if with_scale else 1.0
    if scale <= 1e-12:
        return None

    t = mu_target - scale * (R @ mu_source)
    return Sim3(rotation=R, translation=t, scale=scale)


class Sim3Solver:
    """RANSAC solver for S12 (camera 2 -> camera 1).

    Example:
        >>> solver = Sim3Solver(kf1, kf2, matches, True, slam_map, camera)
        >>> found, inliers = solver.iterate(5)
        >>> if found:
        ...     S12 = solver.get_estimated_transform()
    """

    def __init__(
        self,
        keyframe1: Keyframe,
        keyframe2: Keyframe,
        matches: dict[int, int],
        fix_scale: bool,
        slam_map: Map,
        camera: PinholeCamera,
        probability: float = 0.99,
        min_inliers: int = 20,
        max_iterations: int = 300,
        seed: int | None = None,
    ) -> None:
        """Initialize solver from landmark matches.

        Args:
            keyframe1: Keyframe whose slots key ``matches``
            keyframe2: Keyframe observing the matched landmarks
            matches: Slot in keyframe1 -> landmark id seen by keyframe2
            fix_scale: Keep the scale at 1
            slam_map: Map used to resolve landmark ids
            camera: Pinhole intrinsics
            probability: RANSAC success probability
            min_inliers: Inliers required to accept a hypothesis
            max_iterations: Upper bound on RANSAC iterations
            seed: Random seed for reproducible sampling
        """
        self._fix_scale = fix_scale
        self._camera = camera
        self._rng = np.random.default_rng(seed)
        self._n_matches = len(matches)

        T1 = keyframe1.get_pose()
        T2 = keyframe2.get_pose()

        indices, X1, X2 = [], [], []
        for position, (slot1, lm2_id) in enumerate(matches.items()):
            lm1 = slam_map.get_landmark(keyframe1.landmark_at(slot1))
            lm2 = slam_map.get_landmark(lm2_id)
            if lm1 is None or lm2 is None or lm1.bad or lm2.bad:
                continue
            if lm2.slot_in(keyframe2.id) is None:
                continue
            indices.append(position)
            X1.append(T1.transform_points(lm1.get_position()))
            X2.append(T2.transform_points(lm2.get_position()))

        self._indices = np.asarray(indices, dtype=np.int64)
        self._X1 = np.asarray(X1, dtype=np.float64).reshape(-1, 3)
        self._X2 = np.asarray(X2, dtype=np.float64).reshape(-1, 3)
        self._P1 = camera.project(self._X1) if len(X1) else np.empty((0, 2))
        self._P2 = camera.project(self._X2) if len(X2) else np.empty((0, 2))
        self._max_error = CHI2_2DOF

        self._iterations = 0
        self._no_more = False
        self._best_count = 0
        self._best_inliers = np.zeros(len(indices), dtype=bool)
        self._best_transform: Sim3 | None = None

        self.set_ransac_parameters(probability, min_inliers, max_iterations)

    @property
    def num_correspondences(self) -> int:
        return len(self._indices)

    def set_ransac_parameters(
        self, probability: float, min_inliers: int, max_iterations: int
    ) -> None:
        """Set RANSAC parameters and derive the iteration limit."""
        self._probability = probability
        self._min_inliers = min_inliers

        n = len(self._indices)
        if n == 0 or min_inliers >= n:
            n_iterations = 1
        else:
            epsilon = min_inliers / n
            n_iterations = math.ceil(
                math.log(1.0 - probability) / math.log(1.0 - epsilon**3)
            )
        self._max_iterations = max(1, min(n_iterations, max_iterations))

    def iterate(self, n_iterations: int) -> tuple[bool, np.ndarray]:
        """Run up to ``n_iterations`` more RANSAC iterations.

        Returns:
            (found, inlier mask over the matches in insertion order). The
            mask is all False unless a hypothesis reached the inlier minimum.
        """
        mask = np.zeros(self._n_matches, dtype=bool)
        self._no_more = False

        n = len(self._indices)
        if n < self._min_inliers or n < 3:
            self._no_more = True
            return False, mask

        current = 0
        while self._iterations < self._max_iterations and current < n_iterations:
            current += 1
            self._iterations += 1

            sample = self._rng.choice(n, size=3, replace=False)
            S12 = estimate_similarity(
                self._X2[sample], self._X1[sample], with_scale=not self._fix_scale
            )
            if S12 is None:
                continue

            inliers = self._check_inliers(S12)
            count = int(np.count_nonzero(inliers))
            if count >= self._best_count:
                self._best_count = count
                self._best_inliers = inliers
                self._best_transform = S12

                if count >= self._min_inliers:
                    mask[self._indices[inliers]] = True
                    return True, mask

        if self._iterations >= self._max_iterations:
            self._no_more = True

        return False, mask

    def terminate(self) -> bool:
        """True once the iteration limit is reached or data is insufficient."""
        return self._no_more

    def get_estimated_transform(self) -> Sim3 | None:
        """Best S12 found so far."""
        return self._best_transform

    def _check_inliers(self, S12: Sim3) -> np.ndarray:
        S21 = S12.inverse()
        projected1 = self._camera.project(S12.map(self._X2))
        projected2 = self._camera.project(S21.map(self._X1))

        with np.errstate(invalid="ignore"):
            error1 = np.sum((self._P1 - projected1) ** 2, axis=1)
            error2 = np.sum((self._P2 - projected2) ** 2, axis=1)
        return (error1 < self._max_error) & (error2 < self._max_error)
