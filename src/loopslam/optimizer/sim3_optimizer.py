"""Refinement of a loop similarity from matched landmarks.

Given landmarks matched between two keyframes and an initial similarity
S_12 (camera 2 -> camera 1), minimize the symmetric reprojection error

    sum_k rho(||u1_k - pi(S_12 X2_k)||^2) + rho(||u2_k - pi(S_21 X1_k)||^2)

where X1_k / X2_k are the landmark positions in each camera frame and u1_k /
u2_k the observed keypoints. Correspondences whose error exceeds the chi2
threshold are dropped and the problem is solved again on the inliers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from scipy.optimize import least_squares

from ..geometry import Sim3

if TYPE_CHECKING:
    from ..geometry import PinholeCamera
    from ..mapping import Keyframe, Map

# Correspondences required to trust the refined estimate
MIN_REFINE_CORRESPONDENCES = 10


def _project(camera: PinholeCamera, points: np.ndarray) -> np.ndarray:
    z = points[:, 2]
    safe_z = np.where(z > 1e-6, z, 1e-6)
    u = camera.fx * points[:, 0] / safe_z + camera.cx
    v = camera.fy * points[:, 1] / safe_z + camera.cy
    return np.stack([u, v], axis=1)


class Sim3Refiner:
    """Least-squares refinement of a similarity between two keyframes."""

    def __init__(
        self,
        slam_map: Map,
        camera: PinholeCamera,
        iterations: int = 5,
        more_iterations: int = 10,
    ) -> None:
        """Initialize refiner.

        Args:
            slam_map: Map used to resolve landmark ids
            camera: Pinhole intrinsics
            iterations: Solver iterations for the first pass
            more_iterations: Solver iterations after outlier removal
        """
        self._map = slam_map
        self._camera = camera
        self._iterations = iterations
        self._more_iterations = more_iterations

    def refine(
        self,
        keyframe1: Keyframe,
        keyframe2: Keyframe,
        matches: dict[int, int],
        S12: Sim3,
        max_error: float,
        fix_scale: bool,
    ) -> tuple[int, Sim3]:
        """Refine ``S12`` and prune outlier correspondences in place.

        Args:
            keyframe1: Keyframe whose slots key ``matches``
            keyframe2: Keyframe observing the matched landmarks
            matches: Slot in keyframe1 -> landmark id seen by keyframe2
            S12: Initial similarity camera 2 -> camera 1
            max_error: Chi2 threshold on the squared pixel error
            fix_scale: Keep the scale at 1

        Returns:
            (number of inliers, refined S12). The count is 0 when too few
            correspondences survive.
        """
        slots, X1, X2, u1, u2 = self._collect(keyframe1, keyframe2, matches)
        if len(slots) < MIN_REFINE_CORRESPONDENCES:
            return 0, S12

        huber = float(np.sqrt(max_error))
        x = S12.to_vector(fix_scale)

        x = self._solve(x, X1, X2, u1, u2, fix_scale, huber, self._iterations)
        inliers = self._inlier_mask(x, X1, X2, u1, u2, fix_scale, max_error)
        n_bad = int(np.count_nonzero(~inliers))
        for slot in slots[~inliers]:
            matches.pop(int(slot), None)

        if len(slots) - n_bad < MIN_REFINE_CORRESPONDENCES:
            return 0, S12

        iterations = self._more_iterations if n_bad > 0 else self._iterations
        slots, X1, X2, u1, u2 = (a[inliers] for a in (slots, X1, X2, u1, u2))
        x = self._solve(x, X1, X2, u1, u2, fix_scale, huber, iterations)

        inliers = self._inlier_mask(x, X1, X2, u1, u2, fix_scale, max_error)
        for slot in slots[~inliers]:
            matches.pop(int(slot), None)

        return int(np.count_nonzero(inliers)), Sim3.from_vector(x, fix_scale)

    def _collect(
        self, keyframe1: Keyframe, keyframe2: Keyframe, matches: dict[int, int]
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """Gather camera-frame points and observations for usable matches."""
        T1 = keyframe1.get_pose()
        T2 = keyframe2.get_pose()

        slots, X1, X2, u1, u2 = [], [], [], [], []
        for slot1, lm2_id in matches.items():
            lm1 = self._map.get_landmark(keyframe1.landmark_at(slot1))
            lm2 = self._map.get_landmark(lm2_id)
            if lm1 is None or lm2 is None or lm1.bad or lm2.bad:
                continue
            slot2 = lm2.slot_in(keyframe2.id)
            if slot2 is None:
                continue

            slots.append(slot1)
            X1.append(T1.transform_points(lm1.get_position()))
            X2.append(T2.transform_points(lm2.get_position()))
            u1.append(keyframe1.keypoints[slot1])
            u2.append(keyframe2.keypoints[slot2])

        if not slots:
            empty = np.empty((0, 3))
            return np.empty(0, dtype=np.int64), empty, empty, np.empty((0, 2)), np.empty((0, 2))

        return (
            np.asarray(slots, dtype=np.int64),
            np.asarray(X1),
            np.asarray(X2),
            np.asarray(u1, dtype=np.float64),
            np.asarray(u2, dtype=np.float64),
        )

    def _errors(
        self,
        params: np.ndarray,
        X1: np.ndarray,
        X2: np.ndarray,
        u1: np.ndarray,
        u2: np.ndarray,
        fix_scale: bool,
    ) -> tuple[np.ndarray, np.ndarray]:
        S12 = Sim3.from_vector(params, fix_scale)
        S21 = S12.inverse()
        e1 = _project(self._camera, S12.map(X2)) - u1
        e2 = _project(self._camera, S21.map(X1)) - u2
        return e1, e2

    def _solve(
        self,
        x0: np.ndarray,
        X1: np.ndarray,
        X2: np.ndarray,
        u1: np.ndarray,
        u2: np.ndarray,
        fix_scale: bool,
        huber: float,
        iterations: int,
    ) -> np.ndarray:
        def residuals(params: np.ndarray) -> np.ndarray:
            e1, e2 = self._errors(params, X1, X2, u1, u2, fix_scale)
            return np.concatenate([e1.ravel(), e2.ravel()])

        result = least_squares(
            residuals,
            x0,
            method="trf",
            loss="huber",
            f_scale=huber,
            max_nfev=iterations * 10,
        )
        return result.x

    def _inlier_mask(
        self,
        params: np.ndarray,
        X1: np.ndarray,
        X2: np.ndarray,
        u1: np.ndarray,
        u2: np.ndarray,
        fix_scale: bool,
        max_error: float,
    ) -> np.ndarray:
        e1, e2 = self._errors(params, X1, X2, u1, u2, fix_scale)
        chi2_1 = np.sum(e1**2, axis=1)
        chi2_2 = np.sum(e2**2, axis=1)
        return (chi2_1 <= max_error) & (chi2_2 <= max_error)
