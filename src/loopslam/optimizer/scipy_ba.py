"""Keyframe and landmark bundle adjustment on scipy least_squares.

Camera poses (T_cw) and landmark positions are refined together against
their pixel observations,

    minimize sum_i rho(||u_i - project(T_j, X_k)||^2)

with u_i the keypoint of observation i, T_j its keyframe pose, X_k its
landmark and rho the identity or a Huber kernel.

The solver runs in chunks of a few function evaluations so a cancellation
event can be honoured between chunks.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ..geometry import SE3

if TYPE_CHECKING:
    from ..geometry import PinholeCamera
    from ..mapping import Keyframe, Landmark

# Chi-square 95% for 2 DoF, used as Huber threshold
HUBER_THRESHOLD = float(np.sqrt(5.991))
# Residual assigned to points behind the camera
BEHIND_CAMERA_RESIDUAL = 1e3


@dataclass
class BAResult:
    """Outcome of one bundle adjustment run."""

    success: bool
    # Optimized poses: keyframe.id -> T_camera_world
    optimized_poses: dict[int, SE3] = field(default_factory=dict)
    # Optimized points: landmark.id -> position
    optimized_points: dict[int, np.ndarray] = field(default_factory=dict)
    initial_cost: float = 0.0
    final_cost: float = 0.0
    iterations: int = 0
    message: str = ""


@dataclass
class _Problem:
    """Flattened observation arrays of one bundle adjustment problem."""

    keyframes: list[Keyframe]
    landmarks: list[Landmark]
    obs_kf: np.ndarray  # (M,) keyframe index per observation
    obs_pt: np.ndarray  # (M,) landmark index per observation
    obs_px: np.ndarray  # (M, 2) observed pixels
    free_index: np.ndarray  # (n_kf,) position in the pose block, -1 if fixed
    initial_poses: list[SE3]


class ScipyBundleAdjustment:
    """Sparse bundle adjustment with a trust region reflective solver.

    Each residual depends on one pose and one point only; the Jacobian
    sparsity pattern handed to scipy encodes that.
    """

    def __init__(
        self,
        camera: PinholeCamera,
        evaluations_per_iteration: int = 5,
        ftol: float = 1e-6,
        xtol: float = 1e-6,
    ) -> None:
        """Configure the solver.

        Args:
            camera: Pinhole intrinsics shared by all keyframes
            evaluations_per_iteration: Function evaluations between
                cancellation checks
            ftol: Relative cost change that ends a chunk
            xtol: Relative step size that ends a chunk
        """
        self._camera = camera
        self._evaluations = evaluations_per_iteration
        self._ftol = ftol
        self._xtol = xtol

    def optimize(
        self,
        keyframes: list[Keyframe],
        landmarks: list[Landmark],
        fixed_keyframe_ids: set[int],
        iterations: int = 10,
        robust: bool = False,
        stop_event: threading.Event | None = None,
    ) -> BAResult | None:
        """Refine the given keyframes and landmarks.

        Args:
            keyframes: Keyframes to optimize
            landmarks: Landmarks to optimize
            fixed_keyframe_ids: Keyframes held constant (gauge freedom); the
                first keyframe is fixed when none of them is present
            iterations: Number of solver chunks
            robust: Use a Huber kernel
            stop_event: Cancellation flag checked between chunks

        Returns:
            BAResult with optimized poses and points, or None if cancelled
        """
        problem = self._build_problem(keyframes, landmarks, fixed_keyframe_ids)
        if problem is None:
            return BAResult(success=False, message="Too few observations")

        x = self._pack_parameters(problem)
        n_free = int(np.count_nonzero(problem.free_index >= 0))

        initial_cost = 0.5 * float(np.sum(self._compute_residuals(x, problem, n_free) ** 2))
        sparsity = self._build_sparsity_matrix(problem, n_free)
        loss = "huber" if robust else "linear"

        nfev = 0
        final_cost = initial_cost
        message = ""
        for _ in range(iterations):
            if stop_event is not None and stop_event.is_set():
                return None

            result = least_squares(
                fun=self._compute_residuals,
                x0=x,
                jac_sparsity=sparsity,
                args=(problem, n_free),
                method="trf",
                loss=loss,
                f_scale=HUBER_THRESHOLD,
                ftol=self._ftol,
                xtol=self._xtol,
                max_nfev=self._evaluations,
                verbose=0,
            )
            x = result.x
            nfev += result.nfev
            final_cost = 0.5 * float(np.sum(result.fun**2))
            message = result.message
            if result.status > 0:
                break

        if stop_event is not None and stop_event.is_set():
            return None

        optimized_poses, optimized_points = self._unpack_parameters(x, problem, n_free)

        return BAResult(
            success=final_cost <= initial_cost,
            optimized_poses=optimized_poses,
            optimized_points=optimized_points,
            initial_cost=initial_cost,
            final_cost=final_cost,
            iterations=nfev,
            message=message,
        )

    def _build_problem(
        self,
        keyframes: list[Keyframe],
        landmarks: list[Landmark],
        fixed_keyframe_ids: set[int],
    ) -> _Problem | None:
        """Gather the observations linking the given keyframes and landmarks."""
        lm_index = {lm.id: idx for idx, lm in enumerate(landmarks)}

        obs_kf: list[int] = []
        obs_pt: list[int] = []
        obs_px: list[np.ndarray] = []
        used_kfs: list[Keyframe] = []

        for kf in keyframes:
            kf_observations = [
                (slot, lm_index[lm_id])
                for slot, lm_id in kf.get_slot_landmarks().items()
                if lm_id in lm_index
            ]
            if not kf_observations:
                continue
            kf_idx = len(used_kfs)
            used_kfs.append(kf)
            for slot, pt_idx in kf_observations:
                obs_kf.append(kf_idx)
                obs_pt.append(pt_idx)
                obs_px.append(kf.keypoints[slot])

        if len(obs_kf) < 10:
            return None

        # Drop landmarks nobody observes
        observed = sorted(set(obs_pt))
        remap = {old: new for new, old in enumerate(observed)}
        used_landmarks = [landmarks[i] for i in observed]

        fixed = [kf.id in fixed_keyframe_ids for kf in used_kfs]
        if not any(fixed):
            fixed[0] = True
        free_index = np.full(len(used_kfs), -1, dtype=np.int64)
        n_free = 0
        for idx, is_fixed in enumerate(fixed):
            if not is_fixed:
                free_index[idx] = n_free
                n_free += 1

        return _Problem(
            keyframes=used_kfs,
            landmarks=used_landmarks,
            obs_kf=np.asarray(obs_kf, dtype=np.int64),
            obs_pt=np.asarray([remap[p] for p in obs_pt], dtype=np.int64),
            obs_px=np.asarray(obs_px, dtype=np.float64),
            free_index=free_index,
            initial_poses=[kf.get_pose() for kf in used_kfs],
        )

    def _pack_parameters(self, problem: _Problem) -> np.ndarray:
        """Pack free poses and points into a flat parameter vector.

        Format: [rvec_0, tvec_0, rvec_1, tvec_1, ..., point_0, point_1, ...]
        """
        params: list[np.ndarray] = []
        for idx, pose in enumerate(problem.initial_poses):
            if problem.free_index[idx] < 0:
                continue
            rvec, tvec = pose.to_rvec_tvec()
            params.append(rvec)
            params.append(tvec)

        for lm in problem.landmarks:
            params.append(lm.get_position())

        return np.concatenate(params).astype(np.float64)

    def _poses_from_parameters(
        self, params: np.ndarray, problem: _Problem
    ) -> tuple[np.ndarray, np.ndarray]:
        n_kf = len(problem.keyframes)
        rotations = np.empty((n_kf, 3, 3), dtype=np.float64)
        translations = np.empty((n_kf, 3), dtype=np.float64)

        for idx in range(n_kf):
            free = problem.free_index[idx]
            if free < 0:
                rotations[idx] = problem.initial_poses[idx].rotation
                translations[idx] = problem.initial_poses[idx].translation
            else:
                offset = 6 * free
                R, _ = cv2.Rodrigues(params[offset : offset + 3])
                rotations[idx] = R
                translations[idx] = params[offset + 3 : offset + 6]

        return rotations, translations

    def _unpack_parameters(
        self, params: np.ndarray, problem: _Problem, n_free: int
    ) -> tuple[dict[int, SE3], dict[int, np.ndarray]]:
        """Split a parameter vector back into poses and positions."""
        rotations, translations = self._poses_from_parameters(params, problem)
        optimized_poses = {
            kf.id: SE3(rotation=rotations[idx], translation=translations[idx])
            for idx, kf in enumerate(problem.keyframes)
        }

        points = params[6 * n_free :].reshape(-1, 3)
        optimized_points = {
            lm.id: points[idx].copy() for idx, lm in enumerate(problem.landmarks)
        }
        return optimized_poses, optimized_points

    def _compute_residuals(
        self, params: np.ndarray, problem: _Problem, n_free: int
    ) -> np.ndarray:
        """Pixel error of every observation, flattened to (2M,)."""
        rotations, translations = self._poses_from_parameters(params, problem)
        points = params[6 * n_free :].reshape(-1, 3)

        p_cam = (
            np.einsum("nij,nj->ni", rotations[problem.obs_kf], points[problem.obs_pt])
            + translations[problem.obs_kf]
        )
        z = p_cam[:, 2]
        in_front = z > 1e-6
        safe_z = np.where(in_front, z, 1.0)

        cam = self._camera
        u = cam.fx * p_cam[:, 0] / safe_z + cam.cx
        v = cam.fy * p_cam[:, 1] / safe_z + cam.cy
        residuals = np.stack([u, v], axis=1) - problem.obs_px
        residuals[~in_front] = BEHIND_CAMERA_RESIDUAL

        return residuals.ravel()

    def _build_sparsity_matrix(self, problem: _Problem, n_free: int) -> lil_matrix:
        """Build Jacobian sparsity pattern.

        Each observation (2 residuals) depends on:
        - 6 pose parameters (if pose is not fixed)
        - 3 point parameters
        """
        n_obs = len(problem.obs_kf)
        n_params = 6 * n_free + 3 * len(problem.landmarks)
        sparsity = lil_matrix((2 * n_obs, n_params), dtype=int)

        for i in range(n_obs):
            rows = [2 * i, 2 * i + 1]
            free = problem.free_index[problem.obs_kf[i]]
            if free >= 0:
                start = 6 * free
                for row in rows:
                    sparsity[row, start : start + 6] = 1

            start = 6 * n_free + 3 * problem.obs_pt[i]
            for row in rows:
                sparsity[row, start : start + 3] = 1

        return sparsity
