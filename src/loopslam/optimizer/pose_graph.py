"""Essential graph optimization for loop correction.

When a loop is closed, the correction applied around the current keyframe
must be spread over the rest of the trajectory. The essential graph keeps a
sparse subset of the covisibility graph:

- spanning tree edges (keyframe -> parent)
- loop edges from earlier loop closures
- strong covisibility edges (weight >= 100)
- the new loop connections produced by the correction

Vertices are Sim(3) poses S_iw (scale is held at 1 for stereo/RGB-D maps),
and each edge stores the relative similarity S_ji measured before the
correction. Unlike bundle adjustment, landmarks are not optimized; they are
moved rigidly with their reference keyframe afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ..geometry import Sim3

if TYPE_CHECKING:
    from ..mapping import Keyframe, Map

logger = logging.getLogger(__name__)

MIN_ESSENTIAL_WEIGHT = 100


@dataclass
class Sim3Edge:
    """An edge in the essential graph.

    Attributes:
        from_id: Keyframe i
        to_id: Keyframe j
        measurement: Relative similarity S_ji mapping camera i into camera j
    """

    from_id: int
    to_id: int
    measurement: Sim3


class EssentialGraph:
    """Sim(3) pose graph over keyframes."""

    def __init__(self, fix_scale: bool = True) -> None:
        """Initialize empty graph.

        Args:
            fix_scale: Keep every vertex scale at 1 (6 parameters per vertex)
        """
        self._fix_scale = fix_scale
        self._vertices: dict[int, Sim3] = {}
        self._fixed: set[int] = set()
        self._edges: list[Sim3Edge] = []

    @property
    def dof(self) -> int:
        return 6 if self._fix_scale else 7

    def add_vertex(self, keyframe_id: int, pose: Sim3, fixed: bool = False) -> None:
        self._vertices[keyframe_id] = pose.copy()
        if fixed:
            self._fixed.add(keyframe_id)

    def add_edge(self, from_id: int, to_id: int, measurement: Sim3) -> None:
        self._edges.append(Sim3Edge(from_id, to_id, measurement.copy()))

    @property
    def num_edges(self) -> int:
        return len(self._edges)

    def optimize(self, max_iterations: int = 20) -> dict[int, Sim3]:
        """Optimize all non-fixed vertices.

        Args:
            max_iterations: Bound on solver iterations

        Returns:
            Optimized poses for every vertex (fixed ones unchanged)
        """
        free_ids = [k for k in sorted(self._vertices) if k not in self._fixed]
        if not free_ids or not self._edges:
            return {k: v.copy() for k, v in self._vertices.items()}

        dof = self.dof
        free_index = {kf_id: i for i, kf_id in enumerate(free_ids)}
        x0 = np.concatenate(
            [self._vertices[k].to_vector(self._fix_scale) for k in free_ids]
        )

        def unpack(params: np.ndarray) -> dict[int, Sim3]:
            poses = dict(self._vertices)
            for kf_id, i in free_index.items():
                poses[kf_id] = Sim3.from_vector(
                    params[i * dof : (i + 1) * dof], self._fix_scale
                )
            return poses

        def residuals(params: np.ndarray) -> np.ndarray:
            poses = unpack(params)
            errors = np.empty((len(self._edges), dof), dtype=np.float64)
            for e_idx, edge in enumerate(self._edges):
                S_iw = poses[edge.from_id]
                S_jw = poses[edge.to_id]
                # Identity when S_jw matches S_ji * S_iw
                error = (edge.measurement @ S_iw @ S_jw.inverse()).log()
                errors[e_idx] = error[:dof]
            return errors.ravel()

        jac_sparsity = lil_matrix((len(self._edges) * dof, len(x0)), dtype=int)
        for e_idx, edge in enumerate(self._edges):
            rows = slice(e_idx * dof, (e_idx + 1) * dof)
            for kf_id in (edge.from_id, edge.to_id):
                if kf_id in free_index:
                    start = free_index[kf_id] * dof
                    jac_sparsity[rows, start : start + dof] = 1

        result = least_squares(
            residuals,
            x0,
            method="trf",  # 'lm' doesn't support jac_sparsity
            jac_sparsity=jac_sparsity,
            ftol=1e-8,
            max_nfev=max_iterations * 10,
        )

        return {k: v.copy() for k, v in unpack(result.x).items()}


def optimize_essential_graph(
    slam_map: Map,
    loop_keyframe: Keyframe,
    current_keyframe: Keyframe,
    non_corrected: dict[int, Sim3],
    corrected: dict[int, Sim3],
    loop_connections: dict[int, set[int]],
    fix_scale: bool,
    min_weight: int = MIN_ESSENTIAL_WEIGHT,
    max_iterations: int = 20,
) -> dict[int, Sim3]:
    """Optimize the essential graph and write the result into the map.

    Keyframe poses are replaced by [R | t/s] of their optimized similarity.
    Each landmark is moved with its reference keyframe (the keyframe that
    corrected it during this loop correction, if any).

    Args:
        slam_map: Shared map
        loop_keyframe: Matched keyframe, held fixed
        current_keyframe: Keyframe that closed the loop
        non_corrected: Pre-correction poses S_iw of the corrected neighbourhood
        corrected: Corrected poses S_iw of the corrected neighbourhood
        loop_connections: New edges created by the correction
        fix_scale: Keep scale at 1
        min_weight: Covisibility weight for essential edges
        max_iterations: Bound on solver iterations

    Returns:
        Optimized S_iw per keyframe id
    """
    keyframes = [kf for kf in slam_map.get_all_keyframes() if not kf.bad]
    graph = EssentialGraph(fix_scale)

    initial: dict[int, Sim3] = {}
    for kf in keyframes:
        S_iw = corrected.get(kf.id)
        if S_iw is None:
            S_iw = Sim3.from_se3(kf.get_pose())
        initial[kf.id] = S_iw
        graph.add_vertex(kf.id, S_iw, fixed=kf.id == loop_keyframe.id)

    inserted: set[tuple[int, int]] = set()

    # Loop connections
    for kf_id, connections in loop_connections.items():
        kf = slam_map.get_keyframe(kf_id)
        if kf is None or kf_id not in initial:
            continue
        S_wi = initial[kf_id].inverse()
        for other_id in connections:
            if other_id not in initial:
                continue
            is_loop_pair = kf_id == current_keyframe.id and other_id == loop_keyframe.id
            if not is_loop_pair and kf.get_weight(other_id) < min_weight:
                continue
            graph.add_edge(kf_id, other_id, initial[other_id] @ S_wi)
            inserted.add((min(kf_id, other_id), max(kf_id, other_id)))

    def before_correction(kf_id: int) -> Sim3:
        pose = non_corrected.get(kf_id)
        return pose if pose is not None else initial[kf_id]

    # Spanning tree, previous loop edges and strong covisibility
    for kf in keyframes:
        i = kf.id
        S_wi = before_correction(i).inverse()

        parent_id = kf.parent_id
        if parent_id is not None and parent_id in initial:
            graph.add_edge(i, parent_id, before_correction(parent_id) @ S_wi)

        for loop_id in kf.get_loop_edges():
            if loop_id < i and loop_id in initial:
                graph.add_edge(i, loop_id, before_correction(loop_id) @ S_wi)

        children = kf.get_children()
        for n_id in kf.get_covisibles_by_weight(min_weight):
            if n_id == parent_id or n_id in children or n_id >= i:
                continue
            if n_id not in initial:
                continue
            if (n_id, i) in inserted:
                continue
            graph.add_edge(i, n_id, before_correction(n_id) @ S_wi)

    logger.debug(
        f"Essential graph: {len(initial)} vertices, {graph.num_edges} edges"
    )
    optimized = graph.optimize(max_iterations=max_iterations)

    with slam_map.update_lock:
        for kf in keyframes:
            kf.set_pose(optimized[kf.id].to_se3())

        for landmark in slam_map.get_all_landmarks():
            if landmark.bad:
                continue
            if landmark.corrected_by_kf == current_keyframe.id:
                ref_id = landmark.corrected_reference
            else:
                ref_id = landmark.reference_kf_id
            if ref_id not in initial:
                continue

            S_rw = initial[ref_id]
            S_wr_corrected = optimized[ref_id].inverse()
            landmark.set_position(S_wr_corrected.map(S_rw.map(landmark.get_position())))

    return optimized
