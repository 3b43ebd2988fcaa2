# src/rgbdfuse/modules/icp.py
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .index_map import EMPTY, project_pixels, project_to_index_map
from ..geom.se3 import check_T, exp_se3, transform_points


@dataclass
class IcpResult:
    T: np.ndarray  # 4x4, maps model points into the frame's camera coordinates
    converged: bool
    iterations: int = 0
    num_corr: int = 0
    rmse: float | None = None
    reason: str = ""


def _associate(
    X_cam: np.ndarray,
    frame_points: np.ndarray,
    frame_map: np.ndarray,
    K: np.ndarray,
    max_corr_dist_sq: float,
) -> tuple[np.ndarray, np.ndarray]:
    """Projective data association: model point -> frame point at the same pixel."""
    h, w = frame_map.shape
    u, v, _ = project_pixels(X_cam, K)
    inside = (u >= 0) & (u < w) & (v >= 0) & (v < h)
    src_idx = np.nonzero(inside)[0]
    dst_idx = frame_map[v[src_idx], u[src_idx]]
    hit = dst_idx != EMPTY
    src_idx = src_idx[hit]
    dst_idx = dst_idx[hit]

    d2 = np.sum((X_cam[src_idx] - frame_points[dst_idx]) ** 2, axis=1)
    close = d2 < max_corr_dist_sq
    return src_idx[close], dst_idx[close]


def _combined_step(
    p: np.ndarray,
    q: np.ndarray,
    n: np.ndarray,
    point_to_plane_weight: float,
    point_to_point_weight: float,
) -> tuple[np.ndarray, float]:
    """
    One Gauss-Newton step for the combined point-to-plane / point-to-point metric.

    Args:
        p: (N,3) current model points in camera frame
        q: (N,3) matched frame points
        n: (N,3) frame normals at q

    Returns:
        xi: (6,) update [w, t], to be left-multiplied as exp_se3(xi) @ T
        rmse: point-to-plane residual RMS before the step
    """
    diff = p - q
    r_pl = np.einsum("ij,ij->i", diff, n)
    J_pl = np.hstack([np.cross(p, n), n])  # (N,6)

    H = point_to_plane_weight * (J_pl.T @ J_pl)
    g = point_to_plane_weight * (J_pl.T @ r_pl)

    if point_to_point_weight > 0.0:
        # d(p + w x p + t)/d[w,t] = [-[p]x, I]
        J_pt = np.zeros((p.shape[0], 3, 6))
        J_pt[:, :, :3] = -_skew_batch(p)
        J_pt[:, :, 3:] = np.eye(3)
        H += point_to_point_weight * np.einsum("nki,nkj->ij", J_pt, J_pt)
        g += point_to_point_weight * np.einsum("nki,nk->i", J_pt, diff)

    xi = np.linalg.solve(H, -g)
    rmse = float(np.sqrt(np.mean(r_pl ** 2)))
    return xi, rmse


def _skew_batch(p: np.ndarray) -> np.ndarray:
    S = np.zeros((p.shape[0], 3, 3))
    S[:, 0, 1] = -p[:, 2]
    S[:, 0, 2] = p[:, 1]
    S[:, 1, 0] = p[:, 2]
    S[:, 1, 2] = -p[:, 0]
    S[:, 2, 0] = -p[:, 1]
    S[:, 2, 1] = p[:, 0]
    return S


def estimate_pose(
    frame_points: np.ndarray,
    frame_normals: np.ndarray,
    model_points: np.ndarray,
    K: np.ndarray,
    width: int,
    height: int,
    *,
    initial_guess: np.ndarray | None = None,
    max_corr_dist_sq: float = 0.1 * 0.1,
    convergence_tol: float = 5e-4,
    max_iters: int = 6,
    max_inner_iters: int = 1,
    point_to_plane_weight: float = 1.0,
    point_to_point_weight: float = 0.1,
    min_correspondences: int = 6,
) -> IcpResult:
    """
    Projective ICP aligning the model to the current frame.

    The frame (camera coordinates, with normals) is the fixed side; model
    points are moved by T and associated by projecting into the frame's
    index map. Each outer iteration re-associates; each inner iteration
    re-linearizes with fixed correspondences.

    Never raises on poor data: if tracking cannot proceed, the last estimate
    (initially `initial_guess`) is returned with converged=False and a reason.

    Returns:
        IcpResult with T mapping model coordinates -> camera coordinates.
    """
    T = np.eye(4) if initial_guess is None else check_T(initial_guess).copy()
    res = IcpResult(T=T, converged=False)

    F = np.asarray(frame_points, dtype=np.float64)
    Nf = np.asarray(frame_normals, dtype=np.float64)
    M = np.asarray(model_points, dtype=np.float64)
    K64 = np.asarray(K, dtype=np.float64)

    if F.shape[0] == 0 or M.shape[0] == 0:
        res.reason = "REJECT_ICP_EMPTY_CLOUD"
        return res

    frame_map = project_to_index_map(F, K64, width, height)

    for it in range(int(max_iters)):
        src_idx, dst_idx = _associate(transform_points(T, M), F, frame_map, K64, max_corr_dist_sq)
        res.num_corr = int(src_idx.size)
        if src_idx.size < max(int(min_correspondences), 6):
            res.reason = f"REJECT_ICP_TOO_FEW_CORRESPONDENCES:{src_idx.size}"
            return res

        M_c = M[src_idx]
        q = F[dst_idx]
        n = Nf[dst_idx]

        xi = np.zeros(6)
        for _ in range(max(int(max_inner_iters), 1)):
            try:
                xi, rmse = _combined_step(
                    transform_points(T, M_c), q, n, point_to_plane_weight, point_to_point_weight
                )
            except np.linalg.LinAlgError:
                res.reason = "REJECT_ICP_DEGENERATE"
                return res
            if not np.all(np.isfinite(xi)):
                res.reason = "REJECT_ICP_NONFINITE_STEP"
                return res
            T = exp_se3(xi) @ T
            res.T = T
            res.rmse = rmse

        res.iterations = it + 1
        if float(np.linalg.norm(xi)) < convergence_tol:
            res.converged = True
            res.reason = "ICP_CONVERGED"
            return res

    res.reason = "ICP_MAX_ITERS"
    return res
