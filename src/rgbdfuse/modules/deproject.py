# src/rgbdfuse/modules/deproject.py
from __future__ import annotations

import numpy as np

from ..system.state import PointCloud


def depth_to_grid(depth: np.ndarray, K: np.ndarray, *, depth_scale: float = 5000.0) -> np.ndarray:
    """
    Back-project a raw depth image to an organized (H,W,3) grid of camera-frame points.
    Zero depth becomes NaN.
    """
    if depth.ndim != 2:
        raise ValueError(f"depth must be (H,W), got {depth.shape}")
    h, w = depth.shape
    z = depth.astype(np.float64) / float(depth_scale)
    z[z <= 0.0] = np.nan

    us, vs = np.meshgrid(np.arange(w, dtype=np.float64), np.arange(h, dtype=np.float64))
    x = (us - K[0, 2]) * z / K[0, 0]
    y = (vs - K[1, 2]) * z / K[1, 1]
    return np.stack([x, y, z], axis=-1)


def grid_normals(grid: np.ndarray, *, max_depth_jump: float | None = None) -> np.ndarray:
    """
    Normals from central differences on an organized point grid, oriented towards the camera.
    Border pixels, pixels with an invalid neighbour and degenerate normals are NaN.
    """
    h, w, _ = grid.shape
    N = np.full_like(grid, np.nan)
    if h < 3 or w < 3:
        return N

    c = grid[1:-1, 1:-1]
    l = grid[1:-1, :-2]
    r = grid[1:-1, 2:]
    u = grid[:-2, 1:-1]
    d = grid[2:, 1:-1]

    n = np.cross(r - l, d - u)
    with np.errstate(invalid="ignore", divide="ignore"):
        norm = np.linalg.norm(n, axis=-1, keepdims=True)
        n = n / norm
    bad = ~np.isfinite(n).all(axis=-1) | (norm[..., 0] < 1e-12)

    if max_depth_jump is not None:
        zc = c[..., 2]
        with np.errstate(invalid="ignore"):
            jump = np.max(np.abs(np.stack([l[..., 2], r[..., 2], u[..., 2], d[..., 2]]) - zc), axis=0)
            bad |= ~(jump <= max_depth_jump)

    # face the sensor: n . p < 0
    flip = np.einsum("ijk,ijk->ij", n, c) > 0.0
    n[flip] *= -1.0
    n[bad] = np.nan
    N[1:-1, 1:-1] = n
    return N


def deproject(
    rgb: np.ndarray,
    depth: np.ndarray,
    K: np.ndarray,
    *,
    depth_scale: float = 5000.0,
    min_depth: float = 0.0,
    max_depth: float = np.inf,
    max_depth_jump: float | None = None,
) -> PointCloud:
    """
    Reconstruct an oriented, colored point set from a registered RGB-D pair.

    Args:
        rgb: (H,W,3) uint8 image in RGB order, pixel-aligned with depth
        depth: (H,W) raw depth, metric depth = depth / depth_scale; 0 means no reading
        K: (3,3) pinhole intrinsics
        min_depth, max_depth: valid metric range (inclusive)
        max_depth_jump: reject pixels whose 4-neighbours differ in depth by more than this

    Returns:
        PointCloud with one row per valid pixel, in row-major pixel order.
    """
    if rgb.shape[:2] != depth.shape:
        raise ValueError(f"rgb {rgb.shape[:2]} and depth {depth.shape} are not the same size")

    K64 = np.asarray(K, dtype=np.float64)
    grid = depth_to_grid(depth, K64, depth_scale=depth_scale)
    z = grid[..., 2]
    with np.errstate(invalid="ignore"):
        in_range = (z >= min_depth) & (z <= max_depth)
    grid[~in_range] = np.nan

    normals = grid_normals(grid, max_depth_jump=max_depth_jump)
    valid = np.isfinite(grid).all(axis=-1) & np.isfinite(normals).all(axis=-1)

    colors = rgb.astype(np.float64) / 255.0
    return PointCloud(
        points=grid[valid],
        normals=normals[valid],
        colors=colors[valid],
    )
