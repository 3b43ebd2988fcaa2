# src/rgbdfuse/modules/index_map.py
from __future__ import annotations

import numpy as np

EMPTY = -1


def project_pixels(points: np.ndarray, K: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Pinhole projection of camera-frame points.

    Returns:
        u, v: (N,) int64 pixel coords (nearest pixel center)
        z:    (N,) float64 depth along the optical axis
    """
    P = np.asarray(points, dtype=np.float64)
    z = P[:, 2]
    with np.errstate(divide="ignore", invalid="ignore"):
        x = K[0, 0] * P[:, 0] / z + K[0, 2]
        y = K[1, 1] * P[:, 1] / z + K[1, 2]
    ok = np.isfinite(x) & np.isfinite(y) & (z > 0.0)
    u = np.full(P.shape[0], -1, np.int64)
    v = np.full(P.shape[0], -1, np.int64)
    u[ok] = np.rint(x[ok]).astype(np.int64)
    v[ok] = np.rint(y[ok]).astype(np.int64)
    return u, v, z


def project_to_index_map(points: np.ndarray, K: np.ndarray, width: int, height: int) -> np.ndarray:
    """
    Build a dense (height, width) index map from camera-frame points.

    Each cell holds the row index of the point projecting there, or EMPTY.
    When several points land on one pixel the one nearest to the camera wins;
    equal depths resolve to the lower point index.
    """
    width = int(width)
    height = int(height)
    if width <= 0 or height <= 0:
        raise ValueError(f"Index map size must be positive, got {width}x{height}")

    index_map = np.full((height, width), EMPTY, dtype=np.int64)
    P = np.asarray(points, dtype=np.float64)
    if P.shape[0] == 0:
        return index_map
    if P.ndim != 2 or P.shape[1] != 3:
        raise ValueError(f"project_to_index_map expects (N,3) points, got {P.shape}")

    K64 = np.asarray(K, dtype=np.float64)
    u, v, z = project_pixels(P, K64)
    inside = (u >= 0) & (u < width) & (v >= 0) & (v < height)
    idx = np.nonzero(inside)[0]
    if idx.size == 0:
        return index_map

    pix = v[idx] * width + u[idx]
    # sort by pixel, then depth, then point index; first of each pixel wins
    order = np.lexsort((idx, z[idx], pix))
    pix_sorted = pix[order]
    first = np.ones(order.size, dtype=bool)
    first[1:] = pix_sorted[1:] != pix_sorted[:-1]
    winners = order[first]

    index_map.reshape(-1)[pix[winners]] = idx[winners]
    return index_map
