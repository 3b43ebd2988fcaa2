# src/rgbdfuse/system/model.py
from __future__ import annotations

import numpy as np


class PointModel:
    """
    Growing oriented point cloud stored as a columnar arena.

    Positions, normals and colors live in three (capacity,3) float64 arrays;
    only the first `len(model)` rows are valid. Row indices are stable: points
    are updated in place or appended at the tail, never removed or reordered
    (except by `clear`).

    Views returned by `points` / `normals` / `colors` are invalidated by any
    call that grows the capacity (`reserve`, `append`). Callers that hand views
    to worker threads must `reserve` first.
    """

    def __init__(self, capacity: int = 0):
        capacity = max(int(capacity), 0)
        self._points = np.zeros((capacity, 3), np.float64)
        self._normals = np.zeros((capacity, 3), np.float64)
        self._colors = np.zeros((capacity, 3), np.float64)
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def is_empty(self) -> bool:
        return self._size == 0

    @property
    def capacity(self) -> int:
        return int(self._points.shape[0])

    @property
    def points(self) -> np.ndarray:
        return self._points[: self._size]

    @property
    def normals(self) -> np.ndarray:
        return self._normals[: self._size]

    @property
    def colors(self) -> np.ndarray:
        return self._colors[: self._size]

    def reserve(self, capacity: int) -> None:
        capacity = int(capacity)
        if capacity <= self.capacity:
            return
        # grow geometrically so repeated small appends stay amortized O(1)
        new_cap = max(capacity, 2 * self.capacity)
        for name in ("_points", "_normals", "_colors"):
            old = getattr(self, name)
            new = np.zeros((new_cap, 3), np.float64)
            new[: self._size] = old[: self._size]
            setattr(self, name, new)

    def append(self, points: np.ndarray, normals: np.ndarray, colors: np.ndarray) -> int:
        """Append rows at the tail. Returns the index of the first appended row."""
        points = np.asarray(points, dtype=np.float64)
        normals = np.asarray(normals, dtype=np.float64)
        colors = np.asarray(colors, dtype=np.float64)
        n = points.shape[0]
        if points.shape != (n, 3) or normals.shape != (n, 3) or colors.shape != (n, 3):
            raise ValueError(
                f"append expects three (N,3) arrays, got {points.shape}, {normals.shape}, {colors.shape}"
            )

        start = self._size
        self.reserve(start + n)
        self._points[start : start + n] = points
        self._normals[start : start + n] = normals
        self._colors[start : start + n] = colors
        self._size = start + n
        return start

    def append_cloud(self, cloud) -> int:
        return self.append(cloud.points, cloud.normals, cloud.colors)

    def clear(self) -> None:
        # capacity is kept; the next seed reuses the buffers
        self._size = 0

    def set_from(self, cloud) -> None:
        self.clear()
        self.append_cloud(cloud)

    def transformed(self, T: np.ndarray):
        from .state import PointCloud

        return PointCloud(self.points, self.normals, self.colors).transformed(T)
