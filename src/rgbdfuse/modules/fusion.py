# src/rgbdfuse/modules/fusion.py
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np

from .index_map import EMPTY
from ..system.model import PointModel
from ..system.state import PointCloud


@dataclass
class FuseResult:
    num_fused: int = 0    # pixels blended into an existing model point
    num_novel: int = 0    # pixels appended as new points
    num_skipped: int = 0  # pixels without a frame observation
    model_size: int = 0


class AppendBuffer:
    """
    Staging area for novel points of one fuse() call.

    Capacity is the worst case (every pixel novel). Workers claim a slot range
    under a lock and then write their rows into it without further locking.
    """

    def __init__(self, capacity: int):
        self.capacity = int(capacity)
        self.points = np.empty((self.capacity, 3), np.float64)
        self.normals = np.empty((self.capacity, 3), np.float64)
        self.colors = np.empty((self.capacity, 3), np.float64)
        self._count = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return self._count

    def claim(self, n: int) -> int:
        with self._lock:
            start = self._count
            if start + n > self.capacity:
                raise RuntimeError(f"AppendBuffer overflow: {start}+{n} > {self.capacity}")
            self._count = start + n
        return start

    def stage(self, points: np.ndarray, normals: np.ndarray, colors: np.ndarray) -> None:
        n = points.shape[0]
        if n == 0:
            return
        start = self.claim(n)
        self.points[start : start + n] = points
        self.normals[start : start + n] = normals
        self.colors[start : start + n] = colors

    def trimmed(self) -> PointCloud:
        n = self._count
        return PointCloud(self.points[:n], self.normals[:n], self.colors[:n])


def _classify_rows(
    rows: slice,
    frame_t: PointCloud,
    frame_depth: np.ndarray,
    model_depth: np.ndarray,
    frame_index_map: np.ndarray,
    model_index_map: np.ndarray,
    dist_thresh: float,
    buffer: AppendBuffer,
) -> tuple[np.ndarray, np.ndarray, int]:
    """
    Classify one band of rows.

    Novel observations go straight into the shared buffer; correspondences are
    returned as (model_index, frame_index) pairs in row-major pixel order.
    """
    f_idx = frame_index_map[rows].reshape(-1)
    m_idx = model_index_map[rows].reshape(-1)

    observed = f_idx != EMPTY
    f_idx = f_idx[observed]
    m_idx = m_idx[observed]

    corr = np.zeros(f_idx.shape[0], dtype=bool)
    has_model = m_idx != EMPTY
    with np.errstate(invalid="ignore"):
        delta = np.abs(model_depth[m_idx[has_model]] - frame_depth[f_idx[has_model]])
        # strict; NaN compares False and falls through to novel
        corr[has_model] = delta < dist_thresh

    novel = f_idx[~corr]
    buffer.stage(frame_t.points[novel], frame_t.normals[novel], frame_t.colors[novel])
    return m_idx[corr], f_idx[corr], int(observed.size - f_idx.size)


def _occurrence_rank(idx: np.ndarray) -> np.ndarray:
    # rank[i] = number of earlier entries with the same value
    order = np.argsort(idx, kind="stable")
    s = idx[order]
    pos = np.arange(s.size)
    starts = np.ones(s.size, dtype=bool)
    starts[1:] = s[1:] != s[:-1]
    group_start = np.maximum.accumulate(np.where(starts, pos, 0))
    rank = np.empty(s.size, dtype=np.int64)
    rank[order] = pos - group_start
    return rank


def _blend_into(model: PointModel, m_idx: np.ndarray, f_idx: np.ndarray, frame_t: PointCloud, weight: float) -> None:
    """
    Apply correspondence updates sequentially in the given order.

    A model index hit by several pixels is blended once per hit. Hits are
    processed in rounds so that each round touches every index at most once.
    """
    if m_idx.size == 0:
        return
    wc = 1.0 - weight
    P, Nm, C = model.points, model.normals, model.colors
    rank = _occurrence_rank(m_idx)

    for k in range(int(rank.max()) + 1):
        sel = rank == k
        mi = m_idx[sel]
        fi = f_idx[sel]

        P[mi] = wc * P[mi] + weight * frame_t.points[fi]
        C[mi] = wc * C[mi] + weight * frame_t.colors[fi]

        n = wc * Nm[mi] + weight * frame_t.normals[fi]
        norm = np.linalg.norm(n, axis=1, keepdims=True)
        # opposite normals can cancel exactly; keep the observation then
        degenerate = norm[:, 0] < 1e-12
        if np.any(degenerate):
            n[degenerate] = frame_t.normals[fi[degenerate]]
            norm[degenerate] = np.linalg.norm(n[degenerate], axis=1, keepdims=True)
        Nm[mi] = n / norm


def _row_bands(height: int, workers: int) -> list[slice]:
    workers = max(1, min(int(workers), height))
    edges = np.linspace(0, height, workers + 1).astype(int)
    return [slice(int(a), int(b)) for a, b in zip(edges[:-1], edges[1:]) if b > a]


def fuse(
    model: PointModel,
    frame_t: PointCloud,
    model_t: PointCloud,
    frame_index_map: np.ndarray,
    model_index_map: np.ndarray,
    weight: float,
    dist_thresh: float,
    *,
    workers: int = 1,
) -> FuseResult:
    """
    Merge one observed frame into the model.

    Args:
        model: model to mutate in place
        frame_t: frame points expressed in model coordinates
        model_t: model points expressed in the sensor frame (same row order as `model`)
        frame_index_map, model_index_map: (H,W) int maps, EMPTY where no point projects
        weight: blend weight towards the new observation, in (0,1)
        dist_thresh: largest depth discrepancy (exclusive) still treated as the same surface
        workers: number of threads classifying pixel rows

    Per observed pixel: if the model has a point there within dist_thresh in
    depth, that point is blended towards the observation; otherwise the
    observation is appended verbatim. Nothing is removed or reordered.

    Returns:
        FuseResult with per-class pixel counts and the new model size.
    """
    frame_index_map = np.asarray(frame_index_map)
    model_index_map = np.asarray(model_index_map)
    if frame_index_map.ndim != 2 or frame_index_map.shape != model_index_map.shape:
        raise ValueError(
            f"Index maps must be 2D and equal in shape, got {frame_index_map.shape} and {model_index_map.shape}"
        )
    if not (0.0 < weight < 1.0):
        raise ValueError(f"fusion weight must be in (0,1), got {weight}")
    if not (dist_thresh > 0.0):
        raise ValueError(f"fusion dist_thresh must be > 0, got {dist_thresh}")
    if len(model_t) != len(model):
        raise ValueError(f"model_t has {len(model_t)} points but model has {len(model)}")

    # depth along the camera axis of each side
    frame_depth = frame_t.points[:, 2]
    model_depth = model_t.points[:, 2]

    h = frame_index_map.shape[0]
    buffer = AppendBuffer(frame_index_map.size)
    model.reserve(len(model) + buffer.capacity)

    args = (frame_t, frame_depth, model_depth, frame_index_map, model_index_map, float(dist_thresh), buffer)
    bands = _row_bands(h, workers) if h > 0 else []
    if len(bands) <= 1:
        parts = [_classify_rows(b, *args) for b in bands]
    else:
        with ThreadPoolExecutor(max_workers=len(bands), thread_name_prefix="fuse") as pool:
            futures = [pool.submit(_classify_rows, b, *args) for b in bands]
            parts = [f.result() for f in futures]

    if parts:
        m_idx = np.concatenate([p[0] for p in parts])
        f_idx = np.concatenate([p[1] for p in parts])
        skipped = sum(p[2] for p in parts)
    else:
        m_idx = f_idx = np.zeros(0, np.int64)
        skipped = 0

    _blend_into(model, m_idx, f_idx, frame_t, float(weight))

    staged = buffer.trimmed()
    model.append_cloud(staged)

    return FuseResult(
        num_fused=int(m_idx.size),
        num_novel=len(staged),
        num_skipped=int(skipped),
        model_size=len(model),
    )
