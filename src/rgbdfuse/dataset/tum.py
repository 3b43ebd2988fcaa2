from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterator, List

import cv2
import numpy as np

from ..system.state import RgbdSample


@dataclass
class TumEntry:
    ts: float
    path: str


@dataclass
class TumPair:
    ts: float
    rgb_path: str
    depth_path: str


def _read_list_txt(list_txt_path: str) -> List[TumEntry]:
    entries: List[TumEntry] = []
    base = os.path.dirname(list_txt_path)

    with open(list_txt_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if (not line) or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) < 2:
                continue
            ts = float(parts[0])
            rel = parts[1]
            entries.append(TumEntry(ts=ts, path=os.path.join(base, rel)))
    return entries


def associate(rgb: List[TumEntry], depth: List[TumEntry], max_dt: float = 0.02) -> List[TumPair]:
    """
    Greedy nearest-timestamp association (TUM associate.py semantics):
    candidate pairs within max_dt are taken closest first, each entry used once.
    """
    if not rgb or not depth:
        return []
    d_ts = np.array([e.ts for e in depth], dtype=np.float64)

    cands = []
    for i, e in enumerate(rgb):
        j0 = int(np.searchsorted(d_ts, e.ts))
        for j in (j0 - 1, j0):
            if 0 <= j < len(depth):
                dt = abs(d_ts[j] - e.ts)
                if dt < max_dt:
                    cands.append((dt, i, j))
    cands.sort()

    used_rgb, used_depth = set(), set()
    pairs = []
    for _, i, j in cands:
        if i in used_rgb or j in used_depth:
            continue
        used_rgb.add(i)
        used_depth.add(j)
        pairs.append(TumPair(ts=rgb[i].ts, rgb_path=rgb[i].path, depth_path=depth[j].path))
    pairs.sort(key=lambda p: p.ts)
    return pairs


class TumRgbdSequence:
    def __init__(self, seq_dir: str, *, max_dt: float = 0.02):
        self.seq_dir = seq_dir
        rgb_txt = os.path.join(seq_dir, "rgb.txt")
        depth_txt = os.path.join(seq_dir, "depth.txt")
        for p in (rgb_txt, depth_txt):
            if not os.path.isfile(p):
                raise FileNotFoundError(f"Missing {os.path.basename(p)}: {p}")
        self.pairs = associate(_read_list_txt(rgb_txt), _read_list_txt(depth_txt), max_dt=max_dt)

    def __len__(self) -> int:
        return len(self.pairs)

    def iter_rgbd(
        self,
        *,
        start: int = 0,
        step: int = 1,
        max_frames: int | None = None,
    ) -> Iterator[RgbdSample]:
        end = len(self.pairs) if max_frames is None else min(len(self.pairs), start + max_frames * step)
        idx = 0
        for i in range(start, end, step):
            p = self.pairs[i]
            bgr = cv2.imread(p.rgb_path, cv2.IMREAD_COLOR)
            if bgr is None:
                raise FileNotFoundError(f"Failed to read image: {p.rgb_path}")
            depth = cv2.imread(p.depth_path, cv2.IMREAD_UNCHANGED)
            if depth is None:
                raise FileNotFoundError(f"Failed to read depth: {p.depth_path}")
            if depth.ndim != 2:
                raise ValueError(f"Depth image must be single channel: {p.depth_path}")
            rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
            yield RgbdSample(idx=idx, ts=p.ts, rgb=rgb, depth=depth)
            idx += 1
