# src/rgbdfuse/io/ply.py
from __future__ import annotations

from pathlib import Path

import numpy as np

_VERTEX_DTYPE = np.dtype([
    ("x", "<f4"), ("y", "<f4"), ("z", "<f4"),
    ("nx", "<f4"), ("ny", "<f4"), ("nz", "<f4"),
    ("red", "u1"), ("green", "u1"), ("blue", "u1"),
])


def write_ply(path: str, points: np.ndarray, normals: np.ndarray, colors: np.ndarray, *, binary: bool = True) -> None:
    """
    Save an oriented colored point cloud as PLY.

    Args:
        points, normals: (N,3) float
        colors: (N,3) float in [0,1], stored as uchar
        binary: binary_little_endian if True, ascii otherwise
    """
    points = np.asarray(points)
    normals = np.asarray(normals)
    colors = np.asarray(colors)
    n = points.shape[0]
    if normals.shape != (n, 3) or colors.shape != (n, 3) or points.shape != (n, 3):
        raise ValueError("write_ply expects three (N,3) arrays of equal length")

    v = np.empty(n, dtype=_VERTEX_DTYPE)
    v["x"], v["y"], v["z"] = points[:, 0], points[:, 1], points[:, 2]
    v["nx"], v["ny"], v["nz"] = normals[:, 0], normals[:, 1], normals[:, 2]
    rgb = np.clip(np.rint(colors * 255.0), 0, 255).astype(np.uint8)
    v["red"], v["green"], v["blue"] = rgb[:, 0], rgb[:, 1], rgb[:, 2]

    header = [
        "ply",
        f"format {'binary_little_endian' if binary else 'ascii'} 1.0",
        f"element vertex {n}",
        "property float x",
        "property float y",
        "property float z",
        "property float nx",
        "property float ny",
        "property float nz",
        "property uchar red",
        "property uchar green",
        "property uchar blue",
        "end_header",
    ]

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(("\n".join(header) + "\n").encode("ascii"))
        if binary:
            f.write(v.tobytes())
        else:
            for r in v:
                f.write(
                    (f"{r['x']:.6f} {r['y']:.6f} {r['z']:.6f} "
                     f"{r['nx']:.6f} {r['ny']:.6f} {r['nz']:.6f} "
                     f"{int(r['red'])} {int(r['green'])} {int(r['blue'])}\n").encode("ascii")
                )


def export_model(model, path: str, *, binary: bool = True) -> None:
    write_ply(path, model.points, model.normals, model.colors, binary=binary)


def read_ply(path: str) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Read back a file written by write_ply (either format)."""
    with open(path, "rb") as f:
        fmt = None
        n = 0
        while True:
            line = f.readline()
            if not line:
                raise ValueError(f"Unexpected end of PLY header: {path}")
            line = line.decode("ascii").strip()
            if line.startswith("format"):
                fmt = line.split()[1]
            elif line.startswith("element vertex"):
                n = int(line.split()[-1])
            elif line == "end_header":
                break
        if fmt == "binary_little_endian":
            v = np.frombuffer(f.read(n * _VERTEX_DTYPE.itemsize), dtype=_VERTEX_DTYPE, count=n)
            P = np.stack([v["x"], v["y"], v["z"]], axis=1).astype(np.float64)
            N = np.stack([v["nx"], v["ny"], v["nz"]], axis=1).astype(np.float64)
            C = np.stack([v["red"], v["green"], v["blue"]], axis=1).astype(np.float64) / 255.0
            return P, N, C
        if fmt == "ascii":
            tokens = f.read().decode("ascii").split()
            data = np.array(tokens[: n * 9], dtype=np.float64).reshape(n, 9)
            return data[:, 0:3], data[:, 3:6], data[:, 6:9] / 255.0
    raise ValueError(f"Unsupported PLY format {fmt!r}: {path}")
