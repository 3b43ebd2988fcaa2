from dataclasses import dataclass, field
import numpy as np

from ..geom.se3 import transform_points, transform_normals
from .model import PointModel

@dataclass
class PointCloud:
    points: np.ndarray   # (N,3)
    normals: np.ndarray  # (N,3) unit
    colors: np.ndarray   # (N,3) in [0,1]

    def __post_init__(self):
        n = self.points.shape[0]
        for name in ("points", "normals", "colors"):
            arr = getattr(self, name)
            if arr.ndim != 2 or arr.shape != (n, 3):
                raise ValueError(f"PointCloud.{name} must have shape ({n}, 3), got {arr.shape}")

    def __len__(self) -> int:
        return int(self.points.shape[0])

    def is_empty(self) -> bool:
        return len(self) == 0

    def transformed(self, T: np.ndarray) -> "PointCloud":
        return PointCloud(
            points=transform_points(T, self.points),
            normals=transform_normals(T, self.normals),
            colors=self.colors.copy(),
        )

    @staticmethod
    def empty() -> "PointCloud":
        z = np.zeros((0, 3), np.float64)
        return PointCloud(z, z.copy(), z.copy())

@dataclass
class RgbdSample:
    idx: int
    ts: float
    rgb: np.ndarray    # (H,W,3) uint8, RGB order
    depth: np.ndarray  # (H,W) uint16 raw sensor units

@dataclass
class FusionState:
    K: np.ndarray  # 3x3
    width: int
    height: int

    model: PointModel = field(default_factory=PointModel)
    T_w_c: np.ndarray = field(default_factory=lambda: np.eye(4, dtype=np.float64))  # camera -> model

    frame: PointCloud | None = None  # last reconstructed frame
    traj_T_w_c: list[np.ndarray] = field(default_factory=list)
    num_captures: int = 0

    @property
    def mode(self) -> str:
        return "SEEDING" if self.model.is_empty() else "TRACKING"

    def reset(self) -> None:
        self.model.clear()
        self.T_w_c = np.eye(4, dtype=np.float64)
