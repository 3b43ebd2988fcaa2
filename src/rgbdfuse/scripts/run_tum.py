from __future__ import annotations

import argparse
import json
from pathlib import Path

import numpy as np
import matplotlib.pyplot as plt

try:
    import yaml
except ImportError as ex:
    raise ImportError("PyYAML is required. Install with: pip install pyyaml") from ex

from rgbdfuse.dataset.tum import TumRgbdSequence
from rgbdfuse.geom.se3 import R_to_quat_xyzw
from rgbdfuse.io.ply import export_model
from rgbdfuse.system.model import PointModel
from rgbdfuse.system.signals import ControlSignals
from rgbdfuse.system.state import FusionState, PointCloud
from rgbdfuse.system.telemetry import Telemetry
from rgbdfuse.system.runner import run_sequence


class FusionVisualizer:
    def __init__(self, *, update_every: int = 10, max_points: int = 20000):
        plt.ion()
        self.fig = plt.figure(figsize=(12, 5))
        self.ax1 = self.fig.add_subplot(121, projection='3d')
        self.ax2 = self.fig.add_subplot(122)
        self.update_every = max(int(update_every), 1)
        self.max_points = int(max_points)
        self.positions: list[np.ndarray] = []
        self._ticks = 0

    def _subsample(self, n: int) -> np.ndarray:
        if n <= self.max_points:
            return np.arange(n)
        return np.linspace(0, n - 1, self.max_points).astype(np.int64)

    def __call__(self, model: PointModel, frame: PointCloud | None, T_w_c: np.ndarray):
        self.positions.append(T_w_c[:3, 3].copy())
        self._ticks += 1
        if self._ticks % self.update_every != 0:
            return
        self.update(model, frame, T_w_c)

    def update(self, model: PointModel, frame: PointCloud | None, T_w_c: np.ndarray):
        if not self.positions:
            return
        self.ax1.clear()
        self.ax1.set_xlabel('X (m)')
        self.ax1.set_ylabel('Y (m)')
        self.ax1.set_zlabel('Z (m)')
        self.ax1.set_title(f'Model ({len(model)} points)')

        if not model.is_empty():
            sel = self._subsample(len(model))
            P = model.points[sel]
            self.ax1.scatter(P[:, 0], P[:, 1], P[:, 2], c=np.clip(model.colors[sel], 0.0, 1.0), s=1, depthshade=False)
        if frame is not None and not frame.is_empty():
            F = frame.transformed(T_w_c)
            sel = self._subsample(len(F))[:: 4]
            self.ax1.scatter(F.points[sel, 0], F.points[sel, 1], F.points[sel, 2], c='y', s=1, alpha=0.2)

        positions = np.array(self.positions)
        self.ax1.plot(positions[:, 0], positions[:, 1], positions[:, 2], 'b-', linewidth=1.5)

        self.ax2.clear()
        self.ax2.set_xlabel('X (m)')
        self.ax2.set_ylabel('Z (m)')
        self.ax2.set_title(f'Top-Down Camera Path ({len(positions)} frames)')
        self.ax2.plot(positions[:, 0], positions[:, 2], 'b-', linewidth=1.5, alpha=0.7)
        self.ax2.scatter(positions[0, 0], positions[0, 2], c='g', s=100, marker='o', label='Start')
        self.ax2.scatter(positions[-1, 0], positions[-1, 2], c='r', s=100, marker='o', label='Current')
        self.ax2.grid(True)
        self.ax2.legend()
        self.ax2.axis('equal')

        plt.pause(0.001)

    def close(self):
        plt.ioff()
        plt.show()


def _write_traj_tum(traj_T_w_c: list[np.ndarray], ts_list: list[float], out_path: str) -> None:
    assert len(traj_T_w_c) == len(ts_list)
    with open(out_path, "w", encoding="utf-8") as f:
        for T, ts in zip(traj_T_w_c, ts_list):
            t = T[:3, 3]
            q = R_to_quat_xyzw(T[:3, :3])  # x y z w
            f.write(f"{ts:.6f} {t[0]:.6f} {t[1]:.6f} {t[2]:.6f} {q[0]:.6f} {q[1]:.6f} {q[2]:.6f} {q[3]:.6f}\n")


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", type=str, default="configs/default.yaml")
    ap.add_argument("--tum_dir", type=str, required=True, help="Path to TUM RGB-D sequence dir, e.g. .../rgbd_dataset_freiburg1_xyz")
    ap.add_argument("--out_dir", type=str, default="outputs")
    ap.add_argument("--visualize", action="store_true", help="Enable live model / trajectory view")
    ap.add_argument("--viz_update_every", type=int, default=10, help="Redraw visualization every N frames")
    ap.add_argument("--log_every", type=int, default=50, help="Log progress every N frames")
    ap.add_argument("--export", type=str, default=None, help="Write the final model to this PLY path")
    args = ap.parse_args()

    print(f"[INFO] Loading config: {args.config}")
    with open(args.config, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)

    seq_name = cfg["dataset"]["sequence"]
    out_dir = Path(args.out_dir) / seq_name
    out_dir.mkdir(parents=True, exist_ok=True)
    print(f"[INFO] Output dir: {out_dir}")

    # Camera intrinsics
    fx = float(cfg["camera"]["fx"])
    fy = float(cfg["camera"]["fy"])
    cx = float(cfg["camera"]["cx"])
    cy = float(cfg["camera"]["cy"])
    K = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=np.float64)
    width = int(cfg["camera"]["width"])
    height = int(cfg["camera"]["height"])

    print(f"[INFO] Loading TUM RGB-D sequence: {args.tum_dir}")
    seq = TumRgbdSequence(args.tum_dir, max_dt=float(cfg["dataset"].get("max_dt", 0.02)))
    print(f"[INFO] Associated frames: {len(seq)}")

    state = FusionState(K=K, width=width, height=height)
    signals = ControlSignals()
    telemetry = Telemetry()

    visualizer = FusionVisualizer(update_every=args.viz_update_every) if args.visualize else None

    start = int(cfg["dataset"].get("start", 0))
    step_stride = int(cfg["dataset"].get("step", 1))
    max_frames = cfg["dataset"].get("max_frames", None)
    if max_frames is not None:
        max_frames = int(max_frames)

    end = len(seq) if max_frames is None else min(len(seq), start + max_frames * step_stride)
    ts_list = [seq.pairs[i].ts for i in range(start, end, step_stride)]

    print(f"[INFO] Starting loop: start={start} step={step_stride} max_frames={max_frames}")
    try:
        ticks = run_sequence(
            seq.iter_rgbd(start=start, step=step_stride, max_frames=max_frames),
            state,
            cfg,
            telemetry,
            signals,
            render=visualizer,
            log_every=args.log_every,
        )
    except KeyboardInterrupt:
        ticks = len(state.traj_T_w_c)
        print(f"[INFO] Interrupted after {ticks} frames")
    ts_list = ts_list[:ticks]

    # Save outputs
    traj_path = str(out_dir / "traj.txt")
    metrics_path = str(out_dir / "metrics.json")
    cfg_path = str(out_dir / "config_used.yaml")

    _write_traj_tum(state.traj_T_w_c[: len(ts_list)], ts_list, traj_path)

    with open(metrics_path, "w", encoding="utf-8") as f:
        json.dump(telemetry.frames, f, indent=2)

    with open(cfg_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, sort_keys=False)

    print(f"[OK] wrote: {traj_path}")
    print(f"[OK] wrote: {metrics_path}")

    if args.export:
        export_model(state.model, args.export)
        print(f"[OK] wrote: {args.export} ({len(state.model)} points)")

    if visualizer is not None:
        print("[INFO] Showing final model. Close the window to exit.")
        visualizer.update(state.model, state.frame, state.T_w_c)
        visualizer.close()


if __name__ == "__main__":
    main()
