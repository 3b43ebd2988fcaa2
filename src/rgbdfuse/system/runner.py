# src/rgbdfuse/system/runner.py
from __future__ import annotations

from typing import Callable, Iterable

import numpy as np

from .state import FusionState, PointCloud, RgbdSample
from .signals import ControlSignals
from .telemetry import Telemetry
from ..modules.deproject import deproject
from ..modules.fusion import FuseResult, fuse
from ..modules.icp import IcpResult, estimate_pose
from ..modules.index_map import project_to_index_map
from ..geom.se3 import inv_T


def reconstruct(sample: RgbdSample, state: FusionState, cfg: dict) -> PointCloud:
    dcfg = cfg.get("deproject", {})
    jump = dcfg.get("max_depth_jump", None)
    return deproject(
        sample.rgb,
        sample.depth,
        state.K,
        depth_scale=float(cfg.get("camera", {}).get("depth_scale", 5000.0)),
        min_depth=float(dcfg.get("min_depth", 0.0)),
        max_depth=float(dcfg.get("max_depth", np.inf)),
        max_depth_jump=None if jump is None else float(jump),
    )


def track(state: FusionState, frame: PointCloud, cfg: dict) -> IcpResult:
    """Refine the camera pose against the model. Returns the model->camera estimate."""
    icfg = cfg.get("icp", {})
    max_corr = float(icfg.get("max_corr_dist", 0.1))
    return estimate_pose(
        frame.points,
        frame.normals,
        state.model.points,
        state.K,
        state.width,
        state.height,
        initial_guess=inv_T(state.T_w_c),
        max_corr_dist_sq=max_corr * max_corr,
        convergence_tol=float(icfg.get("convergence_tol", 5e-4)),
        max_iters=int(icfg.get("max_iters", 6)),
        max_inner_iters=int(icfg.get("max_inner_iters", 1)),
        point_to_plane_weight=float(icfg.get("point_to_plane_weight", 1.0)),
        point_to_point_weight=float(icfg.get("point_to_point_weight", 0.1)),
        min_correspondences=int(icfg.get("min_correspondences", 6)),
    )


def fuse_frame(state: FusionState, frame: PointCloud, cfg: dict) -> FuseResult:
    """Bring frame and model into each other's coordinates, index both, and fuse."""
    fcfg = cfg.get("fusion", {})
    T_w_c = state.T_w_c
    frame_t = frame.transformed(T_w_c)
    model_t = state.model.transformed(inv_T(T_w_c))

    model_index_map = project_to_index_map(model_t.points, state.K, state.width, state.height)
    frame_index_map = project_to_index_map(frame.points, state.K, state.width, state.height)

    return fuse(
        state.model,
        frame_t,
        model_t,
        frame_index_map,
        model_index_map,
        float(fcfg.get("weight", 0.1)),
        float(fcfg.get("dist_thresh", 0.02)),
        workers=int(fcfg.get("workers", 1)),
    )


def step(
    state: FusionState,
    frame: PointCloud,
    cfg: dict,
    telemetry: Telemetry,
    signals: ControlSignals,
    *,
    idx: int = 0,
) -> None:
    """
    One tick of the tracking / mapping loop on an already reconstructed frame.

    Responsibilities:
      1) honour a pending clear (empty model, identity pose)
      2) localize: if the model is non-empty, refine state.T_w_c by ICP
      3) map: on a pending capture, seed the model or fuse the frame into it
      4) commit pose to trajectory, log telemetry

    Conventions:
      - T_a_b maps points from b to a; state.T_w_c maps camera -> model
      - ICP returns T_c_w (model -> camera); its inverse becomes the pose
      - tracking failures are never fatal, the returned estimate is used as is
    """
    rec: dict = {}

    if signals.consume_clear():
        state.reset()
        rec["cleared"] = True

    state.frame = frame
    rec["mode"] = state.mode
    rec["frame_size"] = len(frame)

    # --- 1) Localize
    if not state.model.is_empty():
        res = track(state, frame, cfg)
        state.T_w_c = inv_T(res.T)
        rec["icp"] = {
            "converged": bool(res.converged),
            "iterations": int(res.iterations),
            "num_corr": int(res.num_corr),
            "rmse": None if res.rmse is None else float(res.rmse),
            "reason": str(res.reason),
        }

    # --- 2) Map
    if signals.consume_capture():
        if state.model.is_empty():
            state.model.set_from(frame)
            state.T_w_c = np.eye(4, dtype=np.float64)
            rec["capture"] = "SEED"
        else:
            fres = fuse_frame(state, frame, cfg)
            rec["capture"] = "FUSE"
            rec["fuse"] = {
                "num_fused": fres.num_fused,
                "num_novel": fres.num_novel,
                "num_skipped": fres.num_skipped,
            }
        state.num_captures += 1

    # --- 3) Commit
    state.traj_T_w_c.append(state.T_w_c.copy())
    rec["model_size"] = len(state.model)
    telemetry.log_frame(idx, rec)


def run_sequence(
    samples: Iterable[RgbdSample],
    state: FusionState,
    cfg: dict,
    telemetry: Telemetry,
    signals: ControlSignals,
    *,
    render: Callable[[object, PointCloud, np.ndarray], None] | None = None,
    log_every: int = 0,
) -> int:
    """
    Drive step() over a sample stream until it is exhausted or quit is requested.

    Captures are scripted from cfg["control"]: `seed_on_first_frame` requests a
    capture while the model is empty, `capture_every` requests one every N ticks.
    External callers may also raise signals between ticks.

    Returns the number of ticks run.
    """
    ccfg = cfg.get("control", {})
    capture_every = int(ccfg.get("capture_every", 0) or 0)
    seed_first = bool(ccfg.get("seed_on_first_frame", True))

    ticks = 0
    for sample in samples:
        if signals.should_quit:
            break

        if (seed_first and state.model.is_empty()) or (capture_every > 0 and ticks % capture_every == 0):
            signals.request_capture()

        frame = reconstruct(sample, state, cfg)
        step(state, frame, cfg, telemetry, signals, idx=sample.idx)

        if render is not None:
            render(state.model, state.frame, state.T_w_c)

        ticks += 1
        if log_every > 0 and ticks % log_every == 0:
            print(f"[INFO] Tick {ticks}: mode={state.mode} model={len(state.model)} captures={state.num_captures}")

    return ticks
