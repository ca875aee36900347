from __future__ import annotations

import os
from dataclasses import fields
from typing import Any, Callable, Dict, Optional

import numpy as np
import torch

from .control import build_controller
from .params import DriveTrainParams
from .reference import build_reference, time_grid
from .simulator import IntegratorConfig, Simulator
from .systems.drive_train import TwoInertiaPlant
from .tuning import DiffTuneLoop, IterationRecord, RolloutResult, TuningConfig, TuningResult


def _pick(cls, d: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    d = dict(d or {})
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(d) - known)
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {unknown}")
    return d


def tuning_config_from_dict(d: Optional[Dict[str, Any]]) -> TuningConfig:
    d = _pick(TuningConfig, d)
    if "initial_gains" in d:
        d["initial_gains"] = tuple(float(v) for v in d["initial_gains"])
    return TuningConfig(**d)


def integrator_config_from_dict(d: Optional[Dict[str, Any]]) -> IntegratorConfig:
    return IntegratorConfig(**_pick(IntegratorConfig, d))


def build_loop(cfg: Dict[str, Any], *, device: torch.device, on_iteration=None) -> DiffTuneLoop:
    """Wire plant, controller, simulator, reference and tuning settings from a config dict."""
    dtype = torch.float64 if bool(cfg.get("use_float64", True)) else torch.float32
    params = DriveTrainParams.from_dict(cfg.get("plant"))
    if bool(cfg.get("frictionless", False)):
        params = params.frictionless()
    plant = TwoInertiaPlant(params=params)
    ctrl = build_controller(cfg.get("controller", {}), params=params)
    simulator = Simulator(plant, integrator_config_from_dict(cfg.get("integrator")))
    tcfg = tuning_config_from_dict(cfg.get("tuning"))

    time = time_grid(tcfg.dt, tcfg.horizon, device=device, dtype=dtype)
    theta_r, theta_r_dot = build_reference(cfg.get("reference", {}), time)
    x0 = cfg.get("initial_state")
    x0_t = None if x0 is None else torch.tensor([float(v) for v in x0], device=device, dtype=dtype)

    return DiffTuneLoop(
        plant=plant,
        ctrl=ctrl,
        simulator=simulator,
        cfg=tcfg,
        time=time,
        theta_r=theta_r,
        theta_r_dot=theta_r_dot,
        x0=x0_t,
        on_iteration=on_iteration,
    )


def save_result(result: TuningResult, run_dir: str) -> None:
    os.makedirs(run_dir, exist_ok=True)
    h = result.history
    n_gains = int(result.gains.shape[0])
    np.save(os.path.join(run_dir, "loss_hist.npy"), np.asarray([r.loss for r in h], dtype=np.float64))
    np.save(os.path.join(run_dir, "rmse_hist.npy"), np.asarray([r.rmse for r in h], dtype=np.float64))
    np.save(os.path.join(run_dir, "param_hist.npy"), np.asarray([r.gains for r in h], dtype=np.float64).reshape(len(h), n_gains))
    np.save(os.path.join(run_dir, "grad_hist.npy"), np.asarray([r.gradient for r in h], dtype=np.float64).reshape(len(h), n_gains))
    ro = result.last_rollout
    if ro is not None:
        np.save(os.path.join(run_dir, "time.npy"), ro.time.cpu().numpy())
        np.save(os.path.join(run_dir, "x_traj.npy"), ro.X.cpu().numpy())
        np.save(os.path.join(run_dir, "x_ref_traj.npy"), ro.X_ref.cpu().numpy())
        np.save(os.path.join(run_dir, "u_traj.npy"), ro.U.cpu().numpy())


def run_tuning_experiment(
    cfg: Dict[str, Any],
    *,
    device: torch.device,
    run_dir: str,
    on_iteration: Optional[Callable[[IterationRecord, RolloutResult], None]] = None,
) -> Dict[str, Any]:
    loop = build_loop(cfg, device=device, on_iteration=on_iteration)
    result = loop.run()
    save_result(result, run_dir)

    h = result.history
    summary = {
        "system": "two_inertia_drive_train",
        "status": result.status.value,
        "error": result.error,
        "iterations": len(h),
        "n_samples": int(loop.time.shape[0]),
        "initial_gains": list(loop.cfg.initial_gains),
        "final_gains": [float(v) for v in result.gains.tolist()],
        "first_rmse": h[0].rmse if h else None,
        "final_rmse": h[-1].rmse if h else None,
        "final_loss": h[-1].loss if h else None,
    }
    return {"summary": summary, "result": result}
