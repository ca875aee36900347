from __future__ import annotations

import argparse
import json
import os
from datetime import datetime
from typing import Any, Dict

import numpy as np
import torch
import yaml


DEFAULT_CONFIG = os.path.join(os.path.dirname(os.path.abspath(__file__)), "configs", "drive_train.yaml")


def _set_seed(seed: int) -> None:
    torch.manual_seed(seed)
    np.random.seed(seed)


def _load_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def _apply_overrides(cfg: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    tuning = cfg.setdefault("tuning", {})
    if args.max_iterations is not None:
        tuning["max_iterations"] = int(args.max_iterations)
    if args.horizon is not None:
        tuning["horizon"] = float(args.horizon)
    if args.method is not None:
        cfg.setdefault("integrator", {})["method"] = args.method
    if args.quiet:
        tuning["verbose"] = False
    return cfg


def _progress_writer(path: str):
    """Append one JSON line per finished iteration, so an aborted run still leaves its history."""

    def on_iteration(record, rollout) -> None:
        row = {
            "iteration": record.iteration,
            "loss": record.loss,
            "rmse": record.rmse,
            "gradient": list(record.gradient),
            "gains": list(record.gains),
        }
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(row) + "\n")

    return on_iteration


def main() -> None:
    ap = argparse.ArgumentParser(description="Tune drive-train controller gains with DiffTune.")
    ap.add_argument("--config", type=str, default=DEFAULT_CONFIG)
    ap.add_argument("--plot", action="store_true", help="Generate plots into output directory")
    ap.add_argument("--max-iterations", type=int, default=None, help="Override tuning.max_iterations")
    ap.add_argument("--horizon", type=float, default=None, help="Override tuning.horizon [s]")
    ap.add_argument("--method", type=str, default=None, help="Override integrator.method (e.g. rk4, dopri5)")
    ap.add_argument("--quiet", action="store_true", help="Suppress per-iteration output")
    args = ap.parse_args()

    cfg = _apply_overrides(_load_yaml(args.config), args)
    _set_seed(int(cfg.get("seed", 0)))
    device = torch.device(cfg.get("device", "cpu"))

    from difftune.core.experiment import run_tuning_experiment

    run_name = cfg.get("run_name", os.path.splitext(os.path.basename(args.config))[0])
    run_dir = os.path.join(cfg.get("out_dir", "outputs"), f"{run_name}_{datetime.now():%Y%m%d_%H%M%S}")
    os.makedirs(run_dir, exist_ok=True)
    with open(os.path.join(run_dir, "config_used.json"), "w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2, ensure_ascii=False)

    results = run_tuning_experiment(
        cfg,
        device=device,
        run_dir=run_dir,
        on_iteration=_progress_writer(os.path.join(run_dir, "progress.jsonl")),
    )
    summary = results["summary"]
    with open(os.path.join(run_dir, "results_summary.json"), "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2, ensure_ascii=False)

    print(f"[{summary['status']}] {summary['iterations']} iterations, run saved to: {run_dir}")
    if summary["error"]:
        print(f"stopped early: {summary['error']}")
    print(json.dumps(summary, indent=2, ensure_ascii=False))

    if bool(cfg.get("plot", False)) or args.plot:
        from difftune.plot_results import plot_run

        if summary["iterations"]:
            plot_run(run_dir, show=False)
            print("Plots saved.")
        else:
            print("No completed iterations, skipping plots.")


if __name__ == "__main__":
    main()
