from __future__ import annotations

import argparse
import os
from typing import Optional

import numpy as np
import matplotlib.pyplot as plt

from difftune.core.params import GAIN_NAMES


def _load_npy(run_dir: str, name: str) -> Optional[np.ndarray]:
    path = os.path.join(run_dir, name)
    if not os.path.exists(path):
        return None
    return np.load(path)


def plot_run(run_dir: str, *, show: bool = False) -> None:
    rmse = _load_npy(run_dir, "rmse_hist.npy")        # [I]
    params = _load_npy(run_dir, "param_hist.npy")     # [I, 3]
    t = _load_npy(run_dir, "time.npy")                # [N]
    x = _load_npy(run_dir, "x_traj.npy")              # [N, 4]
    x_ref = _load_npy(run_dir, "x_ref_traj.npy")      # [N, 4]
    u = _load_npy(run_dir, "u_traj.npy")              # [N-1, 1]

    if rmse is None:
        raise FileNotFoundError(f"Missing `rmse_hist.npy` in {run_dir}")

    # 1) Load position tracking (last iteration) + RMSE history
    fig = plt.figure(figsize=(9.5, 4.55))
    fig.patch.set_facecolor("w")
    ax_track = fig.add_subplot(1, 3, (1, 2))
    ax_rmse = fig.add_subplot(1, 3, 3)
    if t is not None and x is not None and x_ref is not None:
        ax_track.plot(t, x[:, 3], label="actual", linewidth=1.5)
        ax_track.plot(t, x_ref[:, 3], ":", label="desired", linewidth=1.5)
        ax_track.set_xlabel("time [s]")
        ax_track.set_ylabel(r"$\theta_l$ [rad]")
        ax_track.grid(True, alpha=0.3)
        ax_track.legend(fontsize=10)

    it = np.arange(1, len(rmse) + 1)
    ax_rmse.plot(it, rmse, linewidth=1.5)
    if len(rmse):
        ax_rmse.stem([it[-1]], [rmse[-1]])
        ax_rmse.set_ylim(0.0, float(rmse[0]) * 1.1 if rmse[0] > 0 else 1.0)
    ax_rmse.set_xlabel("iterations")
    ax_rmse.set_ylabel("RMSE [rad]")
    ax_rmse.set_title(f"iteration = {len(rmse)}")
    ax_rmse.grid(True, alpha=0.3)
    fig.tight_layout()
    fig.savefig(os.path.join(run_dir, "tracking_rmse.png"), dpi=160)
    if show:
        plt.show()
    plt.close(fig)

    # 2) Gain evolution
    if params is not None and params.size:
        fig, axes = plt.subplots(params.shape[1], 1, figsize=(8, 2.5 * params.shape[1]), sharex=True)
        axes = np.atleast_1d(axes)
        for i, ax in enumerate(axes):
            ax.plot(np.arange(1, params.shape[0] + 1), params[:, i], linewidth=2)
            ax.set_ylabel(GAIN_NAMES[i] if i < len(GAIN_NAMES) else f"k[{i}]")
            ax.grid(True, alpha=0.3)
        axes[-1].set_xlabel("iterations")
        axes[0].set_title("Controller gains")
        fig.tight_layout()
        fig.savefig(os.path.join(run_dir, "gains.png"), dpi=160)
        if show:
            plt.show()
        plt.close(fig)

    # 3) States and torque (last iteration)
    if t is not None and x is not None:
        fig, ax = plt.subplots(2, 1, figsize=(10, 7), sharex=True)
        ax[0].plot(t, x[:, 0], label=r"$\omega_m$")
        ax[0].plot(t, x[:, 1], label=r"$\omega_l$")
        ax[0].set_ylabel("velocity [rad/s]")
        ax[0].grid(True, alpha=0.3)
        ax[0].legend()
        if u is not None:
            ax[1].plot(t[:-1], u.reshape(len(t) - 1, -1)[:, 0], label="u", color="tab:red")
            ax[1].set_ylabel("torque [N m]")
            ax[1].grid(True, alpha=0.3)
            ax[1].legend()
        ax[1].set_xlabel("time [s]")
        fig.tight_layout()
        fig.savefig(os.path.join(run_dir, "states_and_torque.png"), dpi=160)
        if show:
            plt.show()
        plt.close(fig)


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--run_dir", type=str, required=True, help="Output directory containing *.npy files")
    ap.add_argument("--show", action="store_true")
    args = ap.parse_args()

    plot_run(args.run_dir, show=args.show)
    print(f"Saved plots to: {args.run_dir}")


if __name__ == "__main__":
    main()
