from __future__ import annotations

from dataclasses import dataclass

import torch
from torch import Tensor

from .params import project_gains
from .systems.drive_train import THETA_L
from .utils import ensure_finite


@dataclass
class LossAccumulator:
    """Running tracking loss and its gradient row over one rollout.

      L      = sum_k (theta_r(k) - theta_l(k))^2
      dL/dk  = sum_k 2 (theta_l(k) - theta_r(k)) dtheta_l/dk (k)
    """

    loss: Tensor   # []
    grad: Tensor   # [n_gains]

    @classmethod
    def zeros(cls, n_gains: int, *, like: Tensor) -> "LossAccumulator":
        return cls(
            loss=torch.zeros((), device=like.device, dtype=like.dtype),
            grad=torch.zeros(n_gains, device=like.device, dtype=like.dtype),
        )

    def add(self, x: Tensor, theta_r: Tensor, dx_dk: Tensor) -> None:
        err = x[THETA_L] - theta_r
        self.loss = self.loss + err * err
        self.grad = self.grad + 2.0 * err * dx_dk[THETA_L]

    def rmse(self, n_samples: int) -> Tensor:
        return torch.sqrt(self.loss / n_samples)


@torch.no_grad()
def gain_update(grad: Tensor, *, lr: float, it: int | None = None, verbose: bool = False) -> Tensor:
    """-lr * grad; a non-finite step aborts the run."""
    step = -lr * grad
    ensure_finite(step, "gain update", it=it, verbose=verbose)
    return step


@torch.no_grad()
def apply_gain_update(k: Tensor, step: Tensor, *, floor: float) -> Tensor:
    """Gradient step followed by projection onto k_i >= floor."""
    return project_gains(k + step, floor=floor)
