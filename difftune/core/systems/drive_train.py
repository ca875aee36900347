from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple

import torch
from torch import Tensor

from ..params import DriveTrainParams


# State layout
OMEGA_M, OMEGA_L, THETA_M, THETA_L = 0, 1, 2, 3


def friction_torque(w: Tensor, *, p: DriveTrainParams) -> Tensor:
    """Coulomb + static (Stribeck) + viscous friction with a tanh-smoothed sign."""
    sgn = torch.tanh(w / p.friction_smoothing)
    level = p.T_C * torch.ones_like(w)
    if p.stribeck_velocity is not None:
        level = level + (p.T_S - p.T_C) * torch.exp(-((w / p.stribeck_velocity) ** 2))
    return level * sgn + p.b_fr * w


def friction_torque_grad(w: Tensor, *, p: DriveTrainParams) -> Tensor:
    """d T_F / d w."""
    eps = p.friction_smoothing
    sgn = torch.tanh(w / eps)
    dsgn = (1.0 - sgn * sgn) / eps
    level = p.T_C * torch.ones_like(w)
    dlevel = torch.zeros_like(w)
    if p.stribeck_velocity is not None:
        ws = p.stribeck_velocity
        g = torch.exp(-((w / ws) ** 2))
        level = level + (p.T_S - p.T_C) * g
        dlevel = (p.T_S - p.T_C) * g * (-2.0 * w / (ws * ws))
    return dlevel * sgn + level * dsgn + p.b_fr


def shaft_torque(x: Tensor, *, p: DriveTrainParams) -> Tensor:
    return p.K_S * (x[..., THETA_M] / p.N - x[..., THETA_L]) + p.D_S * (x[..., OMEGA_M] / p.N - x[..., OMEGA_L])


def drive_train_dynamics(x: Tensor, u: Tensor, *, p: DriveTrainParams) -> Tensor:
    """Two-inertia drive train dx/dt.

    State:  [omega_m, omega_l, theta_m, theta_l]
    Input:  [torque command]
    """
    unbatched = x.ndim == 1
    if unbatched:
        x = x.unsqueeze(0)
    if u.ndim == 1:
        u = u.unsqueeze(0)

    w_m, w_l = x[:, OMEGA_M], x[:, OMEGA_L]
    T_sh = shaft_torque(x, p=p)
    dw_m = (u[:, 0] - T_sh / p.N - friction_torque(w_m, p=p)) / p.J_m
    dw_l = (T_sh - friction_torque(w_l, p=p) - p.T_load) / p.J_l
    out = torch.stack([dw_m, dw_l, w_m, w_l], dim=-1)
    return out.squeeze(0) if unbatched else out


def drive_train_jacobian(x: Tensor, u: Tensor, *, p: DriveTrainParams) -> Tuple[Tensor, Tensor]:
    """Analytic Jacobians (df/dx [4,4], df/du [4,1]) of the continuous-time dynamics."""
    N, J_m, J_l, K_S, D_S = p.N, p.J_m, p.J_l, p.K_S, p.D_S
    dF_m = friction_torque_grad(x[OMEGA_M], p=p)
    dF_l = friction_torque_grad(x[OMEGA_L], p=p)

    A = torch.zeros(4, 4, device=x.device, dtype=x.dtype)
    A[OMEGA_M, OMEGA_M] = (-D_S / (N * N) - dF_m) / J_m
    A[OMEGA_M, OMEGA_L] = D_S / (N * J_m)
    A[OMEGA_M, THETA_M] = -K_S / (N * N * J_m)
    A[OMEGA_M, THETA_L] = K_S / (N * J_m)

    A[OMEGA_L, OMEGA_M] = D_S / (N * J_l)
    A[OMEGA_L, OMEGA_L] = (-D_S - dF_l) / J_l
    A[OMEGA_L, THETA_M] = K_S / (N * J_l)
    A[OMEGA_L, THETA_L] = -K_S / J_l

    A[THETA_M, OMEGA_M] = 1.0
    A[THETA_L, OMEGA_L] = 1.0

    B = torch.zeros(4, 1, device=x.device, dtype=x.dtype)
    B[OMEGA_M, 0] = 1.0 / J_m
    return A, B


@dataclass(frozen=True)
class TwoInertiaPlant:
    """Motor + flexible shaft + load, torque input on the motor side."""

    params: DriveTrainParams = field(default_factory=DriveTrainParams)
    nx: int = 4
    nu: int = 1

    def dynamics(self, x: Tensor, u: Tensor) -> Tensor:
        return drive_train_dynamics(x, u, p=self.params)

    def jacobian(self, x: Tensor, u: Tensor) -> Tuple[Tensor, Tensor]:
        return drive_train_jacobian(x, u, p=self.params)
