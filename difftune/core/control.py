from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import torch
from torch import Tensor

from .params import DriveTrainParams
from .systems.drive_train import OMEGA_M, THETA_L


def st_root(s: Tensor, eps: float) -> Tensor:
    """phi(s) = s (s^2 + eps^2)^(-1/4); equals |s|^(1/2) sign(s) for eps = 0."""
    if eps == 0.0:
        return torch.sign(s) * torch.sqrt(torch.abs(s))
    return s * (s * s + eps * eps) ** (-0.25)


def st_root_grad(s: Tensor, eps: float) -> Tensor:
    """dphi/ds. Unbounded at s = 0 when eps = 0."""
    if eps == 0.0:
        return 0.5 / torch.sqrt(torch.abs(s))
    r = s * s + eps * eps
    return (0.5 * s * s + eps * eps) * r ** (-1.25)


def smooth_sign(s: Tensor, eps: float) -> Tensor:
    if eps == 0.0:
        return torch.sign(s)
    return s / torch.sqrt(s * s + eps * eps)


def smooth_sign_grad(s: Tensor, eps: float) -> Tensor:
    if eps == 0.0:
        return torch.zeros_like(s)
    return eps * eps * (s * s + eps * eps) ** (-1.5)


@dataclass(frozen=True)
class CascadeOuterLoop:
    """Position loop generating the motor velocity reference.

      omega_r = N (k_pos (theta_r - theta_l) + dtheta_r)
      s       = omega_r - omega_m

    Only the last component of x_ref (load position reference) is read.
    """

    N: float = 1.0

    def surface(self, x: Tensor, x_ref: Tensor, k: Tensor, ref_rate: Tensor) -> Tensor:
        e = x_ref[THETA_L] - x[THETA_L]
        omega_r = self.N * (k[2] * e + ref_rate)
        return omega_r - x[OMEGA_M]

    def surface_jacobians(self, x: Tensor, x_ref: Tensor, k: Tensor, ref_rate: Tensor) -> Tuple[Tensor, Tensor]:
        """(ds/dx [4], ds/dk [3])"""
        ds_dx = torch.zeros(4, device=x.device, dtype=x.dtype)
        ds_dx[OMEGA_M] = -1.0
        ds_dx[THETA_L] = -self.N * k[2]
        ds_dk = torch.zeros(3, device=x.device, dtype=x.dtype)
        ds_dk[2] = self.N * (x_ref[THETA_L] - x[THETA_L])
        return ds_dx, ds_dk


@dataclass(frozen=True)
class SuperTwistingController:
    """Super-twisting sliding-mode velocity loop cascaded with a P position loop.

      u  = J_m (k1 phi(s) + z)
      z+ = z + dt k2 sign(s)

    The sliding-mode terms are motor accelerations; J_m turns them into torque.

    Gains k = [k1, k2, k_pos]. `eps` smooths the square root and the sign around
    the sliding surface; eps = 0 gives the exact (non-smooth) law.
    """

    N: float = 1.0
    J_m: float = DriveTrainParams.J_m
    eps: float = 1e-3
    nu: int = 1
    nz: int = 1
    n_gains: int = 3

    def _outer(self) -> CascadeOuterLoop:
        return CascadeOuterLoop(N=self.N)

    def initial_state(self, *, like: Tensor) -> Tensor:
        return torch.zeros(self.nz, device=like.device, dtype=like.dtype)

    def command(self, x: Tensor, x_ref: Tensor, k: Tensor, ref_rate: Tensor, z: Tensor) -> Tensor:
        s = self._outer().surface(x, x_ref, k, ref_rate)
        return (self.J_m * (k[0] * st_root(s, self.eps) + z[0])).view(1)

    def command_jacobians(
        self, x: Tensor, x_ref: Tensor, k: Tensor, ref_rate: Tensor, z: Tensor
    ) -> Tuple[Tensor, Tensor, Tensor]:
        outer = self._outer()
        s = outer.surface(x, x_ref, k, ref_rate)
        ds_dx, ds_dk = outer.surface_jacobians(x, x_ref, k, ref_rate)
        dphi = st_root_grad(s, self.eps)

        du_dx = (self.J_m * k[0] * dphi * ds_dx).view(1, -1)
        du_dk = k[0] * dphi * ds_dk
        du_dk[0] = du_dk[0] + st_root(s, self.eps)
        du_dz = torch.full((1, self.nz), self.J_m, device=x.device, dtype=x.dtype)
        return du_dx, (self.J_m * du_dk).view(1, -1), du_dz

    def update(self, x: Tensor, x_ref: Tensor, k: Tensor, ref_rate: Tensor, z: Tensor, dt: float) -> Tensor:
        s = self._outer().surface(x, x_ref, k, ref_rate)
        return z + dt * k[1] * smooth_sign(s, self.eps)

    def update_jacobians(
        self, x: Tensor, x_ref: Tensor, k: Tensor, ref_rate: Tensor, z: Tensor, dt: float
    ) -> Tuple[Tensor, Tensor, Tensor]:
        outer = self._outer()
        s = outer.surface(x, x_ref, k, ref_rate)
        ds_dx, ds_dk = outer.surface_jacobians(x, x_ref, k, ref_rate)
        dsig = smooth_sign_grad(s, self.eps)

        dz_dx = (dt * k[1] * dsig * ds_dx).view(1, -1)
        dz_dk = dt * k[1] * dsig * ds_dk
        dz_dk[1] = dz_dk[1] + dt * smooth_sign(s, self.eps)
        dz_dz = torch.eye(self.nz, device=x.device, dtype=x.dtype)
        return dz_dx, dz_dk.view(1, -1), dz_dz


@dataclass(frozen=True)
class PICascadeController:
    """Linear PI velocity loop cascaded with a P position loop.

      u  = J_m (k1 s + z)
      z+ = z + dt k2 s
    """

    N: float = 1.0
    J_m: float = DriveTrainParams.J_m
    nu: int = 1
    nz: int = 1
    n_gains: int = 3

    def _outer(self) -> CascadeOuterLoop:
        return CascadeOuterLoop(N=self.N)

    def initial_state(self, *, like: Tensor) -> Tensor:
        return torch.zeros(self.nz, device=like.device, dtype=like.dtype)

    def command(self, x: Tensor, x_ref: Tensor, k: Tensor, ref_rate: Tensor, z: Tensor) -> Tensor:
        s = self._outer().surface(x, x_ref, k, ref_rate)
        return (self.J_m * (k[0] * s + z[0])).view(1)

    def command_jacobians(
        self, x: Tensor, x_ref: Tensor, k: Tensor, ref_rate: Tensor, z: Tensor
    ) -> Tuple[Tensor, Tensor, Tensor]:
        outer = self._outer()
        s = outer.surface(x, x_ref, k, ref_rate)
        ds_dx, ds_dk = outer.surface_jacobians(x, x_ref, k, ref_rate)
        du_dk = k[0] * ds_dk
        du_dk[0] = du_dk[0] + s
        du_dz = torch.full((1, self.nz), self.J_m, device=x.device, dtype=x.dtype)
        return (self.J_m * k[0] * ds_dx).view(1, -1), (self.J_m * du_dk).view(1, -1), du_dz

    def update(self, x: Tensor, x_ref: Tensor, k: Tensor, ref_rate: Tensor, z: Tensor, dt: float) -> Tensor:
        s = self._outer().surface(x, x_ref, k, ref_rate)
        return z + dt * k[1] * s

    def update_jacobians(
        self, x: Tensor, x_ref: Tensor, k: Tensor, ref_rate: Tensor, z: Tensor, dt: float
    ) -> Tuple[Tensor, Tensor, Tensor]:
        outer = self._outer()
        s = outer.surface(x, x_ref, k, ref_rate)
        ds_dx, ds_dk = outer.surface_jacobians(x, x_ref, k, ref_rate)
        dz_dk = dt * k[1] * ds_dk
        dz_dk[1] = dz_dk[1] + dt * s
        dz_dz = torch.eye(self.nz, device=x.device, dtype=x.dtype)
        return (dt * k[1] * ds_dx).view(1, -1), dz_dk.view(1, -1), dz_dz


def build_controller(cfg: dict, *, params: DriveTrainParams):
    """Controller from the `controller:` config section, for the motor in `params`."""
    kind = str(cfg.get("type", "super_twisting"))
    if kind == "super_twisting":
        return SuperTwistingController(
            N=params.N,
            J_m=params.J_m,
            eps=float(cfg.get("sign_smoothing", SuperTwistingController.eps)),
        )
    if kind == "pi":
        return PICascadeController(N=params.N, J_m=params.J_m)
    raise ValueError(f"Unknown controller type: {kind}")
