from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import torch
from torch import Tensor

from .simulator import Simulator
from .system_spec import Controller, PlantModel
from .utils import IntegrationFailure, describe_nonfinite, ensure_finite


@dataclass(frozen=True)
class StepSensitivity:
    """Sensitivities carried from one sample to the next."""

    dx_dk: Tensor   # [nx, n_gains]  state sensitivity
    dz_dk: Tensor   # [nz, n_gains]  controller-state sensitivity
    du_dk: Tensor   # [nu, n_gains]  control sensitivity of the step that produced this one


def zero_sensitivity(plant: PlantModel, ctrl: Controller, *, like: Tensor) -> StepSensitivity:
    kw = dict(device=like.device, dtype=like.dtype)
    return StepSensitivity(
        dx_dk=torch.zeros(plant.nx, ctrl.n_gains, **kw),
        dz_dk=torch.zeros(ctrl.nz, ctrl.n_gains, **kw),
        du_dk=torch.zeros(ctrl.nu, ctrl.n_gains, **kw),
    )


class SensitivityPropagator:
    """Forward sensitivity of the sampled closed loop with respect to the gains.

    With the torque held over [t_n, t_{n+1}], the control sensitivity is fixed
    at the start of the step,

      du/dk|_n = du/dx S_n + du/dz Z_n + du/dk,

    and the state sensitivity follows

      dS/dt = df/dx(x(t), u_n) S + df/du du/dk|_n,

    integrated jointly with the state as one augmented ODE, so both share the
    simulator's scheme. The controller state sensitivity is the discrete update

      Z_{n+1} = dz+/dx S_n + dz+/dz Z_n + dz+/dk.
    """

    def __init__(self, plant: PlantModel, ctrl: Controller, simulator: Simulator, *, verbose: bool = False) -> None:
        self.plant = plant
        self.ctrl = ctrl
        self.simulator = simulator
        self.verbose = verbose

    def control_sensitivity(
        self,
        x: Tensor,
        x_ref: Tensor,
        k: Tensor,
        ref_rate: Tensor,
        z: Tensor,
        sens: StepSensitivity,
    ) -> Tensor:
        du_dx, du_dk, du_dz = self.ctrl.command_jacobians(x, x_ref, k, ref_rate, z)
        return du_dx @ sens.dx_dk + du_dz @ sens.dz_dk + du_dk

    def augmented_rhs(self, u: Tensor, du_dk: Tensor):
        nx = self.plant.nx
        n_gains = du_dk.shape[1]

        def rhs(t: Tensor, y: Tensor) -> Tensor:
            x = y[:nx]
            S = y[nx:].view(nx, n_gains)
            A, B = self.plant.jacobian(x, u)
            dx = self.plant.dynamics(x, u)
            dS = A @ S + B @ du_dk
            return torch.cat([dx, dS.reshape(-1)], dim=0)

        return rhs

    def step(
        self,
        x: Tensor,
        x_ref: Tensor,
        k: Tensor,
        ref_rate: Tensor,
        z: Tensor,
        u: Tensor,
        sens: StepSensitivity,
        t0: float,
        t1: float,
        *,
        it: int | None = None,
        step_idx: int | None = None,
    ) -> Tuple[Tensor, Tensor, StepSensitivity]:
        """Advance (x, z, S, Z) over one sample.

        Returns:
            x_next: [nx]
            z_next: [nz]
            sens_next: sensitivities at t1 (du_dk holds the control sensitivity used on [t0, t1])
        """
        nx = self.plant.nx
        du_dk = self.control_sensitivity(x, x_ref, k, ref_rate, z, sens)
        ensure_finite(du_dk, "du_dk", it=it, k=step_idx, verbose=self.verbose)

        dt = t1 - t0
        dz_dx, dz_dk, dz_dz = self.ctrl.update_jacobians(x, x_ref, k, ref_rate, z, dt)
        Z_next = dz_dx @ sens.dx_dk + dz_dz @ sens.dz_dk + dz_dk
        ensure_finite(Z_next, "dz_dk", it=it, k=step_idx, verbose=self.verbose)
        z_next = self.ctrl.update(x, x_ref, k, ref_rate, z, dt)

        y0 = torch.cat([x, sens.dx_dk.reshape(-1)], dim=0)
        y1 = self.simulator.integrate(
            self.augmented_rhs(u.detach(), du_dk), y0, t0, t1, name="state+sensitivity", check_finite=False
        )
        x_next = y1[:nx]
        if not torch.isfinite(x_next).all():
            raise IntegrationFailure(f"non-finite state on [{t0}, {t1}]: {describe_nonfinite(x_next)}")
        S_next = y1[nx:].view(nx, -1)
        ensure_finite(S_next, "dx_dk", it=it, k=step_idx, verbose=self.verbose)
        return x_next, z_next, StepSensitivity(dx_dk=S_next, dz_dk=Z_next, du_dk=du_dk)

