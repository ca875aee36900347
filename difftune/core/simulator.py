from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import torch
from torch import Tensor
from torchdiffeq import odeint

from .system_spec import PlantModel
from .utils import IntegrationFailure, describe_nonfinite


ADAPTIVE_METHODS = ("dopri5", "dopri8", "bosh3", "fehlberg2", "adaptive_heun")
FIXED_METHODS = ("euler", "midpoint", "rk4", "explicit_adams", "implicit_adams")


@dataclass(frozen=True)
class IntegratorConfig:
    method: str = "dopri5"
    rtol: float = 1e-6
    atol: float = 1e-8
    max_num_steps: int = 10_000
    substeps: int = 1   # fixed-grid methods only: grid points per sample interval

    def __post_init__(self) -> None:
        if self.method not in ADAPTIVE_METHODS + FIXED_METHODS:
            raise ValueError(f"Unknown integration method: {self.method}")
        if self.substeps < 1:
            raise ValueError("substeps must be >= 1")

    @property
    def adaptive(self) -> bool:
        return self.method in ADAPTIVE_METHODS


class Simulator:
    """Integrates the plant (or any augmented right-hand side) over one grid interval.

    The control input is held constant over the interval (zero-order hold).
    Solver failures are raised as IntegrationFailure and never retried with a
    different step, so a state integration and the sensitivity integration
    that rides along with it always share one scheme.
    """

    def __init__(self, plant: PlantModel, cfg: Optional[IntegratorConfig] = None) -> None:
        self.plant = plant
        self.cfg = cfg or IntegratorConfig()

    def integrate(
        self,
        rhs: Callable[[Tensor, Tensor], Tensor],
        y0: Tensor,
        t0: float,
        t1: float,
        *,
        name: str = "y",
        check_finite: bool = True,
    ) -> Tensor:
        """Solve dy/dt = rhs(t, y) from t0 to t1 and return y(t1)."""
        cfg = self.cfg
        if cfg.adaptive:
            ts = torch.tensor([t0, t1], device=y0.device, dtype=y0.dtype)
            options = {"max_num_steps": cfg.max_num_steps}
        else:
            ts = torch.linspace(t0, t1, cfg.substeps + 1, device=y0.device, dtype=y0.dtype)
            options = None
        try:
            ys = odeint(rhs, y0, ts, rtol=cfg.rtol, atol=cfg.atol, method=cfg.method, options=options)
        except (AssertionError, RuntimeError) as exc:
            # torchdiffeq signals step-budget exhaustion and dt underflow this way
            raise IntegrationFailure(f"{cfg.method} failed on [{t0}, {t1}] for {name}: {exc}") from exc
        y1 = ys[-1]
        if check_finite and not torch.isfinite(y1).all():
            raise IntegrationFailure(
                f"{cfg.method} returned non-finite {name} on [{t0}, {t1}]: {describe_nonfinite(y1)}"
            )
        return y1

    def step(self, x: Tensor, u: Tensor, t0: float, t1: float) -> Tensor:
        """Advance the plant state alone with u held over [t0, t1]."""
        u = u.detach()
        return self.integrate(lambda t, xx: self.plant.dynamics(xx, u), x, t0, t1, name="state")

    def rollout(self, x0: Tensor, U: Tensor, time: Tensor) -> Tensor:
        """Open-loop rollout: x0 [nx], U [N-1, nu], time [N] -> X [N, nx]."""
        n = time.shape[0]
        X = torch.empty(n, x0.shape[0], device=x0.device, dtype=x0.dtype)
        X[0] = x0
        x = x0
        for k in range(n - 1):
            x = self.step(x, U[k], float(time[k]), float(time[k + 1]))
            X[k + 1] = x
        return X
