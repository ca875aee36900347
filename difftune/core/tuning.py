from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import torch
from torch import Tensor

from .gradients import LossAccumulator, apply_gain_update, gain_update
from .sensitivity import SensitivityPropagator, StepSensitivity, zero_sensitivity
from .simulator import Simulator
from .system_spec import Controller, PlantModel
from .utils import IntegrationFailure, NumericDivergence, ensure_finite


@dataclass(frozen=True)
class TuningConfig:
    dt: float = 0.001
    horizon: float = 10.0
    learning_rate: float = 2.0
    max_iterations: int = 100
    initial_gains: Tuple[float, float, float] = (1.453488372 * 2.45 * 0.99, 50.0, 25.0)
    gain_floor: float = 0.1
    verbose: bool = False
    log_every: int = 1

    def __post_init__(self) -> None:
        if self.dt <= 0.0:
            raise ValueError("dt must be > 0")
        if self.horizon < self.dt:
            raise ValueError("horizon must be >= dt")
        if self.max_iterations < 0:
            raise ValueError("max_iterations must be >= 0")


@dataclass(frozen=True)
class IterationRecord:
    iteration: int
    loss: float
    rmse: float
    gradient: Tuple[float, ...]
    gains_used: Tuple[float, ...]   # gains during this iteration's rollout
    gains: Tuple[float, ...]        # gains after the projected update


@dataclass(frozen=True)
class RolloutResult:
    time: Tensor        # [N]
    X: Tensor           # [N, nx]
    X_ref: Tensor       # [N, nx]
    U: Tensor           # [N-1, nu]
    dx_dk: Tensor       # [nx, n_gains] at the last sample
    loss: Tensor        # []
    grad: Tensor        # [n_gains]
    rmse: Tensor        # []

    @property
    def n_samples(self) -> int:
        return int(self.time.shape[0])


class LoopState(enum.Enum):
    RUNNING = "running"
    TERMINATED = "terminated"


class TuningStatus(str, enum.Enum):
    COMPLETED = "completed"
    DIVERGED = "diverged"
    INTEGRATION_FAILED = "integration_failed"


@dataclass(frozen=True)
class TuningResult:
    status: TuningStatus
    history: Tuple[IterationRecord, ...]
    gains: Tensor
    last_rollout: Optional[RolloutResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is TuningStatus.COMPLETED

    @property
    def rmse_history(self) -> List[float]:
        return [r.rmse for r in self.history]

    @property
    def loss_history(self) -> List[float]:
        return [r.loss for r in self.history]


ProgressHook = Callable[[IterationRecord, RolloutResult], None]


def reference_state(x: Tensor, theta_r: Tensor) -> Tensor:
    """X_ref = [x_0, x_1, x_2, theta_r]."""
    return torch.cat([x[:-1], theta_r.view(1)], dim=0)


@torch.no_grad()
def rollout_with_sensitivity(
    *,
    plant: PlantModel,
    ctrl: Controller,
    simulator: Simulator,
    k: Tensor,
    time: Tensor,
    theta_r: Tensor,
    theta_r_dot: Tensor,
    x0: Optional[Tensor] = None,
    it: Optional[int] = None,
    verbose: bool = False,
) -> RolloutResult:
    """Closed-loop rollout for fixed gains, carrying dx/dk along the trajectory.

    Raises:
        NumericDivergence: a sensitivity or the gradient became non-finite
        IntegrationFailure: the ODE solver failed on some interval
    """
    n = time.shape[0]
    device, dtype = k.device, k.dtype
    x = torch.zeros(plant.nx, device=device, dtype=dtype) if x0 is None else x0.clone()
    z = ctrl.initial_state(like=x)
    sens: StepSensitivity = zero_sensitivity(plant, ctrl, like=x)
    acc = LossAccumulator.zeros(ctrl.n_gains, like=x)
    propagator = SensitivityPropagator(plant, ctrl, simulator, verbose=verbose)

    X = torch.empty(n, plant.nx, device=device, dtype=dtype)
    X_ref = torch.empty(n, plant.nx, device=device, dtype=dtype)
    U = torch.empty(n - 1, ctrl.nu, device=device, dtype=dtype)
    X[0] = x

    for step in range(n - 1):
        x_ref = reference_state(x, theta_r[step])
        X_ref[step] = x_ref

        u = ctrl.command(x, x_ref, k, theta_r_dot[step], z)
        U[step] = u

        # loss and gradient use the sensitivity at the current sample
        acc.add(x, theta_r[step], sens.dx_dk)

        x, z, sens = propagator.step(
            x, x_ref, k, theta_r_dot[step], z, u, sens,
            float(time[step]), float(time[step + 1]),
            it=it, step_idx=step,
        )
        X[step + 1] = x

    X_ref[n - 1] = reference_state(x, theta_r[n - 1])
    ensure_finite(acc.grad, "loss gradient", it=it, verbose=verbose)

    return RolloutResult(
        time=time,
        X=X,
        X_ref=X_ref,
        U=U,
        dx_dk=sens.dx_dk,
        loss=acc.loss,
        grad=acc.grad,
        rmse=acc.rmse(n),
    )


def _as_tuple(t: Tensor) -> Tuple[float, ...]:
    return tuple(float(v) for v in t.detach().cpu().tolist())


@dataclass
class DiffTuneLoop:
    """Projected gradient descent on the controller gains.

    Two states, RUNNING and TERMINATED. The loop leaves RUNNING when the
    iteration budget is spent or a rollout raises NumericDivergence /
    IntegrationFailure; the history gathered before that point is returned
    unchanged.
    """

    plant: PlantModel
    ctrl: Controller
    simulator: Simulator
    cfg: TuningConfig
    time: Tensor
    theta_r: Tensor
    theta_r_dot: Tensor
    x0: Optional[Tensor] = None
    on_iteration: Optional[ProgressHook] = None

    state: LoopState = field(default=LoopState.RUNNING, init=False)

    def _log(self, msg: str) -> None:
        if self.cfg.verbose:
            print(msg, flush=True)

    def run(self, initial_gains: Optional[Sequence[float] | Tensor] = None) -> TuningResult:
        cfg = self.cfg
        if initial_gains is None:
            initial_gains = cfg.initial_gains
        k = torch.as_tensor(initial_gains, dtype=self.time.dtype, device=self.time.device).clone()
        if k.shape != (self.ctrl.n_gains,):
            raise ValueError(f"Expected {self.ctrl.n_gains} gains, got shape {tuple(k.shape)}")

        history: List[IterationRecord] = []
        last: Optional[RolloutResult] = None
        status = TuningStatus.COMPLETED
        error: Optional[str] = None
        self.state = LoopState.RUNNING

        it = 0
        while self.state is LoopState.RUNNING:
            if it >= cfg.max_iterations:
                self.state = LoopState.TERMINATED
                continue
            it += 1
            try:
                ro = rollout_with_sensitivity(
                    plant=self.plant,
                    ctrl=self.ctrl,
                    simulator=self.simulator,
                    k=k,
                    time=self.time,
                    theta_r=self.theta_r,
                    theta_r_dot=self.theta_r_dot,
                    x0=self.x0,
                    it=it,
                    verbose=cfg.verbose,
                )
                step = gain_update(ro.grad, lr=cfg.learning_rate, it=it, verbose=cfg.verbose)
            except NumericDivergence as exc:
                status, error = TuningStatus.DIVERGED, str(exc)
                self._log(f"[iter {it}/{cfg.max_iterations}] gradient is non-finite, stopping: {exc}")
                self.state = LoopState.TERMINATED
                continue
            except IntegrationFailure as exc:
                status, error = TuningStatus.INTEGRATION_FAILED, str(exc)
                self._log(f"[iter {it}/{cfg.max_iterations}] integration failed, stopping: {exc}")
                self.state = LoopState.TERMINATED
                continue

            k_next = apply_gain_update(k, step, floor=cfg.gain_floor)
            record = IterationRecord(
                iteration=it,
                loss=float(ro.loss),
                rmse=float(ro.rmse),
                gradient=_as_tuple(ro.grad),
                gains_used=_as_tuple(k),
                gains=_as_tuple(k_next),
            )
            history.append(record)
            k = k_next
            last = ro

            if it == 1 or (it % max(1, cfg.log_every)) == 0:
                self._log(
                    f"[iter {it}/{cfg.max_iterations}] loss={record.loss:.6g} rmse={record.rmse:.6g} "
                    f"gains={[round(g, 6) for g in record.gains]}"
                )
            if self.on_iteration is not None:
                self.on_iteration(record, ro)

        return TuningResult(status=status, history=tuple(history), gains=k, last_rollout=last, error=error)
