import pytest
import torch

from difftune.core.control import PICascadeController, SuperTwistingController
from difftune.core.params import DriveTrainParams
from difftune.core.reference import sine_reference, time_grid, zero_reference
from difftune.core.simulator import IntegratorConfig, Simulator
from difftune.core.systems.drive_train import TwoInertiaPlant
from difftune.core.tuning import DiffTuneLoop, TuningConfig


DTYPE = torch.float64

# PI gains act on motor acceleration; the sampled loop needs dt * k1 < 1 at dt = 1 ms
PI_GAINS = (20.0, 100.0, 5.0)
ST_GAINS = (1.453488372 * 2.45 * 0.99, 50.0, 25.0)


@pytest.fixture
def params():
    return DriveTrainParams()


@pytest.fixture
def plant(params):
    return TwoInertiaPlant(params=params)


@pytest.fixture
def linear_plant(params):
    return TwoInertiaPlant(params=params.frictionless())


@pytest.fixture
def rk4():
    return IntegratorConfig(method="rk4")


@pytest.fixture
def st_controller(params):
    return SuperTwistingController(N=params.N, J_m=params.J_m, eps=1e-3)


@pytest.fixture
def pi_controller(params):
    return PICascadeController(N=params.N, J_m=params.J_m)


def make_loop(
    plant,
    ctrl,
    *,
    horizon=0.05,
    dt=0.001,
    max_iterations=2,
    learning_rate=1e-3,
    initial_gains=ST_GAINS,
    reference="sine",
    integrator=None,
    on_iteration=None,
    gain_floor=0.1,
):
    """Small closed-loop tuning problem for tests."""
    time = time_grid(dt, horizon, dtype=DTYPE)
    if reference == "zero":
        theta_r, theta_r_dot = zero_reference(time)
    else:
        theta_r, theta_r_dot = sine_reference(time)
    cfg = TuningConfig(
        dt=dt,
        horizon=horizon,
        learning_rate=learning_rate,
        max_iterations=max_iterations,
        initial_gains=tuple(initial_gains),
        gain_floor=gain_floor,
    )
    return DiffTuneLoop(
        plant=plant,
        ctrl=ctrl,
        simulator=Simulator(plant, integrator or IntegratorConfig(method="rk4")),
        cfg=cfg,
        time=time,
        theta_r=theta_r,
        theta_r_dot=theta_r_dot,
        on_iteration=on_iteration,
    )
