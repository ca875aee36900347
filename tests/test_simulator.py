"""
Unit tests for the Simulator (torchdiffeq integration over one sample interval).

Tests cover:
- Rest stays at rest
- Momentum balance of the frictionless plant (fixed-step and adaptive)
- Fixed-step scheme against a fine adaptive reference
- Failure reporting (step budget exhaustion, non-finite results)
- Configuration validation
"""

import pytest
import torch

from difftune.core.simulator import IntegratorConfig, Simulator
from difftune.core.utils import IntegrationFailure


DTYPE = torch.float64


class TestStep:
    @pytest.mark.parametrize("method", ["rk4", "euler", "dopri5"])
    def test_rest_stays_at_rest(self, plant, method):
        sim = Simulator(plant, IntegratorConfig(method=method))
        x = torch.zeros(4, dtype=DTYPE)
        x1 = sim.step(x, torch.zeros(1, dtype=DTYPE), 0.0, 0.001)
        assert torch.equal(x1, x)

    @pytest.mark.parametrize("method", ["rk4", "midpoint", "dopri5"])
    def test_frictionless_momentum_balance(self, linear_plant, method):
        # d/dt (J_m w_m + J_l w_l) = u for N = 1 and no friction; linear invariants are kept by RK schemes
        sim = Simulator(linear_plant, IntegratorConfig(method=method))
        p = linear_plant.params
        x = torch.zeros(4, dtype=DTYPE)
        u = torch.tensor([0.3], dtype=DTYPE)
        n, dt = 50, 0.001
        for k in range(n):
            x = sim.step(x, u, k * dt, (k + 1) * dt)
        momentum = p.J_m * x[0] + p.J_l * x[1]
        assert momentum.item() == pytest.approx(0.3 * n * dt, rel=1e-9)

    def test_rk4_substeps_close_to_adaptive(self, plant):
        x0 = torch.tensor([1.0, 0.5, 0.01, 0.0], dtype=DTYPE)
        u = torch.tensor([0.05], dtype=DTYPE)
        ref = Simulator(plant, IntegratorConfig(method="dopri5", rtol=1e-11, atol=1e-13)).step(x0, u, 0.0, 0.001)
        fine = Simulator(plant, IntegratorConfig(method="rk4", substeps=4)).step(x0, u, 0.0, 0.001)
        assert torch.allclose(fine, ref, rtol=1e-6, atol=1e-9)

    def test_rollout_shape_and_first_sample(self, plant, rk4):
        sim = Simulator(plant, rk4)
        time = torch.linspace(0.0, 0.01, 11, dtype=DTYPE)
        x0 = torch.tensor([0.0, 0.0, 0.0, 0.0], dtype=DTYPE)
        U = torch.full((10, 1), 0.1, dtype=DTYPE)
        X = sim.rollout(x0, U, time)
        assert X.shape == (11, 4)
        assert torch.equal(X[0], x0)
        assert X[-1, 0] > 0.0   # motor spun up by positive torque


class TestFailures:
    def test_step_budget_exhaustion_raises(self, plant):
        sim = Simulator(plant, IntegratorConfig(method="dopri5", max_num_steps=0))
        with pytest.raises(IntegrationFailure, match="dopri5 failed"):
            sim.step(torch.zeros(4, dtype=DTYPE), torch.ones(1, dtype=DTYPE), 0.0, 0.001)

    def test_non_finite_solution_raises(self, plant, rk4):
        sim = Simulator(plant, rk4)

        def rhs(t, y):
            return y / torch.zeros_like(y)

        with pytest.raises(IntegrationFailure, match="non-finite"):
            sim.integrate(rhs, torch.ones(2, dtype=DTYPE), 0.0, 0.001)

    def test_non_finite_check_can_be_deferred(self, plant, rk4):
        sim = Simulator(plant, rk4)

        def rhs(t, y):
            return y / torch.zeros_like(y)

        y1 = sim.integrate(rhs, torch.ones(2, dtype=DTYPE), 0.0, 0.001, check_finite=False)
        assert not torch.isfinite(y1).all()


class TestIntegratorConfig:
    def test_defaults(self):
        cfg = IntegratorConfig()
        assert cfg.method == "dopri5"
        assert cfg.adaptive

    def test_fixed_method_not_adaptive(self):
        assert not IntegratorConfig(method="rk4").adaptive

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown integration method"):
            IntegratorConfig(method="ode45")

    def test_substeps_validated(self):
        with pytest.raises(ValueError, match="substeps"):
            IntegratorConfig(method="rk4", substeps=0)
