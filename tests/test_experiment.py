"""
Tests for config-driven experiment wiring, result files and plots.
"""

import copy
import json
import os

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest
import torch
import yaml

from difftune.core.control import PICascadeController, SuperTwistingController
from difftune.core.experiment import (
    build_loop,
    integrator_config_from_dict,
    run_tuning_experiment,
    tuning_config_from_dict,
)
from difftune.core.tuning import TuningStatus
from difftune.plot_results import plot_run
from difftune.run_experiment import DEFAULT_CONFIG


CPU = torch.device("cpu")


@pytest.fixture
def default_cfg():
    with open(DEFAULT_CONFIG, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


@pytest.fixture
def short_cfg(default_cfg):
    cfg = copy.deepcopy(default_cfg)
    cfg["integrator"] = {"method": "rk4"}
    cfg["tuning"].update({"horizon": 0.02, "max_iterations": 2, "learning_rate": 1e-3, "verbose": False})
    return cfg


class TestDefaultConfig:
    def test_numbers_parse_as_floats(self, default_cfg):
        assert isinstance(default_cfg["plant"]["J_m"], float)
        assert isinstance(default_cfg["controller"]["sign_smoothing"], float)
        assert isinstance(default_cfg["integrator"]["atol"], float)

    def test_reference_scenario(self, default_cfg):
        tcfg = tuning_config_from_dict(default_cfg["tuning"])
        assert tcfg.dt == 0.001 and tcfg.horizon == 10.0
        assert tcfg.learning_rate == 2.0 and tcfg.max_iterations == 100
        assert tcfg.initial_gains == pytest.approx((1.453488372 * 2.45 * 0.99, 50.0, 25.0))
        assert default_cfg["reference"] == {"type": "sine", "amplitude": 1.0, "frequency": 1.0}

    def test_build_full_loop(self, default_cfg):
        loop = build_loop(default_cfg, device=CPU)
        assert loop.time.shape == (10001,)
        assert loop.time.dtype == torch.float64
        assert isinstance(loop.ctrl, SuperTwistingController)
        assert loop.simulator.cfg.method == "dopri5"
        assert loop.plant.params.J_m == pytest.approx(2.81e-4 + 5.5e-4)
        assert loop.ctrl.J_m == loop.plant.params.J_m


class TestBuildLoop:
    def test_overrides(self, short_cfg):
        cfg = copy.deepcopy(short_cfg)
        cfg["controller"] = {"type": "pi"}
        cfg["frictionless"] = True
        cfg["initial_state"] = [0.0, 0.0, 0.0, 0.1]
        loop = build_loop(cfg, device=CPU)
        assert isinstance(loop.ctrl, PICascadeController)
        assert loop.plant.params.T_C == 0.0
        assert loop.time.shape == (21,)
        assert loop.x0.tolist() == [0.0, 0.0, 0.0, 0.1]

    def test_single_precision(self, short_cfg):
        cfg = copy.deepcopy(short_cfg)
        cfg["use_float64"] = False
        assert build_loop(cfg, device=CPU).time.dtype == torch.float32

    def test_unknown_tuning_key(self):
        with pytest.raises(ValueError, match="Unknown TuningConfig keys"):
            tuning_config_from_dict({"lr": 2.0})

    def test_unknown_integrator_key(self):
        with pytest.raises(ValueError, match="Unknown IntegratorConfig keys"):
            integrator_config_from_dict({"method": "rk4", "step": 0.1})

    def test_unknown_plant_key(self, short_cfg):
        cfg = copy.deepcopy(short_cfg)
        cfg["plant"]["inertia"] = 1.0
        with pytest.raises(ValueError, match="Unknown drive-train parameters"):
            build_loop(cfg, device=CPU)

    def test_unknown_reference(self, short_cfg):
        cfg = copy.deepcopy(short_cfg)
        cfg["reference"] = {"type": "square"}
        with pytest.raises(ValueError, match="Unknown reference type"):
            build_loop(cfg, device=CPU)


class TestRunExperiment:
    def test_writes_histories_and_summary(self, short_cfg, tmp_path):
        run_dir = str(tmp_path / "run")
        out = run_tuning_experiment(short_cfg, device=CPU, run_dir=run_dir)
        summary = out["summary"]
        assert summary["status"] == "completed"
        assert summary["iterations"] == 2
        assert summary["n_samples"] == 21
        assert summary["first_rmse"] == out["result"].history[0].rmse
        json.dumps(summary)

        rmse = np.load(os.path.join(run_dir, "rmse_hist.npy"))
        params = np.load(os.path.join(run_dir, "param_hist.npy"))
        x = np.load(os.path.join(run_dir, "x_traj.npy"))
        u = np.load(os.path.join(run_dir, "u_traj.npy"))
        assert rmse.shape == (2,)
        assert params.shape == (2, 3)
        assert x.shape == (21, 4)
        assert u.shape == (20, 1)
        assert np.all(params >= 0.1)

    def test_failed_run_still_saves_history(self, short_cfg, tmp_path):
        cfg = copy.deepcopy(short_cfg)
        cfg["integrator"] = {"method": "dopri5", "max_num_steps": 0}
        run_dir = str(tmp_path / "failed")
        out = run_tuning_experiment(cfg, device=CPU, run_dir=run_dir)
        assert out["result"].status is TuningStatus.INTEGRATION_FAILED
        assert out["summary"]["status"] == "integration_failed"
        assert out["summary"]["final_rmse"] is None
        assert np.load(os.path.join(run_dir, "rmse_hist.npy")).shape == (0,)

    def test_plots(self, short_cfg, tmp_path):
        run_dir = str(tmp_path / "plots")
        run_tuning_experiment(short_cfg, device=CPU, run_dir=run_dir)
        plot_run(run_dir, show=False)
        for name in ("tracking_rmse.png", "gains.png", "states_and_torque.png"):
            assert os.path.exists(os.path.join(run_dir, name))

    def test_plot_requires_history(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            plot_run(str(tmp_path), show=False)
