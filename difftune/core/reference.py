from __future__ import annotations

import math
from typing import Any, Dict, Tuple

import torch
from torch import Tensor


def time_grid(dt: float, horizon: float, *, device=None, dtype=torch.float64) -> Tensor:
    """Sample times 0, dt, ..., horizon (horizon / dt steps, one more sample)."""
    n_steps = int(round(horizon / dt))
    if n_steps < 1:
        raise ValueError(f"horizon ({horizon}) must cover at least one step of dt ({dt})")
    return torch.linspace(0.0, n_steps * dt, n_steps + 1, device=device, dtype=dtype)


def sine_reference(time: Tensor, *, amplitude: float = 1.0, frequency: float = 1.0) -> Tuple[Tensor, Tensor]:
    """theta_r = A sin(2 pi f t) and its time derivative."""
    w = 2.0 * math.pi * frequency
    return amplitude * torch.sin(w * time), amplitude * w * torch.cos(w * time)


def zero_reference(time: Tensor) -> Tuple[Tensor, Tensor]:
    return torch.zeros_like(time), torch.zeros_like(time)


def build_reference(cfg: Dict[str, Any], time: Tensor) -> Tuple[Tensor, Tensor]:
    """Reference position and rate from the `reference:` config section."""
    kind = str(cfg.get("type", "sine"))
    if kind == "sine":
        return sine_reference(
            time,
            amplitude=float(cfg.get("amplitude", 1.0)),
            frequency=float(cfg.get("frequency", 1.0)),
        )
    if kind == "zero":
        return zero_reference(time)
    raise ValueError(f"Unknown reference type: {kind}")
