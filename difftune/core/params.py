from __future__ import annotations

import math
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional, Sequence

import torch
from torch import Tensor


GAIN_NAMES = ("k1", "k2", "k_pos")


@dataclass(frozen=True)
class DriveTrainParams:
    """Physical constants of the two-inertia drive train.

    Friction and shaft values follow Table 4.3 of D. Papageorgiou's PhD thesis
    (motor and load values averaged).
    """

    # Mechanical
    J_m: float = 2.81e-4 + 5.5e-4   # kg m^2, motor inertia
    J_l: float = 1.0                # kg m^2, load inertia
    N: float = 1.0                  # gear ratio
    K_S: float = 32.94              # N m / rad, shaft stiffness
    D_S: float = 0.0548             # N m s / rad, shaft damping

    # Friction (shared by motor and load)
    T_C: float = (0.0223 + 0.0232) / 2   # N m, Coulomb
    T_S: float = (0.0441 + 0.0453) / 2   # N m, static
    b_fr: float = 0.0016                 # N m s / rad, viscous
    stribeck_velocity: Optional[float] = 0.1   # rad/s; None disables the Stribeck curve
    friction_smoothing: float = 0.05           # rad/s, tanh width of the Coulomb sign
    T_load: float = 0.0                        # N m, constant load torque

    # Motor electrical (not used by the mechanical model)
    r_s: float = 3.6644
    L_d: float = 21.4e-3
    L_q: float = 1.2 * 21.4e-3
    P: int = 6
    k_T: float = 1.43
    k_E: float = 87 * 2 * math.pi * 60 * 0.001
    lambda_m: float = 0.3148

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "DriveTrainParams":
        d = dict(d or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(d) - known)
        if unknown:
            raise ValueError(f"Unknown drive-train parameters: {unknown}")
        return cls(**d)

    def frictionless(self) -> "DriveTrainParams":
        """Same inertias and shaft, all friction and load torque removed (linear plant)."""
        return replace(self, T_C=0.0, T_S=0.0, b_fr=0.0, stribeck_velocity=None, T_load=0.0)


def make_gains(values: Sequence[float], *, device=None, dtype=torch.float64) -> Tensor:
    """Gain vector [k1, k2, k_pos] as a fresh tensor."""
    if len(values) != len(GAIN_NAMES):
        raise ValueError(f"Expected {len(GAIN_NAMES)} gains {GAIN_NAMES}, got {len(values)}")
    return torch.tensor([float(v) for v in values], device=device, dtype=dtype)


def project_gains(k: Tensor, *, floor: float) -> Tensor:
    """Clamp each gain independently onto the feasible set k_i >= floor."""
    return torch.clamp(k, min=floor)
