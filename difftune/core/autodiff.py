"""Autograd references for the closed-form plant and controller Jacobians.

The sensitivity propagation never calls these; the tests check the
analytic derivatives against them.
"""

from __future__ import annotations

from typing import Tuple

import torch
from torch import Tensor

from .system_spec import Controller, PlantModel


def _frozen(*ts: Tensor) -> Tuple[Tensor, ...]:
    return tuple(t.detach().clone() for t in ts)


def plant_jacobians_autograd(plant: PlantModel, x: Tensor, u: Tensor) -> Tuple[Tensor, Tensor]:
    """(df/dx [nx, nx], df/du [nx, nu]) of plant.dynamics at (x, u)."""
    x, u = _frozen(x, u)
    jac = torch.autograd.functional.jacobian
    return (
        jac(lambda xx: plant.dynamics(xx, u), x),
        jac(lambda uu: plant.dynamics(x, uu), u),
    )


def controller_jacobians_autograd(
    ctrl: Controller,
    x: Tensor,
    x_ref: Tensor,
    k: Tensor,
    ref_rate: Tensor,
    z: Tensor,
    dt: float,
) -> Tuple[Tuple[Tensor, Tensor, Tensor], Tuple[Tensor, Tensor, Tensor]]:
    """Autograd versions of (du/dx, du/dk, du/dz) and (dz+/dx, dz+/dk, dz+/dz).

    x_ref is held fixed, as in the analytic Jacobians (its first components
    are copies of x, its last one is the external reference).
    """
    x, x_ref, k, ref_rate, z = _frozen(x, x_ref, k, ref_rate, z)
    jac = torch.autograd.functional.jacobian

    du = (
        jac(lambda xx: ctrl.command(xx, x_ref, k, ref_rate, z), x),
        jac(lambda kk: ctrl.command(x, x_ref, kk, ref_rate, z), k),
        jac(lambda zz: ctrl.command(x, x_ref, k, ref_rate, zz), z),
    )
    dz = (
        jac(lambda xx: ctrl.update(xx, x_ref, k, ref_rate, z, dt), x),
        jac(lambda kk: ctrl.update(x, x_ref, kk, ref_rate, z, dt), k),
        jac(lambda zz: ctrl.update(x, x_ref, k, ref_rate, zz, dt), z),
    )
    return du, dz
