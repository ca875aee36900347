"""Numeric guards and error types shared by the simulator and the tuning loop."""

from __future__ import annotations

from typing import Optional

import torch
from torch import Tensor


class NumericDivergence(FloatingPointError):
    """A sensitivity, gradient or update became non-finite.

    Fatal for the whole tuning run: sensitivities after a divergent step carry
    no information for the following steps.
    """


class IntegrationFailure(RuntimeError):
    """The ODE solver could not complete a step (or produced a non-finite state)."""


def describe_nonfinite(t: Tensor) -> str:
    finite = torch.isfinite(t)
    bad = (~finite).sum().item()
    if t.numel() and finite.any():
        vals = t[finite]
        t_min = vals.min().item()
        t_max = vals.max().item()
    else:
        t_min = float("nan")
        t_max = float("nan")
    return f"{bad} non-finite entries (min={t_min}, max={t_max})"


def ensure_finite(
    t: Tensor,
    name: str,
    *,
    it: Optional[int] = None,
    k: Optional[int] = None,
    verbose: bool = False,
) -> None:
    """Raise NumericDivergence if `t` holds NaN or Inf.

    Args:
        t: tensor to check
        name: label used in the message
        it: outer iteration (for the message)
        k: time step (for the message)
        verbose: also print a [NUMERIC-FAIL] line before raising
    """
    if torch.isfinite(t).all():
        return
    where = []
    if it is not None:
        where.append(f"it={it}")
    if k is not None:
        where.append(f"k={k}")
    where_s = (", ".join(where)) if where else "-"
    detail = describe_nonfinite(t)
    if verbose:
        print(f"[NUMERIC-FAIL] {where_s}: {name} has {detail}", flush=True)
    raise NumericDivergence(f"non-finite detected in {name} ({where_s}): {detail}")
