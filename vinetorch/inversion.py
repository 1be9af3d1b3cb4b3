"""Vectorized bisection for inverting monotone functions."""

from __future__ import annotations

from typing import Callable

import torch


def invert_f(
    x: torch.Tensor,
    f: Callable[[torch.Tensor], torch.Tensor],
    lb: float | torch.Tensor = 1e-20,
    ub: float | torch.Tensor = 1.0 - 1e-20,
    n_iter: int = 35,
) -> torch.Tensor:
    """Solve ``f(y) = x`` elementwise for a nondecreasing ``f`` on ``[lb, ub]``.

    Every element runs the same fixed number of bisection steps, so the
    error after ``n_iter`` steps is at most ``(ub - lb) / 2**(n_iter + 1)``.
    ``lb`` / ``ub`` may be scalars or tensors broadcastable against ``x``.
    """
    x = torch.as_tensor(x, dtype=torch.float64)
    xl = torch.as_tensor(lb, dtype=x.dtype, device=x.device).expand_as(x).clone()
    xh = torch.as_tensor(ub, dtype=x.dtype, device=x.device).expand_as(x).clone()
    x_tmp = 0.5 * (xl + xh)
    for _ in range(int(n_iter)):
        x_tmp = 0.5 * (xl + xh)
        below = (f(x_tmp) - x) < 0
        xl = torch.where(below, x_tmp, xl)
        xh = torch.where(below, xh, x_tmp)
    return 0.5 * (xl + xh)
