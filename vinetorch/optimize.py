"""Derivative-free bounded maximizers used for copula MLE.

Both routines work on black-box float objectives so they can wrap any
family's log-likelihood; they report whether the stopping tolerance was
reached so callers can flag non-converged fits.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable

import torch


@dataclass
class OptimizeResult:
    x: torch.Tensor
    fun: float  # objective value at x (maximized)
    n_eval: int
    converged: bool = True


def golden_section_maximize(
    f: Callable[[float], float],
    *,
    a: float,
    b: float,
    x0: float | None = None,
    max_iter: int = 60,
    tol: float = 1e-6,
) -> OptimizeResult:
    """Bounded 1D maximization using golden section search.

    Assumes f is unimodal on [a, b]. Non-finite objective values are treated
    as -inf so that the bracket moves away from them.
    """
    if not (a < b):
        raise ValueError("require a < b")

    invphi = 2.0 / (1.0 + math.sqrt(5.0))

    def g(v: float) -> float:
        val = float(f(float(v)))
        return val if math.isfinite(val) else -math.inf

    n_eval = 0
    if x0 is not None:
        # for unimodal f, x0 beating both ends of [lo, hi] puts the maximum inside it
        x0 = float(min(max(x0, a), b))
        half = 0.1 * (b - a)
        lo = x0 - half
        hi = x0 + half
        if a < lo and hi < b:
            f0 = g(x0)
            flo = g(lo)
            fhi = g(hi)
            n_eval += 3
            if math.isfinite(f0) and f0 >= flo and f0 >= fhi:
                a, b = lo, hi

    c = b - (b - a) * invphi
    d = a + (b - a) * invphi
    fc = g(c)
    fd = g(d)
    n_eval += 2
    converged = False

    for _ in range(max_iter):
        if abs(b - a) <= tol * (1.0 + abs(a) + abs(b)):
            converged = True
            break
        if fc > fd:
            b = d
            d = c
            fd = fc
            c = b - (b - a) * invphi
            fc = g(c)
        else:
            a = c
            c = d
            fc = fd
            d = a + (b - a) * invphi
            fd = g(d)
        n_eval += 1
    else:
        converged = abs(b - a) <= tol * (1.0 + abs(a) + abs(b))

    if fc > fd:
        x, fun = c, fc
    else:
        x, fun = d, fd
    return OptimizeResult(
        x=torch.tensor(float(x), dtype=torch.float64), fun=float(fun), n_eval=n_eval, converged=converged
    )


def coordinate_descent_maximize(
    f: Callable[[torch.Tensor], float],
    *,
    x0: torch.Tensor,
    lb: torch.Tensor,
    ub: torch.Tensor,
    max_outer: int = 10,
    max_inner: int = 60,
    tol: float = 1e-6,
) -> OptimizeResult:
    """Derivative-free coordinate ascent with 1D golden-section substeps.

    Converged means an outer sweep over all coordinates found no improvement
    larger than ``tol`` relative to the current best value.
    """
    x = torch.as_tensor(x0, dtype=torch.float64).reshape(-1).clone()
    lb = torch.as_tensor(lb, dtype=torch.float64).reshape(-1)
    ub = torch.as_tensor(ub, dtype=torch.float64).reshape(-1)
    if x.numel() != lb.numel() or x.numel() != ub.numel():
        raise ValueError("x0, lb, ub must have the same length")
    x = torch.max(torch.min(x, ub), lb)

    best = float(f(x))
    if not math.isfinite(best):
        best = -math.inf
    n_eval = 1
    converged = False

    for _ in range(max_outer):
        improved = False
        for k in range(int(x.numel())):
            a = float(lb[k].item())
            b = float(ub[k].item())
            if not (a < b):
                continue

            saved_val = float(x[k].item())

            def fk(v: float, _k=k) -> float:
                x[_k] = float(v)
                return float(f(x))

            res = golden_section_maximize(fk, a=a, b=b, x0=saved_val, max_iter=max_inner, tol=tol)
            n_eval += res.n_eval
            if res.fun > best:
                # gains below the relative tolerance do not count as progress
                if res.fun > best + tol * (1.0 + abs(best)):
                    improved = True
                best = float(res.fun)
                x[k] = float(res.x.item())
            else:
                x[k] = saved_val

        if not improved:
            converged = True
            break

    return OptimizeResult(x=x, fun=best, n_eval=n_eval, converged=converged)
