"""Statistical helper functions: normal / Student-t distributions, rank
dependence measures, quadrature nodes and unit-interval guards."""

from __future__ import annotations

import logging
import math
import warnings
from functools import lru_cache
from typing import Sequence

import torch

from .errors import NumericBoundaryClamp

logger = logging.getLogger(__name__)


def _as_tensor(x, *, device=None, dtype=None):
    if torch.is_tensor(x):
        t = x
        if device is not None:
            t = t.to(device=device)
        if dtype is not None:
            t = t.to(dtype=dtype)
        return t
    return torch.as_tensor(x, device=device, dtype=dtype if dtype is not None else torch.float64)


def dnorm(x: torch.Tensor) -> torch.Tensor:
    x = _as_tensor(x)
    inv_sqrt_2pi = 0.39894228040143270286
    return inv_sqrt_2pi * torch.exp(-0.5 * x * x)


def pnorm(x: torch.Tensor) -> torch.Tensor:
    x = _as_tensor(x)
    # erfc keeps precision in the lower tail
    return 0.5 * torch.erfc(-x / math.sqrt(2.0))


def qnorm(u: torch.Tensor) -> torch.Tensor:
    u = _as_tensor(u)
    return torch.special.ndtri(u)


def clamp_unit(u: torch.Tensor, eps: float = 1e-10) -> torch.Tensor:
    # Avoid infs in qnorm and log(0) etc.
    return u.clamp(min=eps, max=1.0 - eps)


def swap_cols(u: torch.Tensor) -> torch.Tensor:
    return u[:, [1, 0]]


def clamp_boundary(values: torch.Tensor, residual: torch.Tensor, where: str = "") -> torch.Tensor:
    """Map non-finite probabilities to 0 or 1 and clip to the unit interval.

    A non-finite entry becomes 0 where ``residual`` is negative and 1
    otherwise (a NaN residual counts as non-negative).
    """
    bad = ~torch.isfinite(values)
    if bool(bad.any()):
        n_bad = int(bad.sum().item())
        logger.debug("clamped %d non-finite value(s) in %s", n_bad, where or "h-function")
        warnings.warn(
            f"{n_bad} non-finite value(s) in {where or 'h-function'} replaced by 0/1",
            NumericBoundaryClamp,
            stacklevel=2,
        )
        fill = torch.where(residual < 0, torch.zeros_like(values), torch.ones_like(values))
        values = torch.where(bad, fill, values)
    return values.clamp(0.0, 1.0)


def check_data(u, d: int | None = None) -> torch.Tensor:
    """Validate copula data: an (n, d) array with every entry in (0, 1)."""
    u = _as_tensor(u, dtype=torch.float64)
    if u.dim() == 1 and d is not None and d > 1 and u.numel() == d:
        u = u.reshape(1, d)
    if u.dim() != 2:
        raise ValueError(f"data must be a 2-D array, got shape {tuple(u.shape)}")
    if d is not None and int(u.shape[1]) != int(d):
        raise ValueError(f"data must have {d} columns, got {int(u.shape[1])}")
    if not bool(torch.isfinite(u).all()):
        raise ValueError("data contains NaN or infinite values")
    if bool(((u <= 0.0) | (u >= 1.0)).any()):
        raise ValueError("data must lie in the open unit interval (0, 1)")
    return u


def simulate_uniform(
    n: int,
    d: int,
    *,
    qrng: bool = False,
    generator: torch.Generator | None = None,
    seeds: Sequence[int] = (),
) -> torch.Tensor:
    """Draw an (n, d) sample from the independent uniform distribution.

    ``qrng=True`` returns a scrambled Sobol sequence instead. An explicit
    ``generator`` wins over ``seeds``; neither touches the global RNG.
    """
    n = int(n)
    d = int(d)
    if n < 1 or d < 1:
        raise ValueError("n and d must be positive")
    if qrng:
        eng = torch.quasirandom.SobolEngine(dimension=d, scramble=True, seed=int(seeds[0]) if seeds else None)
        return eng.draw(n, dtype=torch.float64)
    g = generator
    if g is None and seeds:
        g = torch.Generator()
        g.manual_seed(int(seeds[0]))
    u = torch.rand((n, d), generator=g, dtype=torch.float64)
    # torch.rand is on [0, 1); keep simulated data strictly inside the unit cube
    return clamp_unit(u, 1e-15)


def _log_beta(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    a = _as_tensor(a)
    b = _as_tensor(b, device=a.device, dtype=a.dtype)
    return torch.lgamma(a) + torch.lgamma(b) - torch.lgamma(a + b)


def _betacf(a: torch.Tensor, b: torch.Tensor, x: torch.Tensor, *, max_iter: int = 200, eps: float = 3e-15) -> torch.Tensor:
    # Continued fraction for incomplete beta (modified Lentz).
    tiny = torch.finfo(a.dtype).tiny

    qab = a + b
    qap = a + 1.0
    qam = a - 1.0

    c = torch.ones_like(x)
    d = (1.0 - qab * x / qap).clamp_min(tiny).reciprocal()
    h = d.clone()

    for m in range(1, max_iter + 1):
        m2 = 2.0 * m

        aa = m * (b - m) * x / ((qam + m2) * (a + m2))
        d = (1.0 + aa * d).clamp_min(tiny).reciprocal()
        c = (1.0 + aa / c.clamp_min(tiny))
        h = h * d * c

        aa = -(a + m) * (qab + m) * x / ((a + m2) * (qap + m2))
        d = (1.0 + aa * d).clamp_min(tiny).reciprocal()
        c = (1.0 + aa / c.clamp_min(tiny))
        delta = d * c
        h = h * delta

        if m % 4 == 0 and torch.max(torch.abs(delta - 1.0)).item() < eps:
            break

    return h


def betainc_reg(a: torch.Tensor, b: torch.Tensor, x: torch.Tensor) -> torch.Tensor:
    """Regularized incomplete beta I_x(a, b) in pure torch."""
    x = _as_tensor(x).clamp(0.0, 1.0)
    a = _as_tensor(a, device=x.device, dtype=x.dtype)
    b = _as_tensor(b, device=x.device, dtype=x.dtype)

    tiny = torch.finfo(x.dtype).tiny
    shape = torch.broadcast_shapes(a.shape, b.shape, x.shape)
    x = x.expand(shape)
    out = torch.where(x >= 1.0, torch.ones(shape, dtype=x.dtype, device=x.device),
                      torch.zeros(shape, dtype=x.dtype, device=x.device))

    mask = (x > 0.0) & (x < 1.0)
    if not mask.any():
        return out

    xx = x[mask]
    aa = a.expand(shape)[mask]
    bb = b.expand(shape)[mask]

    bt = torch.exp(aa * torch.log(xx.clamp_min(tiny)) + bb * torch.log1p(-xx).clamp_min(-1e300) - _log_beta(aa, bb))

    use_direct = xx < (aa + 1.0) / (aa + bb + 2.0)

    val = torch.empty_like(xx)
    if use_direct.any():
        idx = use_direct
        val[idx] = (bt[idx] * _betacf(aa[idx], bb[idx], xx[idx]) / aa[idx]).clamp(0.0, 1.0)
    if (~use_direct).any():
        idx = ~use_direct
        val[idx] = (1.0 - bt[idx] * _betacf(bb[idx], aa[idx], 1.0 - xx[idx]) / bb[idx]).clamp(0.0, 1.0)

    out = out.clone()
    out[mask] = val
    return out


def dt(x: torch.Tensor, nu: torch.Tensor) -> torch.Tensor:
    """Student-t probability density function."""
    x = _as_tensor(x)
    nu = _as_tensor(nu, device=x.device, dtype=x.dtype)
    half_nu = nu * 0.5
    half_nup1 = (nu + 1.0) * 0.5
    log_pdf = (torch.lgamma(half_nup1) - torch.lgamma(half_nu)
               - 0.5 * torch.log(nu * math.pi)
               - half_nup1 * torch.log1p(x * x / nu))
    return torch.exp(log_pdf)


def pt(x: torch.Tensor, nu: torch.Tensor) -> torch.Tensor:
    """Student-t cumulative distribution function."""
    x = _as_tensor(x)
    nu = _as_tensor(nu, device=x.device, dtype=x.dtype)
    t = nu / (nu + x * x)
    Ix = betainc_reg(nu * 0.5, torch.full_like(t, 0.5), t)
    return torch.where(x >= 0, 1.0 - 0.5 * Ix, 0.5 * Ix)


def _qt_hill(p: torch.Tensor, nu: torch.Tensor) -> torch.Tensor:
    # Hill (1970) expansion around the normal quantile; starting value only.
    z = qnorm(p)
    g1 = (z ** 3 + z) / 4.0
    g2 = (5.0 * z ** 5 + 16.0 * z ** 3 + 3.0 * z) / 96.0
    g3 = (3.0 * z ** 7 + 19.0 * z ** 5 + 17.0 * z ** 3 - 15.0 * z) / 384.0
    return z + g1 / nu + g2 / (nu * nu) + g3 / (nu * nu * nu)


def qt(p: torch.Tensor, nu: torch.Tensor, *, max_iter: int = 8) -> torch.Tensor:
    """Student-t quantile: Hill start refined with Halley steps.

    Steps that would leave the finite range are rejected, so a poor start in
    the far tails degrades to the previous iterate rather than NaN.
    """
    p = clamp_unit(_as_tensor(p), 1e-15)
    nu = _as_tensor(nu, device=p.device, dtype=p.dtype)
    x = _qt_hill(p, nu)
    tiny = torch.finfo(p.dtype).tiny
    for _ in range(max_iter):
        F = pt(x, nu)
        f = dt(x, nu).clamp_min(tiny)
        r = F - p
        fp = f * (-(nu + 1.0) * x / (nu + x * x))
        step = 2.0 * r * f / (2.0 * f * f - r * fp)
        x_new = x - step
        x = torch.where(torch.isfinite(x_new), x_new, x)
    return x


def pearson_cor(x: torch.Tensor, y: torch.Tensor) -> float:
    x = _as_tensor(x).reshape(-1)
    y = _as_tensor(y, device=x.device, dtype=x.dtype).reshape(-1)
    if x.numel() != y.numel():
        raise ValueError("x and y must have the same length")
    if x.numel() < 2:
        return float("nan")
    xc = x - x.mean()
    yc = y - y.mean()
    num = (xc * yc).sum()
    den = torch.sqrt((xc * xc).sum() * (yc * yc).sum()).clamp_min(torch.finfo(x.dtype).tiny)
    return float((num / den).clamp(-1.0, 1.0).item())


def _count_inversions_merge(ranks_list: list[int], n: int) -> int:
    """Count inversions via iterative bottom-up merge sort, O(n log n)."""
    a = list(ranks_list)
    buf = [0] * n
    inv = 0
    width = 1
    while width < n:
        for start in range(0, n, 2 * width):
            mid = min(start + width, n)
            end = min(start + 2 * width, n)
            i, j, k = start, mid, start
            while i < mid and j < end:
                if a[i] <= a[j]:
                    buf[k] = a[i]
                    i += 1
                else:
                    buf[k] = a[j]
                    inv += mid - i
                    j += 1
                k += 1
            while i < mid:
                buf[k] = a[i]
                i += 1
                k += 1
            while j < end:
                buf[k] = a[j]
                j += 1
                k += 1
        a, buf = buf, a
        width *= 2
    return inv


def kendall_tau(x: torch.Tensor, y: torch.Tensor) -> float:
    """Kendall's tau for continuous data.

    Small samples use the vectorized O(n^2) pair count; larger ones count
    inversions of the y-ranks after sorting by x.
    """
    x = _as_tensor(x).reshape(-1)
    y = _as_tensor(y, device=x.device, dtype=x.dtype).reshape(-1)
    n = int(x.numel())
    if n != int(y.numel()):
        raise ValueError("x and y must have the same length")
    if n < 2:
        return float("nan")

    if n <= 200:
        s = torch.sign(x.unsqueeze(1) - x.unsqueeze(0)) * torch.sign(y.unsqueeze(1) - y.unsqueeze(0))
        iu = torch.triu_indices(n, n, offset=1, device=x.device)
        s_upper = s[iu[0], iu[1]]
        c = int((s_upper > 0).sum().item())
        d = int((s_upper < 0).sum().item())
        if c + d == 0:
            return 0.0
        return max(-1.0, min(1.0, (c - d) / (c + d)))

    idx = torch.argsort(x, stable=True)
    y_sorted = y[idx]
    order = torch.argsort(y_sorted, stable=True)
    ranks = torch.empty_like(order)
    ranks[order] = torch.arange(1, n + 1, device=x.device, dtype=order.dtype)

    inv = _count_inversions_merge(ranks.tolist(), n)
    tau = 1.0 - 4.0 * float(inv) / (float(n) * float(n - 1))
    return float(max(-1.0, min(1.0, tau)))


def _rank(x: torch.Tensor) -> torch.Tensor:
    """Average-tie ranks (1-based) of a 1-D tensor."""
    n = x.numel()
    idx = torch.argsort(x, stable=True)
    xs = x[idx]
    pos = torch.arange(1, n + 1, device=x.device, dtype=torch.float64)
    # group ties and give every member the mean position of its group
    new_group = torch.ones(n, dtype=torch.bool, device=x.device)
    if n > 1:
        new_group[1:] = xs[1:] != xs[:-1]
    gid = torch.cumsum(new_group.to(torch.int64), 0) - 1
    n_groups = int(gid[-1].item()) + 1 if n else 0
    sums = torch.zeros(n_groups, dtype=torch.float64, device=x.device).index_add_(0, gid, pos)
    cnts = torch.zeros(n_groups, dtype=torch.float64, device=x.device).index_add_(0, gid, torch.ones_like(pos))
    ranks = torch.empty(n, dtype=torch.float64, device=x.device)
    ranks[idx] = (sums / cnts)[gid]
    return ranks


def spearman_rho(x: torch.Tensor, y: torch.Tensor) -> float:
    x = _as_tensor(x).reshape(-1)
    y = _as_tensor(y, device=x.device, dtype=x.dtype).reshape(-1)
    n = int(x.numel())
    if n != int(y.numel()):
        raise ValueError("x and y must have the same length")
    if n < 2:
        return float("nan")
    return pearson_cor(_rank(x), _rank(y))


def hoeffding_d(x: torch.Tensor, y: torch.Tensor) -> float:
    """Hoeffding's D statistic, scaled so that perfect dependence gives 1.

    Returns a value in approximately [-0.5, 1]; 0 indicates independence.
    """
    x = _as_tensor(x).reshape(-1)
    y = _as_tensor(y, device=x.device, dtype=x.dtype).reshape(-1)
    n = int(x.numel())
    if n != int(y.numel()):
        raise ValueError("x and y must have the same length")
    if n < 5:
        return float("nan")
    Rx = _rank(x) - 1.0
    Ry = _rank(y) - 1.0
    # Q_i = #{j: x_j < x_i and y_j < y_i}
    if n <= 5000:
        gt_x = (x.unsqueeze(1) > x.unsqueeze(0)).to(x.dtype)
        gt_y = (y.unsqueeze(1) > y.unsqueeze(0)).to(x.dtype)
        Qi = (gt_x * gt_y).sum(dim=1)
    else:
        Qi = torch.zeros(n, device=x.device, dtype=x.dtype)
        for i in range(n):
            Qi[i] = ((x < x[i]) & (y < y[i])).to(x.dtype).sum()

    A1 = (Qi * (Qi - 1.0)).sum().item()
    inner = Rx * Ry - Qi - Rx - Ry + 2.0
    A2 = (Qi * inner).sum().item()
    A3 = (Rx * (Rx - 1.0) * Ry * (Ry - 1.0) - 4.0 * Qi * inner - 2.0 * Qi * (Qi - 1.0)).sum().item()

    nf = float(n)
    P3 = nf * (nf - 1.0) * (nf - 2.0)
    P4 = P3 * (nf - 3.0)
    P5 = P4 * (nf - 4.0)
    D = 30.0 * (A1 / P3 - 2.0 * A2 / P4 + A3 / P5)
    return float(max(-0.5, min(1.0, D)))


def dependence_measure(x: torch.Tensor, y: torch.Tensor, method: str = "tau") -> float:
    """Dispatch to a rank dependence measure by name.

    ``method`` is one of "tau"/"kendall", "rho"/"spearman",
    "hoeffd"/"hoeffding" or "cor"/"pearson".
    """
    m = method.lower()
    if m in ("tau", "kendall", "ktau"):
        return kendall_tau(x, y)
    if m in ("rho", "spearman", "srho"):
        return spearman_rho(x, y)
    if m in ("hoeffd", "hoeffding", "d"):
        return hoeffding_d(x, y)
    if m in ("cor", "pearson", "prho"):
        return pearson_cor(x, y)
    raise ValueError(f"Unknown dependence measure method: {method!r}")


@lru_cache(maxsize=16)
def gauss_legendre(n: int) -> tuple[torch.Tensor, torch.Tensor]:
    """Nodes and weights of the n-point Gauss-Legendre rule on [0, 1].

    Computed with the Golub-Welsch eigenvalue method. The returned tensors
    are cached and must not be modified in place.
    """
    n = int(n)
    if n < 1:
        raise ValueError("n must be positive")
    k = torch.arange(1, n, dtype=torch.float64)
    off = k / torch.sqrt(4.0 * k * k - 1.0)
    J = torch.diag(off, 1) + torch.diag(off, -1)
    nodes, vecs = torch.linalg.eigh(J)
    weights = 2.0 * vecs[0, :] ** 2
    return 0.5 * (nodes + 1.0), 0.5 * weights
