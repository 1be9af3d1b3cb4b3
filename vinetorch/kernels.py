"""Canonical (unrotated) bivariate copula kernels.

Each family is described once by a :class:`FamilyKernel` holding its
density, distribution, first h-function and its inverse, Kendall's tau
conversions and parameter bounds. All supported families are exchangeable,
so the second h-function and its inverse are obtained by swapping columns.
Rotations are handled by :class:`vinetorch.bicop.Bicop`.

Kernel callables take ``u`` of shape (n, 2) and a 1-D parameter tensor.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable

import torch

from . import stats
from .families import BicopFamily
from .inversion import invert_f

_TINY = torch.finfo(torch.float64).tiny
_N_TAU_NODES = 256
_N_CDF_NODES = 64

Kernel = Callable[[torch.Tensor, torch.Tensor], torch.Tensor]


@dataclass(frozen=True)
class FamilyKernel:
    family: BicopFamily
    lower: tuple[float, ...]
    upper: tuple[float, ...]
    start: tuple[float, ...]
    pdf: Kernel
    cdf: Kernel
    hfunc1: Kernel
    hinv1: Kernel
    tau: Callable[[torch.Tensor], float]
    tau_inv: Callable[[float, torch.Tensor], torch.Tensor]

    @property
    def npars(self) -> int:
        return len(self.lower)

    def hfunc2(self, u: torch.Tensor, par: torch.Tensor) -> torch.Tensor:
        return self.hfunc1(stats.swap_cols(u), par)

    def hinv2(self, u: torch.Tensor, par: torch.Tensor) -> torch.Tensor:
        return self.hinv1(stats.swap_cols(u), par)

    def bounds(self, dtype=torch.float64) -> tuple[torch.Tensor, torch.Tensor]:
        return torch.tensor(self.lower, dtype=dtype), torch.tensor(self.upper, dtype=dtype)


def _clip_to(par: torch.Tensor, lower: tuple[float, ...], upper: tuple[float, ...]) -> torch.Tensor:
    lb = torch.tensor(lower, dtype=par.dtype)
    ub = torch.tensor(upper, dtype=par.dtype)
    return torch.max(torch.min(par, ub), lb)


def _cdf_by_hfunc1(u: torch.Tensor, par: torch.Tensor, hfunc1: Kernel) -> torch.Tensor:
    # C(u1, u2) = int_0^u1 h1(s, u2) ds, Gauss-Legendre in s
    nodes, weights = stats.gauss_legendre(_N_CDF_NODES)
    n = u.shape[0]
    m = nodes.numel()
    s = u[:, 0:1] * nodes.to(u.dtype).unsqueeze(0)
    uu = torch.stack([s.reshape(-1), u[:, 1:2].expand(n, m).reshape(-1)], dim=1)
    h = hfunc1(uu, par).reshape(n, m)
    return (u[:, 0] * (h * weights.to(u.dtype)).sum(dim=1)).clamp(0.0, 1.0)


def _invert_tau_first_param(
    tau: float,
    par: torch.Tensor,
    tau_fn: Callable[[torch.Tensor], float],
    lo: float,
    hi: float,
) -> torch.Tensor:
    # tau_fn is increasing in the first parameter; other parameters are held fixed
    rest = par.reshape(-1)[1:]

    def f(theta: torch.Tensor) -> torch.Tensor:
        return torch.tensor(tau_fn(torch.cat([theta.reshape(1), rest])), dtype=torch.float64)

    theta = invert_f(torch.tensor(float(tau), dtype=torch.float64), f, lb=lo, ub=hi, n_iter=60)
    return torch.cat([theta.reshape(1), rest])


def _archimedean_tau(par: torch.Tensor, phi, phi_p) -> float:
    # tau = 1 + 4 * int_0^1 phi(t) / phi'(t) dt
    nodes, weights = stats.gauss_legendre(_N_TAU_NODES)
    ratio = phi(nodes, par) / phi_p(nodes, par)
    ratio = torch.where(torch.isfinite(ratio), ratio, torch.zeros_like(ratio))
    return float(1.0 + 4.0 * (ratio * weights).sum().item())


# ---------------------------------------------------------------- independence

def _indep_pdf(u, par):
    return torch.ones_like(u[:, 0])


def _indep_cdf(u, par):
    return u[:, 0] * u[:, 1]


def _indep_h1(u, par):
    return u[:, 1].clone()


INDEP = FamilyKernel(
    family=BicopFamily.indep,
    lower=(), upper=(), start=(),
    pdf=_indep_pdf,
    cdf=_indep_cdf,
    hfunc1=_indep_h1,
    hinv1=_indep_h1,
    tau=lambda par: 0.0,
    tau_inv=lambda tau, par: torch.empty((0,), dtype=torch.float64),
)


# ---------------------------------------------------------------- gaussian

def _rho(par: torch.Tensor) -> torch.Tensor:
    return par[0].clamp(-0.999999, 0.999999)


def _gauss_pdf(u, par):
    rho = _rho(par)
    x = stats.qnorm(u)
    x1 = x[:, 0]
    x2 = x[:, 1]
    r2 = 1.0 - rho * rho
    expo = -0.5 * (x1 * x1 - 2.0 * rho * x1 * x2 + x2 * x2) / r2 + 0.5 * (x1 * x1 + x2 * x2)
    return torch.exp(expo) / torch.sqrt(r2)


def _gauss_h1(u, par):
    rho = _rho(par)
    x = stats.qnorm(u)
    num = x[:, 1] - rho * x[:, 0]
    h = stats.pnorm(num / torch.sqrt(1.0 - rho * rho))
    return stats.clamp_boundary(h, num, "gaussian hfunc")


def _gauss_hinv1(u, par):
    rho = _rho(par)
    x = stats.qnorm(u)
    return stats.pnorm(x[:, 1] * torch.sqrt(1.0 - rho * rho) + rho * x[:, 0])


def _gauss_cdf(u, par):
    return _cdf_by_hfunc1(u, par, _gauss_h1)


def _elliptical_tau(par: torch.Tensor) -> float:
    rho = max(-1.0, min(1.0, float(par[0])))
    return 2.0 / math.pi * math.asin(rho)


def _gauss_tau_inv(tau: float, par: torch.Tensor) -> torch.Tensor:
    return torch.tensor([math.sin(math.pi * float(tau) / 2.0)], dtype=torch.float64)


GAUSSIAN = FamilyKernel(
    family=BicopFamily.gaussian,
    lower=(-1.0,), upper=(1.0,), start=(0.0,),
    pdf=_gauss_pdf,
    cdf=_gauss_cdf,
    hfunc1=_gauss_h1,
    hinv1=_gauss_hinv1,
    tau=_elliptical_tau,
    tau_inv=_gauss_tau_inv,
)


# ---------------------------------------------------------------- student

def _nu(par: torch.Tensor) -> torch.Tensor:
    return par[1].clamp_min(2.0)


def _student_pdf(u, par):
    rho = _rho(par)
    nu = _nu(par)
    x = stats.qt(u.reshape(-1), nu).reshape(u.shape)
    x1 = x[:, 0]
    x2 = x[:, 1]
    r2 = (1.0 - rho * rho).clamp_min(1e-20)
    log_c = (torch.lgamma((nu + 2.0) * 0.5) + torch.lgamma(nu * 0.5)
             - 2.0 * torch.lgamma((nu + 1.0) * 0.5) - 0.5 * torch.log(r2))
    log_c = log_c + (nu + 1.0) * 0.5 * (torch.log1p(x1 * x1 / nu) + torch.log1p(x2 * x2 / nu))
    Q = (x1 * x1 - 2.0 * rho * x1 * x2 + x2 * x2) / (nu * r2)
    return torch.exp(log_c - (nu + 2.0) * 0.5 * torch.log1p(Q))


def _student_h1(u, par):
    rho = _rho(par)
    nu = _nu(par)
    x = stats.qt(u.reshape(-1), nu).reshape(u.shape)
    x1 = x[:, 0]
    num = x[:, 1] - rho * x1
    arg = num / torch.sqrt((nu + x1 * x1) * (1.0 - rho * rho) / (nu + 1.0))
    return stats.clamp_boundary(stats.pt(arg, nu + 1.0), num, "student hfunc")


def _student_hinv1(u, par):
    rho = _rho(par)
    nu = _nu(par)
    x1 = stats.qt(u[:, 0], nu)
    q = stats.qt(u[:, 1], nu + 1.0)
    x2 = rho * x1 + q * torch.sqrt((nu + x1 * x1) * (1.0 - rho * rho) / (nu + 1.0))
    return stats.pt(x2, nu)


def _student_cdf(u, par):
    return _cdf_by_hfunc1(u, par, _student_h1)


def _student_tau_inv(tau: float, par: torch.Tensor) -> torch.Tensor:
    nu = float(par[1]) if par.numel() > 1 else 4.0
    return torch.tensor([math.sin(math.pi * float(tau) / 2.0), nu], dtype=torch.float64)


STUDENT = FamilyKernel(
    family=BicopFamily.student,
    lower=(-1.0, 2.0), upper=(1.0, 50.0), start=(0.0, 50.0),
    pdf=_student_pdf,
    cdf=_student_cdf,
    hfunc1=_student_h1,
    hinv1=_student_hinv1,
    tau=_elliptical_tau,
    tau_inv=_student_tau_inv,
)


# ---------------------------------------------------------------- clayton

def _clayton_terms(u, theta):
    # a_i = u_i^{-theta} - 1, kept in expm1 form for small theta
    log_u1 = torch.log(u[:, 0])
    log_u2 = torch.log(u[:, 1])
    a1 = torch.expm1(-theta * log_u1)
    a2 = torch.expm1(-theta * log_u2)
    return log_u1, log_u2, a1, a2


def _clayton_pdf(u, par):
    theta = par[0]
    log_u1, log_u2, a1, a2 = _clayton_terms(u, theta)
    log_c = torch.log1p(theta) + (-1.0 - theta) * (log_u1 + log_u2) + (-2.0 - 1.0 / theta) * torch.log1p(a1 + a2)
    return torch.exp(log_c)


def _clayton_cdf(u, par):
    theta = par[0]
    _, _, a1, a2 = _clayton_terms(u, theta)
    return torch.exp(-torch.log1p(a1 + a2) / theta)


def _clayton_h1(u, par):
    theta = par[0]
    log_u1, _, a1, a2 = _clayton_terms(u, theta)
    return torch.exp((-theta - 1.0) * log_u1 + (-1.0 / theta - 1.0) * torch.log1p(a1 + a2)).clamp(0.0, 1.0)


def _clayton_hinv1(u, par):
    theta = par[0]
    log_u1 = torch.log(u[:, 0])
    log_w = torch.log(u[:, 1].clamp_min(_TINY))
    # u2^{-theta} - 1 = u1^{-theta} * (w^{-theta/(theta+1)} - 1)
    rhs = torch.exp(-theta * log_u1) * torch.expm1(-theta / (theta + 1.0) * log_w)
    return torch.exp(-torch.log1p(rhs) / theta).clamp(0.0, 1.0)


CLAYTON = FamilyKernel(
    family=BicopFamily.clayton,
    lower=(1e-10,), upper=(28.0,), start=(1e-10,),
    pdf=_clayton_pdf,
    cdf=_clayton_cdf,
    hfunc1=_clayton_h1,
    hinv1=_clayton_hinv1,
    tau=lambda par: float(par[0]) / (float(par[0]) + 2.0),
    tau_inv=lambda tau, par: _clip_to(
        torch.tensor([2.0 * float(tau) / max(1e-12, 1.0 - float(tau))], dtype=torch.float64), (1e-10,), (28.0,)
    ),
)


# ---------------------------------------------------------------- frank

def _frank_pdf(u, par):
    theta = par[0]
    if float(theta) == 0.0:
        return torch.ones_like(u[:, 0])
    eu = torch.expm1(-theta * u[:, 0])
    ev = torch.expm1(-theta * u[:, 1])
    ed = torch.expm1(-theta)
    denom = ed + eu * ev
    return (-theta) * ed * (eu + 1.0) * (ev + 1.0) / (denom * denom)


def _frank_cdf(u, par):
    theta = par[0]
    if float(theta) == 0.0:
        return u[:, 0] * u[:, 1]
    eu = torch.expm1(-theta * u[:, 0])
    ev = torch.expm1(-theta * u[:, 1])
    ed = torch.expm1(-theta)
    return ((-1.0 / theta) * torch.log1p(eu * ev / ed)).clamp(0.0, 1.0)


def _frank_h1(u, par):
    theta = par[0]
    if float(theta) == 0.0:
        return u[:, 1].clone()
    eu = torch.expm1(-theta * u[:, 0])
    ev = torch.expm1(-theta * u[:, 1])
    ed = torch.expm1(-theta)
    return ((eu + 1.0) * ev / (ed + eu * ev)).clamp(0.0, 1.0)


def _frank_hinv1(u, par):
    theta = par[0]
    if float(theta) == 0.0:
        return u[:, 1].clone()
    w = u[:, 1]
    eu = torch.expm1(-theta * u[:, 0])
    ed = torch.expm1(-theta)
    ev = w * ed / (eu + 1.0 - w * eu)
    return ((-1.0 / theta) * torch.log1p(ev)).clamp(0.0, 1.0)


def _frank_tau(par: torch.Tensor) -> float:
    theta = float(par[0])
    if abs(theta) < 1e-5:
        return theta / 9.0
    # Debye integral int_0^theta t / (e^t - 1) dt
    nodes, weights = stats.gauss_legendre(64)
    t = theta * nodes
    debye = theta * float((weights * t / torch.expm1(t)).sum().item())
    return 1.0 - 4.0 / theta + 4.0 * debye / (theta * theta)


def _frank_tau_inv(tau: float, par: torch.Tensor) -> torch.Tensor:
    if abs(float(tau)) < 1e-10:
        return torch.zeros(1, dtype=torch.float64)
    return _invert_tau_first_param(tau, torch.zeros(1, dtype=torch.float64), _frank_tau, -35.0, 35.0)


FRANK = FamilyKernel(
    family=BicopFamily.frank,
    lower=(-35.0,), upper=(35.0,), start=(0.0,),
    pdf=_frank_pdf,
    cdf=_frank_cdf,
    hfunc1=_frank_h1,
    hinv1=_frank_hinv1,
    tau=_frank_tau,
    tau_inv=_frank_tau_inv,
)


# ---------------------------------------------------------------- generator-based families
#
# For an Archimedean copula with generator phi and inverse psi:
#   C(u1, u2)  = psi(phi(u1) + phi(u2))
#   h1(u1, u2) = phi'(u1) / phi'(C)
#   c(u1, u2)  = phi''(C) * |phi'(u1)| * |phi'(u2)| / |phi'(C)|^3
#
# Generator functions take the point t together with its complement 1 - t,
# and psi returns both C and 1 - C. Near the upper corner 1 - C cannot be
# recovered from C in float64, so each side is computed from its own formula.

_LN2 = math.log(2.0)


@dataclass(frozen=True)
class _Generator:
    phi: Callable[[torch.Tensor, torch.Tensor, torch.Tensor], torch.Tensor]
    phi_p: Callable[[torch.Tensor, torch.Tensor, torch.Tensor], torch.Tensor]
    phi_pp: Callable[[torch.Tensor, torch.Tensor, torch.Tensor], torch.Tensor]
    psi: Callable[[torch.Tensor, torch.Tensor], tuple[torch.Tensor, torch.Tensor]]


def _log_of(t, tb):
    """log(t), accurate on both halves of (0, 1) given tb = 1 - t."""
    return torch.where(t < 0.5, torch.log(t.clamp_min(_TINY)), torch.log1p(-tb))


def _neg_log1m(a, oma):
    # -log(1 - a) given a and oma = 1 - a
    return torch.where(a < 0.5, -torch.log1p(-a), -torch.log(oma.clamp_min(_TINY)))


def _one_minus_q_pow(r, inv):
    # q = 1 - exp(-r); returns (1 - q^inv, q^inv)
    log_q = torch.where(r > _LN2, torch.log1p(-torch.exp(-r)), torch.log(-torch.expm1(-r)))
    return -torch.expm1(log_q * inv), torch.exp(log_q * inv)


def _gen_copula_value(gen: _Generator, u, par):
    u1 = u[:, 0]
    u2 = u[:, 1]
    p1 = gen.phi(u1, 1.0 - u1, par)
    p2 = gen.phi(u2, 1.0 - u2, par)
    c, cb = gen.psi((p1 + p2).clamp_min(0.0), par)
    return c.clamp_min(_TINY), cb.clamp_min(_TINY), p1, p2


def _gen_cdf(gen: _Generator) -> Kernel:
    def cdf(u, par):
        c, _, _, _ = _gen_copula_value(gen, u, par)
        return c.clamp(0.0, 1.0)
    return cdf


def _gen_h1(gen: _Generator, where: str) -> Kernel:
    def hfunc1(u, par):
        c, cb, p1, p2 = _gen_copula_value(gen, u, par)
        u1 = u[:, 0]
        h = gen.phi_p(u1, 1.0 - u1, par) / gen.phi_p(c, cb, par)
        # phi is decreasing: p1 < p2 means u1 > u2, where h tends to 0
        return stats.clamp_boundary(h, p1 - p2, where)
    return hfunc1


def _gen_pdf(gen: _Generator) -> Kernel:
    def pdf(u, par):
        c, cb, _, _ = _gen_copula_value(gen, u, par)
        u1 = u[:, 0]
        u2 = u[:, 1]
        log_pdf = (
            torch.log(gen.phi_pp(c, cb, par).abs().clamp_min(_TINY))
            + torch.log(gen.phi_p(u1, 1.0 - u1, par).abs().clamp_min(_TINY))
            + torch.log(gen.phi_p(u2, 1.0 - u2, par).abs().clamp_min(_TINY))
            - 3.0 * torch.log(gen.phi_p(c, cb, par).abs().clamp_min(_TINY))
        )
        out = torch.exp(log_pdf)
        return torch.where(torch.isfinite(out), out, torch.zeros_like(out))
    return pdf


def _gen_hinv1(hfunc1: Kernel) -> Kernel:
    def hinv1(u, par):
        u1 = u[:, 0]

        def h_of_u2(v: torch.Tensor) -> torch.Tensor:
            return hfunc1(torch.stack([u1, v], dim=1), par)

        return invert_f(u[:, 1], h_of_u2)
    return hinv1


# gumbel: phi(t) = (-log t)^theta

def _gumbel_nl(t, tb):
    return (-_log_of(t, tb)).clamp_min(_TINY)


def _gumbel_phi(t, tb, par):
    return torch.pow(_gumbel_nl(t, tb), par[0])


def _gumbel_phi_p(t, tb, par):
    theta = par[0]
    return -theta * torch.pow(_gumbel_nl(t, tb), theta - 1.0) / t.clamp_min(_TINY)


def _gumbel_phi_pp(t, tb, par):
    theta = par[0]
    nl = _gumbel_nl(t, tb)
    tt = t.clamp_min(_TINY)
    return theta * torch.pow(nl, theta - 2.0) * (nl + theta - 1.0) / (tt * tt)


def _gumbel_psi(s, par):
    w = torch.pow(s, 1.0 / par[0])
    return torch.exp(-w), -torch.expm1(-w)


# joe: phi(t) = -log(1 - (1 - t)^theta)

def _joe_parts(t, tb, theta):
    log_b = _log_of(tb, t)
    a = torch.exp(theta * log_b)
    oma = (-torch.expm1(theta * log_b)).clamp_min(_TINY)
    return log_b, a, oma


def _joe_phi(t, tb, par):
    _, a, oma = _joe_parts(t, tb, par[0])
    return _neg_log1m(a, oma)


def _joe_phi_p(t, tb, par):
    theta = par[0]
    log_b, _, oma = _joe_parts(t, tb, theta)
    return -theta * torch.exp((theta - 1.0) * log_b) / oma


def _joe_phi_pp(t, tb, par):
    theta = par[0]
    log_b, a, oma = _joe_parts(t, tb, theta)
    return theta * torch.exp((theta - 2.0) * log_b) * (theta - 1.0 + a) / (oma * oma)


def _joe_psi(s, par):
    return _one_minus_q_pow(s, 1.0 / par[0])


# bb1: phi(t) = (t^{-theta} - 1)^delta

def _bb1_parts(t, tb, theta):
    log_t = _log_of(t, tb)
    x = torch.expm1(-theta * log_t).clamp_min(_TINY)
    return log_t, x


def _bb1_phi(t, tb, par):
    _, x = _bb1_parts(t, tb, par[0])
    return torch.pow(x, par[1])


def _bb1_phi_p(t, tb, par):
    theta, delta = par[0], par[1]
    log_t, x = _bb1_parts(t, tb, theta)
    return -delta * theta * torch.exp((-theta - 1.0) * log_t) * torch.pow(x, delta - 1.0)


def _bb1_phi_pp(t, tb, par):
    theta, delta = par[0], par[1]
    log_t, x = _bb1_parts(t, tb, theta)
    big_t = torch.exp(-theta * log_t)
    return (delta * theta * torch.exp((-theta - 2.0) * log_t) * torch.pow(x, delta - 2.0)
            * ((delta - 1.0) * theta * big_t + (theta + 1.0) * x))


def _bb1_psi(s, par):
    theta, delta = par[0], par[1]
    log_c = -torch.log1p(torch.pow(s, 1.0 / delta)) / theta
    return torch.exp(log_c), -torch.expm1(log_c)


# bb6: phi(t) = (-log(1 - (1 - t)^theta))^delta

def _bb6_parts(t, tb, theta):
    log_b, a, oma = _joe_parts(t, tb, theta)
    ll = _neg_log1m(a, oma).clamp_min(_TINY)
    return log_b, a, oma, ll


def _bb6_phi(t, tb, par):
    _, _, _, ll = _bb6_parts(t, tb, par[0])
    return torch.pow(ll, par[1])


def _bb6_phi_p(t, tb, par):
    theta, delta = par[0], par[1]
    log_b, _, oma, ll = _bb6_parts(t, tb, theta)
    return -delta * theta * torch.pow(ll, delta - 1.0) * torch.exp((theta - 1.0) * log_b) / oma


def _bb6_phi_pp(t, tb, par):
    theta, delta = par[0], par[1]
    log_b, a, oma, ll = _bb6_parts(t, tb, theta)
    return (delta * theta * torch.pow(ll, delta - 2.0) * torch.exp((theta - 2.0) * log_b)
            * ((delta - 1.0) * theta * a + ll * (theta - 1.0 + a)) / (oma * oma))


def _bb6_psi(s, par):
    theta, delta = par[0], par[1]
    return _one_minus_q_pow(torch.pow(s, 1.0 / delta), 1.0 / theta)


# bb7: phi(t) = (1 - (1 - t)^theta)^{-delta} - 1

def _bb7_phi(t, tb, par):
    theta, delta = par[0], par[1]
    _, a, oma = _joe_parts(t, tb, theta)
    return torch.expm1(delta * _neg_log1m(a, oma))


def _bb7_phi_p(t, tb, par):
    theta, delta = par[0], par[1]
    log_b, a, oma = _joe_parts(t, tb, theta)
    ll = _neg_log1m(a, oma)
    return -delta * theta * torch.exp((delta + 1.0) * ll + (theta - 1.0) * log_b)


def _bb7_phi_pp(t, tb, par):
    theta, delta = par[0], par[1]
    log_b, a, oma = _joe_parts(t, tb, theta)
    ll = _neg_log1m(a, oma)
    return (delta * theta * torch.exp((delta + 2.0) * ll + (theta - 2.0) * log_b)
            * (theta - 1.0 + (1.0 + delta * theta) * a))


def _bb7_psi(s, par):
    theta, delta = par[0], par[1]
    return _one_minus_q_pow(torch.log1p(s) / delta, 1.0 / theta)


# bb8: phi(t) = -log((1 - (1 - delta t)^theta) / (1 - (1 - delta)^theta))

def _bb8_parts(t, tb, par):
    theta, delta = par[0], par[1]
    log_c = torch.where(t < 0.5, torch.log1p(-delta * t), torch.log((1.0 - delta) + delta * tb))
    ct = torch.exp(theta * log_c)
    oma = (-torch.expm1(theta * log_c)).clamp_min(_TINY)
    return log_c, ct, oma


def _bb8_phi(t, tb, par):
    theta, delta = par[0], par[1]
    eta = -torch.expm1(theta * torch.log1p(-delta))
    _, _, oma = _bb8_parts(t, tb, par)
    return torch.log(eta) - torch.log(oma)


def _bb8_phi_p(t, tb, par):
    theta, delta = par[0], par[1]
    log_c, _, oma = _bb8_parts(t, tb, par)
    return -delta * theta * torch.exp((theta - 1.0) * log_c) / oma


def _bb8_phi_pp(t, tb, par):
    theta, delta = par[0], par[1]
    log_c, ct, oma = _bb8_parts(t, tb, par)
    return delta * delta * theta * torch.exp((theta - 2.0) * log_c) * (theta - 1.0 + ct) / (oma * oma)


def _bb8_psi(s, par):
    theta, delta = par[0], par[1]
    log_rest = theta * torch.log1p(-delta)  # log((1 - delta)^theta), -inf at delta = 1
    eta = -torch.expm1(log_rest)
    c = -torch.expm1(torch.log1p(-eta * torch.exp(-s)) / theta) / delta
    q = -torch.expm1(-s)
    # 1 - C = ((1 - delta) * ((1 + eta q / (1 - delta)^theta)^{1/theta} - 1)) / delta
    cb_mix = (1.0 - delta) * torch.expm1(torch.log1p(eta * q * torch.exp(-log_rest)) / theta) / delta
    cb_joe = torch.pow(q, 1.0 / theta)
    cb = torch.where(torch.isfinite(log_rest) & torch.isfinite(cb_mix), cb_mix, cb_joe)
    return c, cb


_GENERATORS = {
    BicopFamily.gumbel: _Generator(_gumbel_phi, _gumbel_phi_p, _gumbel_phi_pp, _gumbel_psi),
    BicopFamily.joe: _Generator(_joe_phi, _joe_phi_p, _joe_phi_pp, _joe_psi),
    BicopFamily.bb1: _Generator(_bb1_phi, _bb1_phi_p, _bb1_phi_pp, _bb1_psi),
    BicopFamily.bb6: _Generator(_bb6_phi, _bb6_phi_p, _bb6_phi_pp, _bb6_psi),
    BicopFamily.bb7: _Generator(_bb7_phi, _bb7_phi_p, _bb7_phi_pp, _bb7_psi),
    BicopFamily.bb8: _Generator(_bb8_phi, _bb8_phi_p, _bb8_phi_pp, _bb8_psi),
}


def _quadrature_tau(family: BicopFamily) -> Callable[[torch.Tensor], float]:
    gen = _GENERATORS[family]

    def tau(par: torch.Tensor) -> float:
        return _archimedean_tau(
            par,
            lambda t, p: gen.phi(t, 1.0 - t, p),
            lambda t, p: gen.phi_p(t, 1.0 - t, p),
        )
    return tau


def _gumbel_tau_inv(tau: float, par: torch.Tensor) -> torch.Tensor:
    theta = 1.0 / max(1e-12, 1.0 - float(tau))
    return _clip_to(torch.tensor([theta], dtype=torch.float64), (1.0,), (50.0,))


def _bb1_tau(par: torch.Tensor) -> float:
    theta, delta = float(par[0]), float(par[1])
    return 1.0 - 2.0 / (delta * (theta + 2.0))


def _bb1_tau_inv(tau: float, par: torch.Tensor) -> torch.Tensor:
    delta = float(par[1])
    theta = 2.0 / (delta * max(1e-12, 1.0 - float(tau))) - 2.0
    return _clip_to(torch.tensor([theta, delta], dtype=torch.float64), (1e-4, 1.0), (7.0, 7.0))


def _bisect_tau_inv(family: BicopFamily, lo: float, hi: float):
    tau_fn = _quadrature_tau(family)

    def tau_inv(tau: float, par: torch.Tensor) -> torch.Tensor:
        return _invert_tau_first_param(tau, par.to(torch.float64), tau_fn, lo, hi)
    return tau_inv


def _generator_kernel(family, lower, upper, start, tau, tau_inv) -> FamilyKernel:
    gen = _GENERATORS[family]
    h1 = _gen_h1(gen, f"{family.value} hfunc")
    return FamilyKernel(
        family=family,
        lower=lower, upper=upper, start=start,
        pdf=_gen_pdf(gen),
        cdf=_gen_cdf(gen),
        hfunc1=h1,
        hinv1=_gen_hinv1(h1),
        tau=tau,
        tau_inv=tau_inv,
    )


GUMBEL = _generator_kernel(
    BicopFamily.gumbel, (1.0,), (50.0,), (1.0,),
    tau=lambda par: (float(par[0]) - 1.0) / float(par[0]),
    tau_inv=_gumbel_tau_inv,
)
JOE = _generator_kernel(
    BicopFamily.joe, (1.0,), (30.0,), (1.0,),
    tau=_quadrature_tau(BicopFamily.joe),
    tau_inv=_bisect_tau_inv(BicopFamily.joe, 1.0, 30.0),
)
BB1 = _generator_kernel(
    BicopFamily.bb1, (1e-4, 1.0), (7.0, 7.0), (0.5, 1.5),
    tau=_bb1_tau,
    tau_inv=_bb1_tau_inv,
)
BB6 = _generator_kernel(
    BicopFamily.bb6, (1.0, 1.0), (6.0, 8.0), (1.5, 1.5),
    tau=_quadrature_tau(BicopFamily.bb6),
    tau_inv=_bisect_tau_inv(BicopFamily.bb6, 1.0, 6.0),
)
BB7 = _generator_kernel(
    BicopFamily.bb7, (1.0, 0.01), (6.0, 25.0), (1.5, 0.5),
    tau=_quadrature_tau(BicopFamily.bb7),
    tau_inv=_bisect_tau_inv(BicopFamily.bb7, 1.0, 6.0),
)
BB8 = _generator_kernel(
    BicopFamily.bb8, (1.0, 1e-4), (8.0, 1.0), (2.0, 0.7),
    tau=_quadrature_tau(BicopFamily.bb8),
    tau_inv=_bisect_tau_inv(BicopFamily.bb8, 1.0, 8.0),
)


KERNELS: dict[BicopFamily, FamilyKernel] = {
    k.family: k for k in (INDEP, GAUSSIAN, STUDENT, CLAYTON, GUMBEL, FRANK, JOE, BB1, BB6, BB7, BB8)
}


def get_kernel(family: BicopFamily) -> FamilyKernel:
    try:
        return KERNELS[family]
    except KeyError as e:
        raise NotImplementedError(f"no kernel for family {family}") from e
