"""Bicop: parametric bivariate copula with rotations, fitting and selection.

A ``Bicop`` is an immutable description (family, rotation, parameters).
Evaluation delegates to the canonical kernel of its family after rotating
the data counter-clockwise; ``fit`` and ``select`` return new instances.
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, replace
from typing import Sequence

import torch

from . import families as _fam
from . import stats
from .errors import OptimizationWarning, ParameterBoundsError
from .families import BicopFamily, family_can_rotate, normalize_family
from .fit_controls import FitControlsBicop
from .kernels import FamilyKernel, get_kernel
from .optimize import OptimizeResult, coordinate_descent_maximize, golden_section_maximize

logger = logging.getLogger(__name__)

_ROTATIONS = (0, 90, 180, 270)


def _check_rotation(rotation: int):
    if rotation not in _ROTATIONS:
        raise ValueError(f"rotation must be one of {_ROTATIONS}, got {rotation}")


def _rotate_data(u: torch.Tensor, rotation: int) -> torch.Tensor:
    # Counter-clockwise rotation of the unit square.
    if rotation == 0:
        return u
    if rotation == 90:
        return torch.stack([u[:, 1], 1.0 - u[:, 0]], dim=1)
    if rotation == 180:
        return 1.0 - u
    if rotation == 270:
        return torch.stack([1.0 - u[:, 1], u[:, 0]], dim=1)
    _check_rotation(rotation)
    raise AssertionError("unreachable")


def _winsorize_tau(tau: float) -> float:
    sign = -1.0 if tau < 0 else 1.0
    at = abs(float(tau))
    if at < 0.01:
        at = 0.01
    elif at > 0.9:
        at = 0.9
    return sign * at


def _prep(u) -> torch.Tensor:
    u = torch.as_tensor(u, dtype=torch.float64)
    if u.dim() == 1 and u.numel() == 2:
        u = u.reshape(1, 2)
    if u.dim() != 2 or u.shape[1] < 2:
        raise ValueError("u must have shape (n, 2)")
    return stats.clamp_unit(u[:, :2])


@dataclass(frozen=True, eq=False)
class Bicop:
    family: BicopFamily = BicopFamily.indep
    rotation: int = 0
    parameters: torch.Tensor | None = None
    nobs: int = 0
    fit_loglik: float | None = None
    converged: bool = True

    def __post_init__(self):
        fam = normalize_family(self.family)
        object.__setattr__(self, "family", fam)
        rot = int(self.rotation)
        _check_rotation(rot)
        object.__setattr__(self, "rotation", rot)

        kern = get_kernel(fam)
        if self.parameters is None:
            par = torch.tensor(kern.start, dtype=torch.float64)
        else:
            par = torch.as_tensor(self.parameters, dtype=torch.float64).detach().reshape(-1).clone()
        if par.numel() != kern.npars:
            raise ParameterBoundsError(
                f"family {fam.value} takes {kern.npars} parameter(s), got {par.numel()}"
            )
        if kern.npars:
            lb, ub = kern.bounds()
            if not bool(torch.isfinite(par).all()) or bool((par < lb).any()) or bool((par > ub).any()):
                raise ParameterBoundsError(
                    f"parameters {par.tolist()} outside bounds [{list(kern.lower)}, {list(kern.upper)}] "
                    f"for family {fam.value}"
                )
        object.__setattr__(self, "parameters", par)

    # ---- construction / serialization ----

    @classmethod
    def from_family(
        cls,
        family: str | BicopFamily,
        *,
        rotation: int = 0,
        parameters: torch.Tensor | Sequence[float] | None = None,
    ) -> "Bicop":
        return cls(family=normalize_family(family), rotation=int(rotation), parameters=parameters)

    @classmethod
    def from_triple(cls, triple: tuple) -> "Bicop":
        """Rebuild from ``(family_name, rotation, [parameters])``."""
        family, rotation, parameters = triple
        return cls(family=normalize_family(family), rotation=int(rotation),
                   parameters=torch.as_tensor(list(parameters), dtype=torch.float64))

    def to_triple(self) -> tuple[str, int, list[float]]:
        return (self.family.value, int(self.rotation), [float(v) for v in self.parameters.tolist()])

    def str(self) -> str:
        """Human-readable description."""
        p = self.parameters
        parts = [f"<vinetorch.Bicop> family: {self.family.value}"]
        if self.rotation != 0:
            parts.append(f"rotation: {self.rotation}")
        if p.numel() > 0:
            parts.append("parameters: [" + ", ".join(f"{v:.4f}" for v in p.tolist()) + "]")
        if self.nobs > 0:
            parts.append(f"nobs: {self.nobs}")
        return ", ".join(parts)

    # ---- properties ----

    @property
    def _kernel(self) -> FamilyKernel:
        return get_kernel(self.family)

    @property
    def _rot(self) -> int:
        # radially symmetric families keep their rotation label but evaluate unrotated
        return self.rotation if family_can_rotate(self.family) else 0

    @property
    def npars(self) -> int:
        return self._kernel.npars

    def get_npars(self) -> int:
        return self.npars

    @property
    def parameters_lower_bounds(self) -> torch.Tensor:
        return self._kernel.bounds()[0]

    @property
    def parameters_upper_bounds(self) -> torch.Tensor:
        return self._kernel.bounds()[1]

    @property
    def tau(self) -> float:
        return self.parameters_to_tau()

    # ---- evaluation ----

    def pdf(self, u: torch.Tensor) -> torch.Tensor:
        u_rot = _rotate_data(_prep(u), self._rot)
        out = self._kernel.pdf(u_rot, self.parameters)
        return out.clamp_min(torch.finfo(out.dtype).tiny)

    def cdf(self, u: torch.Tensor) -> torch.Tensor:
        u0 = _prep(u)
        p = self._kernel.cdf(_rotate_data(u0, self._rot), self.parameters)
        rot = self._rot
        if rot == 90:
            p = u0[:, 1] - p
        elif rot == 180:
            p = p - 1.0 + u0[:, 0] + u0[:, 1]
        elif rot == 270:
            p = u0[:, 0] - p
        return p.clamp(0.0, 1.0)

    def hfunc1(self, u: torch.Tensor) -> torch.Tensor:
        """P(U2 <= u2 | U1 = u1)."""
        u_rot = _rotate_data(_prep(u), self._rot)
        k, par, rot = self._kernel, self.parameters, self._rot
        if rot == 0:
            h = k.hfunc1(u_rot, par)
        elif rot == 90:
            h = k.hfunc2(u_rot, par)
        elif rot == 180:
            h = 1.0 - k.hfunc1(u_rot, par)
        else:
            h = 1.0 - k.hfunc2(u_rot, par)
        return h.clamp(0.0, 1.0)

    def hfunc2(self, u: torch.Tensor) -> torch.Tensor:
        """P(U1 <= u1 | U2 = u2)."""
        u_rot = _rotate_data(_prep(u), self._rot)
        k, par, rot = self._kernel, self.parameters, self._rot
        if rot == 0:
            h = k.hfunc2(u_rot, par)
        elif rot == 90:
            h = 1.0 - k.hfunc1(u_rot, par)
        elif rot == 180:
            h = 1.0 - k.hfunc2(u_rot, par)
        else:
            h = k.hfunc1(u_rot, par)
        return h.clamp(0.0, 1.0)

    def hinv1(self, u: torch.Tensor) -> torch.Tensor:
        """Inverse of ``hfunc1`` in the second argument: (u1, w) -> u2."""
        u_rot = _rotate_data(_prep(u), self._rot)
        k, par, rot = self._kernel, self.parameters, self._rot
        if rot == 0:
            out = k.hinv1(u_rot, par)
        elif rot == 90:
            out = k.hinv2(u_rot, par)
        elif rot == 180:
            out = 1.0 - k.hinv1(u_rot, par)
        else:
            out = 1.0 - k.hinv2(u_rot, par)
        return out.clamp(0.0, 1.0)

    def hinv2(self, u: torch.Tensor) -> torch.Tensor:
        """Inverse of ``hfunc2`` in the first argument: (w, u2) -> u1."""
        u_rot = _rotate_data(_prep(u), self._rot)
        k, par, rot = self._kernel, self.parameters, self._rot
        if rot == 0:
            out = k.hinv2(u_rot, par)
        elif rot == 90:
            out = 1.0 - k.hinv1(u_rot, par)
        elif rot == 180:
            out = 1.0 - k.hinv2(u_rot, par)
        else:
            out = k.hinv1(u_rot, par)
        return out.clamp(0.0, 1.0)

    def simulate(
        self,
        n: int,
        *,
        generator: torch.Generator | None = None,
        seeds: Sequence[int] = (),
    ) -> torch.Tensor:
        """Draw ``n`` pairs by conditional inversion of independent uniforms."""
        w = stats.simulate_uniform(n, 2, generator=generator, seeds=seeds)
        return torch.stack([w[:, 0], self.hinv1(w)], dim=1)

    def flipped(self) -> "Bicop":
        """Copula of the swapped pair (U2, U1)."""
        rot = {90: 270, 270: 90}.get(self.rotation, self.rotation)
        return replace(self, rotation=rot)

    # ---- tau conversion ----

    def parameters_to_tau(self, parameters: torch.Tensor | Sequence[float] | None = None) -> float:
        par = self.parameters if parameters is None else torch.as_tensor(parameters, dtype=torch.float64).reshape(-1)
        tau = self._kernel.tau(par)
        if self._rot in (90, 270):
            tau = -tau
        return float(max(-1.0, min(1.0, tau)))

    def tau_to_parameters(self, tau: float) -> torch.Tensor:
        """Parameters matching Kendall's ``tau``; second parameters are kept."""
        t = float(tau)
        if self._rot in (90, 270):
            t = -t
        k = self._kernel
        par = k.tau_inv(t, self.parameters)
        if k.npars:
            lb, ub = k.bounds()
            par = torch.max(torch.min(par, ub), lb)
        return par

    # ---- likelihood ----

    def loglik(self, data: torch.Tensor | None = None) -> float:
        if data is None:
            if self.fit_loglik is None:
                raise ValueError("data is required for a copula that was not fitted")
            return float(self.fit_loglik)
        return float(torch.log(self.pdf(data)).sum().item())

    def _n_for(self, data) -> float:
        if data is None:
            if self.nobs <= 0:
                raise ValueError("data is required for a copula that was not fitted")
            return float(self.nobs)
        return float(torch.as_tensor(data).reshape(-1, 2).shape[0])

    def aic(self, data: torch.Tensor | None = None) -> float:
        return -2.0 * self.loglik(data) + 2.0 * self.npars

    def bic(self, data: torch.Tensor | None = None) -> float:
        return -2.0 * self.loglik(data) + math.log(self._n_for(data)) * self.npars

    # ---- fitting ----

    def _loglik_rotated(self, u_rot: torch.Tensor, par: torch.Tensor) -> float:
        pdf = self._kernel.pdf(u_rot, par)
        tiny = torch.finfo(pdf.dtype).tiny
        val = float(torch.log(pdf.clamp_min(tiny)).sum().item())
        return val if math.isfinite(val) else -math.inf

    def _narrow_bounds(self, lb: torch.Tensor, ub: torch.Tensor, tau: float) -> tuple[torch.Tensor, torch.Tensor]:
        # One-parameter families search within tau +/- 0.1; student narrows rho only.
        fam = self.family
        k = self._kernel
        if fam in (BicopFamily.gaussian, BicopFamily.frank, BicopFamily.student):
            lo_tau = max(tau - 0.1, -0.99)
            hi_tau = min(tau + 0.1, 0.99)
        elif fam in (BicopFamily.clayton, BicopFamily.gumbel, BicopFamily.joe):
            lo_tau = max(abs(tau) - 0.1, 1e-10)
            hi_tau = min(abs(tau) + 0.1, 0.95)
        else:
            return lb, ub
        ref = torch.tensor(k.start, dtype=torch.float64)
        lb2 = torch.max(lb, k.tau_inv(lo_tau, ref))
        ub2 = torch.min(ub, k.tau_inv(hi_tau, ref))
        if fam == BicopFamily.student:
            lb2[1] = lb[1]
            ub2[1] = ub[1]
        if bool((lb2 >= ub2).any()):
            return lb, ub
        return lb2, ub2

    def _start_parameters(self, tau: float) -> torch.Tensor:
        k = self._kernel
        ref = torch.tensor(k.start, dtype=torch.float64)
        if self.family == BicopFamily.student:
            ref[1] = 4.0
        return k.tau_inv(tau, ref)

    def fit(self, data: torch.Tensor, controls: FitControlsBicop | None = None) -> "Bicop":
        """Estimate the parameters of this family and rotation from ``data``.

        ``data`` must be an (n, 2) array with entries in (0, 1). Returns a new
        ``Bicop``; ``converged`` is False when the optimizer stopped early.
        """
        if controls is None:
            controls = FitControlsBicop()
        u = stats.check_data(data, 2)
        u_rot = _rotate_data(u, self._rot)
        tau = stats.kendall_tau(u_rot[:, 0], u_rot[:, 1])
        return self._fit_rotated(u_rot, tau, controls)

    def _fit_rotated(self, u_rot: torch.Tensor, tau: float, controls: FitControlsBicop) -> "Bicop":
        n = int(u_rot.shape[0])
        fam = self.family
        k = self._kernel
        if fam == BicopFamily.indep:
            return replace(self, parameters=torch.empty((0,), dtype=torch.float64), nobs=n,
                           fit_loglik=0.0, converged=True)

        lb_full, ub_full = k.bounds()

        if controls.parametric_method == "itau":
            if fam not in _fam.itau:
                raise ValueError(f"parametric_method='itau' not available for family {fam.value}")
            if fam == BicopFamily.student:
                rho = max(-1.0, min(1.0, math.sin(tau * math.pi / 2.0)))

                def obj_nu(nu: float) -> float:
                    return self._loglik_rotated(u_rot, torch.tensor([rho, nu], dtype=torch.float64))

                res = golden_section_maximize(obj_nu, a=float(lb_full[1]), b=float(ub_full[1]), x0=4.0)
                par = torch.tensor([rho, float(res.x)], dtype=torch.float64)
                return self._finish_fit(par, res.fun, n, res, lb_full, ub_full)
            par = torch.max(torch.min(k.tau_inv(tau, self.parameters), ub_full), lb_full)
            return replace(self, parameters=par, nobs=n, fit_loglik=self._loglik_rotated(u_rot, par), converged=True)

        tau_w = _winsorize_tau(tau)
        lb, ub = self._narrow_bounds(lb_full.clone(), ub_full.clone(), tau)
        x0 = torch.max(torch.min(self._start_parameters(tau_w), ub), lb)

        def objective(par: torch.Tensor) -> float:
            return self._loglik_rotated(u_rot, par)

        if k.npars == 1:
            res = golden_section_maximize(
                lambda v: objective(torch.tensor([v], dtype=torch.float64)),
                a=float(lb[0]), b=float(ub[0]), x0=float(x0[0]),
            )
            par = res.x.reshape(1)
        else:
            res = coordinate_descent_maximize(objective, x0=x0, lb=lb, ub=ub)
            par = res.x.reshape(-1)
        return self._finish_fit(par, res.fun, n, res, lb_full, ub_full)

    def _finish_fit(self, par, ll, n, res: OptimizeResult, lb, ub) -> "Bicop":
        par = torch.max(torch.min(par.to(torch.float64), ub), lb)
        if not res.converged:
            logger.debug("%s fit stopped after %d evaluations", self.family.value, res.n_eval)
            warnings.warn(
                f"MLE for family {self.family.value} (rotation {self.rotation}) did not converge; "
                f"keeping best point found",
                OptimizationWarning,
                stacklevel=3,
            )
        return replace(self, parameters=par, nobs=n, fit_loglik=float(ll), converged=bool(res.converged))

    # ---- selection ----

    @classmethod
    def from_data(cls, data: torch.Tensor, controls: FitControlsBicop | None = None) -> "Bicop":
        """Select family, rotation and parameters for ``data``."""
        return cls.select(data, controls)

    @classmethod
    def select(cls, data: torch.Tensor, controls: FitControlsBicop | None = None) -> "Bicop":
        if controls is None:
            controls = FitControlsBicop()
        u = stats.check_data(data, 2)
        n = int(u.shape[0])

        fams = list(controls.family_set) if controls.family_set else list(BicopFamily)
        if controls.parametric_method == "itau":
            fams = [f for f in fams if f in _fam.itau]
            if not fams:
                raise ValueError("no family in family_set supports parametric_method='itau'")

        tau0 = stats.kendall_tau(u[:, 0], u[:, 1])
        which_rot = (0, 180) if tau0 > 0.0 else (90, 270)

        candidates: list[Bicop] = []
        for fam in fams:
            if not family_can_rotate(fam):
                candidates.append(cls(family=fam, rotation=0))
            elif controls.allow_rotations:
                candidates.append(cls(family=fam, rotation=which_rot[0]))
                candidates.append(cls(family=fam, rotation=which_rot[1]))
            elif tau0 > 0.0:
                candidates.append(cls(family=fam, rotation=0))

        if controls.preselect_families:
            kept = _preselect(candidates, u, tau0)
            if kept:
                candidates = kept
            else:
                logger.debug("preselection removed every candidate; keeping the full set")
        if not candidates:
            raise ValueError("no candidate family left for selection")

        rotated = {r: _rotate_data(u, r) for r in {c.rotation for c in candidates}}

        best: Bicop | None = None
        best_score = -math.inf
        for cand in candidates:
            tau_rot = -tau0 if cand.rotation in (90, 270) else tau0
            fitted = cand._fit_rotated(rotated[cand.rotation], tau_rot, controls)
            ll = float(fitted.fit_loglik)
            k = fitted.npars
            if controls.selection_criterion == "loglik":
                score = ll
            elif controls.selection_criterion == "aic":
                score = -(-2.0 * ll + 2.0 * k)
            else:
                score = -(-2.0 * ll + math.log(n) * k)
            logger.debug("candidate %s rot=%d score=%.4f", fitted.family.value, fitted.rotation, score)
            # strict improvement keeps the earliest candidate on ties
            if best is None or score > best_score:
                best_score = score
                best = fitted

        return best


def _preselect(candidates: list[Bicop], u: torch.Tensor, tau0: float) -> list[Bicop]:
    """Drop candidates whose tail asymmetry contradicts the data.

    Compares the normal-score correlation in the two joint-tail quadrants
    along the main (or anti-) diagonal.
    """
    z = stats.qnorm(stats.clamp_unit(u))
    x1 = z[:, 0]
    x2 = z[:, 1]
    if tau0 > 0.0:
        m1 = (x1 > 0) & (x2 > 0)
        m2 = (x1 < 0) & (x2 < 0)
    else:
        m1 = (x1 < 0) & (x2 > 0)
        m2 = (x1 > 0) & (x2 < 0)

    def corr_on(mask: torch.Tensor) -> float:
        if int(mask.sum().item()) < 3:
            return 0.0
        c = stats.pearson_cor(x1[mask], x2[mask])
        return 0.0 if math.isnan(c) else c

    cdiff = corr_on(m1) - corr_on(m2)

    def keep(cop: Bicop) -> bool:
        fam = cop.family
        rot = cop.rotation
        if not family_can_rotate(fam):
            return not (abs(cdiff) > 0.3 and fam == BicopFamily.frank)
        if fam in _fam.bb:
            return (tau0 > 0.0 and rot in (0, 180)) or (tau0 <= 0.0 and rot in (90, 270))
        is_90or180 = rot in (90, 180)
        lower = fam in _fam.lt
        upper = fam in _fam.ut
        if cdiff > 0.05:
            return (lower and is_90or180) or (upper and not is_90or180)
        if cdiff < -0.05:
            return (lower and not is_90or180) or (upper and is_90or180)
        return (tau0 > 0.0 and rot in (0, 180)) or (tau0 <= 0.0 and rot in (90, 270))

    return [c for c in candidates if keep(c)]
