"""Vine copula model: evaluation, simulation, transforms and parameter fitting."""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Sequence

import torch

from . import stats
from .bicop import Bicop
from .families import BicopFamily
from .fit_controls import FitControlsBicop, FitControlsVinecop
from .rvine_structure import RVineStructure

logger = logging.getLogger(__name__)


def _as_bicop(pc) -> Bicop:
    if isinstance(pc, Bicop):
        return pc
    return Bicop.from_triple(tuple(pc))


def _check_pair_copulas_shape(pair_copulas: Sequence[Sequence[Bicop]], d: int) -> None:
    if len(pair_copulas) != d - 1:
        raise ValueError(f"pair_copulas must have {d - 1} trees, got {len(pair_copulas)}")
    for t in range(d - 1):
        expected = d - 1 - t
        if len(pair_copulas[t]) != expected:
            raise ValueError(f"pair_copulas[{t}] must have {expected} edges, got {len(pair_copulas[t])}")


class _Arena:
    """Per-(tree, column) pseudo-observations of one evaluation pass.

    ``direct[t][c]`` is the antidiagonal variable of column ``c`` conditioned
    on the first ``t`` entries of that column (an hfunc2 output);
    ``indirect[t][c]`` is the row ``t-1`` variable of column ``c`` conditioned
    on the antidiagonal variable and the first ``t-1`` entries (an hfunc1
    output). Only the indirect values some edge reads are stored.
    """

    def __init__(self, structure: RVineStructure):
        d = structure.dim
        self.structure = structure
        self.direct: list[list[torch.Tensor | None]] = [[None] * d for _ in range(d)]
        self.indirect: list[list[torch.Tensor | None]] = [[None] * d for _ in range(d)]

    def edge_input(self, tree: int, edge: int) -> torch.Tensor:
        col, is_direct = self.structure.partner(tree, edge)
        u2 = self.direct[tree][col] if is_direct else self.indirect[tree][col]
        return torch.stack([self.direct[tree][edge], u2], dim=1)

    def push(self, tree: int, edge: int, cop: Bicop, uu: torch.Tensor) -> None:
        self.direct[tree + 1][edge] = cop.hfunc2(uu)
        if self.structure.needs_indirect(tree + 1, edge):
            self.indirect[tree + 1][edge] = cop.hfunc1(uu)


@dataclass
class Vinecop:
    """Vine copula model: an R-vine structure plus a grid of pair copulas.

    ``pair_copulas[t][e]`` is the copula of edge ``e`` in tree ``t``; its
    first argument is the antidiagonal variable of column ``e``. Trees at or
    beyond ``trunc_lvl`` hold independence copulas.
    """

    structure: RVineStructure
    pair_copulas: list[list[Bicop]] | None = None
    nobs: int = 0
    threshold: float = 0.0
    trunc_lvl: int | None = None
    loglik_: float | None = field(default=None, repr=False)

    def __post_init__(self):
        if not isinstance(self.structure, RVineStructure):
            self.structure = RVineStructure(self.structure)
        d = self.structure.dim
        if self.pair_copulas is None:
            self.pair_copulas = [[Bicop() for _ in range(d - 1 - t)] for t in range(d - 1)]
        else:
            _check_pair_copulas_shape(self.pair_copulas, d)
            self.pair_copulas = [[_as_bicop(pc) for pc in tree] for tree in self.pair_copulas]
        if self.trunc_lvl is None:
            self.trunc_lvl = d - 1
        self.trunc_lvl = max(0, min(d - 1, int(self.trunc_lvl)))
        for t in range(self.trunc_lvl, d - 1):
            if any(pc.family != BicopFamily.indep for pc in self.pair_copulas[t]):
                raise ValueError(f"tree {t} is beyond trunc_lvl={self.trunc_lvl} but holds a dependent copula")

    # ---- constructors ----

    @classmethod
    def from_dimension(cls, d: int) -> "Vinecop":
        """Independence model on the default D-vine of dimension ``d``."""
        return cls(RVineStructure.from_dimension(int(d)))

    @classmethod
    def from_structure(
        cls,
        *,
        structure: RVineStructure | None = None,
        matrix=None,
        pair_copulas: Sequence[Sequence[Bicop | tuple]] | None = None,
    ) -> "Vinecop":
        if structure is None and matrix is not None:
            structure = RVineStructure(matrix)
        if structure is None:
            raise ValueError("either structure or matrix must be provided")
        pcs = None if pair_copulas is None else [list(tree) for tree in pair_copulas]
        return cls(structure=structure, pair_copulas=pcs)

    @classmethod
    def from_data(cls, data: torch.Tensor, controls: FitControlsVinecop | None = None) -> "Vinecop":
        """Select structure, families and parameters for ``data``."""
        from .vine_select import select_vinecop

        return select_vinecop(data, controls)

    # ---- accessors ----

    @property
    def dim(self) -> int:
        return self.structure.dim

    @property
    def matrix(self) -> torch.Tensor:
        return self.structure.matrix

    @property
    def order(self) -> list[int]:
        return self.structure.order

    @property
    def families(self) -> list[list[str]]:
        return [[pc.family.value for pc in tree] for tree in self.pair_copulas]

    @property
    def rotations(self) -> list[list[int]]:
        return [[pc.rotation for pc in tree] for tree in self.pair_copulas]

    @property
    def parameters(self) -> list[list[torch.Tensor]]:
        return [[pc.parameters.clone() for pc in tree] for tree in self.pair_copulas]

    @property
    def taus(self) -> list[list[float]]:
        return [[pc.tau for pc in tree] for tree in self.pair_copulas]

    @property
    def triples(self) -> list[list[tuple[str, int, list[float]]]]:
        return [[pc.to_triple() for pc in tree] for tree in self.pair_copulas]

    def get_pair_copula(self, tree: int, edge: int) -> Bicop:
        return self.pair_copulas[int(tree)][int(edge)]

    @property
    def npars(self) -> int:
        return sum(pc.npars for tree in self.pair_copulas for pc in tree if pc.family != BicopFamily.indep)

    def get_npars(self) -> int:
        return self.npars

    def str(self) -> str:
        """Human-readable summary table."""
        lines = [f"<vinetorch.Vinecop> {self.dim} variables, trunc_lvl={self.trunc_lvl}"]
        lines.append(f"{'tree':>4}  {'edge':>4}  {'conditioned':>12}  {'conditioning':>14}  "
                     f"{'family':>9}  {'rot':>4}  {'parameters':>18}  {'tau':>6}")
        for t in range(self.dim - 1):
            for e in range(self.dim - 1 - t):
                pc = self.pair_copulas[t][e]
                a, b = self.structure.conditioned(t, e)
                cond = ",".join(str(v) for v in self.structure.conditioning(t, e))
                pstr = ", ".join(f"{v:.2f}" for v in pc.parameters.tolist())
                lines.append(f"{t:>4}  {e:>4}  {f'{a},{b}':>12}  {cond:>14}  "
                             f"{pc.family.value:>9}  {pc.rotation:>4}  {pstr:>18}  {pc.tau:>6.2f}")
        return "\n".join(lines)

    # ---- evaluation ----

    def _prep(self, u) -> torch.Tensor:
        u = torch.as_tensor(u, dtype=torch.float64)
        d = self.dim
        if u.dim() == 1 and u.numel() == d:
            u = u.reshape(1, d)
        if u.dim() != 2 or int(u.shape[1]) != d:
            raise ValueError(f"u must have shape (n, {d}); got {tuple(u.shape)}")
        return stats.clamp_unit(u)

    def _arena(self, u: torch.Tensor) -> _Arena:
        arena = _Arena(self.structure)
        for col, var in enumerate(self.structure.order):
            arena.direct[0][col] = u[:, var - 1]
        return arena

    def pdf(self, u: torch.Tensor) -> torch.Tensor:
        """Vine copula density at the rows of ``u``."""
        u = self._prep(u)
        d = self.dim
        n = int(u.shape[0])
        pdf = torch.ones((n,), dtype=u.dtype)
        trunc = int(self.trunc_lvl)
        if trunc == 0 or d == 1:
            return pdf

        arena = self._arena(u)
        for t in range(trunc):
            for e in range(d - 1 - t):
                cop = self.pair_copulas[t][e]
                uu = arena.edge_input(t, e)
                if cop.family != BicopFamily.indep:
                    pdf = pdf * cop.pdf(uu)
                if t + 1 < trunc:
                    arena.push(t, e, cop, uu)
        return pdf.clamp_min(torch.finfo(pdf.dtype).tiny)

    def loglik(self, u: torch.Tensor | None = None) -> float:
        if u is None:
            if self.loglik_ is None:
                raise ValueError("data is required for a model that was not fitted")
            return float(self.loglik_)
        return float(torch.log(self.pdf(u)).sum().item())

    def _n_for(self, u) -> float:
        if u is None:
            if self.nobs <= 0:
                raise ValueError("data is required for a model that was not fitted")
            return float(self.nobs)
        return float(torch.as_tensor(u).reshape(-1, self.dim).shape[0])

    def aic(self, u: torch.Tensor | None = None) -> float:
        return -2.0 * self.loglik(u) + 2.0 * self.npars

    def bic(self, u: torch.Tensor | None = None) -> float:
        return -2.0 * self.loglik(u) + math.log(self._n_for(u)) * self.npars

    def mbicv(self, u: torch.Tensor | None = None, *, psi0: float = 0.9) -> float:
        """Modified BIC for vines: BIC plus a sparsity prior on each tree."""
        n = int(self._n_for(u))
        return -2.0 * self.loglik(u) + self.calculate_mbicv_penalty(n, float(psi0))

    def calculate_mbicv_penalty(self, nobs: int, psi0: float) -> float:
        d = self.dim
        if not (0.0 < psi0 < 1.0):
            raise ValueError("psi0 must be in (0,1)")
        non_indeps = [0] * (d - 1)
        for t in range(d - 1):
            for pc in self.pair_copulas[t]:
                if pc.family != BicopFamily.indep:
                    non_indeps[t] += 1
        log_prior = 0.0
        for t in range(d - 1):
            ps = psi0 ** float(t + 1)
            log_prior += non_indeps[t] * math.log(ps) + (d - non_indeps[t] - (t + 1)) * math.log(1.0 - ps)
        return math.log(float(nobs)) * float(self.npars) - 2.0 * log_prior

    def rosenblatt(self, u: torch.Tensor) -> torch.Tensor:
        """Rosenblatt transform to independent uniforms.

        The antidiagonal variable of column ``c`` maps to its distribution
        conditional on all variables of the columns to its right.
        """
        u = self._prep(u)
        d = self.dim
        arena = self._arena(u)
        for t in range(d - 1):
            for e in range(d - 1 - t):
                cop = self.pair_copulas[t][e]
                arena.push(t, e, cop, arena.edge_input(t, e))
        order = self.structure.order
        out = torch.empty_like(u)
        for e in range(d):
            out[:, order[e] - 1] = arena.direct[d - 1 - e][e] if e < d - 1 else arena.direct[0][e]
        return out.clamp(0.0, 1.0)

    def inverse_rosenblatt(self, u: torch.Tensor) -> torch.Tensor:
        """Map independent uniforms to a sample from the vine copula."""
        w = self._prep(u)
        d = self.dim
        order = self.structure.order
        arena = _Arena(self.structure)
        arena.direct[0][d - 1] = w[:, order[d - 1] - 1]

        for e in range(d - 2, -1, -1):
            top = d - 2 - e
            arena.direct[top + 1][e] = w[:, order[e] - 1]
            for t in range(top, -1, -1):
                col, is_direct = self.structure.partner(t, e)
                u2 = arena.direct[t][col] if is_direct else arena.indirect[t][col]
                uu = torch.stack([arena.direct[t + 1][e], u2], dim=1)
                arena.direct[t][e] = self.pair_copulas[t][e].hinv2(uu)
            # column e feeds indirect values up to tree top + 1
            for t in range(top + 1):
                if self.structure.needs_indirect(t + 1, e):
                    uu = arena.edge_input(t, e)
                    arena.indirect[t + 1][e] = self.pair_copulas[t][e].hfunc1(uu)

        out = torch.empty_like(w)
        for c in range(d):
            out[:, order[c] - 1] = arena.direct[0][c]
        return out

    def simulate(
        self,
        n: int,
        *,
        qrng: bool = False,
        generator: torch.Generator | None = None,
        seeds: Sequence[int] = (),
    ) -> torch.Tensor:
        w = stats.simulate_uniform(n, self.dim, qrng=qrng, generator=generator, seeds=seeds)
        return self.inverse_rosenblatt(w)

    def cdf(
        self,
        u: torch.Tensor,
        *,
        n_mc: int = 10000,
        generator: torch.Generator | None = None,
        seeds: Sequence[int] = (),
        batch_size: int = 256,
    ) -> torch.Tensor:
        """Monte Carlo estimate of the vine copula distribution function."""
        u = self._prep(u)
        n = int(u.shape[0])
        u_sim = self.simulate(int(n_mc), generator=generator, seeds=seeds)
        out = torch.empty((n,), dtype=u.dtype)
        for i0 in range(0, n, int(batch_size)):
            i1 = min(n, i0 + int(batch_size))
            diff = u_sim[:, None, :] - u[None, i0:i1, :]
            out[i0:i1] = (torch.amax(diff, dim=2) <= 0.0).to(u.dtype).mean(dim=0)
        return out

    # ---- modification ----

    def truncate(self, trunc_lvl: int) -> "Vinecop":
        """Copy with independence copulas in every tree from ``trunc_lvl`` on."""
        d = self.dim
        level = max(0, min(d - 1, int(trunc_lvl)))
        pcs = [
            [pc if t < level else Bicop() for pc in tree]
            for t, tree in enumerate(self.pair_copulas)
        ]
        return replace(self, pair_copulas=pcs, trunc_lvl=level, loglik_=None)

    def fit(self, data: torch.Tensor, controls: FitControlsBicop | None = None) -> "Vinecop":
        """Re-estimate parameters on the fixed structure, keeping each edge's family and rotation."""
        return self._refit(data, controls, select=False)

    def select_families(self, data: torch.Tensor, controls: FitControlsBicop | None = None) -> "Vinecop":
        """Select a family, rotation and parameters for every edge of the fixed structure."""
        return self._refit(data, controls, select=True)

    def _refit(self, data, controls: FitControlsBicop | None, *, select: bool) -> "Vinecop":
        if controls is None:
            controls = FitControlsBicop()
        u = stats.check_data(data, self.dim)
        d = self.dim
        n = int(u.shape[0])
        trunc = int(self.trunc_lvl)
        arena = self._arena(u)
        pcs: list[list[Bicop]] = []

        # edges of one tree are independent; trees depend on the previous one
        with ThreadPoolExecutor(max_workers=int(controls.num_threads)) as pool:
            for t in range(d - 1):
                if t >= trunc:
                    pcs.append([Bicop() for _ in range(d - 1 - t)])
                    continue
                inputs = [stats.clamp_unit(arena.edge_input(t, e)) for e in range(d - 1 - t)]

                def fit_edge(e: int, _t=t, _inputs=inputs) -> Bicop:
                    if select:
                        return Bicop.select(_inputs[e], controls)
                    return self.pair_copulas[_t][e].fit(_inputs[e], controls)

                row = list(pool.map(fit_edge, range(d - 1 - t)))
                pcs.append(row)
                logger.debug("fitted tree %d (%d edges)", t, len(row))
                if t + 1 < trunc:
                    for e, cop in enumerate(row):
                        arena.push(t, e, cop, inputs[e])

        fitted = replace(self, pair_copulas=pcs, nobs=n, loglik_=None)
        fitted.loglik_ = fitted.loglik(u)
        return fitted
