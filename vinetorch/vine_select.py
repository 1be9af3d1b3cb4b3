"""Vine structure and pair-copula family selection (MST-based)."""

from __future__ import annotations

import concurrent.futures
import logging
import math
from dataclasses import dataclass, field
from typing import Iterable

import torch

from . import stats
from .bicop import Bicop
from .errors import SelectionFailure
from .families import BicopFamily
from .fit_controls import FitControlsBicop, FitControlsVinecop
from .rvine_structure import RVineStructure
from .vinecop import Vinecop

logger = logging.getLogger(__name__)


@dataclass
class _Vertex:
    # Data needed to form pseudo observations in the next tree.
    hfunc1: torch.Tensor | None = None
    hfunc2: torch.Tensor | None = None
    prev_edge_indices: list[int] = field(default_factory=list)  # size 2
    conditioned: list[int] = field(default_factory=list)
    conditioning: list[int] = field(default_factory=list)
    all_indices: list[int] = field(default_factory=list)


@dataclass
class _Edge:
    u: int
    v: int
    weight: float = 1.0
    crit: float = 0.0
    pc_data: torch.Tensor | None = None  # (n,2)
    conditioned: list[int] = field(default_factory=list)  # size 2, 0-based var indices
    conditioning: list[int] = field(default_factory=list)
    all_indices: list[int] = field(default_factory=list)
    pair_copula: Bicop | None = None
    hfunc1: torch.Tensor | None = None
    hfunc2: torch.Tensor | None = None
    loglik: float = 0.0
    npars: float = 0.0


class _Graph:
    def __init__(self, n_vertices: int):
        self.vertices: list[_Vertex] = [_Vertex() for _ in range(int(n_vertices))]
        self._edges: dict[tuple[int, int], _Edge] = {}
        self._nbrs: list[set[int]] = [set() for _ in range(int(n_vertices))]
        # insertion order of undirected edges decides ties
        self._edge_order: list[tuple[int, int]] = []

    def add_edge(self, u: int, v: int) -> _Edge:
        u = int(u)
        v = int(v)
        if u == v:
            raise ValueError("self-loop")
        a, b = (u, v) if u < v else (v, u)
        if (a, b) in self._edges:
            return self._edges[(a, b)]
        # (u, v) orientation decides which h-function is "first"
        e = _Edge(u=u, v=v)
        self._edges[(a, b)] = e
        self._edge_order.append((a, b))
        self._nbrs[a].add(b)
        self._nbrs[b].add(a)
        return e

    def remove_edge(self, u: int, v: int) -> None:
        a, b = (u, v) if u < v else (v, u)
        if self._edges.pop((a, b), None) is None:
            return
        self._nbrs[a].discard(b)
        self._nbrs[b].discard(a)

    def edges(self) -> Iterable[_Edge]:
        for k in self._edge_order:
            e = self._edges.get(k)
            if e is not None:
                yield e

    def edge(self, u: int, v: int) -> _Edge | None:
        a, b = (u, v) if u < v else (v, u)
        return self._edges.get((a, b))

    def num_vertices(self) -> int:
        return len(self.vertices)

    def degree(self, u: int) -> int:
        return len(self._nbrs[int(u)])


def _intersect(a: list[int], b: list[int]) -> list[int]:
    sb = set(b)
    return [x for x in a if x in sb]


def _sym_diff_ordered(a: list[int], b: list[int]) -> list[int]:
    sb = set(b)
    sa = set(a)
    return [x for x in a if x not in sb] + [x for x in b if x not in sa]


def _find_common_neighbor(v0: _Vertex, v1: _Vertex) -> int:
    inter = _intersect(v0.prev_edge_indices, v1.prev_edge_indices)
    return int(inter[0]) if inter else -1


def _get_hfunc(v: _Vertex, is_first: bool) -> torch.Tensor:
    return v.hfunc1 if is_first else v.hfunc2


def _get_pc_data(v0i: int, v1i: int, tree: _Graph) -> torch.Tensor:
    v0 = tree.vertices[int(v0i)]
    v1 = tree.vertices[int(v1i)]
    cn = _find_common_neighbor(v0, v1)
    u1 = _get_hfunc(v0, v0.prev_edge_indices.index(cn) == 0)
    u2 = _get_hfunc(v1, v1.prev_edge_indices.index(cn) == 0)
    return torch.stack([u1, u2], dim=1)


def _calculate_criterion(pc_data: torch.Tensor, name: str) -> float:
    w = stats.dependence_measure(pc_data[:, 0], pc_data[:, 1], name)
    if math.isnan(w):
        w = 0.0
    return abs(float(w))


def _mst_prim(graph: _Graph) -> set[tuple[int, int]]:
    n = graph.num_vertices()
    if n <= 1:
        return set()
    in_tree = [False] * n
    best_w = [float("inf")] * n
    best_p = [-1] * n
    best_w[0] = 0.0
    for _ in range(n):
        v = -1
        wv = float("inf")
        for i in range(n):
            if (not in_tree[i]) and best_w[i] < wv:
                v = i
                wv = best_w[i]
        if v < 0:
            break
        in_tree[v] = True
        for u in sorted(graph._nbrs[v]):
            if in_tree[u]:
                continue
            e = graph.edge(v, u)
            # strict improvement keeps the first candidate on ties
            if float(e.weight) < best_w[u]:
                best_w[u] = float(e.weight)
                best_p[u] = v
    out: set[tuple[int, int]] = set()
    for u in range(1, n):
        p = best_p[u]
        if p >= 0:
            out.add((p, u) if p < u else (u, p))
    return out


def _mst_kruskal(graph: _Graph) -> set[tuple[int, int]]:
    n = graph.num_vertices()
    parent = list(range(n))
    rank = [0] * n

    def find(x: int) -> int:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    def union(a: int, b: int) -> bool:
        ra = find(a)
        rb = find(b)
        if ra == rb:
            return False
        if rank[ra] < rank[rb]:
            parent[ra] = rb
        elif rank[ra] > rank[rb]:
            parent[rb] = ra
        else:
            parent[rb] = ra
            rank[ra] += 1
        return True

    # sorted() is stable: equal weights stay in enumeration order
    edges = sorted(graph.edges(), key=lambda e: float(e.weight))
    out: set[tuple[int, int]] = set()
    for e in edges:
        a, b = (e.u, e.v) if e.u < e.v else (e.v, e.u)
        if union(a, b):
            out.add((a, b))
            if len(out) == n - 1:
                break
    return out


@dataclass
class _Trial:
    """Outcome of one pass over all trees at a fixed threshold."""

    model: Vinecop
    criterion: float
    threshold: float
    thresholded: list[float]


class VinecopSelector:
    """Dissmann's sequential selection of structure, families and parameters.

    Tree ``t`` is a maximum spanning tree over the proximity graph of tree
    ``t-1``'s edges, weighted by the absolute dependence of each candidate
    pair's pseudo-observations. Edges whose dependence falls below the
    threshold get independence copulas; trees at or beyond the truncation
    level are completed with independence copulas and uniform weights.
    """

    def __init__(self, data: torch.Tensor, controls: FitControlsVinecop | None = None):
        self.controls = controls if controls is not None else FitControlsVinecop()
        self.u = stats.check_data(data)
        self.n = int(self.u.shape[0])
        self.d = int(self.u.shape[1])
        if self.d < 2:
            raise ValueError("vine selection needs at least two variables")
        self._log_level = logging.INFO if self.controls.show_trace else logging.DEBUG

    # ---- trees ----

    def _make_base_tree(self) -> _Graph:
        # star with root node at index d; leaf j carries margin j
        g = _Graph(self.d + 1)
        root = self.d
        for target in range(self.d):
            e = g.add_edge(root, target)
            col = self.u[:, target].clone()
            e.hfunc1 = col
            e.hfunc2 = col
            e.conditioned = [target]
            e.conditioning = []
            e.all_indices = [target]
        return g

    def _edges_as_vertices(self, prev_tree: _Graph) -> _Graph:
        edges = list(prev_tree.edges())
        new_tree = _Graph(len(edges))
        for i, e in enumerate(edges):
            v = new_tree.vertices[i]
            v.hfunc1 = e.hfunc1
            v.hfunc2 = e.hfunc2
            v.conditioned = list(e.conditioned)
            v.conditioning = list(e.conditioning)
            v.all_indices = list(e.all_indices)
            v.prev_edge_indices = [int(e.u), int(e.v)]
        return new_tree

    def _add_allowed_edges(self, tree: _Graph, threshold: float | None) -> None:
        """Link every vertex pair that shares a neighbour in the previous tree.

        ``threshold=None`` marks a tree past the truncation level: all links
        get the same weight and no dependence is computed.
        """
        crit_name = self.controls.tree_criterion
        for v0 in range(tree.num_vertices()):
            for v1 in range(v0):
                if _find_common_neighbor(tree.vertices[v0], tree.vertices[v1]) < 0:
                    continue
                e = tree.add_edge(v0, v1)
                if threshold is None:
                    continue
                crit = _calculate_criterion(_get_pc_data(v0, v1, tree), crit_name)
                e.crit = crit
                e.weight = 1.0 - crit if crit >= threshold else 1.0

    def _select_edges(self, tree: _Graph) -> None:
        if tree.num_vertices() <= 2:
            return
        if self.controls.tree_algorithm == "mst_kruskal":
            keep = _mst_kruskal(tree)
        else:
            keep = _mst_prim(tree)
        for e in list(tree.edges()):
            a, b = (e.u, e.v) if e.u < e.v else (e.v, e.u)
            if (a, b) not in keep:
                tree.remove_edge(e.u, e.v)

    def _add_edge_info(self, tree: _Graph) -> None:
        for e in tree.edges():
            v0 = tree.vertices[e.u]
            v1 = tree.vertices[e.v]
            e.pc_data = stats.clamp_unit(_get_pc_data(e.u, e.v, tree))
            e.conditioned = _sym_diff_ordered(v0.all_indices, v1.all_indices)
            e.conditioning = _intersect(v0.all_indices, v1.all_indices)
            e.all_indices = list(e.conditioned) + list(e.conditioning)

    def _bicop_controls(self) -> FitControlsBicop:
        c = self.controls
        return FitControlsBicop(
            family_set=list(c.family_set),
            parametric_method=c.parametric_method,
            selection_criterion=c.selection_criterion,
            psi0=float(c.psi0),
            preselect_families=c.preselect_families,
            allow_rotations=c.allow_rotations,
            num_threads=1,
        )

    def _select_pair_copulas(self, tree: _Graph, *, tree_level: int, threshold: float) -> None:
        bc = self._bicop_controls()
        edges = list(tree.edges())

        def _fit_edge(edge_idx: int) -> Bicop:
            """Select the pair copula of one edge. Runs in a worker thread."""
            e = edges[edge_idx]
            if float(e.crit) < threshold:
                return Bicop()
            try:
                return Bicop.select(e.pc_data, bc)
            except Exception as exc:
                raise SelectionFailure(
                    f"pair copula selection failed for variables {[v + 1 for v in e.conditioned]}: {exc}",
                    tree=tree_level,
                    edge=edge_idx,
                ) from exc

        num_workers = min(int(self.controls.num_threads), len(edges))
        if num_workers > 1:
            with concurrent.futures.ThreadPoolExecutor(max_workers=num_workers) as executor:
                results = list(executor.map(_fit_edge, range(len(edges))))
        else:
            results = [_fit_edge(i) for i in range(len(edges))]

        # results come back in edge order
        for e, cop in zip(edges, results):
            self._set_pair_copula(e, cop)

    def _set_pair_copula(self, e: _Edge, cop: Bicop) -> None:
        e.pair_copula = cop
        if cop.family == BicopFamily.indep:
            e.loglik = 0.0
            e.npars = 0.0
            e.hfunc1 = e.pc_data[:, 1]
            e.hfunc2 = e.pc_data[:, 0]
            return
        e.loglik = float(cop.fit_loglik) if cop.fit_loglik is not None else cop.loglik(e.pc_data)
        e.npars = float(cop.npars)
        e.hfunc1 = stats.clamp_unit(cop.hfunc1(e.pc_data))
        e.hfunc2 = stats.clamp_unit(cop.hfunc2(e.pc_data))

    # ---- criteria ----

    def _tree_criterion(self, tree: _Graph, t: int) -> float:
        """Sparse criterion of tree ``t`` relative to an all-independence tree."""
        loglik = sum(float(e.loglik) for e in tree.edges())
        npars = sum(float(e.npars) for e in tree.edges())
        crit = self.controls.sparse_criterion
        if crit == "aic":
            return -2.0 * loglik + 2.0 * npars
        out = -2.0 * loglik + math.log(self.n) * npars
        if crit == "mbicv":
            non_indeps = sum(
                1 for e in tree.edges() if e.pair_copula is not None and e.pair_copula.family != BicopFamily.indep
            )
            psi = float(self.controls.psi0) ** float(t + 1)
            # the all-independence tree's prior is the baseline
            out -= 2.0 * non_indeps * (math.log(psi) - math.log(1.0 - psi))
        return out

    def _model_criterion(self, model: Vinecop) -> float:
        crit = self.controls.sparse_criterion
        if crit == "aic":
            return model.aic()
        if crit == "bic":
            return model.bic()
        return model.mbicv(psi0=float(self.controls.psi0))

    # ---- passes ----

    def _select_all_trees(self, threshold: float) -> _Trial:
        d = self.d
        trunc = self.controls.trunc_lvl
        trunc = d - 1 if trunc is None else max(0, min(d - 1, int(trunc)))
        trees = [self._make_base_tree()]
        thresholded: list[float] = []

        for t in range(d - 1):
            active = t < trunc
            tree = self._edges_as_vertices(trees[t])
            self._add_allowed_edges(tree, threshold if active else None)
            self._select_edges(tree)
            self._add_edge_info(tree)
            if active:
                self._select_pair_copulas(tree, tree_level=t, threshold=threshold)
                contribution = self._tree_criterion(tree, t)
                logger.log(self._log_level, "tree %d: %s contribution %.4f", t,
                           self.controls.sparse_criterion, contribution)
                if self.controls.select_trunc_lvl and contribution >= 0.0:
                    logger.log(self._log_level, "truncating at tree %d", t)
                    trunc = t
                    active = False
                else:
                    thresholded.extend(float(e.crit) for e in tree.edges() if float(e.crit) < threshold)
            if not active:
                for e in tree.edges():
                    self._set_pair_copula(e, Bicop())
            trees.append(tree)

        model = self._finalize(trees, trunc, threshold)
        criterion = self._model_criterion(model)
        logger.log(self._log_level, "threshold %.4f, trunc_lvl %d: %s %.4f", threshold, trunc,
                   self.controls.sparse_criterion, criterion)
        return _Trial(model=model, criterion=criterion, threshold=threshold, thresholded=thresholded)

    @staticmethod
    def _get_next_threshold(thresholded: list[float]) -> float:
        xs = sorted(thresholded, reverse=True)
        alpha = 0.05
        m = len(xs)
        new_index = max(0, min(m - 1, int(math.ceil(m * alpha) - 1)))
        return float(xs[new_index])

    def select(self) -> Vinecop:
        """Run the selection, sweeping thresholds when ``select_threshold`` is set."""
        if not self.controls.select_threshold:
            return self._select_all_trees(float(self.controls.threshold)).model

        max_sweeps = self.d * (self.d - 1) // 2 + 1
        threshold = 1.0
        best: _Trial | None = None
        for _ in range(max_sweeps):
            trial = self._select_all_trees(threshold)
            if best is not None and trial.criterion >= best.criterion:
                break
            best = trial
            if threshold < 0.01 or not trial.thresholded:
                break
            threshold = self._get_next_threshold(trial.thresholded)
        logger.log(self._log_level, "selected threshold %.4f", best.threshold)
        return best.model

    # ---- assembly ----

    def _finalize(self, trees: list[_Graph], trunc_lvl: int, threshold: float) -> Vinecop:
        """Peel leaf edges tree by tree into R-vine matrix columns."""
        d = self.d
        pcs: list[list[Bicop | None]] = [[None] * (d - 1 - t) for t in range(d - 1)]
        mat: list[list[int]] = [[0] * (d - 1 - t) for t in range(d - 1)]
        order0: list[int] = [0] * d  # 0-based variable indices

        for col in range(d - 1):
            t = d - 1 - col  # highest tree with an edge in this column

            chosen: _Edge | None = None
            chosen_pos = 0
            for e in trees[t].edges():
                d0 = trees[t].degree(e.u)
                d1 = trees[t].degree(e.v)
                if min(d0, d1) > 1:
                    continue
                chosen = e
                chosen_pos = 1 if d1 == 1 else 0
                break
            if chosen is None:
                raise SelectionFailure("no leaf edge left while assembling the vine", tree=t - 1, edge=col)

            order0[col] = int(chosen.conditioned[chosen_pos])
            mat[t - 1][col] = int(chosen.conditioned[1 - chosen_pos])
            pcs[t - 1][col] = chosen.pair_copula.flipped() if chosen_pos == 1 else chosen.pair_copula
            ning_set = list(chosen.conditioning)
            trees[t].remove_edge(chosen.u, chosen.v)

            # fill the column from the top tree down
            for k in range(1, t):
                check_set = {order0[col], *ning_set}
                found: _Edge | None = None
                for e in trees[t - k].edges():
                    if set(e.all_indices) == check_set:
                        found = e
                        break
                if found is None:
                    raise SelectionFailure("no matching edge while assembling the vine", tree=t - k - 1, edge=col)
                pos = 1 if order0[col] == int(found.conditioned[1]) else 0
                mat[t - k - 1][col] = int(found.conditioned[1 - pos])
                pcs[t - k - 1][col] = found.pair_copula.flipped() if pos == 1 else found.pair_copula
                ning_set = list(found.conditioning)
                trees[t - k].remove_edge(found.u, found.v)

        order0[d - 1] = mat[0][d - 2]

        M = [[0] * d for _ in range(d)]
        for col in range(d):
            for i in range(d - 1 - col):
                M[i][col] = mat[i][col] + 1
            M[d - 1 - col][col] = order0[col] + 1

        model = Vinecop(
            RVineStructure(M),
            pair_copulas=pcs,
            nobs=self.n,
            threshold=float(threshold),
            trunc_lvl=trunc_lvl,
        )
        model.loglik_ = sum(float(pc.fit_loglik) for tree in pcs for pc in tree
                            if pc.family != BicopFamily.indep and pc.fit_loglik is not None)
        return model


def select_vinecop(data: torch.Tensor, controls: FitControlsVinecop | None = None) -> Vinecop:
    return VinecopSelector(data, controls).select()
