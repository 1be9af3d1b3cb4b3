"""Fitting controls for bivariate and vine copulas."""

from __future__ import annotations

from dataclasses import dataclass, field

from .families import BicopFamily, normalize_family


@dataclass
class FitControlsBicop:
    family_set: list[BicopFamily] = field(default_factory=list)  # empty means all families
    parametric_method: str = "mle"  # "mle" or "itau"
    selection_criterion: str = "bic"  # "loglik", "aic", "bic"
    psi0: float = 0.9
    preselect_families: bool = True
    allow_rotations: bool = True
    num_threads: int = 4  # parallel edge fitting threads (1 = sequential)

    def __post_init__(self):
        self.family_set = [normalize_family(f) for f in self.family_set]
        if self.parametric_method not in ("mle", "itau"):
            raise ValueError("parametric_method must be 'mle' or 'itau'")
        if self.selection_criterion not in ("loglik", "aic", "bic"):
            raise ValueError("selection_criterion must be one of 'loglik','aic','bic'")
        if not (0.0 < float(self.psi0) < 1.0):
            raise ValueError("psi0 must be in (0,1)")
        if int(self.num_threads) < 1:
            raise ValueError("num_threads must be >= 1")

    def str(self) -> str:
        """Human-readable summary."""
        fam_names = ", ".join(f.value.capitalize() for f in self.family_set) if self.family_set else "all"
        parts = [
            f"Family set: {fam_names}",
            f"Parametric method: {self.parametric_method}",
            f"Selection criterion: {self.selection_criterion}",
            f"Preselect families: {self.preselect_families}",
            f"Allow rotations: {self.allow_rotations}",
            f"psi0: {self.psi0}",
            f"Number of threads: {self.num_threads}",
        ]
        return "\n".join(parts)


@dataclass
class FitControlsVinecop(FitControlsBicop):
    trunc_lvl: int | None = None
    tree_criterion: str = "tau"
    threshold: float = 0.0
    select_trunc_lvl: bool = False
    select_threshold: bool = False
    sparse_criterion: str = "mbicv"  # criterion for the truncation / threshold sweeps
    show_trace: bool = False
    tree_algorithm: str = "mst_prim"

    def __post_init__(self):
        super().__post_init__()
        if self.trunc_lvl is not None and int(self.trunc_lvl) < 0:
            raise ValueError("trunc_lvl must be >= 0")
        if self.tree_criterion not in ("tau", "rho", "hoeffd"):
            raise ValueError("tree_criterion must be one of 'tau','rho','hoeffd'")
        if not (0.0 <= float(self.threshold) <= 1.0):
            raise ValueError("threshold must be in [0,1]")
        if self.sparse_criterion not in ("aic", "bic", "mbicv"):
            raise ValueError("sparse_criterion must be one of 'aic','bic','mbicv'")
        if self.tree_algorithm not in ("mst_prim", "mst_kruskal"):
            raise ValueError("tree_algorithm must be one of 'mst_prim','mst_kruskal'")

    def str(self) -> str:
        base = super().str()
        parts = [
            base,
            f"Tree criterion: {self.tree_criterion}",
            f"Threshold: {self.threshold}",
            f"Truncation level: {self.trunc_lvl if self.trunc_lvl is not None else 'none'}",
            f"Select truncation level: {self.select_trunc_lvl}",
            f"Select threshold: {self.select_threshold}",
            f"Sparse criterion: {self.sparse_criterion}",
            f"Show trace: {self.show_trace}",
            f"Tree algorithm: {self.tree_algorithm}",
        ]
        return "\n".join(parts)
