"""R-vine structure: a validated R-vine matrix and its traversal helpers.

Matrix convention (d x d, 1-based variable labels):

- the antidiagonal ``M[d-1-e, e]`` holds the variable whose column ``e`` it is;
- for tree ``t`` and edge ``e <= d-2-t`` the edge joins the conditioned pair
  ``(M[d-1-e, e], M[t, e])`` given ``{M[0, e], ..., M[t-1, e]}``;
- entries below the antidiagonal are zero.

Example (d = 4, C-vine rooted at 1, then 2, then 3)::

    1 1 1 1
    2 2 2 0
    3 3 0 0
    4 0 0 0
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import torch

from .errors import StructuralError


def _check_order(order: Sequence[int], d: int) -> list[int]:
    o = [int(x) for x in order]
    if len(o) != d:
        raise ValueError(f"order must have length d={d}, got {len(o)}")
    if sorted(o) != list(range(1, d + 1)):
        raise ValueError(f"order must be a permutation of 1..{d}, got {o}")
    return o


def _as_rows(matrix) -> tuple[tuple[int, ...], ...]:
    M = torch.as_tensor(matrix, dtype=torch.int64) if not isinstance(matrix, (list, tuple)) else None
    rows = M.tolist() if M is not None else [list(r) for r in matrix]
    d = len(rows)
    if d == 0 or any(len(r) != d for r in rows):
        raise ValueError("R-vine matrix must be square and non-empty")
    return tuple(tuple(int(v) for v in r) for r in rows)


def _validate(rows: tuple[tuple[int, ...], ...]) -> list[list[tuple[int, bool]]]:
    """Check the six structural conditions in order and return edge partners.

    ``partners[t][e]`` is ``(column, is_direct)``: the column whose tree ``t``
    pseudo-observation supplies the second argument of edge ``(t, e)``, and
    whether it is that column's direct (hfunc2) or indirect (hfunc1) value.
    """
    d = len(rows)

    # 1. zeros below the antidiagonal
    for i in range(d):
        for j in range(d):
            if i + j > d - 1 and rows[i][j] != 0:
                raise StructuralError(1, f"entry M[{i},{j}]={rows[i][j]} below the antidiagonal must be 0",
                                      tree=i, edge=j)

    # 2. labels in 1..d on and above the antidiagonal
    for j in range(d):
        for i in range(d - j):
            if not (1 <= rows[i][j] <= d):
                raise StructuralError(2, f"entry M[{i},{j}]={rows[i][j]} must lie in [1, {d}]", tree=i, edge=j)

    # 3. antidiagonal is a permutation
    diag = [rows[d - 1 - j][j] for j in range(d)]
    if sorted(diag) != list(range(1, d + 1)):
        raise StructuralError(3, f"antidiagonal {diag} is not a permutation of 1..{d}")

    # 4. antidiagonal entry of a column never reappears to its right
    for c in range(d):
        for j in range(c + 1, d):
            for i in range(d - 1 - j):
                if rows[i][j] == diag[c]:
                    raise StructuralError(4, f"variable {diag[c]} of column {c} reappears in column {j}",
                                          tree=i, edge=j)

    # 5. column entries are nested from right to left
    col_sets = [{rows[i][j] for i in range(d - j)} for j in range(d)]
    for j in range(d):
        if len(col_sets[j]) != d - j:
            raise StructuralError(5, f"column {j} repeats a variable", edge=j)
    for j in range(1, d):
        for k in range(j):
            if not col_sets[j] <= col_sets[k]:
                missing = sorted(col_sets[j] - col_sets[k])
                raise StructuralError(5, f"entries {missing} of column {j} missing from column {k}", edge=j)

    # 6. proximity: every edge's pair joins two edges of the previous tree
    col_of = {diag[j]: j for j in range(d)}
    partners: list[list[tuple[int, bool]]] = []
    if d >= 2:
        partners.append([(col_of[rows[0][e]], True) for e in range(d - 1)])
    for t in range(1, d - 1):
        row: list[tuple[int, bool]] = []
        for e in range(d - 1 - t):
            b = rows[t][e]
            cond = {rows[i][e] for i in range(t)}
            found = None
            for j in range(e + 1, d - t):
                prev = {rows[i][j] for i in range(t)}
                if diag[j] == b and prev == cond:
                    found = (j, True)
                    break
                if rows[t - 1][j] == b and ({diag[j]} | {rows[i][j] for i in range(t - 1)}) == cond:
                    found = (j, False)
                    break
            if found is None:
                raise StructuralError(
                    6, f"edge ({diag[e]}, {b} | {sorted(cond)}) does not join two edges of tree {t - 1}",
                    tree=t, edge=e,
                )
            row.append(found)
        partners.append(row)
    return partners


@dataclass(frozen=True)
class RVineStructure:
    """Validated R-vine matrix.

    Construction checks the six structural conditions and raises
    :class:`~vinetorch.errors.StructuralError` naming the first violated one.
    """

    rows: tuple[tuple[int, ...], ...]
    _partners: list = field(default=None, init=False, repr=False, compare=False)

    def __init__(self, matrix):
        rows = _as_rows(matrix)
        object.__setattr__(self, "rows", rows)
        object.__setattr__(self, "_partners", _validate(rows))

    # ---- constructors ----

    @classmethod
    def from_matrix(cls, matrix) -> "RVineStructure":
        return cls(matrix)

    @classmethod
    def dvine(cls, order: Sequence[int]) -> "RVineStructure":
        """D-vine (path) with variables connected in the given order."""
        d = len(order)
        o = _check_order(order, d)
        M = [[0] * d for _ in range(d)]
        for e in range(d):
            M[d - 1 - e][e] = o[d - 1 - e]
            for i in range(d - 1 - e):
                M[i][e] = o[d - 2 - e - i]
        return cls(M)

    @classmethod
    def cvine(cls, order: Sequence[int]) -> "RVineStructure":
        """C-vine whose tree ``t`` is a star rooted at ``order[t]``."""
        d = len(order)
        o = _check_order(order, d)
        M = [[0] * d for _ in range(d)]
        for e in range(d):
            M[d - 1 - e][e] = o[d - 1 - e]
            for i in range(d - 1 - e):
                M[i][e] = o[i]
        return cls(M)

    @classmethod
    def from_dimension(cls, d: int) -> "RVineStructure":
        """Default D-vine on 1..d."""
        d = int(d)
        if d < 1:
            raise ValueError("d must be positive")
        return cls.dvine(list(range(1, d + 1)))

    # ---- accessors ----

    @property
    def dim(self) -> int:
        return len(self.rows)

    @property
    def matrix(self) -> torch.Tensor:
        return torch.tensor(self.rows, dtype=torch.int64)

    @property
    def order(self) -> list[int]:
        """Antidiagonal, read from column 0 to column d-1."""
        d = self.dim
        return [self.rows[d - 1 - j][j] for j in range(d)]

    def _check_edge(self, tree: int, edge: int) -> None:
        d = self.dim
        if not (0 <= tree <= d - 2) or not (0 <= edge <= d - 2 - tree):
            raise IndexError(f"no edge {edge} in tree {tree} of a {d}-dimensional vine")

    def conditioned(self, tree: int, edge: int) -> tuple[int, int]:
        self._check_edge(tree, edge)
        d = self.dim
        return (self.rows[d - 1 - edge][edge], self.rows[tree][edge])

    def conditioning(self, tree: int, edge: int) -> list[int]:
        self._check_edge(tree, edge)
        return [self.rows[i][edge] for i in range(tree)]

    def partner(self, tree: int, edge: int) -> tuple[int, bool]:
        self._check_edge(tree, edge)
        return self._partners[tree][edge]

    def needs_indirect(self, tree: int, column: int) -> bool:
        """Whether some edge of ``tree`` reads the indirect value of ``column``."""
        if not (0 <= tree <= self.dim - 2):
            return False
        return any(j == column and not direct for j, direct in self._partners[tree])

    def str(self) -> str:
        lines = [f"<vinetorch.RVineStructure> dim={self.dim}"]
        lines.extend(" ".join(str(v) for v in r) for r in self.rows)
        return "\n".join(lines)
