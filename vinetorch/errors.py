"""Exception and warning types raised by vinetorch."""

from __future__ import annotations


class VineCopulaError(Exception):
    """Base class for all vinetorch errors."""


class StructuralError(VineCopulaError, ValueError):
    """An R-vine matrix violates one of the six structural conditions.

    ``condition`` is the 1-based index of the first failing check; ``tree``
    and ``edge`` locate the offending entry (row / column of the matrix)
    when the check is local to one entry.
    """

    def __init__(self, condition: int, message: str, *, tree: int | None = None, edge: int | None = None):
        self.condition = int(condition)
        self.tree = tree
        self.edge = edge
        where = ""
        if tree is not None or edge is not None:
            where = f" (tree={tree}, edge={edge})"
        super().__init__(f"condition {self.condition} violated{where}: {message}")


class ParameterBoundsError(VineCopulaError, ValueError):
    """Parameters have the wrong length or lie outside the family bounds."""


class SelectionFailure(VineCopulaError, RuntimeError):
    """Fitting an edge failed during structure selection."""

    def __init__(self, message: str, *, tree: int | None = None, edge: int | None = None):
        self.tree = tree
        self.edge = edge
        super().__init__(message)


class OptimizationWarning(RuntimeWarning):
    """The likelihood optimizer stopped before reaching its tolerance."""


class NumericBoundaryClamp(RuntimeWarning):
    """Non-finite function values were replaced with 0 or 1."""
