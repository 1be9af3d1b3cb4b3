"""BicopFamily enum and family groupings."""

from __future__ import annotations

from enum import Enum


class BicopFamily(str, Enum):
    indep = "indep"
    gaussian = "gaussian"
    student = "student"
    clayton = "clayton"
    gumbel = "gumbel"
    frank = "frank"
    joe = "joe"
    bb1 = "bb1"
    bb6 = "bb6"
    bb7 = "bb7"
    bb8 = "bb8"


_FAMILY_CAN_ROTATE = {
    BicopFamily.indep: False,
    BicopFamily.gaussian: False,
    BicopFamily.student: False,
    BicopFamily.frank: False,
}


def family_can_rotate(fam: BicopFamily) -> bool:
    return _FAMILY_CAN_ROTATE.get(fam, True)


def normalize_family(fam: str | BicopFamily) -> BicopFamily:
    if isinstance(fam, BicopFamily):
        return fam
    try:
        return BicopFamily(str(fam).lower())
    except ValueError as e:
        raise ValueError(f"Unknown BicopFamily: {fam!r}") from e


all_families = list(BicopFamily)
parametric = [f for f in BicopFamily if f != BicopFamily.indep]
elliptical = [BicopFamily.gaussian, BicopFamily.student]
archimedean = [
    BicopFamily.clayton, BicopFamily.gumbel, BicopFamily.frank, BicopFamily.joe,
    BicopFamily.bb1, BicopFamily.bb6, BicopFamily.bb7, BicopFamily.bb8,
]
one_par = [
    BicopFamily.gaussian, BicopFamily.clayton, BicopFamily.gumbel,
    BicopFamily.frank, BicopFamily.joe,
]
two_par = [BicopFamily.student, BicopFamily.bb1, BicopFamily.bb6, BicopFamily.bb7, BicopFamily.bb8]
bb = [BicopFamily.bb1, BicopFamily.bb6, BicopFamily.bb7, BicopFamily.bb8]
rotationless = [BicopFamily.indep, BicopFamily.gaussian, BicopFamily.student, BicopFamily.frank]
lt = [BicopFamily.clayton, BicopFamily.bb1, BicopFamily.bb7]
ut = [BicopFamily.gumbel, BicopFamily.joe, BicopFamily.bb1, BicopFamily.bb6, BicopFamily.bb7, BicopFamily.bb8]
itau = [
    BicopFamily.indep, BicopFamily.gaussian, BicopFamily.student, BicopFamily.clayton,
    BicopFamily.gumbel, BicopFamily.frank, BicopFamily.joe,
]
