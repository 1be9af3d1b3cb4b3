"""vinetorch: pure-PyTorch parametric vine copula modelling.

Bivariate copula families with rotations, R-vine structures, vine copula
density/simulation/Rosenblatt transforms, and Dissmann structure selection.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .families import BicopFamily
from .bicop import Bicop
from .errors import (
    NumericBoundaryClamp,
    OptimizationWarning,
    ParameterBoundsError,
    SelectionFailure,
    StructuralError,
    VineCopulaError,
)
from .fit_controls import FitControlsBicop, FitControlsVinecop
from .rvine_structure import RVineStructure
from .vinecop import Vinecop
from .vine_select import VinecopSelector
from .stats import (
    pearson_cor, kendall_tau, spearman_rho, hoeffding_d, simulate_uniform,
)
from . import families as _families

# ---------------------------------------------------------------------------
# Individual family shortcut names
# ---------------------------------------------------------------------------
indep = BicopFamily.indep
gaussian = BicopFamily.gaussian
student = BicopFamily.student
clayton = BicopFamily.clayton
gumbel = BicopFamily.gumbel
frank = BicopFamily.frank
joe = BicopFamily.joe
bb1 = BicopFamily.bb1
bb6 = BicopFamily.bb6
bb7 = BicopFamily.bb7
bb8 = BicopFamily.bb8

# ---------------------------------------------------------------------------
# Family convenience lists
# ---------------------------------------------------------------------------
one_par = _families.one_par
two_par = _families.two_par
parametric = _families.parametric
rotationless = _families.rotationless
archimedean = _families.archimedean
elliptical = _families.elliptical
bb = _families.bb
lt = _families.lt
ut = _families.ut
itau = _families.itau
all = _families.all_families


__all__ = [
    "BicopFamily",
    "Bicop",
    "FitControlsBicop",
    "FitControlsVinecop",
    "RVineStructure",
    "Vinecop",
    "VinecopSelector",
    "simulate_uniform",
    # Errors and warnings
    "VineCopulaError",
    "StructuralError",
    "ParameterBoundsError",
    "SelectionFailure",
    "OptimizationWarning",
    "NumericBoundaryClamp",
    # Dependence measures
    "pearson_cor",
    "kendall_tau",
    "spearman_rho",
    "hoeffding_d",
    # Individual family shortcut names
    "indep",
    "gaussian",
    "student",
    "clayton",
    "gumbel",
    "frank",
    "joe",
    "bb1",
    "bb6",
    "bb7",
    "bb8",
    # Family convenience lists
    "one_par",
    "two_par",
    "parametric",
    "rotationless",
    "archimedean",
    "elliptical",
    "bb",
    "lt",
    "ut",
    "itau",
    "all",
]
