"""
Predictor correction at flux-controlled boundary faces.

With a prescribed boundary flux the face unknown enters the flux both through
the potential difference and through the relative permeability evaluated at
the face. A linearly extrapolated face value can be far from satisfying
that flux, which costs the nonlinear solver several iterations. Each such
face is corrected by solving its scalar flux equation

    K(u_f) (u_c - u_f + g_cf) - A_f q_f = 0

with the cell value held fixed.
"""
import logging
from typing import Callable, Iterable, Tuple

import numpy as np
from scipy.optimize import brentq

logger = logging.getLogger(__name__)

# initial half-width and growth of the bracket search, in units of the primary variable
BRACKET_START = 1.0
BRACKET_GROWTH = 4.0
BRACKET_MAX_EXPANSIONS = 40


def find_bracket(func: Callable[[float], float], x0: float) -> Tuple[float, float]:
    """Expand a bracket around ``x0`` until ``func`` changes sign.

    Raises ValueError if no sign change is found.
    """
    f0 = func(x0)
    if f0 == 0.0:
        return x0, x0
    width = BRACKET_START
    for _ in range(BRACKET_MAX_EXPANSIONS):
        lo, hi = x0 - width, x0 + width
        f_lo, f_hi = func(lo), func(hi)
        if np.sign(f_lo) != np.sign(f0):
            return lo, x0
        if np.sign(f_hi) != np.sign(f0):
            return x0, hi
        width *= BRACKET_GROWTH
    raise ValueError(f"No sign change within {width:g} of {x0:g}")


class FluxBCPredictor:
    """Solves the boundary flux equation on each Neumann face.

    ``pair_coefficient(face, u_f)`` returns K for the face's single pair as a
    function of the trial face value.
    """

    def __init__(self, name: str = "flux BC predictor"):
        self.name = name
        self.logger = logging.getLogger(f"{__name__}.{name}")

    def modify_predictor(self, u, faces: Iterable[int], pair_index: np.ndarray,
                         gravity_term: np.ndarray, face_areas: np.ndarray, values: np.ndarray,
                         pair_cell: np.ndarray,
                         pair_coefficient: Callable[[int, float], float]) -> bool:
        changed = False
        for f in faces:
            i = pair_index[f]
            u_c = u["cell"][pair_cell[i]]
            target = face_areas[f] * values[f]

            def residual(u_f, f=f, i=i, u_c=u_c, target=target):
                return pair_coefficient(f, u_f) * (u_c - u_f + gravity_term[i]) - target

            x0 = u["face"][f]
            try:
                lo, hi = find_bracket(residual, x0)
                root = lo if lo == hi else brentq(residual, lo, hi, xtol=1.e-10, rtol=1.e-12)
            except ValueError as exc:
                self.logger.warning(f"Face {f}: flux BC predictor could not bracket a root ({exc})")
                continue
            self.logger.debug(f"Face {f}: predictor {x0:g} -> {root:g}")
            if root != x0:
                u["face"][f] = root
                changed = True
        return changed
