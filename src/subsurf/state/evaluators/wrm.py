"""
Water retention: saturation and relative permeability from capillary pressure.

The van Genuchten model implements the retention curve

    s(pc) = (1 + (alpha pc)^n)^(-m) (1 - sr) + sr,    pc > 0
    s(pc) = 1,                                        pc <= 0

and the Mualem or Burdine relative permeability of the liquid saturation.
The relative permeability curve may be regularized on (s0, 1) with a cubic
Hermite interpolant matching value and slope at s0 and (1, 0) at s = 1.

References:
- Van Genuchten, M.Th. (1980). A closed-form equation for predicting the
  hydraulic conductivity of unsaturated soils. Soil Sci. Soc. Am. J. 44:892-898.
- Mualem, Y. (1976). A new model for predicting the hydraulic conductivity
  of unsaturated porous media. Water Resources Research, 12(3):513-522.
"""
import logging
from typing import Any, Dict, Literal, Mapping, Optional

import numpy as np
from pydantic import Field, model_validator
from scipy.interpolate import CubicHermiteSpline

from subsurf.core.config import Options, parse_options
from subsurf.core.constants import FLOW_WRM_TOLERANCE
from subsurf.core.exceptions import ConfigurationError, ErrorContext
from subsurf.core.types import FieldKey
from subsurf.state.evaluators.base import Evaluator, EvaluatorOptions, register_evaluator
from subsurf.state.keys import get_key, read_key

logger = logging.getLogger(__name__)


# =============================================================================
# Van Genuchten model
# =============================================================================

class VanGenuchtenParameters(Options):
    """Parameters of the van Genuchten retention curve.

    Exactly one of ``van Genuchten n`` / ``van Genuchten m`` is needed; the
    other follows from the Mualem (m = 1 - 1/n) or Burdine (m = 1 - 2/n)
    constraint.
    """
    krel_function: Literal["Mualem", "Burdine"] = Field("Mualem", alias="Krel function name")
    alpha: float = Field(alias="van Genuchten alpha", gt=0)
    n: Optional[float] = Field(None, alias="van Genuchten n", gt=1)
    m: Optional[float] = Field(None, alias="van Genuchten m", gt=0, lt=1)
    residual_saturation: float = Field(0.0, alias="residual saturation", ge=0, lt=1)
    mualem_l: float = Field(0.5, alias="Mualem exponent l")
    smoothing_width: float = Field(0.0, alias="smoothing interval width [saturation]", ge=0, lt=1)

    @model_validator(mode="after")
    def validate_shape(self):
        if self.n is None and self.m is None:
            raise ValueError("one of 'van Genuchten n' or 'van Genuchten m' is required")
        return self


class VanGenuchtenModel:
    """Vectorized van Genuchten retention and relative permeability"""

    def __init__(self, params: VanGenuchtenParameters):
        self.params = params
        self.function = params.krel_function
        self.alpha = params.alpha
        self.sr = params.residual_saturation
        self.l = params.mualem_l

        if params.m is not None:
            self.m = params.m
            self.n = 1.0 / (1.0 - self.m) if self.function == "Mualem" else 2.0 / (1.0 - self.m)
        else:
            self.n = params.n
            self.m = 1.0 - 1.0 / self.n if self.function == "Mualem" else 1.0 - 2.0 / self.n

        self.s0 = 1.0 - params.smoothing_width
        self._fit: Optional[CubicHermiteSpline] = None
        if self.s0 < 1.0:
            self._fit = CubicHermiteSpline(
                [self.s0, 1.0],
                [self._k_relative_raw(np.array([self.s0]))[0], 1.0],
                [self._d_k_relative_raw(np.array([self.s0]))[0], 0.0],
            )

    # -------------------------------------------------------------------------
    # Relative permeability of liquid saturation
    # -------------------------------------------------------------------------

    def _effective(self, s):
        return (s - self.sr) / (1.0 - self.sr)

    def _k_relative_raw(self, s):
        se = np.clip(self._effective(s), 0.0, 1.0)
        inner = 1.0 - np.power(1.0 - np.power(se, 1.0 / self.m), self.m)
        if self.function == "Mualem":
            return np.power(se, self.l) * inner ** 2
        return se * se * inner

    def _d_k_relative_raw(self, s):
        se = np.clip(self._effective(s), 0.0, 1.0)
        x = np.power(se, 1.0 / self.m)
        flat = np.abs(1.0 - x) < FLOW_WRM_TOLERANCE
        x_safe = np.where(flat, 0.5, x)
        y = np.power(1.0 - x_safe, self.m)
        with np.errstate(divide="ignore", invalid="ignore"):
            if self.function == "Mualem":
                dkdse = (1.0 - y) * (self.l * (1.0 - y) + 2 * x_safe * y / (1.0 - x_safe)) \
                    * np.power(se, self.l - 1.0)
            else:
                dkdse = (2 * (1.0 - y) + x_safe / (1.0 - x_safe)) * se
        dkdse = np.where(flat | ~np.isfinite(dkdse), 0.0, dkdse)
        return dkdse / (1.0 - self.sr)

    def k_relative(self, s):
        s = np.asarray(s, dtype=float)
        kr = self._k_relative_raw(s)
        if self._fit is not None:
            smooth = (s > self.s0) & (s < 1.0)
            kr = np.where(smooth, self._fit(np.clip(s, self.s0, 1.0)), kr)
        return np.where(s >= 1.0, 1.0, kr)

    def d_k_relative(self, s):
        """d k_r / d s"""
        s = np.asarray(s, dtype=float)
        dkr = self._d_k_relative_raw(s)
        if self._fit is not None:
            smooth = (s > self.s0) & (s < 1.0)
            dkr = np.where(smooth, self._fit(np.clip(s, self.s0, 1.0), 1), dkr)
        return np.where(s >= 1.0, 0.0, dkr)

    # -------------------------------------------------------------------------
    # Retention curve
    # -------------------------------------------------------------------------

    def saturation(self, pc):
        pc = np.asarray(pc, dtype=float)
        pos = np.maximum(pc, 0.0)
        s = np.power(1.0 + np.power(self.alpha * pos, self.n), -self.m) * (1.0 - self.sr) + self.sr
        return np.where(pc > 0.0, s, 1.0)

    def d_saturation(self, pc):
        """d s / d pc"""
        pc = np.asarray(pc, dtype=float)
        pos = np.maximum(pc, 0.0)
        ds = -self.m * self.n * np.power(1.0 + np.power(self.alpha * pos, self.n), -self.m - 1.0) \
            * np.power(self.alpha * pos, self.n - 1) * self.alpha * (1.0 - self.sr)
        return np.where(pc > 0.0, ds, 0.0)

    def capillary_pressure(self, s):
        se = np.clip(self._effective(np.asarray(s, dtype=float)), 1.e-40, 1.0)
        return np.where(
            se < 1.e-8,
            np.power(se, -1.0 / (self.m * self.n)) / self.alpha,
            np.power(np.power(se, -1.0 / self.m) - 1.0, 1 / self.n) / self.alpha,
        )

    def d_capillary_pressure(self, s):
        se = np.clip(self._effective(np.asarray(s, dtype=float)), 1.e-40, 1.0)
        with np.errstate(divide="ignore", invalid="ignore"):
            far = -1.0 / (self.m * self.n * self.alpha) * np.power(se, -1.0 / (self.m * self.n) - 1.) \
                / (1.0 - self.sr)
            near = -1.0 / (self.m * self.n * self.alpha) \
                * np.power(np.power(se, -1.0 / self.m) - 1.0, 1 / self.n - 1.0) \
                * np.power(se, -1.0 / self.m - 1.0) / (1.0 - self.sr)
        return np.where(se < 1.e-8, far, near)


def create_wrm(plist: Optional[Mapping[str, Any]], owner: str) -> VanGenuchtenModel:
    if plist is None:
        raise ConfigurationError(
            "Missing required sublist 'WRM parameters'",
            context=ErrorContext(key=owner, operation="create_wrm"),
        )
    wrm_type = plist.get("WRM type", "van Genuchten")
    if wrm_type != "van Genuchten":
        raise ConfigurationError(
            f"Unknown WRM type '{wrm_type}'",
            context=ErrorContext(key=owner, operation="create_wrm"),
        )
    return VanGenuchtenModel(parse_options(VanGenuchtenParameters, plist, owner=f"{owner} WRM parameters"))


def boundary_values(store, data, domain):
    """Boundary-face values of a field stored on faces or boundary faces."""
    if "boundary_face" in data:
        return data["boundary_face"]
    if "face" in data:
        return data["face"][np.asarray(store.mesh(domain).boundary_faces(), dtype=int)]
    return None


# =============================================================================
# Evaluators
# =============================================================================

class WRMEvaluatorOptions(EvaluatorOptions):
    components: tuple = Field(("cell", "boundary_face"), alias="components")
    wrm_parameters: Optional[Dict[str, Any]] = Field(None, alias="WRM parameters")


@register_evaluator("water retention")
class WRMEvaluator(Evaluator):
    """Liquid and gas saturation from pressure, with pc = p_atm - p"""

    options_model = WRMEvaluatorOptions

    def __init__(self, plist: Mapping[str, Any]):
        super().__init__(plist)
        self.sat_key = read_key(self.plist, self.domain, "saturation", "saturation_liquid")
        self.sat_gas_key = read_key(self.plist, self.domain, "saturation gas", "saturation_gas")
        self.my_keys = [self.sat_key, self.sat_gas_key]
        self.pres_key = read_key(self.plist, self.domain, "pressure", "pressure")
        self.add_dependency(self.pres_key)
        self.wrm = create_wrm(self.options.wrm_parameters, self.name)

    def _capillary_pressure(self, store):
        p_atm = store.get_scalar("atmospheric_pressure")
        pres = store.get_data(self.pres_key, self.tag)
        pc = {}
        for component in self.components:
            if component == "boundary_face":
                values = boundary_values(store, pres, self.domain)
            else:
                values = pres[component] if component in pres else None
            if values is not None:
                pc[component] = p_atm - values
        return pc

    def evaluate(self, store, results):
        for component, pc in self._capillary_pressure(store).items():
            sat = self.wrm.saturation(pc)
            results[self.sat_key][component] = sat
            results[self.sat_gas_key][component] = 1.0 - sat

    def evaluate_partial(self, store, wrt, results):
        if wrt.key != self.pres_key:
            super().evaluate_partial(store, wrt, results)
            return
        for component, pc in self._capillary_pressure(store).items():
            dsat_dp = -self.wrm.d_saturation(pc)
            results[self.sat_key][component] = dsat_dp
            results[self.sat_gas_key][component] = -dsat_dp


class RelPermOptions(EvaluatorOptions):
    components: tuple = Field(("cell", "boundary_face"), alias="components")
    wrm_parameters: Optional[Dict[str, Any]] = Field(None, alias="WRM parameters")
    rescaling: float = Field(1.0, alias="permeability rescaling", gt=0)
    use_density_on_viscosity: bool = Field(False, alias="use density on viscosity in rel perm")


@register_evaluator("relative permeability")
class RelPermEvaluator(Evaluator):
    """k_r(s_l), optionally times n_l / mu, times a rescaling factor"""

    options_model = RelPermOptions

    def __init__(self, plist: Mapping[str, Any]):
        super().__init__(plist)
        self.sat_key = read_key(self.plist, self.domain, "saturation", "saturation_liquid")
        self.add_dependency(self.sat_key)
        self.use_dens_visc = self.options.use_density_on_viscosity
        if self.use_dens_visc:
            self.dens_key = read_key(self.plist, self.domain, "density", "molar_density_liquid")
            self.visc_key = read_key(self.plist, self.domain, "viscosity", "viscosity_liquid")
            self.add_dependency(self.dens_key)
            self.add_dependency(self.visc_key)
        self.rescaling = self.options.rescaling
        self.wrm = create_wrm(self.options.wrm_parameters, self.name)

    def dependency_components(self, dep):
        if dep.key == self.sat_key:
            return self.components
        return ("cell",)

    def _factor(self, store, component):
        if not self.use_dens_visc:
            return 1.0
        dens = store.get_data(self.dens_key, self.tag)
        visc = store.get_data(self.visc_key, self.tag)
        if component in dens and component in visc:
            return dens[component] / visc[component]
        # boundary faces take the value of their interior cell
        cells = _boundary_cells(store, self.domain)
        return dens["cell"][cells] / visc["cell"][cells]

    def evaluate(self, store, results):
        sat = store.get_data(self.sat_key, self.tag)
        out = results[self.name]
        for component in out:
            out[component] = self.rescaling * self.wrm.k_relative(sat[component]) \
                * self._factor(store, component)

    def evaluate_partial(self, store, wrt, results):
        sat = store.get_data(self.sat_key, self.tag)
        out = results[self.name]
        if wrt.key == self.sat_key:
            for component in out:
                out[component] = self.rescaling * self.wrm.d_k_relative(sat[component]) \
                    * self._factor(store, component)
        elif self.use_dens_visc and wrt.key in (self.dens_key, self.visc_key):
            dens = store.get_data(self.dens_key, self.tag)
            visc = store.get_data(self.visc_key, self.tag)
            kr = self.rescaling * self.wrm.k_relative(sat["cell"])
            if wrt.key == self.dens_key:
                out["cell"] = kr / visc["cell"]
            else:
                out["cell"] = -kr * dens["cell"] / visc["cell"] ** 2
        else:
            super().evaluate_partial(store, wrt, results)

    def boundary_value(self, store, saturation: float, index: int) -> float:
        """k_r of boundary face ``index`` at a trial saturation"""
        factor = self._factor(store, "boundary_face")
        if not np.isscalar(factor):
            factor = factor[index]
        return float(self.rescaling * self.wrm.k_relative(np.array([saturation]))[0] * factor)


def _boundary_cells(store, domain):
    mesh = store.mesh(domain)
    return np.array([mesh.face_get_cells(f)[0] for f in mesh.boundary_faces()], dtype=int)
