"""
Equation-of-state evaluator: molar and/or mass density from temperature and
pressure.

Output key names follow a textual convention kept for configuration
compatibility. With ``"EOS basis"`` in {molar, both} the molar key is:

- the ``"molar density key"`` option, defaulting to the evaluator name, if the
  name contains ``"molar"``;
- otherwise, if the name contains ``"mass"``, the name with its first ``"mass"``
  replaced by ``"molar"`` (again overridable by the option);
- otherwise the ``"molar density key"`` option, which is then required.

The mass key for {mass, both} is resolved symmetrically.
"""
import logging
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Type

import numpy as np
from pydantic import Field

from subsurf.core.config import Options, parse_options
from subsurf.core.constants import ATMOSPHERIC_PRESSURE, FREEZING_POINT, WATER_MASS_DENSITY, WATER_MOLAR_MASS
from subsurf.core.exceptions import ConfigurationError, ErrorContext
from subsurf.state.evaluators.base import Evaluator, EvaluatorOptions, register_evaluator
from subsurf.state.keys import read_key

logger = logging.getLogger(__name__)


# =============================================================================
# EOS models
# =============================================================================

class EOSModel:
    """Pointwise density model; all methods are vectorized over numpy arrays"""

    def molar_mass(self) -> float:
        raise NotImplementedError

    def is_constant_molar_mass(self) -> bool:
        return True

    def mass_density(self, T, p):
        raise NotImplementedError

    def d_mass_density_dp(self, T, p):
        raise NotImplementedError

    def d_mass_density_dT(self, T, p):
        raise NotImplementedError

    def molar_density(self, T, p):
        return self.mass_density(T, p) / self.molar_mass()

    def d_molar_density_dp(self, T, p):
        return self.d_mass_density_dp(T, p) / self.molar_mass()

    def d_molar_density_dT(self, T, p):
        return self.d_mass_density_dT(T, p) / self.molar_mass()


class ConstantEOSParameters(Options):
    eos_type: str = Field("constant", alias="EOS type")
    density: float = Field(alias="density [kg m^-3]", gt=0)
    molar_mass: float = Field(WATER_MOLAR_MASS, alias="molar mass [kg mol^-1]", gt=0)


class ConstantEOS(EOSModel):
    """Density independent of state"""

    def __init__(self, params: ConstantEOSParameters):
        self.rho = params.density
        self.M = params.molar_mass

    def molar_mass(self):
        return self.M

    def mass_density(self, T, p):
        return np.full_like(np.asarray(T, dtype=float), self.rho)

    def d_mass_density_dp(self, T, p):
        return np.zeros_like(np.asarray(T, dtype=float))

    def d_mass_density_dT(self, T, p):
        return np.zeros_like(np.asarray(T, dtype=float))


class LinearEOSParameters(Options):
    eos_type: str = Field("linear", alias="EOS type")
    reference_density: float = Field(WATER_MASS_DENSITY, alias="reference density [kg m^-3]", gt=0)
    reference_pressure: float = Field(ATMOSPHERIC_PRESSURE, alias="reference pressure [Pa]")
    reference_temperature: float = Field(FREEZING_POINT, alias="reference temperature [K]")
    compressibility: float = Field(5.e-10, alias="compressibility [Pa^-1]", ge=0)
    thermal_expansion: float = Field(2.1e-4, alias="thermal expansion [K^-1]", ge=0)
    molar_mass: float = Field(WATER_MOLAR_MASS, alias="molar mass [kg mol^-1]", gt=0)


class LinearEOS(EOSModel):
    """rho = rho0 * (1 + beta (p - p0) - alpha (T - T0))"""

    def __init__(self, params: LinearEOSParameters):
        self.params = params

    def molar_mass(self):
        return self.params.molar_mass

    def mass_density(self, T, p):
        prm = self.params
        return prm.reference_density * (
            1.0 + prm.compressibility * (np.asarray(p) - prm.reference_pressure)
            - prm.thermal_expansion * (np.asarray(T) - prm.reference_temperature)
        )

    def d_mass_density_dp(self, T, p):
        return np.full_like(np.asarray(T, dtype=float),
                            self.params.reference_density * self.params.compressibility)

    def d_mass_density_dT(self, T, p):
        return np.full_like(np.asarray(T, dtype=float),
                            -self.params.reference_density * self.params.thermal_expansion)


_EOS_MODELS: Dict[str, Callable[[Mapping[str, Any]], EOSModel]] = {
    "constant": lambda plist: ConstantEOS(parse_options(ConstantEOSParameters, plist, "EOS parameters")),
    "linear": lambda plist: LinearEOS(parse_options(LinearEOSParameters, plist, "EOS parameters")),
}


def create_eos(plist: Mapping[str, Any]) -> EOSModel:
    eos_type = plist.get("EOS type", "constant")
    if eos_type not in _EOS_MODELS:
        raise ConfigurationError(
            f"Unknown EOS type '{eos_type}'; available: {', '.join(sorted(_EOS_MODELS))}",
            context=ErrorContext(component="EOS parameters", operation="create_eos"),
        )
    return _EOS_MODELS[eos_type](plist)


# =============================================================================
# Evaluator
# =============================================================================

class EOSEvaluatorOptions(EvaluatorOptions):
    mode: Literal["molar", "mass", "both"] = Field("molar", alias="EOS basis")
    molar_density_key: Optional[str] = Field(None, alias="molar density key")
    mass_density_key: Optional[str] = Field(None, alias="mass density key")
    eos_parameters: Optional[Dict[str, Any]] = Field(None, alias="EOS parameters")


def infer_density_key(name: str, basis: str, explicit: Optional[str]) -> str:
    """Key of the ``basis`` ("molar" or "mass") density for an evaluator named ``name``."""
    other = "mass" if basis == "molar" else "molar"
    if basis in name:
        return explicit or name
    if other in name:
        return explicit or name.replace(other, basis, 1)
    if explicit is None:
        raise ConfigurationError(
            f"Cannot infer the {basis} density key from '{name}'; "
            f"option '{basis} density key' is required",
            context=ErrorContext(key=name, operation="infer_density_key"),
        )
    return explicit


@register_evaluator("eos")
class EOSEvaluator(Evaluator):
    """Molar and/or mass density from an EOS model"""

    options_model = EOSEvaluatorOptions

    def __init__(self, plist: Mapping[str, Any]):
        super().__init__(plist)
        opts = self.options
        self.mode = opts.mode

        self.my_keys = []
        self.molar_key: Optional[str] = None
        self.mass_key: Optional[str] = None
        if self.mode in ("molar", "both"):
            self.molar_key = infer_density_key(self.name, "molar", opts.molar_density_key)
            self.my_keys.append(self.molar_key)
        if self.mode in ("mass", "both"):
            self.mass_key = infer_density_key(self.name, "mass", opts.mass_density_key)
            self.my_keys.append(self.mass_key)

        self.temp_key = read_key(self.plist, self.domain, "temperature", "temperature")
        self.pres_key = read_key(self.plist, self.domain, "pressure", "effective_pressure")
        self.add_dependency(self.temp_key)
        self.add_dependency(self.pres_key)

        if opts.eos_parameters is None:
            raise ConfigurationError(
                "Missing required sublist 'EOS parameters'",
                context=ErrorContext(key=self.name, tag=self.tag, operation="__init__"),
            )
        self.eos = create_eos(opts.eos_parameters)

    def _mass_from_molar(self) -> bool:
        return self.mode == "both" and self.eos.is_constant_molar_mass()

    def evaluate(self, store, results):
        T = store.get_data(self.temp_key, self.tag)
        p = store.get_data(self.pres_key, self.tag)
        for component in results[self.my_keys[0]]:
            if self.molar_key is not None:
                results[self.molar_key][component] = self.eos.molar_density(T[component], p[component])
            if self.mass_key is not None:
                if self._mass_from_molar():
                    results[self.mass_key][component] = (
                        self.eos.molar_mass() * results[self.molar_key][component]
                    )
                else:
                    results[self.mass_key][component] = self.eos.mass_density(T[component], p[component])

    def evaluate_partial(self, store, wrt, results):
        if wrt.key == self.pres_key:
            d_molar, d_mass = self.eos.d_molar_density_dp, self.eos.d_mass_density_dp
        elif wrt.key == self.temp_key:
            d_molar, d_mass = self.eos.d_molar_density_dT, self.eos.d_mass_density_dT
        else:
            super().evaluate_partial(store, wrt, results)
            return

        T = store.get_data(self.temp_key, self.tag)
        p = store.get_data(self.pres_key, self.tag)
        for component in results[self.my_keys[0]]:
            if self.molar_key is not None:
                results[self.molar_key][component] = d_molar(T[component], p[component])
            if self.mass_key is not None:
                if self._mass_from_molar():
                    results[self.mass_key][component] = (
                        self.eos.molar_mass() * results[self.molar_key][component]
                    )
                else:
                    results[self.mass_key][component] = d_mass(T[component], p[component])
