"""
Energy-equation evaluators: conserved energy, enthalpy, thermal conductivity
and the energy carried by mass sources.

Internal energies are linear in temperature about a reference temperature.
Energy is in J per cell, enthalpy in J/mol.
"""
import logging
from typing import Any, Literal, Mapping

import numpy as np
from pydantic import Field

from subsurf.core.constants import FREEZING_POINT, WATER_HEAT_CAPACITY
from subsurf.state.evaluators.base import Evaluator, EvaluatorOptions, register_evaluator
from subsurf.state.keys import read_key

logger = logging.getLogger(__name__)


class InternalEnergyOptions(EvaluatorOptions):
    liquid_heat_capacity: float = Field(WATER_HEAT_CAPACITY, alias="liquid heat capacity [J mol^-1 K^-1]", ge=0)
    rock_heat_capacity: float = Field(620.0, alias="rock heat capacity [J kg^-1 K^-1]", ge=0)
    reference_temperature: float = Field(FREEZING_POINT, alias="reference temperature [K]")


@register_evaluator("energy")
class LiquidRockEnergyEvaluator(Evaluator):
    """E = V [phi s_l n_l u_l + (1 - phi) rho_r u_r]"""

    options_model = InternalEnergyOptions

    def __init__(self, plist: Mapping[str, Any]):
        super().__init__(plist)
        d = self.domain
        self.phi_key = read_key(self.plist, d, "porosity", "porosity")
        self.sl_key = read_key(self.plist, d, "saturation liquid", "saturation_liquid")
        self.nl_key = read_key(self.plist, d, "molar density liquid", "molar_density_liquid")
        self.temp_key = read_key(self.plist, d, "temperature", "temperature")
        self.rho_rock_key = read_key(self.plist, d, "density rock", "density_rock")
        self.cv_key = read_key(self.plist, d, "cell volume", "cell_volume")
        for key in (self.phi_key, self.sl_key, self.nl_key, self.temp_key,
                    self.rho_rock_key, self.cv_key):
            self.add_dependency(key)

    def _inputs(self, store):
        get = lambda key: store.get_data(key, self.tag)["cell"]
        opts = self.options
        dT = get(self.temp_key) - opts.reference_temperature
        return dict(
            phi=get(self.phi_key), s_l=get(self.sl_key), n_l=get(self.nl_key),
            rho_r=get(self.rho_rock_key), cv=get(self.cv_key),
            u_l=opts.liquid_heat_capacity * dT, u_r=opts.rock_heat_capacity * dT,
        )

    def evaluate(self, store, results):
        x = self._inputs(store)
        results[self.name]["cell"] = x["cv"] * (
            x["phi"] * x["s_l"] * x["n_l"] * x["u_l"] + (1.0 - x["phi"]) * x["rho_r"] * x["u_r"]
        )

    def evaluate_partial(self, store, wrt, results):
        x = self._inputs(store)
        opts = self.options
        partials = {
            self.phi_key: lambda: x["cv"] * (x["s_l"] * x["n_l"] * x["u_l"] - x["rho_r"] * x["u_r"]),
            self.sl_key: lambda: x["cv"] * x["phi"] * x["n_l"] * x["u_l"],
            self.nl_key: lambda: x["cv"] * x["phi"] * x["s_l"] * x["u_l"],
            self.temp_key: lambda: x["cv"] * (
                x["phi"] * x["s_l"] * x["n_l"] * opts.liquid_heat_capacity
                + (1.0 - x["phi"]) * x["rho_r"] * opts.rock_heat_capacity),
            self.rho_rock_key: lambda: x["cv"] * (1.0 - x["phi"]) * x["u_r"],
            self.cv_key: lambda: x["phi"] * x["s_l"] * x["n_l"] * x["u_l"]
            + (1.0 - x["phi"]) * x["rho_r"] * x["u_r"],
        }
        if wrt.key not in partials:
            super().evaluate_partial(store, wrt, results)
            return
        results[self.name]["cell"] = partials[wrt.key]()


class EnthalpyOptions(EvaluatorOptions):
    liquid_heat_capacity: float = Field(WATER_HEAT_CAPACITY, alias="liquid heat capacity [J mol^-1 K^-1]", ge=0)
    reference_temperature: float = Field(FREEZING_POINT, alias="reference temperature [K]")
    include_work: bool = Field(True, alias="include work term")


@register_evaluator("enthalpy")
class EnthalpyEvaluator(Evaluator):
    """h = u_l + p / n_l"""

    options_model = EnthalpyOptions

    def __init__(self, plist: Mapping[str, Any]):
        super().__init__(plist)
        self.temp_key = read_key(self.plist, self.domain, "temperature", "temperature")
        self.add_dependency(self.temp_key)
        if self.options.include_work:
            self.pres_key = read_key(self.plist, self.domain, "pressure", "pressure")
            self.dens_key = read_key(self.plist, self.domain, "molar density liquid", "molar_density_liquid")
            self.add_dependency(self.pres_key)
            self.add_dependency(self.dens_key)

    def evaluate(self, store, results):
        opts = self.options
        T = store.get_data(self.temp_key, self.tag)["cell"]
        h = opts.liquid_heat_capacity * (T - opts.reference_temperature)
        if opts.include_work:
            p = store.get_data(self.pres_key, self.tag)["cell"]
            n = store.get_data(self.dens_key, self.tag)["cell"]
            h = h + p / n
        results[self.name]["cell"] = h

    def evaluate_partial(self, store, wrt, results):
        opts = self.options
        out = results[self.name]
        if wrt.key == self.temp_key:
            out.put_scalar(opts.liquid_heat_capacity)
        elif opts.include_work and wrt.key == self.pres_key:
            out["cell"] = 1.0 / store.get_data(self.dens_key, self.tag)["cell"]
        elif opts.include_work and wrt.key == self.dens_key:
            p = store.get_data(self.pres_key, self.tag)["cell"]
            n = store.get_data(self.dens_key, self.tag)["cell"]
            out["cell"] = -p / (n * n)
        else:
            super().evaluate_partial(store, wrt, results)


class ThermalConductivityOptions(EvaluatorOptions):
    model: Literal["constant", "linear saturation"] = Field("constant", alias="thermal conductivity type")
    conductivity: float = Field(1.0, alias="thermal conductivity [W m^-1 K^-1]", ge=0)
    dry_conductivity: float = Field(0.29, alias="dry thermal conductivity [W m^-1 K^-1]", ge=0)
    saturated_conductivity: float = Field(1.5, alias="saturated thermal conductivity [W m^-1 K^-1]", ge=0)


@register_evaluator("thermal conductivity")
class ThermalConductivityEvaluator(Evaluator):

    options_model = ThermalConductivityOptions

    def __init__(self, plist: Mapping[str, Any]):
        super().__init__(plist)
        if self.options.model == "linear saturation":
            self.sat_key = read_key(self.plist, self.domain, "saturation liquid", "saturation_liquid")
            self.add_dependency(self.sat_key)

    def evaluate(self, store, results):
        opts = self.options
        out = results[self.name]
        if opts.model == "constant":
            out.put_scalar(opts.conductivity)
            return
        s = store.get_data(self.sat_key, self.tag)["cell"]
        out["cell"] = opts.dry_conductivity + s * (opts.saturated_conductivity - opts.dry_conductivity)

    def evaluate_partial(self, store, wrt, results):
        opts = self.options
        if opts.model == "linear saturation" and wrt.key == self.sat_key:
            results[self.name].put_scalar(opts.saturated_conductivity - opts.dry_conductivity)
        else:
            super().evaluate_partial(store, wrt, results)


class AdvectedEnergySourceOptions(EvaluatorOptions):
    include_conduction: bool = Field(alias="include conduction")


@register_evaluator("advected energy source")
class AdvectedEnergySourceEvaluator(Evaluator):
    """Energy carried by a mass source, upwinded on the sign of the source.

    A positive mass source brings in external water at the external enthalpy
    and density; a negative one removes internal water. With conduction, a
    conducted energy source is added. Sources are per unit volume, the result
    is per cell.
    """

    options_model = AdvectedEnergySourceOptions

    def __init__(self, plist: Mapping[str, Any]):
        plist = dict(plist)
        if "evaluator name" not in plist:
            default = "total_energy_source" if plist.get("include conduction") else "advected_energy_source"
            plist["evaluator name"] = plist.get("energy source key", default)
        super().__init__(plist)
        d = self.domain
        self.int_enth_key = read_key(self.plist, d, "internal enthalpy", "enthalpy")
        self.ext_enth_key = read_key(self.plist, d, "external enthalpy", "mass_source_enthalpy")
        self.mass_source_key = read_key(self.plist, d, "mass source", "mass_source")
        self.int_dens_key = read_key(self.plist, d, "internal density", "molar_density_liquid")
        self.ext_dens_key = read_key(self.plist, d, "external density", "source_molar_density")
        self.cv_key = read_key(self.plist, d, "cell volume", "cell_volume")
        for key in (self.int_enth_key, self.ext_enth_key, self.mass_source_key,
                    self.int_dens_key, self.ext_dens_key, self.cv_key):
            self.add_dependency(key)
        self.include_conduction = self.options.include_conduction
        if self.include_conduction:
            self.cond_key = read_key(self.plist, d, "conducted energy source", "conducted_energy_source")
            self.add_dependency(self.cond_key)

    def _inputs(self, store):
        keys = [self.int_enth_key, self.ext_enth_key, self.mass_source_key,
                self.int_dens_key, self.ext_dens_key, self.cv_key]
        return {key: store.get_data(key, self.tag)["cell"] for key in keys}

    def evaluate(self, store, results):
        x = self._inputs(store)
        q = x[self.mass_source_key]
        upwind = np.where(q > 0.0,
                          x[self.ext_dens_key] * x[self.ext_enth_key],
                          x[self.int_dens_key] * x[self.int_enth_key])
        res = x[self.cv_key] * q * upwind
        if self.include_conduction:
            res = res + x[self.cv_key] * store.get_data(self.cond_key, self.tag)["cell"]
        results[self.name]["cell"] = res

    def evaluate_partial(self, store, wrt, results):
        x = self._inputs(store)
        q, cv = x[self.mass_source_key], x[self.cv_key]
        inflow = q > 0.0
        out = results[self.name]
        if wrt.key == self.mass_source_key:
            out["cell"] = cv * np.where(inflow, x[self.ext_dens_key] * x[self.ext_enth_key],
                                        x[self.int_dens_key] * x[self.int_enth_key])
        elif wrt.key == self.ext_enth_key:
            out["cell"] = np.where(inflow, cv * q * x[self.ext_dens_key], 0.0)
        elif wrt.key == self.ext_dens_key:
            out["cell"] = np.where(inflow, cv * q * x[self.ext_enth_key], 0.0)
        elif wrt.key == self.int_enth_key:
            out["cell"] = np.where(inflow, 0.0, cv * q * x[self.int_dens_key])
        elif wrt.key == self.int_dens_key:
            out["cell"] = np.where(inflow, 0.0, cv * q * x[self.int_enth_key])
        elif self.include_conduction and wrt.key == self.cond_key:
            out["cell"] = cv
        elif wrt.key == self.cv_key:
            upwind = np.where(inflow, x[self.ext_dens_key] * x[self.ext_enth_key],
                              x[self.int_dens_key] * x[self.int_enth_key])
            res = q * upwind
            if self.include_conduction:
                res = res + store.get_data(self.cond_key, self.tag)["cell"]
            out["cell"] = res
        else:
            super().evaluate_partial(store, wrt, results)
