"""
Conserved quantities of the flow equations and the mesh fields they need.

Richards water content (mol per cell):

    WC = phi * (s_l n_l + omega_g s_g n_g) * V

Overland water content (mol per surface cell):

    WC = h * n_l * A,    h = max(p - p_atm, 0) / (rho g)
"""
import logging
from typing import Any, Mapping

import numpy as np

from subsurf.core.types import EntityKind
from subsurf.state.evaluators.base import Evaluator, register_evaluator
from subsurf.state.keys import read_key

logger = logging.getLogger(__name__)


@register_evaluator("cell volume")
class CellVolumeEvaluator(Evaluator):
    """Cell volumes (areas, on a surface mesh) copied from the mesh"""

    def evaluate(self, store, results):
        mesh = store.mesh(self.domain)
        n_cells = mesh.num_entities(EntityKind.CELL)
        results[self.name]["cell"] = [mesh.cell_volume(c) for c in range(n_cells)]


@register_evaluator("richards water content")
class RichardsWaterContentEvaluator(Evaluator):

    def __init__(self, plist: Mapping[str, Any]):
        super().__init__(plist)
        domain = self.domain
        self.phi_key = read_key(self.plist, domain, "porosity", "porosity")
        self.sl_key = read_key(self.plist, domain, "saturation liquid", "saturation_liquid")
        self.nl_key = read_key(self.plist, domain, "molar density liquid", "molar_density_liquid")
        self.sg_key = read_key(self.plist, domain, "saturation gas", "saturation_gas")
        self.ng_key = read_key(self.plist, domain, "molar density gas", "molar_density_gas")
        self.omega_key = read_key(self.plist, domain, "molar fraction gas", "mol_frac_gas")
        self.cv_key = read_key(self.plist, domain, "cell volume", "cell_volume")
        for key in (self.phi_key, self.sl_key, self.nl_key, self.sg_key,
                    self.ng_key, self.omega_key, self.cv_key):
            self.add_dependency(key)

    def _fields(self, store):
        return {key: store.get_data(key, self.tag)["cell"] for key in
                (self.phi_key, self.sl_key, self.nl_key, self.sg_key,
                 self.ng_key, self.omega_key, self.cv_key)}

    def evaluate(self, store, results):
        f = self._fields(store)
        results[self.name]["cell"] = f[self.phi_key] * (
            f[self.sl_key] * f[self.nl_key]
            + f[self.sg_key] * f[self.ng_key] * f[self.omega_key]
        ) * f[self.cv_key]

    def evaluate_partial(self, store, wrt, results):
        f = self._fields(store)
        phi, cv = f[self.phi_key], f[self.cv_key]
        s_l, n_l = f[self.sl_key], f[self.nl_key]
        s_g, n_g, omega = f[self.sg_key], f[self.ng_key], f[self.omega_key]

        partials = {
            self.phi_key: lambda: (s_l * n_l + s_g * n_g * omega) * cv,
            self.sl_key: lambda: phi * n_l * cv,
            self.nl_key: lambda: phi * s_l * cv,
            self.sg_key: lambda: phi * n_g * omega * cv,
            self.ng_key: lambda: phi * s_g * omega * cv,
            self.omega_key: lambda: phi * s_g * n_g * cv,
            self.cv_key: lambda: phi * (s_l * n_l + s_g * n_g * omega),
        }
        if wrt.key not in partials:
            super().evaluate_partial(store, wrt, results)
            return
        results[self.name]["cell"] = partials[wrt.key]()


@register_evaluator("ponded depth")
class PondedDepthEvaluator(Evaluator):
    """h = max(p - p_atm, 0) / (rho g)"""

    def __init__(self, plist: Mapping[str, Any]):
        super().__init__(plist)
        self.pres_key = read_key(self.plist, self.domain, "pressure", "pressure")
        self.rho_key = read_key(self.plist, self.domain, "mass density", "mass_density_liquid")
        self.add_dependency(self.pres_key)
        self.add_dependency(self.rho_key)

    def _inputs(self, store):
        p = store.get_data(self.pres_key, self.tag)["cell"]
        rho = store.get_data(self.rho_key, self.tag)["cell"]
        p_atm = store.get_scalar("atmospheric_pressure")
        g = np.linalg.norm(store.gravity)
        return p - p_atm, rho, g

    def evaluate(self, store, results):
        dp, rho, g = self._inputs(store)
        results[self.name]["cell"] = np.maximum(dp, 0.0) / (rho * g)

    def evaluate_partial(self, store, wrt, results):
        dp, rho, g = self._inputs(store)
        if wrt.key == self.pres_key:
            results[self.name]["cell"] = np.where(dp > 0.0, 1.0 / (rho * g), 0.0)
        elif wrt.key == self.rho_key:
            results[self.name]["cell"] = -np.maximum(dp, 0.0) / (rho * rho * g)
        else:
            super().evaluate_partial(store, wrt, results)


@register_evaluator("overland water content")
class OverlandWaterContentEvaluator(Evaluator):
    """WC = h n_l A"""

    def __init__(self, plist: Mapping[str, Any]):
        super().__init__(plist)
        self.depth_key = read_key(self.plist, self.domain, "ponded depth", "ponded_depth")
        self.dens_key = read_key(self.plist, self.domain, "molar density liquid", "molar_density_liquid")
        self.cv_key = read_key(self.plist, self.domain, "cell volume", "cell_volume")
        for key in (self.depth_key, self.dens_key, self.cv_key):
            self.add_dependency(key)

    def evaluate(self, store, results):
        h = store.get_data(self.depth_key, self.tag)["cell"]
        n = store.get_data(self.dens_key, self.tag)["cell"]
        area = store.get_data(self.cv_key, self.tag)["cell"]
        results[self.name]["cell"] = h * n * area

    def evaluate_partial(self, store, wrt, results):
        values = {
            self.depth_key: store.get_data(self.depth_key, self.tag)["cell"],
            self.dens_key: store.get_data(self.dens_key, self.tag)["cell"],
            self.cv_key: store.get_data(self.cv_key, self.tag)["cell"],
        }
        if wrt.key not in values:
            super().evaluate_partial(store, wrt, results)
            return
        others = [v for k, v in values.items() if k != wrt.key]
        results[self.name]["cell"] = others[0] * others[1]
