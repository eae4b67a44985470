"""
Evaluators connecting the surface and subsurface domains, and surface flow
coefficients.
"""
import logging
from typing import Any, Mapping, Optional

import numpy as np
from pydantic import Field

from subsurf.core.constants import WATER_MOLAR_MASS
from subsurf.core.exceptions import ConfigurationError, ErrorContext
from subsurf.core.types import EntityKind
from subsurf.state.evaluators.base import Evaluator, EvaluatorOptions, register_evaluator
from subsurf.state.keys import get_domain, read_key

logger = logging.getLogger(__name__)


class TopCellsSurfaceOptions(EvaluatorOptions):
    evaluator_name: Optional[str] = Field(None, alias="evaluator name")
    subsurface_key: Optional[str] = Field(None, alias="subsurface key")
    surface_key: str = Field(alias="surface key")
    surface_tag: Optional[str] = Field(None, alias="surface tag key")
    negate: bool = Field(False, alias="negate")


@register_evaluator("top cells surface")
class TopCellsSurfaceEvaluator(Evaluator):
    """Value in the subsurface cell just below each surface cell.

    Each surface cell is the child of a subsurface boundary face; the value
    is written into the single cell adjacent to that face. Cells not under
    the surface are zero.
    """

    options_model = TopCellsSurfaceOptions

    def __init__(self, plist: Mapping[str, Any]):
        plist = dict(plist)
        if "evaluator name" not in plist and "subsurface key" in plist:
            plist["evaluator name"] = plist["subsurface key"]
        super().__init__(plist)
        opts = self.options
        if opts.subsurface_key is not None:
            self.name = opts.subsurface_key
        if self.name is None:
            raise ConfigurationError(
                "Top cells surface evaluator requires 'subsurface key'",
                context=ErrorContext(operation="__init__"),
            )
        self.my_keys = [self.name]
        self.surface_key = opts.surface_key
        self.surface_tag = opts.surface_tag or self.tag
        self.negate = opts.negate
        self.add_dependency(self.surface_key, self.surface_tag)

    def evaluate(self, store, results):
        surf_mesh = store.mesh(get_domain(self.surface_key))
        sub_mesh = store.mesh(self.domain)
        surf_values = store.get_data(self.surface_key, self.surface_tag)["cell"]

        out = results[self.name]["cell"]
        out[:] = 0.0
        for c in range(surf_mesh.num_entities(EntityKind.CELL)):
            face = surf_mesh.entity_get_parent(c)
            cells = sub_mesh.face_get_cells(face)
            if len(cells) != 1:
                raise ConfigurationError(
                    f"Surface cell {c} maps to face {face}, which is not a boundary face",
                    context=ErrorContext(key=self.name, tag=self.tag, operation="evaluate"),
                )
            out[cells[0]] = surf_values[c]
        if self.negate:
            out *= -1.0


class SurfaceRelPermOptions(EvaluatorOptions):
    alpha: int = Field(4, alias="unfrozen rel perm alpha")
    cutoff_height: float = Field(0.01, alias="unfrozen rel perm cutoff height", gt=0)


class ZeroUFRelPermModel:
    """Relative permeability of the unfrozen fraction of ponded water.

    k_r = sin(pi uf / 2)^alpha, zero for h <= 0 and scaled by
    sin(pi h / (2 h_c))^2 below the cutoff height h_c.
    """

    def __init__(self, alpha: int, h_cutoff: float):
        self.alpha = alpha
        self.h_cutoff = h_cutoff

    def _cutoff_factor(self, h):
        return np.where(
            h <= 0.0, 0.0,
            np.where(h < self.h_cutoff, np.sin(np.pi * (h / self.h_cutoff) / 2.0) ** 2, 1.0),
        )

    def surface_rel_perm(self, uf, h):
        return np.sin(np.pi * uf / 2.0) ** self.alpha * self._cutoff_factor(h)

    def d_surface_rel_perm_d_uf(self, uf, h):
        return (self.alpha * np.sin(np.pi * uf / 2.0) ** (self.alpha - 1)
                * np.cos(np.pi * uf / 2.0) * np.pi / 2.0 * self._cutoff_factor(h))

    def d_surface_rel_perm_d_h(self, uf, h):
        dfac = np.where(
            (h > 0.0) & (h < self.h_cutoff),
            np.sin(np.pi * h / self.h_cutoff) * np.pi / (2.0 * self.h_cutoff),
            0.0,
        )
        return np.sin(np.pi * uf / 2.0) ** self.alpha * dfac


@register_evaluator("surface relative permeability")
class SurfaceRelPermEvaluator(Evaluator):

    options_model = SurfaceRelPermOptions

    def __init__(self, plist: Mapping[str, Any]):
        super().__init__(plist)
        if self.options.alpha % 2 != 0:
            raise ConfigurationError(
                "Unfrozen Fraction Rel Perm: alpha must be an even integer",
                context=ErrorContext(key=self.name, tag=self.tag, operation="__init__"),
            )
        self.model = ZeroUFRelPermModel(self.options.alpha, self.options.cutoff_height)
        self.uf_key = read_key(self.plist, self.domain, "unfrozen fraction", "unfrozen_fraction")
        self.depth_key = read_key(self.plist, self.domain, "ponded depth", "ponded_depth")
        self.add_dependency(self.uf_key)
        self.add_dependency(self.depth_key)

    def evaluate(self, store, results):
        uf = store.get_data(self.uf_key, self.tag)["cell"]
        h = store.get_data(self.depth_key, self.tag)["cell"]
        results[self.name]["cell"] = self.model.surface_rel_perm(uf, h)

    def evaluate_partial(self, store, wrt, results):
        uf = store.get_data(self.uf_key, self.tag)["cell"]
        h = store.get_data(self.depth_key, self.tag)["cell"]
        if wrt.key == self.uf_key:
            results[self.name]["cell"] = self.model.d_surface_rel_perm_d_uf(uf, h)
        elif wrt.key == self.depth_key:
            results[self.name]["cell"] = self.model.d_surface_rel_perm_d_h(uf, h)
        else:
            super().evaluate_partial(store, wrt, results)


class OverlandConductivityOptions(EvaluatorOptions):
    manning: float = Field(0.03, alias="Manning coefficient [s m^-1/3]", gt=0)
    depth_exponent: float = Field(5.0 / 3.0, alias="depth exponent", gt=0)
    molar_mass: float = Field(WATER_MOLAR_MASS, alias="molar mass [kg mol^-1]", gt=0)
    include_rel_perm: bool = Field(False, alias="include relative permeability")


@register_evaluator("overland conductivity")
class OverlandConductivityEvaluator(Evaluator):
    """Diffusion-wave conductivity, k_r h^a / (n_manning M g).

    Multiplying the pressure-form potential gradient by this coefficient gives
    a molar flux per unit face length.
    """

    options_model = OverlandConductivityOptions

    def __init__(self, plist: Mapping[str, Any]):
        super().__init__(plist)
        self.depth_key = read_key(self.plist, self.domain, "ponded depth", "ponded_depth")
        self.add_dependency(self.depth_key)
        self.kr_key = None
        if self.options.include_rel_perm:
            self.kr_key = read_key(self.plist, self.domain, "relative permeability",
                                   "relative_permeability")
            self.add_dependency(self.kr_key)

    def _scale(self, store):
        g = np.linalg.norm(store.gravity)
        return 1.0 / (self.options.manning * self.options.molar_mass * g)

    def _kr(self, store, h):
        if self.kr_key is None:
            return np.ones_like(h)
        return store.get_data(self.kr_key, self.tag)["cell"]

    def evaluate(self, store, results):
        h = np.maximum(store.get_data(self.depth_key, self.tag)["cell"], 0.0)
        results[self.name]["cell"] = self._kr(store, h) * h ** self.options.depth_exponent \
            * self._scale(store)

    def evaluate_partial(self, store, wrt, results):
        h = np.maximum(store.get_data(self.depth_key, self.tag)["cell"], 0.0)
        a = self.options.depth_exponent
        if wrt.key == self.depth_key:
            with np.errstate(divide="ignore", invalid="ignore"):
                dh = np.where(h > 0.0, a * h ** (a - 1.0), 0.0)
            results[self.name]["cell"] = self._kr(store, h) * dh * self._scale(store)
        elif self.kr_key is not None and wrt.key == self.kr_key:
            results[self.name]["cell"] = h ** a * self._scale(store)
        else:
            super().evaluate_partial(store, wrt, results)
