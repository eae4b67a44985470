"""Evaluator variants; importing this package registers all of them."""
from subsurf.state.evaluators.base import (
    Evaluator,
    EvaluatorOptions,
    PrimaryEvaluator,
    IndependentVariableEvaluator,
    register_evaluator,
    create_evaluator,
    available_evaluators,
    build_evaluators,
)
from subsurf.state.evaluators.eos import EOSEvaluator, create_eos, infer_density_key
from subsurf.state.evaluators.wrm import (
    VanGenuchtenModel,
    WRMEvaluator,
    RelPermEvaluator,
)
from subsurf.state.evaluators.water_content import (
    CellVolumeEvaluator,
    RichardsWaterContentEvaluator,
    PondedDepthEvaluator,
    OverlandWaterContentEvaluator,
)
from subsurf.state.evaluators.surface import (
    TopCellsSurfaceEvaluator,
    ZeroUFRelPermModel,
    SurfaceRelPermEvaluator,
    OverlandConductivityEvaluator,
)
from subsurf.state.evaluators.energy import (
    LiquidRockEnergyEvaluator,
    EnthalpyEvaluator,
    ThermalConductivityEvaluator,
    AdvectedEnergySourceEvaluator,
)

__all__ = [
    "Evaluator",
    "EvaluatorOptions",
    "PrimaryEvaluator",
    "IndependentVariableEvaluator",
    "register_evaluator",
    "create_evaluator",
    "available_evaluators",
    "build_evaluators",
    # Equation of state
    "EOSEvaluator",
    "create_eos",
    "infer_density_key",
    # Flow constitutive relations
    "VanGenuchtenModel",
    "WRMEvaluator",
    "RelPermEvaluator",
    "CellVolumeEvaluator",
    "RichardsWaterContentEvaluator",
    "PondedDepthEvaluator",
    "OverlandWaterContentEvaluator",
    # Surface
    "TopCellsSurfaceEvaluator",
    "ZeroUFRelPermModel",
    "SurfaceRelPermEvaluator",
    "OverlandConductivityEvaluator",
    # Energy
    "LiquidRockEnergyEvaluator",
    "EnthalpyEvaluator",
    "ThermalConductivityEvaluator",
    "AdvectedEnergySourceEvaluator",
]
