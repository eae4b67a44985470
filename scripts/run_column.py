#!/usr/bin/env python3
"""Run a column simulation from a YAML configuration.

Usage:
  python scripts/run_column.py configs/infiltration_column.yaml \
    --t-end 43200 --output results/infiltration

Writes the per-step diagnostics and the final cell state as CSV files.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from subsurf.core.config import SimulationConfig
from subsurf.core.exceptions import SubsurfError
from subsurf.simulation import Simulation

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("config", type=Path, help="YAML configuration file")
    parser.add_argument("--t-end", type=float, default=None, help="Override the configured end time (s)")
    parser.add_argument("--output", type=Path, default=None, help="Directory for CSV output")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args()

    config = SimulationConfig.from_yaml(args.config)
    if args.log_level:
        config.logging.log_level = args.log_level

    sim = Simulation(config, setup_logging=True)
    try:
        steps = sim.run(args.t_end)
    except SubsurfError as exc:
        logger.error(f"Simulation failed: {exc}")
        return 1

    final = sim.snapshot()
    print(f"{len(steps)} steps, {int(steps['iterations'].sum())} nonlinear iterations")
    print(final.describe().T[["min", "mean", "max"]])

    if args.output:
        args.output.mkdir(parents=True, exist_ok=True)
        steps.to_csv(args.output / "steps.csv", index=False)
        final.to_csv(args.output / "final_state.csv")
        print(f"Wrote {args.output / 'steps.csv'} and {args.output / 'final_state.csv'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
