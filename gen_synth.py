"""Generate the simulated experimentation dataset and write it as CSV.

Usage:
    python gen_synth.py
    python gen_synth.py --config config/simulation.yaml --out data --today 2024-06-01
    python gen_synth.py --draws 20000 --log-level DEBUG
"""

import argparse
import logging
import sys
from dataclasses import replace

import pandas as pd

from src.data.export import write_tables
from src.sim.config import SimulationConfig, load_config
from src.sim.errors import SimulationError
from src.sim.pipeline import run_simulation

logger = logging.getLogger("gen_synth")


def main(args=None) -> int:
    parser = argparse.ArgumentParser(description="Simulate website traffic, experiments and conversions")
    parser.add_argument("--config", default=None, help="YAML config (defaults built in when omitted)")
    parser.add_argument("--out", default="data", help="Output directory for the CSV tables")
    parser.add_argument("--today", default=None, help="Reference date YYYY-MM-DD (overrides the config)")
    parser.add_argument("--draws", type=int, default=None, help="Number of visit draws (overrides the config)")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    opts = parser.parse_args(args)

    logging.basicConfig(
        level=getattr(logging, opts.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = load_config(opts.config) if opts.config else SimulationConfig()
        if opts.today:
            config = replace(config, today=pd.Timestamp(opts.today))
        if opts.draws is not None:
            config = replace(config, traffic=replace(config.traffic, num_draws=opts.draws))

        result = run_simulation(config)
    except (SimulationError, FileNotFoundError) as e:
        logger.error("Simulation failed: %s", e)
        return 1

    write_tables(result, opts.out)
    for experiment_id, progress in result.enrollment_progress.items():
        if progress.empty:
            continue
        last = progress.iloc[-1]
        logger.info(
            "%s: %d enrolled over %d days",
            experiment_id, int(last["cumulative_traffic"]), len(progress),
        )
    logger.info("Done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
