"""End-to-end simulation: traffic -> enrollment -> conversion rates -> conversions.

Each stage consumes the complete, validated output of the previous one.
Nothing is written here; export happens only after every table has passed
its checks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import pandas as pd

from src.data import checks
from src.sim.config import SimulationConfig
from src.sim.conversions import conversion_events, simulate_conversions
from src.sim.enrollment import enroll_all, experiment_window
from src.sim.rates import (
    adjusted_conversion_rates,
    attribution_windows_table,
    experiment_info_table,
    user_conversion_rates,
)
from src.sim.seeds import SeedPool
from src.sim.traffic import generate_website_traffic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimulationResult:
    today: pd.Timestamp
    experiment_info: pd.DataFrame
    attribution_windows: pd.DataFrame
    website_traffic: pd.DataFrame
    experiment_traffic: pd.DataFrame
    conversion_events: pd.DataFrame
    # Descriptive / intermediate tables, not exported
    enrollment_progress: Dict[str, pd.DataFrame] = field(default_factory=dict)
    adjusted_conversion_rates: Optional[pd.DataFrame] = None
    user_conversion_rates: Optional[pd.DataFrame] = None
    conversion_outcomes: Optional[pd.DataFrame] = None


def run_simulation(config: Optional[SimulationConfig] = None) -> SimulationResult:
    if config is None:
        config = SimulationConfig()
    today = config.resolve_today()
    logger.info("Simulating %d experiments and %d metrics up to %s", len(config.experiments), len(config.metrics), today.date())

    experiment_info = experiment_info_table(config.experiments)
    checks.check_experiment_info(experiment_info)
    attribution_windows = attribution_windows_table(config.experiments, config.metrics)
    checks.check_attribution_windows(attribution_windows, experiment_info)

    website_traffic = generate_website_traffic(
        config.traffic, today,
        population_seed=config.seeds.population,
        traffic_seed=config.seeds.traffic,
    )
    checks.check_website_traffic(website_traffic)

    experiment_traffic, progress = enroll_all(website_traffic, config.experiments, config.sample_size)
    min_traffic_date = website_traffic["visit_date"].min()
    windows = {exp.experiment_id: experiment_window(exp, min_traffic_date) for exp in config.experiments}
    checks.check_experiment_traffic(experiment_traffic, experiment_info, website_traffic, windows)

    adjusted = adjusted_conversion_rates(config.experiments, config.metrics, attribution_windows)
    user_ids = website_traffic["user_id"].unique()
    user_rates = user_conversion_rates(user_ids, config.metrics, experiment_traffic, adjusted)

    outcomes = simulate_conversions(
        user_rates,
        website_traffic,
        config.metrics,
        conversion_seeds=SeedPool.draw(user_ids, config.seeds.conversion),
        latency_seeds=SeedPool.draw(user_ids, config.seeds.latency),
        latency_trials=config.latency_trials,
    )
    events = conversion_events(outcomes)
    checks.check_conversion_events(events, attribution_windows, website_traffic)

    return SimulationResult(
        today=today,
        experiment_info=experiment_info,
        attribution_windows=attribution_windows,
        website_traffic=website_traffic,
        experiment_traffic=experiment_traffic,
        conversion_events=events,
        enrollment_progress=progress,
        adjusted_conversion_rates=adjusted,
        user_conversion_rates=user_rates,
        conversion_outcomes=outcomes,
    )
