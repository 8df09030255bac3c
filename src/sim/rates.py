"""Effective conversion rate per (user, metric).

Each metric has a historical baseline. A variation shifts that baseline by a
relative percentage for the metrics it affects. A user enrolled in several
experiments that touch the same metric gets the average of those adjusted
rates; effects are not compounded.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
import pandas as pd

from src.sim.config import ExperimentDefinition, MetricDefinition
from src.sim.errors import InvariantViolation

logger = logging.getLogger(__name__)


def experiment_info_table(experiments: Sequence[ExperimentDefinition]) -> pd.DataFrame:
    rows = [
        {"experiment_id": exp.experiment_id, "variation": v.name, "is_control": bool(v.is_control)}
        for exp in experiments
        for v in exp.variations
    ]
    return pd.DataFrame(rows, columns=["experiment_id", "variation", "is_control"])

def attribution_windows_table(experiments: Sequence[ExperimentDefinition],
                              metrics: Sequence[MetricDefinition]) -> pd.DataFrame:
    """One row per (experiment, metric), ordered by experiment then window length."""
    rows = [
        {"experiment_id": exp.experiment_id, "metric_id": m.metric_id, "attribution_window": int(m.attribution_window)}
        for exp in experiments
        for m in metrics
    ]
    df = pd.DataFrame(rows, columns=["experiment_id", "metric_id", "attribution_window"])
    return df.sort_values(["experiment_id", "attribution_window"], kind="mergesort").reset_index(drop=True)

def adjusted_conversion_rates(
    experiments: Sequence[ExperimentDefinition],
    metrics: Sequence[MetricDefinition],
    attribution_windows: pd.DataFrame,
) -> pd.DataFrame:
    """
    adjusted_conversion_rate = baseline * (1 + adjustment), for every
    (experiment, variation, metric) the attribution windows track.
    Controls and unspecified combinations keep the baseline.
    """
    baselines = {m.metric_id: m.baseline_conversion_rate for m in metrics}
    tracked = set(zip(attribution_windows["experiment_id"], attribution_windows["metric_id"]))
    rows = []
    for exp in experiments:
        for v in exp.variations:
            for metric_id, baseline in baselines.items():
                if (exp.experiment_id, metric_id) not in tracked:
                    continue
                adjustment = 0.0 if v.is_control else float(v.adjustments.get(metric_id, 0.0))
                rows.append({
                    "experiment_id": exp.experiment_id,
                    "variation": v.name,
                    "is_control": bool(v.is_control),
                    "metric_id": metric_id,
                    "baseline_conversion_rate": baseline,
                    "adjusted_conversion_rate": float(np.clip(baseline * (1 + adjustment), 0.0, 1.0)),
                })
    return pd.DataFrame(rows, columns=[
        "experiment_id", "variation", "is_control", "metric_id",
        "baseline_conversion_rate", "adjusted_conversion_rate",
    ])

def user_conversion_rates(
    user_ids,
    metrics: Sequence[MetricDefinition],
    experiment_traffic: pd.DataFrame,
    adjusted: pd.DataFrame,
) -> pd.DataFrame:
    """One conversion_rate per (user_id, metric_id), sorted by user then metric order."""
    users = np.unique(np.asarray(user_ids))
    metric_ids = [m.metric_id for m in metrics]
    baselines = pd.Series({m.metric_id: m.baseline_conversion_rate for m in metrics})

    grid = pd.MultiIndex.from_product([users, metric_ids], names=["user_id", "metric_id"])
    rates = pd.DataFrame(index=grid).reset_index()
    rates["baseline_conversion_rate"] = rates["metric_id"].map(baselines)

    exposures = experiment_traffic[["user_id", "experiment_id", "variation"]].merge(
        adjusted[["experiment_id", "variation", "metric_id", "adjusted_conversion_rate"]],
        on=["experiment_id", "variation"],
        how="inner",
    )
    experiment_rates = (
        exposures.groupby(["user_id", "metric_id"])["adjusted_conversion_rate"]
        .mean()
        .rename("experiment_rate")
        .reset_index()
    )
    rates = rates.merge(experiment_rates, on=["user_id", "metric_id"], how="left")
    rates["conversion_rate"] = rates["experiment_rate"].fillna(rates["baseline_conversion_rate"])
    rates = rates[["user_id", "metric_id", "conversion_rate"]]

    if len(rates) != len(users) * len(metric_ids) or rates["conversion_rate"].isna().any():
        raise InvariantViolation("Every user must have exactly one conversion rate per metric")
    unknown = set(experiment_traffic["user_id"]) - set(users)
    if unknown:
        raise InvariantViolation(f"{len(unknown)} enrolled user(s) are missing from website traffic")
    logger.info(
        "Resolved %d conversion rates; %d user/metric pairs are shifted by an experiment",
        len(rates), len(experiment_rates),
    )
    return rates
