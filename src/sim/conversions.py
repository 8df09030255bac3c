"""Conversion outcomes and their timing.

Every (user, metric) pair starts unevaluated and ends in one of three states:
not_converted, dropped (the conversion would land after the last simulated
visit) or retained. Only retained conversions are published.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
import pandas as pd
from scipy.stats import binom

from src.sim.config import MetricDefinition
from src.sim.errors import InvariantViolation
from src.sim.seeds import (
    STREAM_CONVERSION_SECONDS,
    STREAM_CONVERT,
    STREAM_LATENCY,
    SeedPool,
    event_uniforms,
)

logger = logging.getLogger(__name__)

SECONDS_IN_DAY = 86400

NOT_CONVERTED = "not_converted"
DROPPED = "dropped"
RETAINED = "retained"


def first_visits(traffic: pd.DataFrame) -> pd.Series:
    """Earliest visit timestamp per user."""
    return traffic.groupby("user_id")["visit_date"].min().rename("first_visit")

def latency_days(u: np.ndarray, window_days, trials: int = 30) -> np.ndarray:
    """
    Binomial(trials, window / trials) by inverse CDF: centred on the
    attribution window, with an occasional longer lag.
    """
    p = np.minimum(np.asarray(window_days, dtype=float) / trials, 1.0)
    return np.maximum(binom.ppf(u, trials, p), 0).astype(np.int64)

def simulate_conversions(
    user_rates: pd.DataFrame,
    traffic: pd.DataFrame,
    metrics: Sequence[MetricDefinition],
    conversion_seeds: SeedPool,
    latency_seeds: SeedPool,
    latency_trials: int = 30,
) -> pd.DataFrame:
    """Returns one outcome row per (user, metric) with its final state."""
    metric_index = {m.metric_id: i for i, m in enumerate(metrics)}
    windows = {m.metric_id: m.attribution_window for m in metrics}

    out = user_rates[["user_id", "metric_id", "conversion_rate"]].reset_index(drop=True)
    if not out["metric_id"].isin(list(metric_index)).all():
        raise InvariantViolation("Conversion rates reference an unknown metric")
    user_ids = out["user_id"].to_numpy()
    counters = out["metric_id"].map(metric_index).to_numpy(dtype=np.int64)

    u = event_uniforms(conversion_seeds.lookup(user_ids), counters, STREAM_CONVERT)
    converted = u < out["conversion_rate"].to_numpy(dtype=float)

    seeds = latency_seeds.lookup(user_ids)
    offsets = latency_days(
        event_uniforms(seeds, counters, STREAM_LATENCY),
        out["metric_id"].map(windows).to_numpy(dtype=float),
        latency_trials,
    )
    seconds = np.floor(event_uniforms(seeds, counters, STREAM_CONVERSION_SECONDS) * SECONDS_IN_DAY).astype(np.int64)

    anchors = first_visits(traffic).reindex(user_ids)
    if anchors.isna().any():
        raise InvariantViolation(f"{int(anchors.isna().sum())} user/metric pair(s) have no first visit")
    conversion_date = (
        anchors.to_numpy(dtype="datetime64[ns]")
        + offsets.astype("timedelta64[D]")
        + seconds.astype("timedelta64[s]")
    )

    horizon = traffic["visit_date"].max()
    out["converted"] = converted
    out["offset_days"] = pd.Series(offsets, dtype="Int64").mask(~converted)
    out["conversion_date"] = pd.Series(conversion_date).where(converted)
    out["state"] = np.select(
        [~converted, conversion_date > horizon.to_datetime64()],
        [NOT_CONVERTED, DROPPED],
        default=RETAINED,
    )
    counts = out["state"].value_counts()
    logger.info(
        "Conversions: %d retained, %d dropped past %s, %d not converted",
        counts.get(RETAINED, 0), counts.get(DROPPED, 0), horizon, counts.get(NOT_CONVERTED, 0),
    )
    return out

def conversion_events(outcomes: pd.DataFrame) -> pd.DataFrame:
    events = outcomes.loc[outcomes["state"] == RETAINED, ["user_id", "metric_id", "conversion_date"]]
    return events.sort_values(["user_id", "conversion_date", "metric_id"], kind="mergesort").reset_index(drop=True)
