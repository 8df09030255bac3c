"""Experiment enrollment and deterministic variation assignment.

A user enters an experiment on their first visit that falls inside the
experiment's date range and lands on one of its paths. That visit is not
necessarily the user's first visit to the site.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Dict, Iterable, Sequence, Tuple

import pandas as pd

from src.sim.config import ExperimentDefinition, SampleSizeConfig
from src.sim.errors import InvariantViolation
from src.stats.power import required_sample_size

logger = logging.getLogger(__name__)

EXPERIMENT_TRAFFIC_COLUMNS = ["user_id", "first_joined_experiment", "path", "experiment_id", "variation"]


def assign_variation(experiment_id: str, user_id, variations: Sequence[str]) -> str:
    """
    Uses SHA-256 of (experiment_id + user_id) to produce a stable bucket in
    [0.0, 1.0), then maps it uniformly onto the ordered variation list.
    """
    hash_input = f"{experiment_id}:{user_id}"
    hash_bytes = hashlib.sha256(hash_input.encode()).digest()
    bucket = int.from_bytes(hash_bytes[:8], "big") / (2**64)
    return variations[min(int(bucket * len(variations)), len(variations) - 1)]

def experiment_window(experiment: ExperimentDefinition, min_traffic_date: pd.Timestamp) -> Tuple[pd.Timestamp, pd.Timestamp]:
    start = pd.Timestamp(min_traffic_date).floor("D") + pd.Timedelta(days=experiment.start_offset_days)
    end = start + pd.Timedelta(days=experiment.duration_days)
    return start, end

def enroll_experiment(
    traffic: pd.DataFrame,
    experiment_id: str,
    variations: Sequence[str],
    start_date: pd.Timestamp,
    end_date: pd.Timestamp,
    paths: Iterable[str],
) -> pd.DataFrame:
    """One row per enrolled user: their first eligible visit and assigned variation."""
    eligible = traffic[
        (traffic["visit_date"] >= start_date)
        & (traffic["visit_date"] <= end_date)
        & traffic["path"].isin(list(paths))
    ]
    # mergesort is stable, so ties keep the original event order
    visits = (
        eligible.sort_values("visit_date", kind="mergesort")
        .drop_duplicates("user_id", keep="first")
        .rename(columns={"visit_date": "first_joined_experiment"})
        .sort_values(["user_id", "first_joined_experiment"], kind="mergesort")
        .reset_index(drop=True)
    )
    visits["experiment_id"] = experiment_id
    visits["variation"] = [assign_variation(experiment_id, uid, variations) for uid in visits["user_id"]]
    visits = visits[EXPERIMENT_TRAFFIC_COLUMNS]

    if len(visits) != visits["user_id"].nunique():
        raise InvariantViolation(f"Experiment {experiment_id!r} enrolled a user more than once")
    if visits.empty:
        logger.warning("Experiment %r has no eligible traffic between %s and %s", experiment_id, start_date, end_date)
    return visits

def enrollment_progress(visits: pd.DataFrame, sample_size: SampleSizeConfig) -> pd.DataFrame:
    """
    Daily and cumulative enrollments, plus the fraction of the required total
    sample size reached for each candidate baseline rate (descriptive only).
    """
    required = {
        f"baseline_{rate:g}": required_sample_size(
            rate, sample_size.relative_lift, power=sample_size.power, alpha=sample_size.alpha,
        )
        for rate in sample_size.baseline_rates
    }
    days = visits["first_joined_experiment"].dt.floor("D")
    progress = (
        days.value_counts()
        .sort_index()
        .rename_axis("first_joined_experiment")
        .reset_index(name="daily_traffic")
    )
    progress["cumulative_traffic"] = progress["daily_traffic"].cumsum()
    for col, n in required.items():
        progress[col] = progress["cumulative_traffic"] / n
    return progress

def enroll_all(
    traffic: pd.DataFrame,
    experiments: Sequence[ExperimentDefinition],
    sample_size: SampleSizeConfig,
) -> Tuple[pd.DataFrame, Dict[str, pd.DataFrame]]:
    """Enroll every experiment against the same traffic; returns (experiment_traffic, progress by experiment)."""
    min_traffic_date = traffic["visit_date"].min()
    frames = []
    progress: Dict[str, pd.DataFrame] = {}
    for exp in experiments:
        start, end = experiment_window(exp, min_traffic_date)
        visits = enroll_experiment(traffic, exp.experiment_id, exp.variation_names, start, end, exp.paths)
        logger.info("Experiment %r (%s -> %s): %d users enrolled", exp.experiment_id, start.date(), end.date(), len(visits))
        frames.append(visits)
        progress[exp.experiment_id] = enrollment_progress(visits, sample_size)

    if frames:
        experiment_traffic = pd.concat(frames, ignore_index=True)
    else:
        experiment_traffic = pd.DataFrame({
            "user_id": pd.Series(dtype="int64"),
            "first_joined_experiment": pd.Series(dtype="datetime64[ns]"),
            "path": pd.Series(dtype=object),
            "experiment_id": pd.Series(dtype=object),
            "variation": pd.Series(dtype=object),
        })
    if not experiment_traffic.empty and experiment_traffic["first_joined_experiment"].max() > traffic["visit_date"].max():
        raise InvariantViolation("An enrollment is later than the last website visit")
    return experiment_traffic, progress
