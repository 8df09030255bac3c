"""Website traffic: one row per (user, visit timestamp, path).

First visits follow a log-of-exponential offset from today, so recent days
carry more new users than old ones. Both ends of the horizon are
under- or over-represented by that distribution, so traffic is kept only
inside a guard band. The band is applied twice: a coarse filter on whole
visit days, then an exact filter once intra-day timestamps exist.
"""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np
import pandas as pd
from scipy.stats import gamma

from src.sim.config import TrafficConfig
from src.sim.seeds import (
    STREAM_PATH,
    STREAM_REVISIT,
    STREAM_VISIT_SECONDS,
    SeedPool,
    event_uniforms,
)

logger = logging.getLogger(__name__)

SECONDS_IN_DAY = 86400
TRAFFIC_COLUMNS = ["user_id", "visit_date", "path"]


def rescale(x: np.ndarray, a: float, b: float) -> np.ndarray:
    """Min-max rescale x onto [a, b]; a constant input maps to a."""
    x = np.asarray(x, dtype=float)
    if x.size == 0:
        return x
    span = x.max() - x.min()
    if span == 0:
        return np.full_like(x, float(a))
    return (x - x.min()) / span * (b - a) + a

def guard_window(config: TrafficConfig, today: pd.Timestamp) -> Tuple[pd.Timestamp, pd.Timestamp]:
    """First and last valid traffic day, both inclusive."""
    today = pd.Timestamp(today).normalize()
    oldest_excluded = today - pd.Timedelta(days=round(config.horizon_days * config.guard_start_fraction))
    first_day = oldest_excluded + pd.Timedelta(days=1)
    last_day = today - pd.Timedelta(days=config.guard_end_days)
    return first_day, last_day

def coarse_date_filter(days: pd.Series, first_day: pd.Timestamp, last_day: pd.Timestamp) -> pd.Series:
    """Mask of whole visit days inside [first_day, last_day]."""
    return (days >= first_day) & (days <= last_day)

def exact_timestamp_filter(timestamps: pd.Series, first_day: pd.Timestamp, last_day: pd.Timestamp) -> pd.Series:
    """Mask of exact timestamps from first_day 00:00:00 up to the end of last_day."""
    return (timestamps >= first_day) & (timestamps < last_day + pd.Timedelta(days=1))

def draw_user_ids(config: TrafficConfig, rng: np.random.Generator) -> np.ndarray:
    high = config.num_draws * config.id_space_fraction
    return np.floor(rng.uniform(1, high, size=config.num_draws)).astype(np.int64)

def first_visit_days(user_ids: np.ndarray, config: TrafficConfig, today: pd.Timestamp,
                     rng: np.random.Generator) -> pd.Series:
    raw = np.log2(rng.exponential(scale=1.0 / config.exponential_rate, size=len(user_ids)) + 1)
    offsets = np.round(rescale(raw, 0, config.horizon_days)).astype(np.int64)
    days = pd.Timestamp(today).normalize().to_datetime64() - offsets.astype("timedelta64[D]")
    return pd.Series(days.astype("datetime64[ns]"), index=pd.Index(user_ids, name="user_id"), name="first_visit_day")

def repeat_visit_offsets(seeds: np.ndarray, visit_index: np.ndarray, scale_days: float) -> np.ndarray:
    """
    Days between a user's first visit and their visit number `visit_index`.
    Visit 1 is the first visit itself; visit k > 1 draws Gamma(shape=k-1),
    so later visits drift further from the first one.
    """
    visit_index = np.asarray(visit_index, dtype=np.int64)
    u = event_uniforms(seeds, visit_index, STREAM_REVISIT)
    shape = np.maximum(visit_index - 1, 1)
    offsets = np.ceil(gamma.ppf(u, a=shape, scale=scale_days))
    return np.where(visit_index > 1, offsets, 0).astype(np.int64)

def assign_paths(seeds: np.ndarray, visit_index: np.ndarray, paths, weights) -> np.ndarray:
    u = event_uniforms(seeds, visit_index, STREAM_PATH)
    weights = np.asarray(weights, dtype=float)
    cumulative = np.cumsum(weights) / weights.sum()
    idx = np.minimum(np.searchsorted(cumulative, u, side="right"), len(paths) - 1)
    return np.asarray(paths, dtype=object)[idx]

def generate_website_traffic(config: TrafficConfig, today: pd.Timestamp,
                             population_seed: int = 42, traffic_seed: int = 7) -> pd.DataFrame:
    """
    Returns website_traffic sorted by (user_id, visit_date, path).
    Every user that survives the first-visit guard band keeps at least its first visit.
    """
    today = pd.Timestamp(today).normalize()
    rng = np.random.default_rng(population_seed)
    ids = draw_user_ids(config, rng)
    users = np.unique(ids)
    first_day, last_day = guard_window(config, today)

    first_days = first_visit_days(users, config, today, rng)
    first_days = first_days[coarse_date_filter(first_days, first_day, last_day)]
    logger.info(
        "Drew %d visits for %d users; %d users have a first visit between %s and %s",
        len(ids), len(users), len(first_days), first_day.date(), last_day.date(),
    )

    # Each repeated draw of an id is one more visit by that user
    visits = pd.DataFrame({"user_id": ids})
    visits = visits[visits["user_id"].isin(first_days.index)].reset_index(drop=True)
    visits["visit_index"] = visits.groupby("user_id").cumcount() + 1
    seeds = SeedPool.draw(first_days.index, traffic_seed).lookup(visits["user_id"])
    visit_index = visits["visit_index"].to_numpy()

    offsets = repeat_visit_offsets(seeds, visit_index, config.revisit_scale_days)
    visits["visit_day"] = first_days.loc[visits["user_id"]].to_numpy() + offsets.astype("timedelta64[D]")
    visits["path"] = assign_paths(seeds, visit_index, config.paths, config.path_weights)
    visits["seed"] = seeds

    # Same day and path means the same visit
    visits = visits.drop_duplicates(["user_id", "visit_day", "path"], keep="first")
    visits = visits[coarse_date_filter(visits["visit_day"], first_day, last_day)].copy()

    u = event_uniforms(visits["seed"].to_numpy(), visits["visit_index"].to_numpy(), STREAM_VISIT_SECONDS)
    seconds = np.floor(u * SECONDS_IN_DAY).astype(np.int64)
    visits["visit_date"] = visits["visit_day"].to_numpy() + seconds.astype("timedelta64[s]")

    kept = exact_timestamp_filter(visits["visit_date"], first_day, last_day)
    logger.debug("Exact timestamp filter dropped %d visits", int((~kept).sum()))
    traffic = (
        visits.loc[kept, TRAFFIC_COLUMNS]
        .drop_duplicates()
        .sort_values(["user_id", "visit_date", "path"], kind="mergesort")
        .reset_index(drop=True)
    )
    logger.info("Generated %d traffic rows for %d users", len(traffic), traffic["user_id"].nunique())
    return traffic
