import numpy as np
import pandas as pd
import pytest

from src.sim.config import MetricDefinition
from src.sim.conversions import (
    DROPPED,
    NOT_CONVERTED,
    RETAINED,
    conversion_events,
    first_visits,
    latency_days,
    simulate_conversions,
)
from src.sim.errors import InvariantViolation
from src.sim.seeds import SeedPool

BASE = pd.Timestamp("2024-01-01")
METRICS = (MetricDefinition("always", 0.5, 2), MetricDefinition("never", 0.5, 7))


def _traffic(n_users=500):
    rng = np.random.default_rng(1)
    days = rng.integers(0, 60, size=n_users)
    return pd.DataFrame({
        "user_id": np.arange(1, n_users + 1),
        "visit_date": BASE + pd.to_timedelta(days, unit="D"),
        "path": "root",
    })

def _rates(users):
    grid = pd.MultiIndex.from_product([users, ["always", "never"]], names=["user_id", "metric_id"]).to_frame(index=False)
    grid["conversion_rate"] = np.where(grid["metric_id"] == "always", 1.0, 0.0)
    return grid

def _simulate(traffic, rates=None, **kw):
    users = traffic["user_id"].unique()
    return simulate_conversions(
        _rates(users) if rates is None else rates,
        traffic,
        METRICS,
        conversion_seeds=SeedPool.draw(users, 1),
        latency_seeds=SeedPool.draw(users, 2),
        **kw,
    )


def test_latency_tracks_short_window():
    u = np.random.default_rng(0).random(20000)
    lags = latency_days(u, 2, 30)
    assert lags.min() >= 0 and lags.max() <= 30
    assert 1.8 < lags.mean() < 2.2
    assert np.percentile(lags, 95) <= 4 * 2

def test_latency_grows_with_window():
    u = np.random.default_rng(0).random(5000)
    assert latency_days(u, 7, 30).mean() > latency_days(u, 2, 30).mean()

def test_first_visits():
    traffic = pd.DataFrame({
        "user_id": [1, 1, 2],
        "visit_date": pd.to_datetime(["2024-01-05", "2024-01-02", "2024-01-03"]),
        "path": ["a", "b", "a"],
    })
    assert first_visits(traffic).to_dict() == {1: pd.Timestamp("2024-01-02"), 2: pd.Timestamp("2024-01-03")}

def test_outcome_states():
    traffic = _traffic()
    outcomes = _simulate(traffic)

    never = outcomes[outcomes["metric_id"] == "never"]
    assert (never["state"] == NOT_CONVERTED).all()
    assert never["conversion_date"].isna().all()

    always = outcomes[outcomes["metric_id"] == "always"]
    assert always["converted"].all()
    assert set(always["state"]) <= {DROPPED, RETAINED}
    horizon = traffic["visit_date"].max()
    assert (always.loc[always["state"] == DROPPED, "conversion_date"] > horizon).all()
    assert (always.loc[always["state"] == RETAINED, "conversion_date"] <= horizon).all()

def test_conversions_follow_first_visit():
    traffic = _traffic()
    events = conversion_events(_simulate(traffic))
    anchors = first_visits(traffic).reindex(events["user_id"]).to_numpy()
    assert len(events) > 0
    assert (events["conversion_date"].to_numpy() >= anchors).all()
    assert events["conversion_date"].max() <= traffic["visit_date"].max()
    assert list(events.columns) == ["user_id", "metric_id", "conversion_date"]
    assert set(events["metric_id"]) == {"always"}

def test_conversion_rate_is_respected():
    traffic = _traffic(4000)
    users = traffic["user_id"].unique()
    rates = _rates(users)
    rates["conversion_rate"] = 0.2
    outcomes = _simulate(traffic, rates)
    assert 0.17 < outcomes["converted"].mean() < 0.23

def test_simulation_is_reproducible():
    traffic = _traffic()
    pd.testing.assert_frame_equal(_simulate(traffic), _simulate(traffic))

def test_missing_seed_is_fatal():
    traffic = _traffic(10)
    with pytest.raises(InvariantViolation):
        simulate_conversions(
            _rates(traffic["user_id"].unique()), traffic, METRICS,
            conversion_seeds=SeedPool.draw([1, 2, 3], 1),
            latency_seeds=SeedPool.draw(traffic["user_id"].unique(), 2),
        )
