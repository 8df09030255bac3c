"""Seed assignment for per-user and per-event randomness.

Seeding a generator with the user id itself skews the simulated
distributions, so each user is instead given a seed from a shuffled pool,
keyed by the user's position among the sorted distinct ids. Individual draws
then come from a counter-based hash of (seed, counter, stream): every event
gets its own uniform without touching a shared random stream, so the draws
do not depend on the order in which users or events are processed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from src.sim.errors import InvariantViolation

logger = logging.getLogger(__name__)

# Stream ids keep draws that share a (seed, counter) pair independent
STREAM_REVISIT = 1
STREAM_PATH = 2
STREAM_VISIT_SECONDS = 3
STREAM_CONVERT = 4
STREAM_LATENCY = 5
STREAM_CONVERSION_SECONDS = 6

_GOLDEN = np.uint64(0x9E3779B97F4A7C15)
_MIX_1 = np.uint64(0xBF58476D1CE4E5B9)
_MIX_2 = np.uint64(0x94D049BB133111EB)
_COUNTER_MULT = np.uint64(0xD6E8FEB86659FD93)
_STREAM_MULT = np.uint64(0xCA5A826395121157)


def _splitmix64(x: np.ndarray) -> np.ndarray:
    x = x + _GOLDEN
    x = (x ^ (x >> np.uint64(30))) * _MIX_1
    x = (x ^ (x >> np.uint64(27))) * _MIX_2
    return x ^ (x >> np.uint64(31))

def event_uniforms(seeds, counters, stream: int) -> np.ndarray:
    """
    One uniform in [0, 1) per (seed, counter) pair for the given stream.
    Same inputs always give the same outputs, element by element.
    """
    seeds = np.asarray(seeds, dtype=np.uint64)
    counters = np.asarray(counters, dtype=np.uint64)
    key = _splitmix64(seeds)
    key = key ^ ((counters + np.uint64(1)) * _COUNTER_MULT)
    key = key ^ (np.full_like(key, stream) * _STREAM_MULT)
    bits = _splitmix64(_splitmix64(key))
    # top 53 bits -> double in [0, 1)
    return (bits >> np.uint64(11)).astype(np.float64) * (1.0 / 2**53)


@dataclass(frozen=True)
class SeedPool:
    """Seeds keyed by user id; drawn without replacement from [1, 2 * n_users]."""

    seeds: pd.Series

    @classmethod
    def draw(cls, user_ids, seed: int) -> "SeedPool":
        users = np.unique(np.asarray(user_ids))
        rng = np.random.default_rng(seed)
        pool = rng.choice(np.arange(1, 2 * len(users) + 1), size=len(users), replace=False)
        logger.debug("Drew %d seeds from pool seed %d", len(users), seed)
        return cls(pd.Series(pool.astype(np.uint64), index=pd.Index(users, name="user_id"), name="seed"))

    def __len__(self) -> int:
        return len(self.seeds)

    def lookup(self, user_ids) -> np.ndarray:
        positions = self.seeds.index.get_indexer(np.asarray(user_ids))
        missing = positions < 0
        if missing.any():
            raise InvariantViolation(f"No seed assigned for {int(missing.sum())} user(s)")
        return self.seeds.to_numpy()[positions]
