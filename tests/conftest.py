"""Shared fixtures for jitai_engine tests."""

import time
from datetime import datetime

import numpy as np
import pytest

from jitai_engine.clock import FixedClock
from jitai_engine.data_models import InterventionContext, InterventionRecord
from jitai_engine.store import INTERVENTION_RESULTS, InMemoryStore

# Wednesday
BASE_TIME = datetime(2025, 3, 5, 8, 0)


@pytest.fixture
def clock():
    return FixedClock.at(BASE_TIME)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def slow_store():
    """An in-memory store whose key reads yield to other threads."""

    class SlowStore(InMemoryStore):
        def get(self, key):
            value = super().get(key)
            time.sleep(0.002)
            return value

    return SlowStore()


@pytest.fixture
def rng():
    return np.random.default_rng(seed=42)


@pytest.fixture
def make_context():
    def _make(**overrides):
        values = dict(
            time_of_day=14,
            day_of_week=2,
            is_weekend=False,
            target_app="video",
            current_session_minutes=5,
            session_count=3,
        )
        values.update(overrides)
        return InterventionContext(**values)

    return _make


@pytest.fixture
def add_results(store):
    """Insert intervention result rows: add_results(choices, start_ms, step_ms, **fields)."""

    def _add(choices, start_ms=0, step_ms=60_000, **fields):
        for i, choice in enumerate(choices):
            values = dict(
                intervention_id=f"r{start_ms}-{i}",
                timestamp=start_ms + i * step_ms,
                target_app="video",
                content_type="REFLECTION",
                user_choice=choice,
                response_time_ms=3000,
            )
            values.update(fields)
            store.append(INTERVENTION_RESULTS, InterventionRecord(**values).to_dict())

    return _add
