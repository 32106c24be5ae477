"""
Tests for the JSON state store and the counter stores used by the circuit breaker.
"""

import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from infra.state_store import InMemoryCounterStore, StateStore, StateStoreCounterStore


class Clock:
    def __init__(self):
        self.now = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def store(tmp_path):
    return StateStore(state_file=str(tmp_path / "data" / ".state.json"))


class TestStateStore:
    def test_defaults_when_missing(self, store):
        state = store.load()
        assert state["trading_mode"] is None
        assert state["counters"] == {}

    def test_set_and_get(self, store):
        store.set("next_cycle_interval", 6)
        assert store.get("next_cycle_interval") == 6
        assert json.loads(store.state_file.read_text())["next_cycle_interval"] == 6

    def test_get_default(self, store):
        assert store.get("last_cycle_at", "never") == "never"

    def test_corrupt_file_falls_back_to_defaults(self, store):
        store.state_file.write_text("{not json")
        assert store.load()["counters"] == {}

    def test_non_mapping_file_falls_back_to_defaults(self, store):
        store.state_file.write_text("[1, 2, 3]")
        assert store.load()["risk_profile"] is None

    def test_mutate_returns_value(self, store):
        def bump(state):
            state["next_cycle_interval"] = (state.get("next_cycle_interval") or 0) + 3
            return state["next_cycle_interval"]

        assert store.mutate(bump) == 3
        assert store.mutate(bump) == 6


@pytest.fixture(params=["memory", "file"])
def counters(request, tmp_path):
    clock = Clock()
    if request.param == "memory":
        return InMemoryCounterStore(clock=clock), clock
    return StateStoreCounterStore(StateStore(state_file=str(tmp_path / "state.json")), clock=clock), clock


def stored_keys(store):
    if isinstance(store, InMemoryCounterStore):
        return set(store._values)
    return set(store._store.load().get("counters") or {})


class TestCounterStores:
    def test_increment_and_reset(self, counters):
        store, _ = counters
        assert store.get("losses") == 0
        assert store.increment("losses") == 1
        assert store.increment("losses", 2) == 3
        store.reset("losses")
        assert store.get("losses") == 0

    def test_expiry(self, counters):
        store, clock = counters
        store.increment("daily", 150.0, expires_at=clock.now + timedelta(hours=1))

        assert store.get("daily") == pytest.approx(150.0)
        clock.now += timedelta(hours=1)
        assert store.get("daily") == 0
        assert store.increment("daily", 10.0) == pytest.approx(10.0)

    def test_increment_keeps_existing_expiry(self, counters):
        store, clock = counters
        store.increment("daily", 1.0, expires_at=clock.now + timedelta(minutes=5))
        store.increment("daily", 1.0)

        clock.now += timedelta(minutes=10)
        assert store.get("daily") == 0

    def test_expired_keys_pruned_on_increment(self, counters):
        store, clock = counters
        for day in range(3):
            store.increment(f"daily_loss:2025-03-{10 + day}", 5.0, expires_at=clock.now + timedelta(days=1))
            clock.now += timedelta(days=1)
        store.increment("weekly", 1.0, expires_at=clock.now + timedelta(days=7))

        store.increment("consecutive_losses")

        assert stored_keys(store) == {"weekly", "consecutive_losses"}

    def test_concurrent_increments_not_lost(self, counters):
        store, _ = counters

        def worker():
            for _ in range(25):
                store.increment("losses")

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get("losses") == 100


def test_file_counters_survive_restart(tmp_path):
    path = str(tmp_path / "state.json")
    StateStoreCounterStore(StateStore(state_file=path)).increment("risk:circuit_breaker:consecutive_losses")

    assert StateStoreCounterStore(StateStore(state_file=path)).get("risk:circuit_breaker:consecutive_losses") == 1
