"""
Tests for the trading mode gate.
"""

import pytest

from core.trading_mode import Mode, TradingMode, TradingModeGate
from infra.state_store import StateStore


@pytest.mark.parametrize("mode,can_open,can_close", [
    ("enabled", True, True),
    ("exit_only", False, True),
    ("blocked", False, False),
])
def test_permissions(mode, can_open, can_close):
    gate = TradingModeGate()
    gate.switch_mode(mode, changed_by="operator")

    assert gate.can_open() is can_open
    assert gate.can_close() is can_close


def test_defaults_to_enabled():
    gate = TradingModeGate()
    assert gate.current_mode() == Mode.ENABLED.value
    assert gate.current().changed_by == "system"


def test_invalid_mode_rejected():
    gate = TradingModeGate()
    with pytest.raises(ValueError, match="Invalid trading mode: paused"):
        gate.switch_mode("paused")
    assert gate.current_mode() == "enabled"


def test_switch_records_actor_and_reason():
    gate = TradingModeGate()
    record = gate.switch_mode("blocked", changed_by="operator", reason="exchange maintenance")

    assert record.mode == "blocked"
    assert gate.current().changed_by == "operator"
    assert gate.current().reason == "exchange maintenance"


def test_compare_and_switch_skips_when_mode_changed():
    gate = TradingModeGate()
    gate.switch_mode("blocked", changed_by="operator")

    result = gate.compare_and_switch(expected="enabled", mode="exit_only", changed_by="circuit_breaker")

    assert result is None
    assert gate.current_mode() == "blocked"


def test_compare_and_switch_applies_when_expected():
    gate = TradingModeGate()
    result = gate.compare_and_switch(expected="enabled", mode="exit_only", changed_by="circuit_breaker",
                                     reason="3 consecutive losing trades")

    assert result is not None
    assert gate.current_mode() == "exit_only"


class TestObservers:
    """Mode changes are broadcast to subscribers"""

    def test_observer_receives_previous_and_current(self):
        gate = TradingModeGate()
        seen = []
        gate.subscribe(lambda prev, cur: seen.append((prev.mode, cur.mode, cur.changed_by)))

        gate.switch_mode("exit_only", changed_by="operator")

        assert seen == [("enabled", "exit_only", "operator")]

    def test_failing_observer_does_not_block_switch(self):
        gate = TradingModeGate()
        seen = []

        def broken(prev, cur):
            raise RuntimeError("webhook down")

        gate.subscribe(broken)
        gate.subscribe(lambda prev, cur: seen.append(cur.mode))

        gate.switch_mode("blocked", changed_by="operator")

        assert gate.current_mode() == "blocked"
        assert seen == ["blocked"]

    def test_no_broadcast_when_compare_fails(self):
        gate = TradingModeGate(initial=TradingMode(mode="blocked"))
        seen = []
        gate.subscribe(lambda prev, cur: seen.append(cur.mode))

        gate.compare_and_switch(expected="enabled", mode="exit_only", changed_by="circuit_breaker")

        assert seen == []


class TestPersistence:
    def test_mode_survives_restart(self, tmp_path):
        store = StateStore(state_file=str(tmp_path / "state.json"))
        TradingModeGate(state_store=store).switch_mode("exit_only", changed_by="operator", reason="manual")

        restored = TradingModeGate(state_store=store)

        assert restored.current_mode() == "exit_only"
        assert restored.current().changed_by == "operator"
        assert restored.current().reason == "manual"

    def test_unknown_persisted_mode_ignored(self, tmp_path):
        store = StateStore(state_file=str(tmp_path / "state.json"))
        store.set("trading_mode", {"mode": "turbo", "changed_by": "someone"})

        assert TradingModeGate(state_store=store).current_mode() == "enabled"


def test_record_round_trips_through_dict():
    record = TradingMode(mode="exit_only", changed_by="circuit_breaker", reason="Daily loss exceeded 5.0%")
    assert TradingMode.from_dict(record.to_dict()) == record
