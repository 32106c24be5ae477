"""
Tests for domain records: positions, decisions, ledger entries, execution logs.
"""

from datetime import datetime, timezone

import pytest

from core.exceptions import InvalidTransition
from core.models import AccountBalance, ExecutionLog, LogRef, Position, TradingDecision


class TestPosition:
    """Position validation, PnL and lifecycle"""

    @pytest.mark.parametrize("kwargs,message", [
        ({"symbol": ""}, "symbol is required"),
        ({"direction": "up"}, "Invalid position direction"),
        ({"size": 0}, "size must be positive"),
        ({"leverage": 101}, "Leverage must be between 1 and 100"),
        ({"status": "closed"}, "closed_at must be set"),
    ])
    def test_validation(self, kwargs, message):
        params = {"symbol": "BTC", "direction": "long", "size": 0.1, "entry_price": 50_000}
        params.update(kwargs)
        with pytest.raises(ValueError, match=message):
            Position(**params)

    def test_defaults(self):
        position = Position(symbol="BTC", direction="long", size=0.3, entry_price=50_000, leverage=5)
        assert position.margin_used == pytest.approx(3_000)
        assert position.current_price == 50_000
        assert position.is_open

    def test_long_pnl_and_peak(self):
        position = Position(symbol="BTC", direction="long", size=0.1, entry_price=50_000)

        position.update_current_price(49_000)
        assert position.unrealized_pnl == pytest.approx(-100)
        assert position.peak_price == 50_000

        position.update_current_price(52_000)
        assert position.unrealized_pnl == pytest.approx(200)
        assert position.pnl_fraction() == pytest.approx(0.04)
        assert position.pnl_percent() == pytest.approx(4.0)
        assert position.peak_price == 52_000

        position.update_current_price(51_000)
        assert position.peak_price == 52_000

    def test_short_pnl_and_peak(self):
        position = Position(symbol="ETH", direction="short", size=2, entry_price=3_000)

        position.update_current_price(2_900)

        assert position.unrealized_pnl == pytest.approx(200)
        assert position.peak_price == 2_900
        assert position.pnl_fraction() == pytest.approx(100 / 3_000)

    def test_trigger_checks(self):
        long = Position(symbol="BTC", direction="long", size=0.1, entry_price=100,
                        stop_loss_price=95, take_profit_price=110)
        assert long.stop_loss_triggered(95) is True
        assert long.stop_loss_triggered(96) is False
        assert long.take_profit_triggered(110) is True

        short = Position(symbol="BTC", direction="short", size=0.1, entry_price=100,
                         stop_loss_price=105, take_profit_price=90)
        assert short.stop_loss_triggered(105) is True
        assert short.take_profit_triggered(91) is False
        assert short.take_profit_triggered(90) is True

    def test_risk_metrics(self):
        position = Position(symbol="BTC", direction="long", size=0.1, entry_price=100,
                            stop_loss_price=98, take_profit_price=106)
        assert position.risk_reward_ratio() == pytest.approx(3.0)
        assert position.stop_loss_distance_pct() == pytest.approx(0.02)
        assert position.take_profit_distance_pct() == pytest.approx(0.06)
        assert Position(symbol="BTC", direction="long", size=1, entry_price=1).risk_reward_ratio() is None

    def test_close_freezes_position(self):
        position = Position(symbol="BTC", direction="long", size=0.1, entry_price=50_000)
        position.update_current_price(51_000)

        position.close(reason="tp_triggered")

        assert position.is_closed
        assert position.realized_pnl == pytest.approx(100)
        assert position.unrealized_pnl == 0.0
        assert position.closed_at is not None
        with pytest.raises(InvalidTransition):
            position.update_current_price(52_000)
        with pytest.raises(InvalidTransition):
            position.close()

    def test_close_with_explicit_pnl(self):
        position = Position(symbol="BTC", direction="long", size=0.1, entry_price=50_000)
        at = datetime(2025, 1, 1, tzinfo=timezone.utc)
        position.close(reason="liquidated", pnl=-1_500.0, at=at)
        assert position.realized_pnl == -1_500.0
        assert position.closed_at == at

    def test_invalid_close_reason(self):
        position = Position(symbol="BTC", direction="long", size=0.1, entry_price=50_000)
        with pytest.raises(ValueError, match="Invalid close reason"):
            position.close(reason="bored")

    def test_mark_closing_once(self):
        position = Position(symbol="BTC", direction="long", size=0.1, entry_price=50_000)
        position.mark_closing()
        assert position.status == "closing"
        with pytest.raises(InvalidTransition):
            position.mark_closing()

    def test_closing_position_can_close_or_reopen(self):
        position = Position(symbol="BTC", direction="long", size=0.1, entry_price=50_000)
        with pytest.raises(InvalidTransition):
            position.reopen()

        position.mark_closing()
        position.reopen()
        assert position.is_open

        position.mark_closing()
        position.close(reason="signal", pnl=-25.0)
        assert position.is_closed
        assert position.realized_pnl == -25.0

    def test_trailing_activation_remembers_original_stop(self):
        position = Position(symbol="BTC", direction="long", size=0.1, entry_price=100, stop_loss_price=95)
        position.activate_trailing_stop()
        position.move_stop_loss(99)
        position.activate_trailing_stop()
        assert position.original_stop_loss_price == 95
        assert position.stop_loss_price == 99


class TestTradingDecision:
    def test_lifecycle(self):
        decision = TradingDecision(symbol="BTC", operation="open", direction="long", confidence=0.7)
        assert decision.is_pending and decision.actionable

        decision.approve()
        decision.mark_executed()

        assert decision.status == "executed"
        assert decision.is_terminal

    def test_reject_records_reason(self):
        decision = TradingDecision(symbol="BTC", operation="open", direction="long", confidence=0.7)
        decision.reject("Confidence 0.7 below minimum 0.8")
        assert decision.rejection_reason == "Confidence 0.7 below minimum 0.8"
        with pytest.raises(InvalidTransition):
            decision.approve()

    def test_no_regression_from_terminal(self):
        decision = TradingDecision(symbol="BTC", operation="close", confidence=1.0)
        decision.mark_failed("no price")
        with pytest.raises(InvalidTransition, match="failed → executed"):
            decision.mark_executed()

    @pytest.mark.parametrize("kwargs", [
        {"operation": "buy"},
        {"direction": "sideways"},
        {"confidence": 1.2},
        {"confidence": -0.1},
    ])
    def test_validation(self, kwargs):
        params = {"symbol": "BTC", "operation": "open", "direction": "long", "confidence": 0.5}
        params.update(kwargs)
        with pytest.raises(ValueError):
            TradingDecision(**params)

    def test_hold_not_actionable(self):
        assert TradingDecision(symbol="BTC", operation="hold").actionable is False


def test_account_balance_is_immutable():
    record = AccountBalance(balance=10_000.0, event_type="initial")
    with pytest.raises(AttributeError):
        record.balance = 1.0
    with pytest.raises(ValueError):
        AccountBalance(balance=1.0, event_type="bonus")


def test_execution_log_reference():
    entry = ExecutionLog(action="risk_trigger", status="success", ref=LogRef("position", "abc"))
    assert entry.to_dict()["ref"] == {"kind": "position", "id": "abc"}
    with pytest.raises(ValueError):
        LogRef("account", "abc")
    with pytest.raises(ValueError):
        ExecutionLog(action="teleport", status="success")
