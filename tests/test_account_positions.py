"""
Tests for the account manager and position book.
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from core.account import AccountManager
from core.audit_log import AuditLogger
from core.exceptions import ApiError, CriticalDataUnavailable
from core.models import utcnow
from core.positions import PositionBook
from tests.helpers import FakeExchange


def exchange_position(coin, szi, entry_px, mark_px=None, margin_used=None, leverage=5):
    data = {"coin": coin, "szi": str(szi), "entryPx": str(entry_px), "leverage": {"value": leverage}}
    if mark_px is not None:
        data["markPx"] = str(mark_px)
    if margin_used is not None:
        data["marginUsed"] = str(margin_used)
    return {"position": data}


class TestPaperAccount:
    def test_starting_balance(self, positions):
        account = AccountManager(positions=positions, paper_balance=10_000.0)

        state = account.fetch_account_state()

        assert state["account_value"] == 10_000.0
        assert state["available_margin"] == 10_000.0
        assert state["positions_count"] == 0

    def test_open_position_uses_margin(self, positions):
        account = AccountManager(positions=positions, paper_balance=10_000.0)
        position = positions.open_position("BTC", "long", 0.1, 50_000.0, leverage=5)
        position.update_current_price(51_000.0)

        state = account.fetch_account_state()

        assert state["account_value"] == pytest.approx(10_100.0)
        assert state["margin_used"] == pytest.approx(1_000.0)
        assert state["available_margin"] == pytest.approx(9_100.0)
        assert state["positions_count"] == 1

    def test_realized_pnl_counts_toward_balance(self, positions):
        account = AccountManager(positions=positions, paper_balance=10_000.0)
        position = positions.open_position("ETH", "short", 1.0, 3_000.0)
        positions.close_position(position, reason="tp_triggered", pnl=150.0)

        assert account.fetch_account_state()["account_value"] == pytest.approx(10_150.0)


class TestLiveAccount:
    def test_reads_cross_margin_summary(self, positions):
        exchange = FakeExchange(user_state={
            "crossMarginSummary": {"accountValue": "12000.5", "totalMarginUsed": "2000",
                                   "totalRawUsd": "10000.5", "totalNtlPos": "6000"},
            "assetPositions": [exchange_position("BTC", 0.1, 60_000)],
        })
        audit = AuditLogger()

        state = AccountManager(exchange=exchange, positions=positions, audit=audit).fetch_account_state()

        assert state == {
            "account_value": 12_000.5,
            "margin_used": 2_000.0,
            "available_margin": 10_000.5,
            "notional_position": 6_000.0,
            "positions_count": 1,
        }
        assert audit.recent("sync_account")[0]["status"] == "success"

    def test_missing_summary(self, positions):
        exchange = FakeExchange(user_state={"assetPositions": []})
        with pytest.raises(CriticalDataUnavailable):
            AccountManager(exchange=exchange, positions=positions).fetch_account_state()

    def test_api_error_is_audited_and_raised(self, positions):
        exchange = Mock()
        exchange.user_state.side_effect = ApiError("timeout")
        audit = AuditLogger()

        with pytest.raises(ApiError):
            AccountManager(exchange=exchange, positions=positions, audit=audit).fetch_account_state()

        entry = audit.recent("sync_account")[0]
        assert entry["status"] == "failure"
        assert entry["error"] == "timeout"


class TestCanTrade:
    def test_insufficient_margin(self, positions):
        account = AccountManager(positions=positions, paper_balance=1_000.0)
        assert account.can_trade(1_500.0) is False

    def test_position_limit(self, positions):
        account = AccountManager(positions=positions, paper_balance=100_000.0, max_open_positions=2)
        positions.open_position("BTC", "long", 0.01, 50_000.0)
        assert account.can_trade(100.0) is True

        positions.open_position("ETH", "long", 0.1, 3_000.0)
        assert account.can_trade(100.0) is False
        assert account.can_trade(100.0, max_open_positions=3) is True

    def test_margin_for_position(self):
        account = AccountManager(default_leverage=3)
        assert account.margin_for_position(0.1, 50_000.0) == pytest.approx(1_666.6667, rel=1e-4)
        assert account.margin_for_position(0.1, 50_000.0, leverage=10) == pytest.approx(500.0)


class TestPositionBook:
    def test_queries(self, positions):
        btc = positions.open_position("BTC", "long", 0.01, 50_000.0)
        positions.open_position("ETH", "short", 1.0, 3_000.0)

        assert positions.open_positions_count() == 2
        assert positions.has_open_position("ETH", "short") is True
        assert positions.has_open_position("ETH", "long") is False
        assert positions.get_open_position("BTC") is btc
        assert positions.get(btc.id) is btc

    def test_closed_positions_leave_open_set(self, positions):
        position = positions.open_position("BTC", "long", 0.01, 50_000.0)
        positions.close_position(position, reason="sl_triggered", pnl=-10.0)

        assert positions.open_positions() == []
        assert positions.closed_since(None) == [position]
        assert positions.closed_since(utcnow() + timedelta(minutes=1)) == []

    def test_update_prices_skips_unknown_symbols(self, positions):
        btc = positions.open_position("BTC", "long", 0.01, 50_000.0)
        positions.open_position("DOGE", "long", 100.0, 0.1)

        assert positions.update_prices({"BTC": 51_000.0}) == 1
        assert btc.unrealized_pnl == pytest.approx(10.0)
        assert btc.peak_price == 51_000.0

    def test_claim_for_close_is_exclusive(self, positions):
        btc = positions.open_position("BTC", "long", 0.01, 50_000.0)

        assert positions.claim_for_close("BTC") is btc
        assert positions.claim_for_close("BTC") is None
        assert positions.claim_for_close("ETH") is None

        positions.release_close(btc)
        assert btc.is_open
        assert positions.claim_for_close("BTC") is btc

    def test_close_listeners(self, positions):
        failing = Mock(side_effect=RuntimeError("listener down"))
        listener = Mock()
        positions.subscribe_closed(failing)
        positions.subscribe_closed(listener)
        position = positions.open_position("BTC", "long", 0.01, 50_000.0)

        positions.close_position(position, reason="signal", pnl=-5.0)

        assert position.is_closed
        listener.assert_called_once_with(position)


class TestExchangeSync:
    def test_creates_missing_positions(self, positions):
        result = positions.sync_from_exchange({"assetPositions": [
            exchange_position("BTC", -0.2, 60_000, mark_px=59_000, margin_used=2_400),
        ]})

        assert result == {"created": 1, "updated": 0, "closed": 0}
        position = positions.get_open_position("BTC")
        assert position.direction == "short"
        assert position.size == pytest.approx(0.2)
        assert position.leverage == 5
        assert position.margin_used == pytest.approx(2_400.0)
        assert position.unrealized_pnl == pytest.approx(200.0)

    def test_updates_existing_and_closes_vanished(self, positions):
        btc = positions.open_position("BTC", "long", 0.1, 50_000.0)
        eth = positions.open_position("ETH", "long", 1.0, 3_000.0)

        result = positions.sync_from_exchange({"assetPositions": [
            exchange_position("BTC", 0.3, 50_500),
        ]})

        assert result == {"created": 0, "updated": 1, "closed": 1}
        assert btc.size == pytest.approx(0.3)
        assert btc.entry_price == 50_500.0
        assert eth.is_closed
        assert eth.close_reason == "manual"

    @pytest.mark.parametrize("entry", [
        exchange_position("BTC", 0, 50_000),
        {"position": {"coin": "BTC", "szi": "0.1"}},
        {"position": {}},
    ])
    def test_skips_incomplete_entries(self, entry):
        book = PositionBook()
        assert book.sync_from_exchange({"assetPositions": [entry]})["created"] == 0
