"""
Tests for per-decision risk validation and the RSI entry backstop.
"""

import pytest

from core.risk import RiskValidator, RsiEntryFilter
from tests.helpers import FakeAccount, make_decision


@pytest.fixture
def validator(account, positions):
    return RiskValidator(account_manager=account, positions=positions)


class TestOpenValidation:
    """Open decisions: confidence, leverage, limits, margin, risk/reward"""

    def test_valid_open_approved(self, validator, moderate):
        decision = make_decision(confidence=0.8, leverage=3, stop_loss=98.0, take_profit=104.0)

        result = validator.validate(decision, entry_price=100.0, params=moderate)

        assert result.approved is True
        assert result.reason is None

    def test_hold_rejected(self, validator, moderate):
        decision = make_decision(operation="hold", direction=None)
        result = validator.validate(decision, 100.0, moderate)
        assert result.reason == "Cannot execute hold operations"

    def test_low_confidence(self, validator, moderate):
        result = validator.validate(make_decision(confidence=0.5), 100.0, moderate)
        assert result.approved is False
        assert result.reason == "Confidence 0.5 below minimum 0.6"

    def test_leverage_above_profile_max(self, validator, moderate):
        result = validator.validate(make_decision(leverage=10), 100.0, moderate)
        assert result.reason == "Leverage 10 exceeds maximum 5"

    def test_default_leverage_used_when_absent(self, validator, moderate):
        assert validator.validate(make_decision(leverage=None), 100.0, moderate).approved is True

    def test_at_max_open_positions(self, validator, positions, moderate):
        for symbol in ["ETH", "SOL", "BNB", "DOGE", "AVAX"]:
            positions.open_position(symbol, "long", 1.0, 10.0)

        result = validator.validate(make_decision(symbol="BTC"), 100.0, moderate)

        assert result.reason == "At max open positions (5/5)"

    def test_existing_position_for_symbol(self, validator, positions, moderate):
        positions.open_position("BTC", "short", 0.01, 50_000)

        result = validator.validate(make_decision(symbol="BTC"), 50_000, moderate)

        assert result.reason == "Already have existing position for BTC"

    def test_missing_entry_price(self, validator, moderate):
        result = validator.validate(make_decision(), None, moderate)
        assert result.reason == "No entry price available for BTC"

    def test_insufficient_margin(self, positions, moderate):
        validator = RiskValidator(FakeAccount(account_value=10_000, available_margin=10.0), positions)

        result = validator.validate(make_decision(), 50_000, moderate)

        assert result.reason == "Insufficient margin or position limit reached"

    def test_margin_check_uses_profile_position_limit(self, account, positions, moderate):
        validator = RiskValidator(account, positions)
        validator.validate(make_decision(leverage=2), 100.0, moderate)

        margin_required, limit = account.can_trade_calls[-1]
        assert margin_required == pytest.approx(moderate.max_position_size * 100.0 / 2)
        assert limit == moderate.max_open_positions


class TestRiskReward:
    def test_poor_ratio_rejected(self, validator, moderate):
        decision = make_decision(stop_loss=98.0, take_profit=101.0)

        result = validator.validate(decision, 100.0, moderate)

        assert result.reason == "Poor risk/reward ratio: 0.5 (minimum: 1.5)"

    def test_poor_ratio_warning_only(self, account, positions, moderate):
        validator = RiskValidator(account, positions, {"enforce_risk_reward_ratio": False})
        decision = make_decision(stop_loss=98.0, take_profit=101.0)

        assert validator.validate(decision, 100.0, moderate).approved is True

    def test_ratio_skipped_without_take_profit(self, validator, moderate):
        decision = make_decision(stop_loss=98.0)
        assert validator.validate(decision, 100.0, moderate).approved is True

    def test_short_ratio(self, validator, moderate):
        decision = make_decision(direction="short", stop_loss=102.0, take_profit=96.0)
        assert validator.validate(decision, 100.0, moderate).approved is True


class TestCloseValidation:
    def test_close_requires_open_position(self, validator, moderate):
        result = validator.validate(make_decision(operation="close"), 100.0, moderate)
        assert result.reason == "No open position for BTC"

    def test_close_allowed_at_position_limit(self, validator, positions, moderate):
        for symbol in ["BTC", "ETH", "SOL", "BNB", "DOGE"]:
            positions.open_position(symbol, "long", 1.0, 10.0)

        result = validator.validate(make_decision(operation="close"), 10.0, moderate)

        assert result.approved is True


def test_calculate_risk_amount():
    assert RiskValidator.calculate_risk_amount(0.1, 50_000, 49_000) == pytest.approx(100.0)
    assert RiskValidator.calculate_risk_amount(0.1, 50_000, None) is None


class TestRsiEntryFilter:
    """Code-level RSI backstop independent of the agent"""

    def test_overbought_long_rejected(self, moderate):
        result = RsiEntryFilter().check(make_decision(direction="long"), 75.0, moderate)
        assert result.approved is False
        assert "overbought" in result.reason

    def test_neutral_long_passes(self, moderate):
        assert RsiEntryFilter().check(make_decision(direction="long"), 50.0, moderate).approved is True

    def test_threshold_is_exclusive(self, moderate):
        assert RsiEntryFilter().check(make_decision(direction="long"), 70.0, moderate).approved is True

    def test_oversold_short_rejected(self, moderate):
        result = RsiEntryFilter().check(make_decision(direction="short"), 25.0, moderate)
        assert result.reason == "RSI 25.0 oversold - cannot open short"

    def test_overbought_short_allowed(self, moderate):
        assert RsiEntryFilter().check(make_decision(direction="short"), 80.0, moderate).approved is True

    def test_close_and_missing_rsi_ignored(self, moderate):
        f = RsiEntryFilter()
        assert f.check(make_decision(operation="close"), 95.0, moderate).approved is True
        assert f.check(make_decision(direction="long"), None, moderate).approved is True
