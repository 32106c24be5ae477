"""
Tests for the reasoning agent adapter and decision payload schema.
"""

from unittest.mock import Mock

import pytest
from pydantic import ValidationError

from ai.reasoning import RATE_LIMITED_REASON, HoldAgent, ReasoningAgentAdapter
from ai.schemas import DecisionPayload
from core.exceptions import ApiError, ConfigurationError, RateLimitError
from core.models import TradingDecision

SYMBOLS = ["BTC", "ETH"]


def agent_returning(value=None, error=None):
    agent = Mock()
    if error is not None:
        agent.decide_all.side_effect = error
    else:
        agent.decide_all.return_value = value
    return agent


class TestErrorMapping:
    @pytest.mark.parametrize("error,reason", [
        (RateLimitError("429 from provider"), RATE_LIMITED_REASON),
        (ConfigurationError("missing API key"), "Configuration error: missing API key"),
        (ApiError("upstream 503"), "API error: upstream 503"),
        (KeyError("choices"), "Agent error: 'choices'"),
    ])
    def test_failures_become_rejected_holds(self, error, reason):
        decisions = ReasoningAgentAdapter(agent_returning(error=error)).decide_all(None, SYMBOLS)

        assert [d.symbol for d in decisions] == SYMBOLS
        for decision in decisions:
            assert decision.operation == "hold"
            assert decision.status == "rejected"
            assert decision.rejection_reason == reason


class TestPayloadConversion:
    def test_valid_payload_becomes_pending_decision(self):
        payload = {"symbol": " btc ", "operation": "open", "direction": "long", "confidence": 0.72,
                   "leverage": 4, "stop_loss": 49_000, "take_profit": 53_000, "reasoning": "trend"}

        decision = ReasoningAgentAdapter(agent_returning([payload])).decide_all(None, SYMBOLS)[0]

        assert decision.symbol == "BTC"
        assert decision.status == "pending"
        assert decision.leverage == 4
        assert decision.stop_loss == 49_000
        assert decision.reasoning == "trend"

    def test_invalid_payload_rejected_per_symbol(self):
        payloads = [
            {"symbol": "BTC", "operation": "open", "confidence": 0.9},
            {"symbol": "ETH", "operation": "hold", "confidence": 0.5},
        ]

        btc, eth = ReasoningAgentAdapter(agent_returning(payloads)).decide_all(None, SYMBOLS)

        assert btc.status == "rejected"
        assert btc.rejection_reason.startswith("Invalid LLM response")
        assert eth.status == "pending"

    def test_non_dict_payload_uses_positional_symbol(self):
        decisions = ReasoningAgentAdapter(agent_returning(["garbage"])).decide_all(None, SYMBOLS)
        assert decisions[0].symbol == "BTC"
        assert decisions[0].status == "rejected"

    def test_decision_objects_pass_through(self):
        decision = TradingDecision(symbol="SOL", operation="close", confidence=0.8)
        result = ReasoningAgentAdapter(agent_returning([decision])).decide_all(None, ["SOL"])
        assert result == [decision]

    def test_empty_response(self):
        assert ReasoningAgentAdapter(agent_returning(None)).decide_all(None, SYMBOLS) == []


class TestDecisionPayload:
    def test_direction_required_for_open(self):
        with pytest.raises(ValidationError, match="direction is required"):
            DecisionPayload(symbol="BTC", operation="open", confidence=0.5)

    @pytest.mark.parametrize("field,value", [
        ("confidence", 1.5),
        ("leverage", 0),
        ("stop_loss", -1.0),
        ("operation", "buy"),
    ])
    def test_field_bounds(self, field, value):
        data = {"symbol": "BTC", "operation": "close", "confidence": 0.5, field: value}
        with pytest.raises(ValidationError):
            DecisionPayload(**data)


def test_hold_agent_holds_every_symbol():
    decisions = ReasoningAgentAdapter(HoldAgent()).decide_all(None, SYMBOLS)

    assert [d.operation for d in decisions] == ["hold", "hold"]
    assert all(d.is_pending and not d.actionable for d in decisions)
