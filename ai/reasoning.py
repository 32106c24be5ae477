"""
Reasoning agent adapter.

Wraps the external reasoning agent so the trading cycle always receives a
list of TradingDecision objects:
- rate limits, API failures and configuration errors become rejected
  ``hold`` decisions (one per symbol) instead of propagating
- malformed payloads become a rejected ``hold`` for that symbol
- valid payloads become pending decisions

The agent can never approve its own decisions; approval belongs to the
risk layer.
"""

import logging
from typing import Any, Iterable, List, Optional

from pydantic import ValidationError

from core.exceptions import ApiError, ConfigurationError, RateLimitError
from core.models import Operation, TradingDecision

from .schemas import DecisionPayload

log = logging.getLogger(__name__)

RATE_LIMITED_REASON = "Rate limited - holding"


def rejected_hold(symbol: str, reason: str) -> TradingDecision:
    decision = TradingDecision(symbol=symbol, operation=Operation.HOLD.value, confidence=0.0, reasoning=reason)
    decision.reject(reason)
    return decision


class ReasoningAgentAdapter:
    """
    Error-mapping facade over a reasoning agent.

    Args:
        agent: object exposing ``decide_all(macro_strategy, symbols)`` that
            returns an iterable of payload dicts (or TradingDecision objects)
    """

    def __init__(self, agent):
        self.agent = agent

    def decide_all(self, macro_strategy: Any, symbols: Iterable[str]) -> List[TradingDecision]:
        symbols = list(symbols)
        try:
            raw = self.agent.decide_all(macro_strategy, symbols)
        except RateLimitError as e:
            log.warning(f"Reasoning agent rate limited: {e}")
            return [rejected_hold(s, RATE_LIMITED_REASON) for s in symbols]
        except ConfigurationError as e:
            log.error(f"Reasoning agent misconfigured: {e}")
            return [rejected_hold(s, f"Configuration error: {e}") for s in symbols]
        except ApiError as e:
            log.error(f"Reasoning agent API error: {e}")
            return [rejected_hold(s, f"API error: {e}") for s in symbols]
        except Exception as e:
            log.exception(f"Reasoning agent failed unexpectedly: {e}")
            return [rejected_hold(s, f"Agent error: {e}") for s in symbols]

        decisions = []
        for index, item in enumerate(raw or []):
            fallback_symbol = symbols[index] if index < len(symbols) else "UNKNOWN"
            decisions.append(self._to_decision(item, fallback_symbol))
        log.info(
            f"Reasoning agent returned {len(decisions)} decisions "
            f"({sum(1 for d in decisions if d.actionable and d.is_pending)} actionable)"
        )
        return decisions

    def _to_decision(self, item: Any, fallback_symbol: str) -> TradingDecision:
        if isinstance(item, TradingDecision):
            return item

        symbol = fallback_symbol
        if isinstance(item, dict) and item.get("symbol"):
            symbol = str(item["symbol"]).strip().upper()

        try:
            payload = DecisionPayload.model_validate(item)
        except ValidationError as e:
            log.warning(f"Invalid reasoning payload for {symbol}: {e.error_count()} errors")
            return rejected_hold(symbol, f"Invalid LLM response: {self._first_error(e)}")

        return TradingDecision(
            symbol=payload.symbol,
            operation=payload.operation,
            direction=payload.direction,
            confidence=payload.confidence,
            leverage=payload.leverage,
            stop_loss=payload.stop_loss,
            take_profit=payload.take_profit,
            reasoning=payload.reasoning,
        )

    @staticmethod
    def _first_error(exc: ValidationError) -> Optional[str]:
        errors = exc.errors()
        if not errors:
            return str(exc)
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "payload"
        return f"{field}: {first.get('msg')}"


class HoldAgent:
    """Agent used when none is configured: proposes ``hold`` for every symbol."""

    def decide_all(self, macro_strategy: Any, symbols: Iterable[str]) -> List[dict]:
        return [
            {"symbol": symbol, "operation": "hold", "confidence": 0.0,
             "reasoning": "No reasoning agent configured"}
            for symbol in symbols
        ]
