"""
perptrader Core: Readiness Gate

Verifies that the context the reasoning agent depends on is present and
fresh before a cycle is allowed to request decisions:
- valid macro strategy (not a fallback produced by a parse failure)
- at least one recent forecast
- fresh market data for every configured asset
- sentiment data

Trading on incomplete context is refused; the cycle aborts with zero
decisions instead.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

DEFAULT_MARKET_DATA_MAX_AGE_MINUTES = 5
DEFAULT_FORECAST_MAX_AGE_HOURS = 1

FALLBACK_STRATEGY_MARKER = "Unable to parse"


@dataclass
class ReadinessResult:
    ready: bool
    missing: List[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return ", ".join(self.missing)


class ReadinessChecker:
    """
    Args:
        data_source: collaborator exposing ``macro_strategy()``,
            ``latest_forecast_at(symbol)``, ``latest_snapshot_at(symbol)`` and
            ``latest_sentiment()``
        assets: configured trading universe
        config: ``readiness`` section (``require_*`` flags, max ages)
    """

    def __init__(self, data_source, assets: List[str], config: Optional[Dict[str, Any]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.data_source = data_source
        self.assets = list(assets)
        self.config = config or {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def check(self) -> ReadinessResult:
        missing = []
        if not self.valid_macro_strategy():
            missing.append("valid_macro_strategy")
        if not self.forecasts_available():
            missing.append("forecasts")
        if not self.fresh_market_data():
            missing.append("fresh_market_data")
        if not self.sentiment_available():
            missing.append("sentiment_data")

        result = ReadinessResult(ready=not missing, missing=missing)
        if not result.ready:
            logger.warning(f"Data not ready: {result.reason}")
        return result

    def status(self) -> Dict[str, bool]:
        result = self.check()
        return {
            "valid_macro_strategy": "valid_macro_strategy" not in result.missing,
            "forecasts_available": "forecasts" not in result.missing,
            "fresh_market_data": "fresh_market_data" not in result.missing,
            "sentiment_available": "sentiment_data" not in result.missing,
            "ready": result.ready,
        }

    def valid_macro_strategy(self) -> bool:
        if not self._required("require_macro_strategy"):
            return True
        strategy = self.data_source.macro_strategy()
        if not strategy:
            return False
        narrative = strategy.get("market_narrative", "") if isinstance(strategy, dict) else \
            getattr(strategy, "market_narrative", "")
        return FALLBACK_STRATEGY_MARKER not in (narrative or "")

    def forecasts_available(self) -> bool:
        if not self._required("require_forecasts"):
            return True
        cutoff = self._clock() - timedelta(hours=self.config.get("forecast_max_age_hours",
                                                                 DEFAULT_FORECAST_MAX_AGE_HOURS))
        return any(self._newer_than(self.data_source.latest_forecast_at(s), cutoff) for s in self.assets)

    def fresh_market_data(self) -> bool:
        if not self._required("require_fresh_market_data"):
            return True
        cutoff = self._clock() - timedelta(minutes=self.config.get("market_data_max_age_minutes",
                                                                   DEFAULT_MARKET_DATA_MAX_AGE_MINUTES))
        return all(self._newer_than(self.data_source.latest_snapshot_at(s), cutoff) for s in self.assets)

    def sentiment_available(self) -> bool:
        if not self._required("require_sentiment"):
            return True
        sentiment = self.data_source.latest_sentiment() or {}
        return (sentiment.get("fear_greed") or {}).get("value") is not None

    def _required(self, key: str) -> bool:
        return self.config.get(key, True) is not False

    @staticmethod
    def _newer_than(timestamp: Optional[datetime], cutoff: datetime) -> bool:
        return timestamp is not None and timestamp > cutoff
