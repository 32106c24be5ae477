"""
perptrader Core: Volatility Scheduler

Turns an ATR measurement into a cycle interval. Higher volatility means a
shorter wait before the next trading cycle.

| atr / price | level     | interval (min) |
|-------------|-----------|----------------|
| >= 3%       | very_high | 3              |
| >= 2%       | high      | 6              |
| >= 1%       | medium    | 12             |
| <  1%       | low       | 25             |

Lower edges are inclusive. Missing or zero inputs classify as medium.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 12
MIN_INTERVAL = 3
MAX_INTERVAL = 25

LEVEL_INTERVALS = {
    "very_high": 3,
    "high": 6,
    "medium": 12,
    "low": 25,
}

DEFAULT_THRESHOLDS = {
    "very_high": 0.03,
    "high": 0.02,
    "medium": 0.01,
}


@dataclass(frozen=True)
class VolatilityResult:
    level: str
    interval_minutes: int
    atr_value: Optional[float] = None
    atr_percentage: Optional[float] = None


class VolatilityScheduler:
    """
    Classifies volatility and derives scheduling intervals.

    Args:
        market_data: object exposing ``volatility_inputs(symbol) -> (atr, price)``
        thresholds: lower-edge ATR fractions for very_high / high / medium
    """

    def __init__(self, market_data=None, thresholds: Optional[Dict[str, float]] = None,
                 min_interval: int = MIN_INTERVAL, max_interval: int = MAX_INTERVAL,
                 default_interval: int = DEFAULT_INTERVAL):
        self.market_data = market_data
        self.thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        self.min_interval = min_interval
        self.max_interval = max_interval
        self.default_interval = default_interval

    def default_result(self) -> VolatilityResult:
        return VolatilityResult(level="medium", interval_minutes=self.default_interval)

    def classify(self, atr: Optional[float], price: Optional[float]) -> VolatilityResult:
        if atr is None or not price:
            return self.default_result()

        atr_pct = atr / price
        if atr_pct >= self.thresholds["very_high"]:
            level = "very_high"
        elif atr_pct >= self.thresholds["high"]:
            level = "high"
        elif atr_pct >= self.thresholds["medium"]:
            level = "medium"
        else:
            level = "low"

        return VolatilityResult(
            level=level,
            interval_minutes=LEVEL_INTERVALS[level],
            atr_value=atr,
            atr_percentage=atr_pct,
        )

    def classify_symbol(self, symbol: str) -> VolatilityResult:
        if self.market_data is None:
            return self.default_result()
        try:
            atr, price = self.market_data.volatility_inputs(symbol)
        except Exception as e:
            logger.error(f"Volatility inputs unavailable for {symbol}: {e}")
            return self.default_result()
        result = self.classify(atr, price)
        logger.debug(
            f"{symbol} volatility: level={result.level}, atr_pct={result.atr_percentage}, "
            f"interval={result.interval_minutes}m"
        )
        return result

    def classify_all(self, symbols: Iterable[str]) -> Tuple[VolatilityResult, Dict[str, VolatilityResult]]:
        """
        Classify every symbol.

        Returns:
            (aggregate, per_symbol) where aggregate is the most volatile
            result (smallest interval); default result if there are no symbols.
        """
        per_symbol = {symbol: self.classify_symbol(symbol) for symbol in symbols}
        if not per_symbol:
            return self.default_result(), per_symbol
        aggregate = min(per_symbol.values(), key=lambda r: r.interval_minutes)
        return aggregate, per_symbol

    def next_interval(self, result: VolatilityResult) -> int:
        return max(self.min_interval, min(int(result.interval_minutes), self.max_interval))

    @staticmethod
    def forecast_delay(interval_minutes: int) -> Optional[int]:
        """Forecast refresh lead: one minute before the next cycle, None if that is not in the future."""
        delay = interval_minutes - 1
        return delay if delay > 0 else None
