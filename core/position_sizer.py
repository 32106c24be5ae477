"""
perptrader Core: Position Sizer

Percent-risk sizing: risk a fixed fraction of account value between entry
and stop.

    size = (account_value * max_risk_pct) / |entry_price - stop_loss|

The result is capped at the profile's max position size (base-asset units).
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

SIZE_DECIMALS = 8
USD_DECIMALS = 2

DEFAULT_MAX_RISK_PER_TRADE = 0.01
DEFAULT_MAX_POSITION_SIZE = 0.05


@dataclass(frozen=True)
class SizingResult:
    size: float
    risk_amount: float
    risk_per_unit: float
    capped: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "risk_amount": self.risk_amount,
            "risk_per_unit": self.risk_per_unit,
            "capped": self.capped,
        }


class PositionSizer:
    """
    Converts a risk budget and stop distance into an order size.

    Args:
        account_manager: collaborator exposing ``fetch_account_state()``;
            consulted only when the caller does not pass an account value
    """

    def __init__(self, account_manager=None,
                 max_risk_per_trade: float = DEFAULT_MAX_RISK_PER_TRADE,
                 max_position_size: float = DEFAULT_MAX_POSITION_SIZE):
        self.account_manager = account_manager
        self.max_risk_per_trade = max_risk_per_trade
        self.max_position_size = max_position_size

    def calculate(
        self,
        entry_price: float,
        stop_loss: Optional[float],
        direction: Optional[str],
        max_risk_pct: Optional[float] = None,
        account_value: Optional[float] = None,
        max_position_size: Optional[float] = None,
    ) -> Optional[SizingResult]:
        """
        Size a position.

        Returns:
            SizingResult, or None when sizing is impossible (no stop, no
            account value, or zero stop distance)
        """
        if stop_loss is None:
            return None

        if account_value is None:
            account_value = self._fetch_account_value()
        if not account_value:
            return None

        risk_per_unit = abs(entry_price - stop_loss)
        if risk_per_unit == 0:
            return None

        max_risk_pct = self.max_risk_per_trade if max_risk_pct is None else max_risk_pct
        max_size = self.max_position_size if max_position_size is None else max_position_size

        max_risk_amount = account_value * max_risk_pct
        calculated_size = round(max_risk_amount / risk_per_unit, SIZE_DECIMALS)

        capped = calculated_size > max_size
        final_size = min(calculated_size, max_size)
        actual_risk = round(final_size * risk_per_unit, USD_DECIMALS)

        logger.info(
            f"{direction} entry={entry_price} sl={stop_loss} size={final_size} "
            f"risk=${actual_risk}{' (capped)' if capped else ''}"
        )

        return SizingResult(
            size=round(final_size, SIZE_DECIMALS),
            risk_amount=actual_risk,
            risk_per_unit=risk_per_unit,
            capped=capped,
        )

    def size_for_decision(self, decision, entry_price: float, params=None,
                          account_value: Optional[float] = None) -> Optional[SizingResult]:
        """Size a decision using its stop-loss and the given risk profile."""
        return self.calculate(
            entry_price=entry_price,
            stop_loss=decision.stop_loss,
            direction=decision.direction,
            max_risk_pct=params.max_risk_per_trade if params else None,
            max_position_size=params.max_position_size if params else None,
            account_value=account_value,
        )

    def _fetch_account_value(self) -> Optional[float]:
        if self.account_manager is None:
            return None
        try:
            return self.account_manager.fetch_account_state()["account_value"]
        except Exception as e:
            logger.error(f"Failed to fetch account value: {e}")
            return None
