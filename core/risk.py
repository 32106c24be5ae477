"""
perptrader Core: Risk Validator

Hard per-decision constraints. NO component (agent, operator or automation)
can open a position that fails these checks.

Checks (in order, first failure wins):
1. hold operations are not executable
2. confidence >= profile min_confidence
3. leverage (decision or profile default) <= profile max_leverage
4. open positions < profile max_open_positions (opens)
5. open: no existing position for the symbol; margin affordable
6. open with stop-loss and take-profit: risk/reward >= profile minimum
7. close: an open position for the symbol exists

Rejections are results, not exceptions.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

from core.models import Operation

logger = logging.getLogger(__name__)

DEFAULT_MIN_RISK_REWARD_RATIO = 1.5


@dataclass(frozen=True)
class ValidationResult:
    """Result of risk validation"""
    approved: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(approved=True)

    @classmethod
    def reject(cls, reason: str) -> "ValidationResult":
        return cls(approved=False, reason=reason)


class RiskValidator:
    """
    Stateless validation pipeline over one decision and its entry price.

    Args:
        account_manager: exposes ``margin_for_position`` and ``can_trade``
        positions: exposes ``has_open_position`` and ``open_positions_count``
        risk_config: ``risk`` section of policy.yaml
    """

    def __init__(self, account_manager, positions, risk_config: Optional[Dict[str, Any]] = None):
        self.account_manager = account_manager
        self.positions = positions
        self.risk_config = risk_config or {}
        self.enforce_risk_reward_ratio = bool(self.risk_config.get("enforce_risk_reward_ratio", True))

    def validate(self, decision, entry_price: Optional[float], params) -> ValidationResult:
        """
        Validate ``decision`` against the risk profile snapshot ``params``.
        """
        if decision.operation == Operation.HOLD.value:
            return ValidationResult.reject("Cannot execute hold operations")

        confidence = decision.confidence or 0
        if confidence < params.min_confidence:
            return ValidationResult.reject(f"Confidence {confidence} below minimum {params.min_confidence}")

        leverage = decision.leverage or params.default_leverage
        if leverage > params.max_leverage:
            return ValidationResult.reject(f"Leverage {leverage} exceeds maximum {params.max_leverage}")

        if decision.operation == Operation.OPEN.value:
            open_count = self.positions.open_positions_count()
            if open_count >= params.max_open_positions:
                return ValidationResult.reject(
                    f"At max open positions ({open_count}/{params.max_open_positions})"
                )

            result = self._validate_open(decision, entry_price, leverage, params)
            if not result.approved:
                return result

            if decision.stop_loss is not None and decision.take_profit is not None:
                result = self.validate_risk_reward(
                    entry_price=entry_price,
                    stop_loss=decision.stop_loss,
                    take_profit=decision.take_profit,
                    direction=decision.direction,
                    min_ratio=params.min_risk_reward_ratio,
                )
                if not result.approved:
                    return result

        elif decision.operation == Operation.CLOSE.value:
            if not self.positions.has_open_position(decision.symbol):
                return ValidationResult.reject(f"No open position for {decision.symbol}")

        return ValidationResult.ok()

    def _validate_open(self, decision, entry_price: Optional[float], leverage: int, params) -> ValidationResult:
        if self.positions.has_open_position(decision.symbol):
            return ValidationResult.reject(f"Already have existing position for {decision.symbol}")

        if not entry_price:
            return ValidationResult.reject(f"No entry price available for {decision.symbol}")

        size = decision.target_size or params.max_position_size
        margin_required = self.account_manager.margin_for_position(
            size=size, price=entry_price, leverage=leverage
        )
        if not self.account_manager.can_trade(margin_required, max_open_positions=params.max_open_positions):
            return ValidationResult.reject("Insufficient margin or position limit reached")

        return ValidationResult.ok()

    def validate_risk_reward(self, entry_price: float, stop_loss: Optional[float],
                             take_profit: Optional[float], direction: Optional[str],
                             min_ratio: float = DEFAULT_MIN_RISK_REWARD_RATIO) -> ValidationResult:
        if stop_loss is None or take_profit is None:
            return ValidationResult.ok()

        risk = abs(entry_price - stop_loss)
        reward = abs(take_profit - entry_price)
        if risk == 0:
            return ValidationResult.ok()

        ratio = reward / risk
        if ratio < min_ratio:
            if self.enforce_risk_reward_ratio:
                return ValidationResult.reject(
                    f"Poor risk/reward ratio: {round(ratio, 2)} (minimum: {min_ratio})"
                )
            logger.warning(f"Poor risk/reward ratio: {round(ratio, 2)} for {direction} trade (warning only)")

        return ValidationResult.ok()

    @staticmethod
    def calculate_risk_amount(size: float, entry_price: float, stop_loss: Optional[float]) -> Optional[float]:
        """Dollar amount lost if the stop is hit."""
        if stop_loss is None:
            return None
        return size * abs(entry_price - stop_loss)


class RsiEntryFilter:
    """
    Code-level RSI backstop for entries, independent of the agent's judgement.

    - open long with RSI > rsi_overbought → reject
    - open short with RSI < rsi_oversold → reject
    """

    def check(self, decision, rsi: Optional[float], params) -> ValidationResult:
        if decision.operation != Operation.OPEN.value or rsi is None:
            return ValidationResult.ok()

        if decision.direction == "long" and rsi > params.rsi_overbought:
            return ValidationResult.reject(f"RSI {rsi:.1f} overbought - cannot open long")
        if decision.direction == "short" and rsi < params.rsi_oversold:
            return ValidationResult.reject(f"RSI {rsi:.1f} oversold - cannot open short")
        return ValidationResult.ok()
