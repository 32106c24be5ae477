"""
perptrader Core: Account Manager

Account state from the exchange (account value, margin) and the margin /
position-limit checks used before opening a trade. In paper mode the
account is simulated from a starting balance plus realized PnL.
"""

from typing import Any, Dict, Optional
import logging

from core.exceptions import ApiError, CriticalDataUnavailable

logger = logging.getLogger(__name__)


class AccountManager:
    """
    Answers account and margin questions.

    Args:
        exchange: read client exposing ``user_state(address)``; None for paper mode
        positions: PositionBook used for the open-position limit and paper margin
        audit: optional AuditLogger for ``sync_account`` entries
        paper_balance: starting balance when running without an exchange
    """

    def __init__(self, exchange=None, positions=None, audit=None,
                 max_open_positions: int = 5, default_leverage: int = 3,
                 paper_balance: float = 10_000.0):
        self.exchange = exchange
        self.positions = positions
        self.audit = audit
        self.max_open_positions = max_open_positions
        self.default_leverage = default_leverage
        self.paper_balance = paper_balance

    def fetch_account_state(self) -> Dict[str, Any]:
        """
        Returns:
            {account_value, margin_used, available_margin, notional_position, positions_count}

        Raises:
            ApiError: exchange call failed
            CriticalDataUnavailable: exchange answered without a margin summary
        """
        if self.exchange is None:
            return self._paper_state()

        try:
            response = self.exchange.user_state()
        except ApiError as e:
            if self.audit:
                self.audit.log_failure("sync_account", str(e))
            raise

        summary = response.get("crossMarginSummary") or response.get("marginSummary")
        if summary is None:
            raise CriticalDataUnavailable("account margin summary")

        state = {
            "account_value": float(summary.get("accountValue") or 0),
            "margin_used": float(summary.get("totalMarginUsed") or 0),
            "available_margin": float(summary.get("totalRawUsd") or 0),
            "notional_position": float(summary.get("totalNtlPos") or 0),
            "positions_count": len(response.get("assetPositions") or []),
        }
        if self.audit:
            self.audit.log_success("sync_account", response=state)
        logger.info(f"Account value: {state['account_value']}, available: {state['available_margin']}")
        return state

    def _paper_state(self) -> Dict[str, Any]:
        realized = 0.0
        margin_used = 0.0
        unrealized = 0.0
        count = 0
        if self.positions is not None:
            realized = sum(p.realized_pnl or 0.0 for p in self.positions.closed_since(None))
            open_positions = self.positions.open_positions()
            margin_used = sum(p.margin_used or 0.0 for p in open_positions)
            unrealized = sum(p.unrealized_pnl for p in open_positions)
            count = len(open_positions)
        account_value = self.paper_balance + realized + unrealized
        return {
            "account_value": account_value,
            "margin_used": margin_used,
            "available_margin": account_value - margin_used,
            "notional_position": 0.0,
            "positions_count": count,
        }

    def margin_for_position(self, size: float, price: float, leverage: Optional[int] = None) -> float:
        leverage = leverage or self.default_leverage
        return (size * price) / leverage

    def can_trade(self, margin_required: float, max_open_positions: Optional[int] = None) -> bool:
        """True when the margin is available and the open-position limit is not reached."""
        state = self.fetch_account_state()
        if state["available_margin"] < margin_required:
            return False
        limit = max_open_positions if max_open_positions is not None else self.max_open_positions
        open_count = self.positions.open_positions_count() if self.positions is not None else 0
        return open_count < limit
