"""
perptrader Core: Execution Engine

Turns approved decisions into orders and position changes.

Modes:
- PAPER: fills immediately at the current mid price, no exchange writes
- LIVE: routes through the exchange client; write paths that are not
  implemented yet come back as a failed result (decision marked failed)

Every call returns an ExecutionResult; expected failures are never raised.
"""

import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional
import logging

from core.exceptions import ApiError, WriteNotSupported
from core.models import CloseReason, DecisionStatus, LogRef, Operation, Position
from core.order_state import Order, OrderSide, OrderType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of executing one decision."""
    success: bool
    order: Optional[Order] = None
    position: Optional[Position] = None
    error: Optional[str] = None
    error_type: Optional[str] = None  # "write_not_supported" | "api_error" | "invalid" | "no_price"

    @classmethod
    def failed(cls, error: str, error_type: str, order: Optional[Order] = None) -> "ExecutionResult":
        return cls(success=False, order=order, error=error, error_type=error_type)


class OrderExecutor:
    """
    Shared execution flow; subclasses implement ``_place``.

    Args:
        positions: PositionBook receiving opened/closed positions
        price_source: callable returning ``{symbol: mid_price}``
        audit: optional AuditLogger
    """

    mode = "BASE"

    def __init__(self, positions, price_source: Callable[[], Dict[str, float]], audit=None):
        self.positions = positions
        self.price_source = price_source
        self.audit = audit

    def execute(self, decision, close_reason: str = CloseReason.SIGNAL.value) -> ExecutionResult:
        if decision.status != DecisionStatus.APPROVED.value:
            return ExecutionResult.failed(
                f"Decision {decision.id} is {decision.status}, not approved", "invalid"
            )

        position = None
        if decision.operation == Operation.OPEN.value:
            if not decision.target_size:
                return self._fail(decision, "No position size for open decision", "invalid")
            side = OrderSide.BUY.value if decision.direction == "long" else OrderSide.SELL.value
            size = decision.target_size
        elif decision.operation == Operation.CLOSE.value:
            if self.positions.get_open_position(decision.symbol) is None:
                return self._fail(decision, f"No open position for {decision.symbol}", "invalid")
        else:
            return self._fail(decision, f"Cannot execute {decision.operation} operations", "invalid")

        try:
            price = self.price_source().get(decision.symbol)
        except ApiError as e:
            return self._fail(decision, f"Price unavailable: {e}", "api_error")
        if price is None:
            return self._fail(decision, f"No price available for {decision.symbol}", "no_price")

        if decision.operation == Operation.CLOSE.value:
            # only one close may hold a position; the claim is released if the order fails
            position = self.positions.claim_for_close(decision.symbol)
            if position is None:
                return self._fail(decision, f"Position for {decision.symbol} is already closing or closed",
                                  "invalid")
            side = OrderSide.SELL.value if position.is_long else OrderSide.BUY.value
            size = position.size

        order = Order(
            symbol=decision.symbol,
            side=side,
            size=size,
            order_type=OrderType.MARKET.value,
            decision_id=decision.id,
            position_id=position.id if position else None,
        )

        try:
            self._place(order, price)
        except WriteNotSupported as e:
            self._release(position)
            order.fail(str(e))
            return self._fail(decision, str(e), "write_not_supported", order)
        except ApiError as e:
            self._release(position)
            order.fail(str(e))
            return self._fail(decision, str(e), "api_error", order)
        except Exception:
            self._release(position)
            raise

        if decision.operation == Operation.OPEN.value:
            position = self.positions.open_position(
                symbol=decision.symbol,
                direction=decision.direction,
                size=order.filled_size,
                entry_price=order.average_fill_price,
                leverage=decision.leverage,
                stop_loss_price=decision.stop_loss,
                take_profit_price=decision.take_profit,
                risk_amount=decision.risk_amount,
            )
            order.position_id = position.id
        else:
            position.update_current_price(order.average_fill_price)
            self.positions.close_position(position, reason=close_reason)

        decision.mark_executed()
        if self.audit:
            self.audit.log_success(
                "place_order",
                ref=LogRef("order", order.id),
                request={"decision_id": decision.id, "symbol": order.symbol, "side": order.side, "size": order.size},
                response={"exchange_order_id": order.exchange_order_id, "fill_price": order.average_fill_price,
                          "mode": self.mode},
            )
        logger.info(
            f"[{self.mode}] Executed {decision.operation} {decision.symbol}: {order.side} {order.filled_size} "
            f"@ {order.average_fill_price}"
        )
        return ExecutionResult(success=True, order=order, position=position)

    def _place(self, order: Order, price: float) -> None:
        raise NotImplementedError

    def _release(self, position: Optional[Position]) -> None:
        if position is not None:
            self.positions.release_close(position)

    def _fail(self, decision, error: str, error_type: str, order: Optional[Order] = None) -> ExecutionResult:
        decision.mark_failed(error)
        logger.error(f"[{self.mode}] Execution failed for {decision.symbol}: {error}")
        if self.audit:
            self.audit.log_failure(
                "place_order",
                error,
                ref=LogRef("order", order.id) if order else LogRef("decision", decision.id),
                request={"decision_id": decision.id, "symbol": decision.symbol, "operation": decision.operation},
            )
        return ExecutionResult.failed(error, error_type, order)


class PaperOrderExecutor(OrderExecutor):
    """Simulated fills at the current mid price."""

    mode = "PAPER"

    def _place(self, order: Order, price: float) -> None:
        order.submit(f"PAPER-{uuid.uuid4().hex[:16]}")
        order.fill(price)


class LiveOrderExecutor(OrderExecutor):
    """Routes orders through the exchange client."""

    mode = "LIVE"

    def __init__(self, positions, price_source, exchange, audit=None):
        super().__init__(positions, price_source, audit)
        self.exchange = exchange

    def _place(self, order: Order, price: float) -> None:
        response = self.exchange.place_order({
            "coin": order.symbol,
            "is_buy": order.side == OrderSide.BUY.value,
            "sz": order.size,
            "limit_px": price,
            "order_type": order.order_type,
        })
        order.submit(str(response.get("oid") or response.get("order_id")))
        order.fill(float(response.get("avgPx") or price), float(response.get("totalSz") or order.size))
