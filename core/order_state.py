"""
perptrader Core: Order State Machine

Explicit order lifecycle management with validated, monotonic transitions.

States: PENDING → SUBMITTED → PARTIALLY_FILLED → (FILLED | CANCELLED | FAILED)

Provides:
- State transition validation (no regression out of terminal states)
- Lifecycle timestamps
- Fill bookkeeping (remaining size, fill percentage)
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import logging
import uuid

from core.exceptions import InvalidTransition

logger = logging.getLogger(__name__)


class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING = "pending"                    # Created locally, not yet sent
    SUBMITTED = "submitted"                # Accepted by the exchange
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    FAILED = "failed"


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP_LIMIT = "stop_limit"


VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.SUBMITTED, OrderStatus.CANCELLED, OrderStatus.FAILED},
    OrderStatus.SUBMITTED: {OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED,
                            OrderStatus.CANCELLED, OrderStatus.FAILED},
    OrderStatus.PARTIALLY_FILLED: {OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED,
                                   OrderStatus.CANCELLED},
    # Terminal states have no outbound transitions
    OrderStatus.FILLED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.FAILED: set(),
}


@dataclass
class Order:
    """
    Order with lifecycle tracking.

    Links back to the decision that produced it and to the position it
    opened or closed.
    """
    symbol: str
    side: str
    size: float
    order_type: str = OrderType.MARKET.value
    price: Optional[float] = None
    stop_price: Optional[float] = None

    status: str = OrderStatus.PENDING.value
    exchange_order_id: Optional[str] = None
    filled_size: float = 0.0
    average_fill_price: Optional[float] = None
    error: Optional[str] = None

    decision_id: Optional[str] = None
    position_id: Optional[str] = None

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        """Validate initial state"""
        if not self.symbol:
            raise ValueError("Order symbol is required")
        if self.side not in {s.value for s in OrderSide}:
            raise ValueError(f"Invalid order side: {self.side}")
        if self.order_type not in {t.value for t in OrderType}:
            raise ValueError(f"Invalid order type: {self.order_type}")
        if self.size <= 0:
            raise ValueError("Order size must be positive")
        if self.order_type in (OrderType.LIMIT.value, OrderType.STOP_LIMIT.value) and self.price is None:
            raise ValueError(f"{self.order_type} orders require a price")
        if self.order_type == OrderType.STOP_LIMIT.value and self.stop_price is None:
            raise ValueError("stop_limit orders require a stop price")

    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[OrderStatus(self.status)]

    def _transition(self, new_status: OrderStatus) -> None:
        current = OrderStatus(self.status)
        if new_status not in VALID_TRANSITIONS[current]:
            logger.warning(f"Invalid transition for order {self.id}: {current.value} → {new_status.value}")
            raise InvalidTransition("order", current.value, new_status.value)
        self.status = new_status.value
        if new_status in (OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.FAILED):
            self.completed_at = datetime.now(timezone.utc)
        logger.debug(f"Order {self.id} transitioned: {current.value} → {new_status.value}")

    def submit(self, exchange_order_id: str) -> None:
        self._transition(OrderStatus.SUBMITTED)
        self.exchange_order_id = exchange_order_id
        self.submitted_at = datetime.now(timezone.utc)

    def fill(self, price: float, size: Optional[float] = None) -> None:
        """Complete the order at ``price``; ``size`` defaults to the full order."""
        self._transition(OrderStatus.FILLED)
        fill_size = self.size if size is None else size
        self._apply_fill(price, fill_size - self.filled_size)

    def partially_fill(self, price: float, size: float) -> None:
        """Record an incremental fill of ``size`` units at ``price``."""
        if self.filled_size + size >= self.size:
            self.fill(price, self.size)
            return
        self._transition(OrderStatus.PARTIALLY_FILLED)
        self._apply_fill(price, size)

    def _apply_fill(self, price: float, size: float) -> None:
        if size <= 0:
            return
        previous_value = (self.average_fill_price or 0.0) * self.filled_size
        self.filled_size += size
        self.average_fill_price = (previous_value + price * size) / self.filled_size

    def cancel(self) -> None:
        self._transition(OrderStatus.CANCELLED)

    def fail(self, error: str) -> None:
        self._transition(OrderStatus.FAILED)
        self.error = error

    def remaining_size(self) -> float:
        return max(self.size - self.filled_size, 0.0)

    def fill_percent(self) -> float:
        """Return fill percentage (0-100)"""
        return (self.filled_size / self.size) * 100.0 if self.size else 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "order_type": self.order_type,
            "size": self.size,
            "price": self.price,
            "stop_price": self.stop_price,
            "status": self.status,
            "exchange_order_id": self.exchange_order_id,
            "filled_size": self.filled_size,
            "average_fill_price": self.average_fill_price,
            "error": self.error,
            "decision_id": self.decision_id,
            "position_id": self.position_id,
            "created_at": self.created_at.isoformat(),
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "fill_percent": self.fill_percent(),
        }
