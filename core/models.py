"""
perptrader Core: Domain Records

Positions, trading decisions, balance ledger entries and execution log
entries. Every record validates itself on construction and only changes
state through explicit transition methods.

Lifecycles:
- Position: open → closing → closed (closed positions are frozen)
- TradingDecision: pending → (approved | rejected | failed),
  approved → (executed | failed | rejected)
- AccountBalance: append-only, never mutated
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import logging

from core.exceptions import InvalidTransition

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Direction(Enum):
    LONG = "long"
    SHORT = "short"


class PositionStatus(Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class CloseReason(Enum):
    SL_TRIGGERED = "sl_triggered"
    TP_TRIGGERED = "tp_triggered"
    MANUAL = "manual"
    SIGNAL = "signal"
    LIQUIDATED = "liquidated"


class Operation(Enum):
    OPEN = "open"
    CLOSE = "close"
    HOLD = "hold"


class DecisionStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    FAILED = "failed"


class BalanceEventType(Enum):
    INITIAL = "initial"
    SYNC = "sync"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    ADJUSTMENT = "adjustment"


DIRECTIONS = {d.value for d in Direction}
CLOSE_REASONS = {r.value for r in CloseReason}


@dataclass
class Position:
    """
    Leveraged perpetual position.

    Created on fill, updated on every price tick and trailing-stop move,
    frozen once closed. Prices and PnL are quote-currency (USD) amounts.
    """
    symbol: str
    direction: str
    size: float
    entry_price: float
    leverage: int = 1
    current_price: Optional[float] = None
    margin_used: Optional[float] = None

    # Exit levels
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    original_stop_loss_price: Optional[float] = None
    trailing_stop_active: bool = False
    peak_price: Optional[float] = None
    peak_at: Optional[datetime] = None
    risk_amount: Optional[float] = None

    # PnL
    unrealized_pnl: float = 0.0
    realized_pnl: Optional[float] = None

    # Lifecycle
    status: str = PositionStatus.OPEN.value
    close_reason: Optional[str] = None
    opened_at: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    id: str = field(default_factory=_new_id)

    def __post_init__(self):
        if not self.symbol:
            raise ValueError("Position symbol is required")
        if self.direction not in DIRECTIONS:
            raise ValueError(f"Invalid position direction: {self.direction}")
        if self.size <= 0:
            raise ValueError("Position size must be positive")
        if self.entry_price <= 0:
            raise ValueError("Position entry price must be positive")
        if not 1 <= self.leverage <= 100:
            raise ValueError(f"Leverage must be between 1 and 100, got {self.leverage}")
        if self.status not in {s.value for s in PositionStatus}:
            raise ValueError(f"Invalid position status: {self.status}")
        if (self.status == PositionStatus.CLOSED.value) != (self.closed_at is not None):
            raise ValueError("closed_at must be set if and only if the position is closed")
        if self.margin_used is None:
            self.margin_used = self.size * self.entry_price / self.leverage
        if self.current_price is None:
            self.current_price = self.entry_price

    @property
    def is_long(self) -> bool:
        return self.direction == Direction.LONG.value

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN.value

    @property
    def is_closed(self) -> bool:
        return self.status == PositionStatus.CLOSED.value

    def _ensure_mutable(self) -> None:
        if self.is_closed:
            raise InvalidTransition("position", self.status, "update")

    def update_current_price(self, price: float, at: Optional[datetime] = None) -> None:
        """Apply a price tick: refresh unrealized PnL and the best price seen."""
        self._ensure_mutable()
        self.current_price = price
        if self.is_long:
            self.unrealized_pnl = self.size * (price - self.entry_price)
        else:
            self.unrealized_pnl = self.size * (self.entry_price - price)

        best = self.peak_price if self.peak_price is not None else self.entry_price
        improved = price > best if self.is_long else price < best
        if improved or self.peak_price is None:
            self.peak_price = price if improved else best
            self.peak_at = at or utcnow()

    def pnl_fraction(self) -> float:
        """Unleveraged price move in the position's favour (0.02 = 2%)."""
        if self.current_price is None or not self.entry_price:
            return 0.0
        if self.is_long:
            return (self.current_price - self.entry_price) / self.entry_price
        return (self.entry_price - self.current_price) / self.entry_price

    def pnl_percent(self) -> float:
        return self.pnl_fraction() * 100.0

    def notional_value(self) -> float:
        price = self.current_price if self.current_price is not None else self.entry_price
        return self.size * price

    def stop_loss_triggered(self, price: float) -> bool:
        if self.stop_loss_price is None:
            return False
        if self.is_long:
            return price <= self.stop_loss_price
        return price >= self.stop_loss_price

    def take_profit_triggered(self, price: float) -> bool:
        if self.take_profit_price is None:
            return False
        if self.is_long:
            return price >= self.take_profit_price
        return price <= self.take_profit_price

    def risk_reward_ratio(self) -> Optional[float]:
        if self.stop_loss_price is None or self.take_profit_price is None:
            return None
        risk = abs(self.entry_price - self.stop_loss_price)
        if risk == 0:
            return None
        return abs(self.take_profit_price - self.entry_price) / risk

    def stop_loss_distance_pct(self) -> Optional[float]:
        if self.stop_loss_price is None:
            return None
        return abs(self.entry_price - self.stop_loss_price) / self.entry_price

    def take_profit_distance_pct(self) -> Optional[float]:
        if self.take_profit_price is None:
            return None
        return abs(self.take_profit_price - self.entry_price) / self.entry_price

    def move_stop_loss(self, new_stop: float) -> None:
        self._ensure_mutable()
        self.stop_loss_price = new_stop

    def activate_trailing_stop(self) -> None:
        self._ensure_mutable()
        if self.trailing_stop_active:
            return
        self.original_stop_loss_price = self.stop_loss_price
        self.trailing_stop_active = True

    def mark_closing(self) -> None:
        if self.status != PositionStatus.OPEN.value:
            raise InvalidTransition("position", self.status, PositionStatus.CLOSING.value)
        self.status = PositionStatus.CLOSING.value

    def reopen(self) -> None:
        if self.status != PositionStatus.CLOSING.value:
            raise InvalidTransition("position", self.status, PositionStatus.OPEN.value)
        self.status = PositionStatus.OPEN.value

    def close(self, reason: str = CloseReason.MANUAL.value, pnl: Optional[float] = None,
              at: Optional[datetime] = None) -> None:
        """Close the position; realized PnL defaults to the unrealized PnL."""
        self._ensure_mutable()
        if reason not in CLOSE_REASONS:
            raise ValueError(f"Invalid close reason: {reason}")
        self.realized_pnl = self.unrealized_pnl if pnl is None else pnl
        self.unrealized_pnl = 0.0
        self.close_reason = reason
        self.status = PositionStatus.CLOSED.value
        self.closed_at = at or utcnow()
        logger.info(
            f"Closed {self.direction} {self.symbol} position {self.id}: "
            f"reason={reason}, pnl={self.realized_pnl:.2f}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "direction": self.direction,
            "size": self.size,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "leverage": self.leverage,
            "margin_used": self.margin_used,
            "stop_loss_price": self.stop_loss_price,
            "take_profit_price": self.take_profit_price,
            "original_stop_loss_price": self.original_stop_loss_price,
            "trailing_stop_active": self.trailing_stop_active,
            "peak_price": self.peak_price,
            "peak_at": _iso(self.peak_at),
            "unrealized_pnl": self.unrealized_pnl,
            "realized_pnl": self.realized_pnl,
            "pnl_percent": self.pnl_percent(),
            "status": self.status,
            "close_reason": self.close_reason,
            "opened_at": _iso(self.opened_at),
            "closed_at": _iso(self.closed_at),
        }


@dataclass
class TradingDecision:
    """
    One proposed action for one symbol in one cycle.

    Produced by the reasoning agent (or synthesized by the stop monitors),
    then approved, rejected, executed or failed by the orchestrator.
    """

    VALID_TRANSITIONS = {
        DecisionStatus.PENDING.value: {
            DecisionStatus.APPROVED.value,
            DecisionStatus.REJECTED.value,
            DecisionStatus.FAILED.value,
        },
        DecisionStatus.APPROVED.value: {
            DecisionStatus.EXECUTED.value,
            DecisionStatus.FAILED.value,
            DecisionStatus.REJECTED.value,
        },
        DecisionStatus.REJECTED.value: set(),
        DecisionStatus.EXECUTED.value: set(),
        DecisionStatus.FAILED.value: set(),
    }

    symbol: str
    operation: str
    direction: Optional[str] = None
    confidence: float = 0.0
    status: str = DecisionStatus.PENDING.value
    rejection_reason: Optional[str] = None

    # Trade parameters proposed by the agent
    leverage: Optional[int] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    target_size: Optional[float] = None
    reasoning: str = ""
    automated: bool = False

    # Context stamped by the orchestrator
    risk_profile_name: Optional[str] = None
    entry_price: Optional[float] = None
    risk_amount: Optional[float] = None
    volatility_level: Optional[str] = None
    atr_value: Optional[float] = None
    next_cycle_interval: Optional[int] = None

    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=_new_id)

    def __post_init__(self):
        if self.operation not in {op.value for op in Operation}:
            raise ValueError(f"Invalid decision operation: {self.operation}")
        if self.direction is not None and self.direction not in DIRECTIONS:
            raise ValueError(f"Invalid decision direction: {self.direction}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be within [0, 1], got {self.confidence}")
        if self.status not in self.VALID_TRANSITIONS:
            raise ValueError(f"Invalid decision status: {self.status}")

    @property
    def actionable(self) -> bool:
        return self.operation in (Operation.OPEN.value, Operation.CLOSE.value)

    @property
    def is_pending(self) -> bool:
        return self.status == DecisionStatus.PENDING.value

    @property
    def is_terminal(self) -> bool:
        return not self.VALID_TRANSITIONS[self.status]

    def _transition(self, target: str) -> None:
        if target not in self.VALID_TRANSITIONS[self.status]:
            raise InvalidTransition("decision", self.status, target)
        self.status = target

    def approve(self) -> None:
        self._transition(DecisionStatus.APPROVED.value)

    def reject(self, reason: str) -> None:
        self._transition(DecisionStatus.REJECTED.value)
        self.rejection_reason = reason

    def mark_executed(self) -> None:
        self._transition(DecisionStatus.EXECUTED.value)

    def mark_failed(self, reason: str) -> None:
        self._transition(DecisionStatus.FAILED.value)
        self.rejection_reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "operation": self.operation,
            "direction": self.direction,
            "confidence": self.confidence,
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "leverage": self.leverage,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "target_size": self.target_size,
            "reasoning": self.reasoning,
            "automated": self.automated,
            "risk_profile_name": self.risk_profile_name,
            "volatility_level": self.volatility_level,
            "atr_value": self.atr_value,
            "next_cycle_interval": self.next_cycle_interval,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class AccountBalance:
    """Immutable ledger entry describing one observed balance change."""
    balance: float
    event_type: str
    previous_balance: Optional[float] = None
    delta: Optional[float] = None
    notes: Optional[str] = None
    recorded_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=_new_id)

    def __post_init__(self):
        if self.event_type not in {e.value for e in BalanceEventType}:
            raise ValueError(f"Invalid balance event type: {self.event_type}")


class LogAction(Enum):
    PLACE_ORDER = "place_order"
    CANCEL_ORDER = "cancel_order"
    RISK_TRIGGER = "risk_trigger"
    TRAILING_STOP = "trailing_stop"
    SYNC_POSITION = "sync_position"
    SYNC_ACCOUNT = "sync_account"
    MODE_CHANGE = "mode_change"


@dataclass(frozen=True)
class LogRef:
    """Tagged reference to the record an execution log entry belongs to."""
    kind: str  # "order" | "position" | "decision"
    id: str

    KINDS = ("order", "position", "decision")

    def __post_init__(self):
        if self.kind not in self.KINDS:
            raise ValueError(f"Invalid log reference kind: {self.kind}")


@dataclass
class ExecutionLog:
    action: str
    status: str  # "success" | "failure"
    ref: Optional[LogRef] = None
    request_payload: Dict[str, Any] = field(default_factory=dict)
    response_payload: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    executed_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.action not in {a.value for a in LogAction}:
            raise ValueError(f"Invalid execution log action: {self.action}")
        if self.status not in ("success", "failure"):
            raise ValueError(f"Invalid execution log status: {self.status}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "status": self.status,
            "ref": {"kind": self.ref.kind, "id": self.ref.id} if self.ref else None,
            "request": self.request_payload,
            "response": self.response_payload,
            "error": self.error_message,
            "executed_at": _iso(self.executed_at),
        }
