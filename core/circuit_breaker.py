"""
perptrader Core: Circuit Breaker

Halts new position opens after excessive losses by switching the shared
trading mode to ``exit_only``.

Trip conditions (evaluated once per monitoring tick):
- daily loss / account value >= max_daily_loss (default 5%)
- consecutive losing trades >= max_consecutive_losses (default 3)

The breaker only evaluates while the mode is ``enabled``: it never overrides
a manual ``exit_only``/``blocked`` and never re-trips while already tripped.
An operator overrides it by switching the mode back to ``enabled``.

Loss counters live in a CounterStore. The daily loss key is dated and
expires at the next local midnight.
"""

from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict, Optional
import logging

from core.trading_mode import Mode
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

KEY_PREFIX = "risk:circuit_breaker"
CONSECUTIVE_LOSSES_KEY = f"{KEY_PREFIX}:consecutive_losses"

DEFAULT_MAX_DAILY_LOSS = 0.05
DEFAULT_MAX_CONSECUTIVE_LOSSES = 3

CHANGED_BY = "circuit_breaker"


def _local_now() -> datetime:
    return datetime.now().astimezone()


class CircuitBreaker:
    """
    Loss-tracking state machine over the trading mode.

    Args:
        mode_gate: TradingModeGate (the only effect channel)
        counters: CounterStore holding daily loss and consecutive losses
        account_manager: collaborator exposing ``fetch_account_state()``
        clock: returns the current timezone-aware local time
    """

    def __init__(self, mode_gate, counters, account_manager=None,
                 max_daily_loss: float = DEFAULT_MAX_DAILY_LOSS,
                 max_consecutive_losses: int = DEFAULT_MAX_CONSECUTIVE_LOSSES,
                 alert_service=None, metrics=None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.mode_gate = mode_gate
        self.counters = counters
        self.account_manager = account_manager
        self.max_daily_loss = max_daily_loss
        self.max_consecutive_losses = max_consecutive_losses
        self.alert_service = alert_service
        self.metrics = metrics
        self._clock = clock or _local_now

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]], **kwargs) -> "CircuitBreaker":
        config = config or {}
        return cls(
            max_daily_loss=float(config.get("max_daily_loss", DEFAULT_MAX_DAILY_LOSS)),
            max_consecutive_losses=int(config.get("max_consecutive_losses", DEFAULT_MAX_CONSECUTIVE_LOSSES)),
            **kwargs,
        )

    # ----- recording -----

    def record_loss(self, amount: float) -> None:
        """Add ``|amount|`` to today's loss and count one more consecutive loss."""
        self.counters.increment(self._daily_loss_key(), abs(amount), expires_at=self._next_midnight())
        self.counters.increment(CONSECUTIVE_LOSSES_KEY, 1)
        logger.info(f"Recorded loss: ${abs(amount):.2f}")

    def record_win(self, amount: float = 0.0) -> None:
        """Reset the consecutive-loss streak; the daily loss is untouched."""
        self.counters.reset(CONSECUTIVE_LOSSES_KEY)
        logger.info(f"Recorded win: ${abs(amount):.2f}")

    def record_closed_position(self, position) -> None:
        pnl = position.realized_pnl or 0.0
        if pnl < 0:
            self.record_loss(pnl)
        else:
            self.record_win(pnl)

    # ----- evaluation -----

    def check_and_update(self) -> Optional[str]:
        """
        Evaluate both trip conditions.

        Returns:
            The trip reason if the breaker tripped on this call, else None
        """
        if self.mode_gate.current_mode() != Mode.ENABLED.value:
            return None

        if self._daily_loss_exceeded():
            return self.trigger("max_daily_loss")
        if self.consecutive_losses() >= self.max_consecutive_losses:
            return self.trigger("consecutive_losses")
        return None

    def trigger(self, reason: str) -> Optional[str]:
        """Switch to exit_only unless another actor changed the mode first."""
        human_reason = self._format_reason(reason)
        record = self.mode_gate.compare_and_switch(
            expected=Mode.ENABLED.value,
            mode=Mode.EXIT_ONLY.value,
            changed_by=CHANGED_BY,
            reason=human_reason,
        )
        if record is None:
            return None

        logger.warning(f"🚨 CIRCUIT BREAKER TRIGGERED: {reason} - trading mode set to exit_only")
        if self.metrics:
            self.metrics.record_circuit_breaker_trip(reason)
        if self.alert_service:
            self.alert_service.notify(
                severity=AlertSeverity.CRITICAL,
                title="🛑 Circuit Breaker Triggered",
                message=f"{human_reason}; new positions blocked (exit_only)",
                context={
                    "daily_loss": round(self.daily_loss(), 2),
                    "consecutive_losses": self.consecutive_losses(),
                    "trigger": reason,
                },
            )
        return human_reason

    def reset(self) -> None:
        """Clear both counters and force the mode back to enabled."""
        self.counters.reset(CONSECUTIVE_LOSSES_KEY)
        self.counters.reset(self._daily_loss_key())
        self.mode_gate.switch_mode(Mode.ENABLED.value, changed_by="system", reason=None)
        logger.info("Circuit breaker reset - trading mode set to enabled")

    # ----- state -----

    def trading_allowed(self) -> bool:
        return self.mode_gate.can_open()

    def daily_loss(self) -> float:
        return float(self.counters.get(self._daily_loss_key()))

    def consecutive_losses(self) -> int:
        return int(self.counters.get(CONSECUTIVE_LOSSES_KEY))

    def triggered(self) -> bool:
        mode = self.mode_gate.current()
        return mode.mode == Mode.EXIT_ONLY.value and mode.changed_by == CHANGED_BY

    def trigger_reason(self) -> Optional[str]:
        mode = self.mode_gate.current()
        return mode.reason if mode.mode != Mode.ENABLED.value else None

    def daily_loss_pct(self) -> float:
        account_value = self._fetch_account_value()
        if not account_value:
            return 0.0
        return self.daily_loss() / account_value

    def status(self) -> Dict[str, Any]:
        mode = self.mode_gate.current()
        return {
            "trading_allowed": mode.can_open,
            "daily_loss": self.daily_loss(),
            "daily_loss_pct": self.daily_loss_pct(),
            "consecutive_losses": self.consecutive_losses(),
            "triggered": mode.mode == Mode.EXIT_ONLY.value and mode.changed_by == CHANGED_BY,
            "trigger_reason": mode.reason if mode.mode != Mode.ENABLED.value else None,
            "trading_mode": mode.mode,
            "trading_mode_changed_by": mode.changed_by,
        }

    # ----- helpers -----

    def _daily_loss_exceeded(self) -> bool:
        return self.daily_loss_pct() >= self.max_daily_loss

    def _fetch_account_value(self) -> Optional[float]:
        if self.account_manager is None:
            return None
        try:
            return self.account_manager.fetch_account_state()["account_value"]
        except Exception as e:
            logger.error(f"Failed to fetch account value: {e}")
            return None

    def _daily_loss_key(self) -> str:
        return f"{KEY_PREFIX}:daily_loss:{self._clock().date().isoformat()}"

    def _next_midnight(self) -> datetime:
        now = self._clock()
        return datetime.combine(now.date() + timedelta(days=1), time(0), tzinfo=now.tzinfo)

    def _format_reason(self, reason: str) -> str:
        if reason == "max_daily_loss":
            return f"Daily loss exceeded {round(self.max_daily_loss * 100, 1)}%"
        if reason == "consecutive_losses":
            return f"{self.max_consecutive_losses} consecutive losing trades"
        return reason
