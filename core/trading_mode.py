"""
perptrader Core: Trading Mode Gate

Process-wide trading mode (enabled / exit_only / blocked) behind an explicit
handle. The gate is the single effect channel for both the circuit breaker
and manual operator switches; writes are serialized and immediately visible
to every reader.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging
import threading

logger = logging.getLogger(__name__)


class Mode(Enum):
    ENABLED = "enabled"
    EXIT_ONLY = "exit_only"
    BLOCKED = "blocked"


MODES = [m.value for m in Mode]


@dataclass(frozen=True)
class TradingMode:
    """Snapshot of the live trading mode record."""
    mode: str = Mode.ENABLED.value
    changed_by: str = "system"
    reason: Optional[str] = None
    changed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def can_open(self) -> bool:
        return self.mode == Mode.ENABLED.value

    @property
    def can_close(self) -> bool:
        return self.mode != Mode.BLOCKED.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "changed_by": self.changed_by,
            "reason": self.reason,
            "changed_at": self.changed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradingMode":
        changed_at = data.get("changed_at")
        return cls(
            mode=data["mode"],
            changed_by=data.get("changed_by") or "system",
            reason=data.get("reason"),
            changed_at=datetime.fromisoformat(changed_at) if changed_at else datetime.now(timezone.utc),
        )


ModeObserver = Callable[[TradingMode, TradingMode], None]


class TradingModeGate:
    """
    Holds the trading mode and answers permission queries.

    Responsibilities:
    - Validate mode names
    - Serialize writes (switch / compare-and-switch)
    - Persist the mode when a state store is attached
    - Broadcast changes to observers (alerts, dashboard, audit)
    """

    def __init__(self, state_store=None, initial: Optional[TradingMode] = None):
        self._lock = threading.Lock()
        self._state_store = state_store
        self._observers: List[ModeObserver] = []
        self._current = initial or self._load_persisted() or TradingMode()
        logger.info(f"TradingModeGate initialized: mode={self._current.mode}")

    def _load_persisted(self) -> Optional[TradingMode]:
        if self._state_store is None:
            return None
        data = self._state_store.get("trading_mode")
        if not data:
            return None
        try:
            record = TradingMode.from_dict(data)
        except (KeyError, ValueError) as e:
            logger.warning(f"Ignoring persisted trading mode: {e}")
            return None
        if record.mode not in MODES:
            logger.warning(f"Ignoring persisted trading mode with unknown value: {record.mode}")
            return None
        return record

    def subscribe(self, observer: ModeObserver) -> None:
        self._observers.append(observer)

    def current(self) -> TradingMode:
        with self._lock:
            return self._current

    def current_mode(self) -> str:
        return self.current().mode

    def can_open(self) -> bool:
        return self.current().can_open

    def can_close(self) -> bool:
        return self.current().can_close

    def switch_mode(self, mode: str, changed_by: str = "api", reason: Optional[str] = None) -> TradingMode:
        """
        Switch to ``mode`` unconditionally.

        Raises:
            ValueError: if ``mode`` is not a known trading mode
        """
        return self._switch(mode, changed_by, reason, expected=None)

    def compare_and_switch(self, expected: str, mode: str, changed_by: str,
                           reason: Optional[str] = None) -> Optional[TradingMode]:
        """Switch only if the current mode is still ``expected``; returns None otherwise."""
        return self._switch(mode, changed_by, reason, expected=expected)

    def _switch(self, mode: str, changed_by: str, reason: Optional[str],
                expected: Optional[str]) -> Optional[TradingMode]:
        if mode not in MODES:
            raise ValueError(f"Invalid trading mode: {mode}. Valid modes: {', '.join(MODES)}")

        with self._lock:
            previous = self._current
            if expected is not None and previous.mode != expected:
                logger.info(
                    f"Mode switch to {mode} by {changed_by} skipped: "
                    f"current mode is {previous.mode}, expected {expected}"
                )
                return None
            record = TradingMode(mode=mode, changed_by=changed_by, reason=reason)
            self._current = record
            if self._state_store is not None:
                self._state_store.set("trading_mode", record.to_dict())

        logger.warning(
            f"Trading mode changed: {previous.mode} → {mode} "
            f"(by={changed_by}, reason={reason or 'n/a'})"
        )
        self._broadcast(previous, record)
        return record

    def _broadcast(self, previous: TradingMode, current: TradingMode) -> None:
        for observer in list(self._observers):
            try:
                observer(previous, current)
            except Exception as e:
                logger.error(f"Trading mode observer failed: {e}", exc_info=True)
