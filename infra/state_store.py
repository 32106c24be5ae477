"""
perptrader Infrastructure: State Store

Persistent state management with atomic writes, plus the counter store
interface used by the circuit breaker (get / increment / reset with expiry).
The counter backend is swappable: in-memory for tests and single-process
paper runs, JSON-file backed for restarts.
"""

import copy
import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple
from pathlib import Path
import logging

logger = logging.getLogger(__name__)


DEFAULT_STATE = {
    "trading_mode": None,   # {mode, changed_by, reason, changed_at}
    "risk_profile": None,   # {name, changed_by, changed_at}
    "counters": {},         # key -> {value, expires_at}
    "last_cycle_at": None,
    "next_cycle_interval": None,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateStore:
    """
    JSON-file backed key/value state.

    Writes go to a temp file in the same directory and are renamed into
    place, so a crash never leaves a half-written state file. Every
    read-modify-write runs under one lock via ``mutate``.
    """

    def __init__(self, state_file: Optional[str] = None):
        """
        Args:
            state_file: Path to state JSON file (default: $STATE_FILE or data/.state.json)
        """
        self.state_file = Path(state_file or os.getenv("STATE_FILE", "data/.state.json"))
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        logger.info(f"Initialized StateStore at {self.state_file}")

    def load(self) -> Dict[str, Any]:
        """Current state with defaults filled in; unreadable files read as defaults."""
        state = copy.deepcopy(DEFAULT_STATE)
        if not self.state_file.exists():
            return state

        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load state from {self.state_file}: {e}")
            return state

        if not isinstance(data, dict):
            logger.warning(f"Ignoring state file {self.state_file}: top level is not an object")
            return state
        state.update(data)
        return state

    def save(self, state: Dict[str, Any]) -> None:
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.state_file.parent, prefix=".state_", suffix=".json.tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, default=str)
            os.replace(tmp_path, self.state_file)
        except OSError as e:
            logger.error(f"Failed to save state to {self.state_file}: {e}")

    def mutate(self, fn: Callable[[Dict[str, Any]], Any]) -> Any:
        """Run ``fn`` against the loaded state and persist it, as one critical section."""
        with self._lock:
            state = self.load()
            result = fn(state)
            self.save(state)
            return result

    def get(self, key: str, default: Any = None) -> Any:
        value = self.load().get(key)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        self.mutate(lambda state: state.__setitem__(key, value))


class CounterStore:
    """
    Numeric counters with optional expiry.

    ``increment`` is atomic: concurrent callers never lose updates.
    Expired counters read as zero.
    """

    def get(self, key: str) -> float:
        raise NotImplementedError

    def increment(self, key: str, amount: float = 1, expires_at: Optional[datetime] = None) -> float:
        raise NotImplementedError

    def reset(self, key: str) -> None:
        raise NotImplementedError


class InMemoryCounterStore(CounterStore):
    """Process-local counter store."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[float, Optional[datetime]]] = {}

    def _live_value(self, key: str) -> float:
        value, expires_at = self._values.get(key, (0, None))
        if expires_at is not None and self._clock() >= expires_at:
            self._values.pop(key, None)
            return 0
        return value

    def _prune(self) -> None:
        now = self._clock()
        for key, (_, expires_at) in list(self._values.items()):
            if expires_at is not None and now >= expires_at:
                del self._values[key]

    def get(self, key: str) -> float:
        with self._lock:
            return self._live_value(key)

    def increment(self, key: str, amount: float = 1, expires_at: Optional[datetime] = None) -> float:
        with self._lock:
            self._prune()
            current = self._live_value(key)
            _, previous_expiry = self._values.get(key, (0, None))
            new_value = current + amount
            self._values[key] = (new_value, expires_at or previous_expiry)
            return new_value

    def reset(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)


class StateStoreCounterStore(CounterStore):
    """Counter store persisted under ``counters`` in a StateStore file."""

    def __init__(self, store: StateStore, clock: Optional[Callable[[], datetime]] = None):
        self._store = store
        self._clock = clock or _utcnow

    def _read(self, counters: Dict[str, Any], key: str) -> float:
        entry = counters.get(key)
        if not isinstance(entry, dict):
            return 0
        expires_at = entry.get("expires_at")
        if expires_at and self._clock() >= datetime.fromisoformat(expires_at):
            counters.pop(key, None)
            return 0
        return entry.get("value", 0)

    def _prune(self, counters: Dict[str, Any]) -> None:
        for key in list(counters):
            self._read(counters, key)

    def get(self, key: str) -> float:
        counters = self._store.load().get("counters") or {}
        return self._read(counters, key)

    def increment(self, key: str, amount: float = 1, expires_at: Optional[datetime] = None) -> float:
        def _apply(state: Dict[str, Any]) -> float:
            counters = state.setdefault("counters", {})
            self._prune(counters)
            new_value = self._read(counters, key) + amount
            previous = counters.get(key) or {}
            expiry = expires_at.isoformat() if expires_at else previous.get("expires_at")
            counters[key] = {"value": new_value, "expires_at": expiry}
            return new_value
        return self._store.mutate(_apply)

    def reset(self, key: str) -> None:
        self._store.mutate(lambda state: (state.setdefault("counters", {})).pop(key, None))
