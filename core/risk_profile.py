"""
Risk profile bundles.

Maps profile names (cautious / moderate / fearless) to the concrete
parameters read by the validator, sizer and stop monitors. The active
profile is process-wide; the orchestrator snapshots it once per cycle so a
switch takes effect on the next cycle.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging
import threading

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrailingStopParams:
    enabled: bool = True
    activation_profit_pct: float = 0.015   # unrealized move before trailing starts
    trail_distance_pct: float = 0.01       # distance kept behind the peak


@dataclass(frozen=True)
class ProfileParams:
    """Parameter bundle for one risk profile. All percentages are fractions."""
    name: str
    rsi_oversold: float
    rsi_overbought: float
    rsi_pullback_threshold: float
    rsi_bounce_threshold: float
    min_confidence: float
    min_risk_reward_ratio: float
    max_position_size: float
    max_risk_per_trade: float
    default_leverage: int
    max_leverage: int
    max_open_positions: int
    trailing_stop: TrailingStopParams = field(default_factory=TrailingStopParams)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "rsi_oversold": self.rsi_oversold,
            "rsi_overbought": self.rsi_overbought,
            "min_confidence": self.min_confidence,
            "min_risk_reward_ratio": self.min_risk_reward_ratio,
            "max_position_size": self.max_position_size,
            "max_risk_per_trade": self.max_risk_per_trade,
            "default_leverage": self.default_leverage,
            "max_leverage": self.max_leverage,
            "max_open_positions": self.max_open_positions,
            "trailing_stop_enabled": self.trailing_stop.enabled,
        }


DEFAULT_PROFILE = "moderate"

PROFILES: Dict[str, ProfileParams] = {
    "cautious": ProfileParams(
        name="cautious",
        rsi_oversold=35, rsi_overbought=65,
        rsi_pullback_threshold=60, rsi_bounce_threshold=40,
        min_confidence=0.7,
        min_risk_reward_ratio=2.0,
        max_position_size=0.03,
        max_risk_per_trade=0.005,
        default_leverage=2, max_leverage=3,
        max_open_positions=3,
        trailing_stop=TrailingStopParams(True, 0.01, 0.008),
    ),
    "moderate": ProfileParams(
        name="moderate",
        rsi_oversold=30, rsi_overbought=70,
        rsi_pullback_threshold=65, rsi_bounce_threshold=35,
        min_confidence=0.6,
        min_risk_reward_ratio=1.5,
        max_position_size=0.05,
        max_risk_per_trade=0.01,
        default_leverage=3, max_leverage=5,
        max_open_positions=5,
        trailing_stop=TrailingStopParams(True, 0.015, 0.01),
    ),
    "fearless": ProfileParams(
        name="fearless",
        rsi_oversold=25, rsi_overbought=75,
        rsi_pullback_threshold=70, rsi_bounce_threshold=30,
        min_confidence=0.5,
        min_risk_reward_ratio=1.2,
        max_position_size=0.08,
        max_risk_per_trade=0.02,
        default_leverage=5, max_leverage=10,
        max_open_positions=7,
        trailing_stop=TrailingStopParams(True, 0.025, 0.015),
    ),
}


def profiles_from_config(raw: Optional[Dict[str, Any]]) -> Dict[str, ProfileParams]:
    """
    Build profile bundles from profiles.yaml, falling back to built-in values
    for any profile or field the file does not mention.
    """
    raw = raw or {}
    overrides = raw.get("profiles") or {}
    profiles = dict(PROFILES)
    for name, values in overrides.items():
        base = profiles.get(name)
        if base is None:
            logger.warning(f"Ignoring unknown risk profile in config: {name}")
            continue
        values = dict(values or {})
        trailing_raw = values.pop("trailing_stop", None)
        trailing = base.trailing_stop
        if trailing_raw:
            trailing = replace(trailing, **trailing_raw)
        profiles[name] = replace(base, trailing_stop=trailing, **values)
    return profiles


class ProfileService:
    """
    Holds the active risk profile.

    ``current()`` returns an immutable snapshot; ``switch_profile`` replaces
    the active name atomically.
    """

    def __init__(self, profiles: Optional[Dict[str, ProfileParams]] = None,
                 default: str = DEFAULT_PROFILE, state_store=None):
        self._profiles = profiles or dict(PROFILES)
        if default not in self._profiles:
            raise ValueError(f"Unknown default risk profile: {default}")
        self._lock = threading.Lock()
        self._state_store = state_store
        self._name = default
        self._changed_by = "system"
        persisted = state_store.get("risk_profile") if state_store is not None else None
        if persisted and persisted.get("name") in self._profiles:
            self._name = persisted["name"]
            self._changed_by = persisted.get("changed_by") or "system"
        logger.info(f"Risk profile active: {self._name}")

    @property
    def names(self):
        return list(self._profiles)

    def current_name(self) -> str:
        with self._lock:
            return self._name

    def current(self) -> ProfileParams:
        with self._lock:
            return self._profiles[self._name]

    def switch_profile(self, name: str, changed_by: str = "api") -> ProfileParams:
        if name not in self._profiles:
            raise ValueError(f"Invalid risk profile: {name}. Valid profiles: {', '.join(self._profiles)}")
        with self._lock:
            previous = self._name
            self._name = name
            self._changed_by = changed_by
            if self._state_store is not None:
                self._state_store.set("risk_profile", {
                    "name": name,
                    "changed_by": changed_by,
                    "changed_at": datetime.now(timezone.utc).isoformat(),
                })
        logger.info(f"Risk profile switched: {previous} → {name} (by={changed_by}); applies next cycle")
        return self._profiles[name]
