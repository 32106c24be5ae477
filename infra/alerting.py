"""Webhook notifications for trading-control events (circuit breaker trips, mode changes)."""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: Optional[str], default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        fallback = default or cls.WARNING
        if not value:
            return fallback
        return cls.__members__.get(value.strip().upper(), fallback)


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0


class AlertService:
    """
    Posts trading-control alerts to a chat webhook.

    An alert repeated with the same severity, title and message inside the
    dedupe window is dropped. Dry-run mode logs alerts instead of posting.
    """

    def __init__(self, config: AlertConfig,
                 clock: Optional[Callable[[], float]] = None) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerts enabled without a webhook URL; alerts will be dropped")
        self._clock = clock or time.monotonic
        self._last_sent: Dict[Tuple[AlertSeverity, str, str], float] = {}
        self._lock = threading.Lock()
        self.sent_count = 0

    @classmethod
    def from_config(cls, enabled: bool, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        """Build from the ``alerts`` section of app.yaml; the URL may come from the environment."""
        raw = raw_config or {}
        webhook_url = os.path.expandvars(raw.get("webhook_url") or "") or \
            os.getenv(raw.get("webhook_env", "ALERT_WEBHOOK_URL"), "")

        return cls(AlertConfig(
            enabled=enabled,
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw.get("min_severity")),
            dry_run=bool(raw.get("dry_run", False)),
            timeout=float(raw.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw.get("dedupe_seconds", 60.0)),
        ))

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(self, severity: AlertSeverity, title: str, message: str,
               context: Optional[Dict[str, Any]] = None) -> bool:
        """
        Returns:
            True if the alert was posted (or logged in dry-run mode); False when
            alerts are off, the severity is below the minimum or it was deduped
        """
        if not self._enabled or severity.value < self._config.min_severity.value:
            return False

        key = (severity, title, message)
        now = self._clock()
        with self._lock:
            last = self._last_sent.get(key)
            if last is not None and now - last < self._config.dedupe_seconds:
                logger.debug(f"Suppressing repeated alert: {title}")
                return False
            self._last_sent[key] = now
            self.sent_count += 1

        if self._config.dry_run:
            logger.info(f"[ALERT:{severity.name}] {title} - {message} | {context or {}}")
        else:
            self._post(severity, title, message, context)
        return True

    def _post(self, severity: AlertSeverity, title: str, message: str,
              context: Optional[Dict[str, Any]]) -> None:
        body = json.dumps(alert_payload(severity, title, message, context), default=str)
        request = urllib.request.Request(
            self._config.webhook_url,
            data=body.encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error(f"Alert webhook answered HTTP {response.status} for '{title}'")
        except (urllib.error.URLError, socket.timeout) as e:
            logger.error(f"Could not deliver alert '{title}': {e}")


def alert_payload(severity: AlertSeverity, title: str, message: str,
                  context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Chat-webhook body: one summary line plus the structured fields."""
    summary = f"[{severity.name}] {title} | {message}"
    if context:
        summary += f" | context={json.dumps(context, sort_keys=True, default=str)}"
    return {
        "text": summary,
        "severity": str(severity),
        "title": title,
        "context": context or {},
    }


def mode_change_alerter(alert_service: AlertService) -> Callable[[Any, Any], None]:
    """
    TradingModeGate observer broadcasting every mode change.

    Returning to ``enabled`` is INFO, any restriction is a WARNING. Circuit
    breaker trips send their own CRITICAL alert.
    """

    def _on_change(previous, current) -> None:
        reason = f" ({current.reason})" if current.reason else ""
        alert_service.notify(
            severity=AlertSeverity.INFO if current.mode == "enabled" else AlertSeverity.WARNING,
            title=f"Trading mode: {current.mode}",
            message=f"{previous.mode} -> {current.mode} by {current.changed_by}{reason}",
            context={"changed_at": current.changed_at.isoformat()},
        )

    return _on_change


__all__ = ["AlertConfig", "AlertService", "AlertSeverity", "alert_payload", "mode_change_alerter"]
