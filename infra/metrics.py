"""Prometheus-backed metrics hooks for the trading cycle and risk monitors."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "trader_"
TRADING_MODE_VALUES = {"enabled": 0, "exit_only": 1, "blocked": 2}
PORT_ATTEMPTS = 4


@dataclass
class CycleStats:
    status: str
    decisions: int
    approved: int
    executed: int
    duration_seconds: float


def _build_collectors() -> Dict[str, Any]:
    return {
        "cycle_duration": Summary("trader_cycle_duration_seconds", "Duration of a full trading cycle"),
        "cycles": Counter("trader_cycle_total", "Trading cycles by status", labelnames=("status",)),
        "cycle_stage": Gauge("trader_cycle_stage_count",
                             "Last cycle's decision, approval and execution counts", labelnames=("stage",)),
        "decisions": Counter("trader_decisions_total", "Trading decisions by final status",
                             labelnames=("status",)),
        "next_interval": Gauge("trader_next_cycle_interval_minutes", "Minutes until the next trading cycle"),
        "open_positions": Gauge("trader_open_positions", "Currently open positions"),
        "trading_mode": Gauge("trader_trading_mode", "Trading mode (0=enabled, 1=exit_only, 2=blocked)"),
        "breaker_trips": Counter("trader_circuit_breaker_trips_total", "Circuit breaker trips",
                                 labelnames=("reason",)),
        "stop_triggers": Counter("trader_stop_triggers_total", "Automated stop-loss / take-profit closes",
                                 labelnames=("trigger",)),
        "skipped_runs": Counter("trader_skipped_runs_total",
                                "Scheduled runs skipped because the previous run was still executing",
                                labelnames=("job",)),
    }


class MetricsRecorder:
    """
    Records trading loop stats and exports them to Prometheus when enabled.

    A process-wide singleton so collectors are registered once. Trip, trigger
    and skip counts are also kept in memory for status output.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return
        self.__class__._initialized = True

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self._collectors: Dict[str, Any] = _build_collectors() if self._enabled else {}

        self._last_cycle: Optional[CycleStats] = None
        self._last_interval: Optional[int] = None
        self._counts: Dict[str, Dict[str, int]] = {"trips": {}, "triggers": {}, "skipped": {}}

    @classmethod
    def _reset_for_testing(cls) -> None:
        """Drop the singleton and unregister its collectors. Test fixtures only."""
        if cls._instance is not None:
            for collector, names in list(REGISTRY._collector_to_names.items()):
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    try:
                        REGISTRY.unregister(collector)
                    except KeyError:
                        logger.debug("Collector already unregistered")
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        """Start the HTTP exporter, trying the next ports when the configured one is taken."""
        if not self._enabled or self._started:
            return

        error = None
        for port in range(self._port, self._port + PORT_ATTEMPTS):
            try:
                start_http_server(port)
            except OSError as e:
                error = e
                logger.debug(f"Metrics port {port} unavailable: {e}")
                continue
            if port != self._port:
                logger.warning(f"Metrics port {self._port} in use, bound to {port} instead")
            self._port = port
            self._started = True
            logger.info(f"Prometheus metrics exporter listening on 0.0.0.0:{port}")
            return

        self._enabled = False
        logger.error(f"Metrics exporter disabled; no free port in {self._port}-"
                     f"{self._port + PORT_ATTEMPTS - 1}: {error}")

    def is_enabled(self) -> bool:
        return self._enabled

    def _metric(self, name: str):
        return self._collectors.get(name) if self._enabled else None

    def observe_cycle(self, stats: CycleStats) -> None:
        self._last_cycle = stats
        if not self._enabled:
            return
        self._metric("cycle_duration").observe(stats.duration_seconds)
        self._metric("cycles").labels(status=stats.status).inc()
        stage = self._metric("cycle_stage")
        stage.labels(stage="decisions").set(stats.decisions)
        stage.labels(stage="approved").set(stats.approved)
        stage.labels(stage="executed").set(stats.executed)

    def record_decision(self, status: str) -> None:
        metric = self._metric("decisions")
        if metric:
            metric.labels(status=status).inc()

    def record_next_interval(self, minutes: int) -> None:
        self._last_interval = minutes
        metric = self._metric("next_interval")
        if metric:
            metric.set(minutes)

    def record_open_positions(self, count: int) -> None:
        metric = self._metric("open_positions")
        if metric:
            metric.set(max(count, 0))

    def record_trading_mode(self, mode: str) -> None:
        metric = self._metric("trading_mode")
        if metric:
            metric.set(TRADING_MODE_VALUES.get(mode, TRADING_MODE_VALUES["blocked"]))

    def record_circuit_breaker_trip(self, reason: str) -> None:
        self._bump("trips", reason, "breaker_trips", reason=reason)

    def record_stop_trigger(self, trigger: str) -> None:
        self._bump("triggers", trigger, "stop_triggers", trigger=trigger)

    def record_skipped_run(self, job: str) -> None:
        self._bump("skipped", job, "skipped_runs", job=job)

    def _bump(self, bucket: str, key: str, metric_name: str, **labels) -> None:
        counts = self._counts[bucket]
        counts[key] = counts.get(key, 0) + 1
        metric = self._metric(metric_name)
        if metric:
            metric.labels(**labels).inc()

    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle

    def last_interval(self) -> Optional[int]:
        return self._last_interval

    def circuit_breaker_trips(self) -> Dict[str, int]:
        return dict(self._counts["trips"])

    def stop_triggers(self) -> Dict[str, int]:
        return dict(self._counts["triggers"])

    def skipped_runs(self) -> Dict[str, int]:
        return dict(self._counts["skipped"])
