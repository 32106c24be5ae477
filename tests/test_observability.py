"""
Tests for alerting (dedupe, severity filter, mode-change alerts) and the
metrics recorder.
"""

from unittest.mock import MagicMock, patch

from prometheus_client import REGISTRY

from core.trading_mode import TradingModeGate
from infra.alerting import AlertConfig, AlertService, AlertSeverity, mode_change_alerter
from infra.metrics import CycleStats, MetricsRecorder


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def dry_run_service(clock=None, **overrides):
    config = AlertConfig(enabled=True, webhook_url=None, min_severity=AlertSeverity.INFO,
                         dry_run=True, dedupe_seconds=60.0)
    for key, value in overrides.items():
        setattr(config, key, value)
    return AlertService(config, clock=clock)


class TestAlertService:
    def test_disabled_without_webhook(self):
        service = AlertService(AlertConfig(enabled=True, webhook_url=None,
                                           min_severity=AlertSeverity.INFO, dry_run=False))
        assert service.is_enabled() is False
        assert service.notify(AlertSeverity.CRITICAL, "t", "m") is False

    def test_duplicate_alerts_suppressed_within_window(self):
        clock = Clock()
        service = dry_run_service(clock=clock)

        assert service.notify(AlertSeverity.CRITICAL, "Circuit Breaker Triggered", "3 losses") is True
        clock.now = 30
        assert service.notify(AlertSeverity.CRITICAL, "Circuit Breaker Triggered", "3 losses") is False
        clock.now = 61
        assert service.notify(AlertSeverity.CRITICAL, "Circuit Breaker Triggered", "3 losses") is True
        assert service.sent_count == 2

    def test_min_severity_filter(self):
        service = dry_run_service(min_severity=AlertSeverity.WARNING)
        assert service.notify(AlertSeverity.INFO, "Trading mode: enabled", "m") is False
        assert service.notify(AlertSeverity.WARNING, "Trading mode: exit_only", "m") is True

    def test_webhook_payload(self):
        service = AlertService(AlertConfig(enabled=True, webhook_url="https://hooks.example/x",
                                           min_severity=AlertSeverity.INFO, dry_run=False))
        response = MagicMock(status=200)
        response.__enter__.return_value = response

        with patch("infra.alerting.urllib.request.urlopen", return_value=response) as urlopen:
            assert service.notify(AlertSeverity.CRITICAL, "Breaker", "halted", {"daily_loss": 510.0}) is True

        request = urlopen.call_args.args[0]
        assert request.full_url == "https://hooks.example/x"
        assert b"[CRITICAL] Breaker | halted" in request.data
        assert b'daily_loss' in request.data

    def test_from_config_reads_env(self, monkeypatch):
        monkeypatch.setenv("PERPTRADER_TEST_HOOK", "https://hooks.example/env")
        service = AlertService.from_config(True, {"webhook_env": "PERPTRADER_TEST_HOOK", "min_severity": "critical"})
        assert service.is_enabled() is True
        assert service._config.min_severity == AlertSeverity.CRITICAL

    def test_severity_parsing(self):
        assert AlertSeverity.from_string("Critical") == AlertSeverity.CRITICAL
        assert AlertSeverity.from_string("bogus") == AlertSeverity.WARNING


def test_mode_change_alerter():
    service = MagicMock()
    gate = TradingModeGate()
    gate.subscribe(mode_change_alerter(service))

    gate.switch_mode("exit_only", changed_by="circuit_breaker", reason="3 consecutive losing trades")
    gate.switch_mode("enabled", changed_by="operator")

    first, second = service.notify.call_args_list
    assert first.kwargs["severity"] == AlertSeverity.WARNING
    assert first.kwargs["title"] == "Trading mode: exit_only"
    assert "3 consecutive losing trades" in first.kwargs["message"]
    assert second.kwargs["severity"] == AlertSeverity.INFO


class TestMetricsRecorder:
    def test_singleton(self):
        assert MetricsRecorder(enabled=False) is MetricsRecorder(enabled=True)

    def test_disabled_recorder_keeps_snapshots(self):
        metrics = MetricsRecorder(enabled=False)
        metrics.observe_cycle(CycleStats("no_trade", 3, 0, 0, 1.5))
        metrics.record_next_interval(6)
        metrics.record_circuit_breaker_trip("consecutive_losses")
        metrics.record_stop_trigger("stop_loss")
        metrics.record_skipped_run("trading_cycle")

        assert metrics.last_cycle().decisions == 3
        assert metrics.last_interval() == 6
        assert metrics.circuit_breaker_trips() == {"consecutive_losses": 1}
        assert metrics.stop_triggers() == {"stop_loss": 1}
        assert metrics.skipped_runs() == {"trading_cycle": 1}

    def test_enabled_recorder_exports(self):
        metrics = MetricsRecorder(enabled=True)
        metrics.observe_cycle(CycleStats("executed", 3, 1, 1, 2.0))
        metrics.record_trading_mode("exit_only")
        metrics.record_decision("rejected")

        assert REGISTRY.get_sample_value("trader_cycle_total", {"status": "executed"}) == 1.0
        assert REGISTRY.get_sample_value("trader_trading_mode") == 1.0
        assert REGISTRY.get_sample_value("trader_decisions_total", {"status": "rejected"}) == 1.0
        assert REGISTRY.get_sample_value("trader_cycle_stage_count", {"stage": "approved"}) == 1.0

    def test_reset_allows_reregistration(self):
        MetricsRecorder(enabled=True)
        MetricsRecorder._reset_for_testing()
        metrics = MetricsRecorder(enabled=True)
        assert metrics.is_enabled() is True
