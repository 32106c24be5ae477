"""
perptrader Runner: Main Loop

Wires the core modules together and drives them from the job scheduler.

Jobs:
1. trading_cycle: one CycleOrchestrator run; always schedules its successor
   (volatility-derived interval, default 12 minutes on failure)
2. forecast_refresh: one minute before the next cycle
3. risk_monitor: stop-loss / take-profit scan, trailing stops, circuit
   breaker check on a fixed cadence

Each job runs at most once at a time; overlapping runs are skipped.
"""

import importlib
import signal
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional
import logging

import yaml

from ai.reasoning import HoldAgent, ReasoningAgentAdapter
from core.account import AccountManager
from core.audit_log import AuditLogger
from core.balance import BalanceReconciler
from core.circuit_breaker import CircuitBreaker
from core.exceptions import ConfigurationError
from core.exchange_hyperliquid import HyperliquidClient
from core.execution import LiveOrderExecutor, PaperOrderExecutor
from core.position_manager import RiskMonitor, StopLossMonitor, TrailingStopMonitor
from core.position_sizer import PositionSizer
from core.positions import PositionBook
from core.readiness import ReadinessChecker
from core.risk import RiskValidator
from core.risk_profile import DEFAULT_PROFILE, ProfileService, profiles_from_config
from core.trading_cycle import CycleOrchestrator, CycleResult
from core.trading_mode import TradingModeGate
from core.volatility import DEFAULT_INTERVAL, VolatilityScheduler
from infra.alerting import AlertService, mode_change_alerter
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore, StateStoreCounterStore
from runner.scheduler import JobScheduler

logger = logging.getLogger(__name__)

TRADING_CYCLE_JOB = "trading_cycle"
FORECAST_JOB = "forecast_refresh"
RISK_MONITOR_JOB = "risk_monitor"


def load_factory(path: Optional[str]) -> Any:
    """Instantiate a collaborator from a ``"module:callable"`` path; None when unset."""
    if not path:
        return None
    module_name, _, attr = path.partition(":")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load collaborator {path}: {e}") from e
    return factory()


class TradingBot:
    """
    Main trading bot.

    Responsibilities:
    - Load and validate config
    - Build the core modules
    - Schedule trading cycles, forecast refreshes and risk monitoring
    - Shut down cleanly on SIGINT/SIGTERM
    """

    def __init__(self, config_dir: str = "config", exchange=None, agent=None, market_data=None,
                 macro_strategy=None, readiness_source=None, forecast_refresher=None,
                 configure_logging: bool = True):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")
        self.profiles_config = self._load_yaml("profiles.yaml")

        app_cfg = self.app_config.get("app", {})
        self.mode = app_cfg.get("mode", "PAPER").upper()
        self.assets = list(app_cfg.get("assets") or [])

        if configure_logging:
            log_cfg = self.app_config.get("logging", {}) or {}
            log_file = log_cfg.get("file", "logs/perptrader.log")
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            logging.basicConfig(
                level=getattr(logging, log_cfg.get("level", "INFO").upper()),
                format="%(asctime)s %(levelname)s %(name)s: %(message)s",
                handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
            )

        logger.info(f"Starting perptrader in mode={self.mode}, assets={self.assets}")

        loop_cfg = self.policy_config.get("loop", {}) or {}
        self.default_interval = int(loop_cfg.get("default_interval_minutes", DEFAULT_INTERVAL))
        self.risk_monitor_seconds = int(loop_cfg.get("risk_monitor_seconds", 60))

        # Infrastructure
        self.state_store = StateStore(self.app_config.get("state", {}).get("file"))
        self.alerts = AlertService.from_config(
            enabled=bool(self.app_config.get("alerts", {}).get("enabled", False)),
            raw_config=self.app_config.get("alerts"),
        )
        monitoring_cfg = self.app_config.get("monitoring", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", True)),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        self.audit = AuditLogger(self.app_config.get("audit", {}).get("file"))

        # Collaborators
        collaborators = self.app_config.get("collaborators", {}) or {}
        exchange_cfg = self.app_config.get("exchange", {}) or {}
        self.exchange = exchange or HyperliquidClient(
            base_url=exchange_cfg.get("base_url"),
            testnet=bool(exchange_cfg.get("testnet", False)),
            wallet_env=exchange_cfg.get("wallet_env", "HYPERLIQUID_WALLET_ADDRESS"),
            timeout=float(exchange_cfg.get("timeout_seconds", 10)),
            max_retries=int(exchange_cfg.get("max_retries", 3)),
        )
        agent = agent or load_factory(collaborators.get("agent"))
        if agent is None:
            logger.warning("No reasoning agent configured; every cycle will hold")
            agent = HoldAgent()
        self.market_data = market_data or load_factory(collaborators.get("market_data"))
        self.macro_strategy = macro_strategy or load_factory(collaborators.get("macro_strategy"))
        readiness_source = readiness_source or load_factory(collaborators.get("readiness_source"))
        self.forecast_refresher = forecast_refresher or load_factory(collaborators.get("forecast_refresher"))

        # Risk state
        self.profiles = ProfileService(
            profiles=profiles_from_config(self.profiles_config),
            default=self.profiles_config.get("default_profile", DEFAULT_PROFILE),
            state_store=self.state_store,
        )
        self.mode_gate = TradingModeGate(state_store=self.state_store)
        self.mode_gate.subscribe(mode_change_alerter(self.alerts))
        self.mode_gate.subscribe(self._audit_mode_change)

        # Positions & account
        params = self.profiles.current()
        self.positions = PositionBook(default_leverage=params.default_leverage)
        self.account = AccountManager(
            exchange=self.exchange if self.mode == "LIVE" else None,
            positions=self.positions,
            audit=self.audit,
            max_open_positions=params.max_open_positions,
            default_leverage=params.default_leverage,
            paper_balance=float(app_cfg.get("paper_balance", 10_000.0)),
        )
        self.circuit_breaker = CircuitBreaker.from_config(
            self.policy_config.get("circuit_breaker"),
            mode_gate=self.mode_gate,
            counters=StateStoreCounterStore(self.state_store),
            account_manager=self.account,
            alert_service=self.alerts,
            metrics=self.metrics,
        )
        self.positions.subscribe_closed(self.circuit_breaker.record_closed_position)

        # Execution
        if self.mode == "LIVE":
            self.executor = LiveOrderExecutor(self.positions, self.exchange.all_mids, self.exchange, self.audit)
        else:
            self.executor = PaperOrderExecutor(self.positions, self.exchange.all_mids, self.audit)

        # Cycle
        self.volatility = VolatilityScheduler(
            market_data=self.market_data,
            thresholds=(self.policy_config.get("volatility", {}) or {}).get("thresholds"),
            min_interval=int(loop_cfg.get("min_interval_minutes", 3)),
            max_interval=int(loop_cfg.get("max_interval_minutes", 25)),
            default_interval=self.default_interval,
        )
        self.balance = BalanceReconciler.from_config(
            self.policy_config.get("balance"),
            account_manager=self.account,
            positions=self.positions,
        )
        readiness = None
        if readiness_source is not None:
            readiness = ReadinessChecker(readiness_source, self.assets, self.policy_config.get("readiness"))
        self.orchestrator = CycleOrchestrator(
            mode_gate=self.mode_gate,
            profile_service=self.profiles,
            agent=ReasoningAgentAdapter(agent),
            validator=RiskValidator(self.account, self.positions, self.policy_config.get("risk")),
            sizer=PositionSizer(self.account),
            executor=self.executor,
            price_source=self.exchange.all_mids,
            assets=self.assets,
            market_data=self.market_data,
            readiness=readiness,
            macro_strategy=self.macro_strategy,
            volatility=self.volatility,
            position_sync=self._sync_positions if self.mode == "LIVE" else None,
            balance_reconciler=self.balance,
            audit=self.audit,
            metrics=self.metrics,
            cycle_deadline_seconds=float(loop_cfg.get("cycle_deadline_seconds", 240)),
        )

        # Monitoring
        self.risk_monitor = RiskMonitor(
            stop_loss_monitor=StopLossMonitor(
                self.positions, self.executor, exchange=self.exchange, audit=self.audit, metrics=self.metrics,
            ),
            trailing_monitor=TrailingStopMonitor(self.positions, self.profiles, audit=self.audit),
            circuit_breaker=self.circuit_breaker,
            metrics=self.metrics,
        )

        self.scheduler = JobScheduler(max_workers=int(loop_cfg.get("workers", 4)), metrics=self.metrics)

        self._running = True
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized TradingBot in {self.mode} mode (profile={params.name})")

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - stopping after in-flight jobs")
        logger.warning("=" * 80)
        self._running = False

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    # ----- jobs -----

    def run_cycle(self, reschedule: bool = True) -> Optional[CycleResult]:
        """Run one trading cycle under the job lock; None if a cycle is already executing."""
        holder = {}

        def _job():
            holder["result"] = self._trading_cycle_job(reschedule=reschedule)

        self.scheduler.run_guarded(TRADING_CYCLE_JOB, _job)
        return holder.get("result")

    def _trading_cycle_job(self, reschedule: bool = True) -> Optional[CycleResult]:
        result = None
        try:
            result = self.orchestrator.run()
            return result
        finally:
            interval = self._next_interval(result)
            self.state_store.set("last_cycle_at", datetime.now(timezone.utc).isoformat())
            self.state_store.set("next_cycle_interval", interval)
            if reschedule:
                self._schedule_next_cycle(interval)

    def _next_interval(self, result: Optional[CycleResult]) -> int:
        try:
            if result is not None and result.next_interval:
                return int(result.next_interval)
            return self.volatility.next_interval(self.volatility.default_result())
        except Exception as e:
            logger.error(f"Failed to compute next interval, using {DEFAULT_INTERVAL}m: {e}")
            return DEFAULT_INTERVAL

    def _schedule_next_cycle(self, interval_minutes: int) -> None:
        self.scheduler.cancel(TRADING_CYCLE_JOB)
        self.scheduler.schedule_in(TRADING_CYCLE_JOB, interval_minutes * 60, self._trading_cycle_job)
        delay = self.volatility.forecast_delay(interval_minutes)
        if self.forecast_refresher is not None and delay is not None:
            self.scheduler.cancel(FORECAST_JOB)
            self.scheduler.schedule_in(FORECAST_JOB, delay * 60, self._refresh_forecasts)
        logger.info(f"Next trading cycle in {interval_minutes}m")

    def _refresh_forecasts(self) -> None:
        logger.info("Refreshing forecasts ahead of next cycle")
        self.forecast_refresher.refresh()

    def run_risk_monitor(self) -> None:
        self.scheduler.run_guarded(RISK_MONITOR_JOB, self.risk_monitor.run)

    def _sync_positions(self):
        return self.positions.sync_from_exchange(self.exchange.user_state())

    def _audit_mode_change(self, previous, current) -> None:
        self.audit.log_success(
            "mode_change",
            ref=None,
            request={"from": previous.mode, "to": current.mode, "changed_by": current.changed_by},
            response={"reason": current.reason},
        )

    # ----- lifecycle -----

    def run_forever(self) -> None:
        self.metrics.start()
        self.scheduler.every(RISK_MONITOR_JOB, self.risk_monitor_seconds, self.risk_monitor.run,
                             initial_delay=self.risk_monitor_seconds)
        self.scheduler.schedule_in(TRADING_CYCLE_JOB, 0, self._trading_cycle_job)
        self.scheduler.start()
        logger.info(f"Scheduler running (risk monitor every {self.risk_monitor_seconds}s)")

        while self._running:
            time.sleep(1)

        self.scheduler.stop()
        logger.info("Trading loop stopped cleanly.")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="perptrader Trading Bot")
    parser.add_argument("--once", action="store_true", help="Run one cycle and one risk check, then exit")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    bot = TradingBot(config_dir=args.config_dir)

    if args.once:
        bot.run_cycle(reschedule=False)
        bot.run_risk_monitor()
        bot.scheduler.stop()
    else:
        bot.run_forever()


if __name__ == "__main__":
    main()
