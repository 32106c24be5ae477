"""
perptrader Core: Trading Cycle

One trading cycle, run on the volatility-adaptive cadence:
a. Trading mode gate: ``blocked`` aborts with zero decisions
b. Reconcile positions and balance (failures are logged, not fatal)
c. Ensure a fresh macro strategy exists
d. Readiness gate: missing context aborts with zero decisions
e. One decision per symbol from the reasoning agent
f. Per actionable decision: mode permission, entry price, risk validation,
   RSI entry filter, sizing, approval
g. Execute approved decisions; one failure never aborts the batch

The risk profile is snapshotted once at cycle start. The trading mode is
re-read for every decision so a breaker trip applies immediately.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional
import logging

from core.exceptions import ApiError
from core.models import DecisionStatus, Operation, TradingDecision
from core.risk import RsiEntryFilter
from core.trading_mode import Mode
from core.volatility import DEFAULT_INTERVAL, VolatilityResult
from infra.metrics import CycleStats

logger = logging.getLogger(__name__)

DEFAULT_CYCLE_DEADLINE_SECONDS = 240
DEADLINE_EXCEEDED_REASON = "Cycle deadline exceeded"


@dataclass
class CycleResult:
    """Result of a trading cycle execution"""
    decisions: List[TradingDecision] = field(default_factory=list)
    approved: List[TradingDecision] = field(default_factory=list)
    executed: List[TradingDecision] = field(default_factory=list)
    aborted_reason: Optional[str] = None
    profile_name: Optional[str] = None
    error: Optional[str] = None
    volatility: Optional[VolatilityResult] = None
    next_interval: Optional[int] = None
    duration_seconds: float = 0.0

    @property
    def status(self) -> str:
        if self.error:
            return "error"
        if self.aborted_reason:
            return "aborted"
        return "executed" if self.executed else "no_trade"

    def summary(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "profile": self.profile_name,
            "decisions": len(self.decisions),
            "approved": len(self.approved),
            "executed": len(self.executed),
            "aborted_reason": self.aborted_reason,
            "error": self.error,
            "volatility_level": self.volatility.level if self.volatility else None,
            "next_interval": self.next_interval,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class CycleOrchestrator:
    """
    Sequences one trading cycle over duck-typed collaborators.

    Args:
        mode_gate: TradingModeGate
        profile_service: ProfileService (snapshotted per cycle)
        agent: ReasoningAgentAdapter exposing ``decide_all(macro_strategy, symbols)``
        validator: RiskValidator
        sizer: PositionSizer
        executor: order executor exposing ``execute(decision)``
        price_source: callable returning ``{symbol: mid_price}``
        assets: trading universe
        market_data: exposes ``latest_rsi(symbol)`` (and ``volatility_inputs`` for the scheduler)
        readiness: exposes ``check() -> ReadinessResult``
        macro_strategy: exposes ``needs_refresh()``, ``refresh()``, ``current()``
        volatility: VolatilityScheduler used to stamp decisions and pick the next interval
        position_sync: callable reconciling local positions with the exchange
        balance_reconciler: BalanceReconciler
    """

    def __init__(self, mode_gate, profile_service, agent, validator, sizer, executor,
                 price_source: Callable[[], Dict[str, float]], assets: Iterable[str],
                 market_data=None, readiness=None, macro_strategy=None, volatility=None,
                 position_sync: Optional[Callable[[], Any]] = None, balance_reconciler=None,
                 rsi_filter: Optional[RsiEntryFilter] = None, audit=None, metrics=None,
                 cycle_deadline_seconds: float = DEFAULT_CYCLE_DEADLINE_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.mode_gate = mode_gate
        self.profile_service = profile_service
        self.agent = agent
        self.validator = validator
        self.sizer = sizer
        self.executor = executor
        self.price_source = price_source
        self.assets = list(assets)
        self.market_data = market_data
        self.readiness = readiness
        self.macro_strategy = macro_strategy
        self.volatility = volatility
        self.position_sync = position_sync
        self.balance_reconciler = balance_reconciler
        self.rsi_filter = rsi_filter or RsiEntryFilter()
        self.audit = audit
        self.metrics = metrics
        self.cycle_deadline_seconds = cycle_deadline_seconds
        self._clock = clock

    def run(self) -> CycleResult:
        started = self._clock()
        result = CycleResult()
        try:
            self._run(result, started)
        except Exception as e:
            logger.exception(f"Trading cycle failed: {e}")
            result.error = str(e)
        finally:
            result.duration_seconds = self._clock() - started
            self._finish(result)
        return result

    def _run(self, result: CycleResult, started: float) -> None:
        # a. trading mode
        mode = self.mode_gate.current_mode()
        if mode == Mode.BLOCKED.value:
            result.aborted_reason = "Trading blocked"
            logger.warning("Trading cycle aborted: trading mode is blocked")
            return

        params = self.profile_service.current()
        result.profile_name = params.name
        logger.info(f"Trading cycle start: mode={mode}, profile={params.name}, assets={self.assets}")

        # b. reconcile
        self._reconcile()

        # c. macro strategy
        strategy = self._ensure_macro_strategy()

        # d. readiness
        if self.readiness is not None:
            readiness = self.readiness.check()
            if not readiness.ready:
                result.aborted_reason = f"Data not ready: {readiness.reason}"
                logger.warning(f"Trading cycle aborted: {result.aborted_reason}")
                return

        # e. decisions
        result.decisions = self.agent.decide_all(strategy, self.assets)
        prices = self._fetch_prices()

        # f. gate / validate / size
        for decision in result.decisions:
            if self._deadline_exceeded(started):
                self._reject_remaining(result.decisions)
                break
            if not decision.actionable or not decision.is_pending:
                continue
            self.process_decision(decision, params, prices)
            if decision.status == DecisionStatus.APPROVED.value:
                result.approved.append(decision)

        # g. execute
        for decision in result.approved:
            if decision.status != DecisionStatus.APPROVED.value:
                continue
            if self._deadline_exceeded(started):
                decision.reject(DEADLINE_EXCEEDED_REASON)
                continue
            if self._execute(decision):
                result.executed.append(decision)

    def process_decision(self, decision: TradingDecision, params,
                         prices: Dict[str, float]) -> TradingDecision:
        """Run one pending decision through permission, risk, RSI and sizing checks."""
        decision.risk_profile_name = params.name

        if decision.operation == Operation.OPEN.value and not self.mode_gate.can_open():
            decision.reject(f"Trading mode {self.mode_gate.current_mode()} blocks new positions")
            return decision
        if decision.operation == Operation.CLOSE.value and not self.mode_gate.can_close():
            decision.reject(f"Trading mode {self.mode_gate.current_mode()} blocks closing positions")
            return decision

        if decision.leverage is None and decision.operation == Operation.OPEN.value:
            decision.leverage = params.default_leverage

        entry_price = prices.get(decision.symbol)
        decision.entry_price = entry_price

        validation = self.validator.validate(decision, entry_price, params)
        if not validation.approved:
            decision.reject(validation.reason)
            logger.info(f"{decision.symbol} {decision.operation} rejected: {validation.reason}")
            return decision

        rsi_check = self.rsi_filter.check(decision, self._latest_rsi(decision.symbol), params)
        if not rsi_check.approved:
            decision.reject(rsi_check.reason)
            logger.info(f"{decision.symbol} {decision.operation} rejected: {rsi_check.reason}")
            return decision

        if decision.operation == Operation.OPEN.value:
            sizing = self.sizer.size_for_decision(decision, entry_price, params)
            if sizing is None:
                decision.reject("Unable to calculate position size")
                return decision
            decision.target_size = sizing.size
            decision.risk_amount = sizing.risk_amount

        decision.approve()
        logger.info(
            f"{decision.symbol} {decision.operation} {decision.direction or ''} approved "
            f"(confidence={decision.confidence}, size={decision.target_size})"
        )
        return decision

    # ----- steps -----

    def _reconcile(self) -> None:
        if self.position_sync is not None:
            try:
                self.position_sync()
            except Exception as e:
                logger.error(f"Position sync failed, continuing with local state: {e}")
        if self.balance_reconciler is not None:
            try:
                self.balance_reconciler.sync()
            except Exception as e:
                logger.error(f"Balance sync failed: {e}")

    def _ensure_macro_strategy(self) -> Any:
        if self.macro_strategy is None:
            return None
        if self.macro_strategy.needs_refresh():
            logger.info("Macro strategy stale, refreshing")
            try:
                self.macro_strategy.refresh()
            except Exception as e:
                logger.error(f"Macro strategy refresh failed: {e}")
        return self.macro_strategy.current()

    def _fetch_prices(self) -> Dict[str, float]:
        try:
            return self.price_source() or {}
        except ApiError as e:
            logger.error(f"Failed to fetch prices: {e}")
            return {}

    def _latest_rsi(self, symbol: str) -> Optional[float]:
        if self.market_data is None:
            return None
        try:
            return self.market_data.latest_rsi(symbol)
        except Exception as e:
            logger.warning(f"RSI unavailable for {symbol}: {e}")
            return None

    def _execute(self, decision: TradingDecision) -> bool:
        try:
            outcome = self.executor.execute(decision)
        except Exception as e:
            logger.error(f"Execution raised for {decision.symbol}: {e}", exc_info=True)
            if decision.status == DecisionStatus.APPROVED.value:
                decision.mark_failed(str(e))
            return False
        if not outcome.success:
            logger.warning(f"Execution failed for {decision.symbol}: {outcome.error}")
            return False
        return True

    def _deadline_exceeded(self, started: float) -> bool:
        return self._clock() - started > self.cycle_deadline_seconds

    @staticmethod
    def _reject_remaining(decisions: List[TradingDecision]) -> None:
        remaining = [d for d in decisions if d.is_pending and d.actionable]
        for decision in remaining:
            decision.reject(DEADLINE_EXCEEDED_REASON)
        logger.warning(f"Cycle deadline exceeded; rejected {len(remaining)} pending decisions")

    # ----- post-cycle -----

    def _finish(self, result: CycleResult) -> None:
        try:
            self._stamp_volatility(result)
        except Exception as e:
            logger.error(f"Volatility classification failed: {e}")
            result.next_interval = DEFAULT_INTERVAL

        if self.metrics:
            self.metrics.observe_cycle(CycleStats(
                status=result.status,
                decisions=len(result.decisions),
                approved=len(result.approved),
                executed=len(result.executed),
                duration_seconds=result.duration_seconds,
            ))
            for decision in result.decisions:
                self.metrics.record_decision(decision.status)
            if result.next_interval is not None:
                self.metrics.record_next_interval(result.next_interval)

        if self.audit:
            self.audit.log_cycle({
                **result.summary(),
                "decision_ids": [d.id for d in result.decisions],
            })
        logger.info(f"Trading cycle complete: {result.summary()}")

    def _stamp_volatility(self, result: CycleResult) -> None:
        if self.volatility is None:
            result.next_interval = DEFAULT_INTERVAL
            return
        aggregate, per_symbol = self.volatility.classify_all(self.assets)
        interval = self.volatility.next_interval(aggregate)
        result.volatility = aggregate
        result.next_interval = interval
        for decision in result.decisions:
            vol = per_symbol.get(decision.symbol, aggregate)
            decision.volatility_level = vol.level
            decision.atr_value = vol.atr_value
            decision.next_cycle_interval = interval
