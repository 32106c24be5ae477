"""
perptrader Core: Position Risk Monitors

Runs on a fixed short cadence, independent of the trading-cycle interval:
- StopLossMonitor: closes positions whose stop-loss or take-profit is hit
- TrailingStopMonitor: activates and ratchets trailing stops
- RiskMonitor: one monitoring tick (stop-loss scan, trailing scan, breaker check)

Closes synthesized here bypass the reasoning agent entirely.
"""

from typing import Any, Dict, List, Optional
import logging

from core.exceptions import ApiError
from core.models import CloseReason, DecisionStatus, LogRef, Operation, TradingDecision

logger = logging.getLogger(__name__)

STOP_LOSS = "stop_loss"
TAKE_PROFIT = "take_profit"

CLOSE_REASON_FOR_TRIGGER = {
    STOP_LOSS: CloseReason.SL_TRIGGERED.value,
    TAKE_PROFIT: CloseReason.TP_TRIGGERED.value,
}


def _format_price(price: Optional[float]) -> str:
    return f"${price:.2f}" if price is not None else "N/A"


class StopLossMonitor:
    """
    Scans open positions for stop-loss / take-profit triggers.

    Responsibilities:
    - Fetch all mid prices in one call
    - Evaluate stop-loss before take-profit
    - Execute a synthesized close through the order executor
    - Audit every trigger; realized PnL reaches the circuit breaker through
      the position book's close listeners
    """

    def __init__(self, positions, executor, exchange=None, audit=None, metrics=None):
        self.positions = positions
        self.executor = executor
        self.exchange = exchange
        self.audit = audit
        self.metrics = metrics

    def fetch_prices(self) -> Dict[str, float]:
        if self.exchange is None:
            return {}
        try:
            return self.exchange.all_mids()
        except ApiError as e:
            logger.error(f"Failed to fetch prices for stop-loss scan: {e}")
            return {}

    def check_all_positions(self, prices: Optional[Dict[str, float]] = None) -> Dict[str, Any]:
        results: Dict[str, Any] = {"triggered": [], "checked": 0, "skipped": 0}
        if prices is None:
            prices = self.fetch_prices()

        for position in self.positions.open_positions():
            if not position.is_open:
                logger.debug(f"{position.symbol} position {position.id} already closing")
                results["skipped"] += 1
                continue
            current_price = prices.get(position.symbol)
            if current_price is None:
                logger.warning(f"No price for {position.symbol}")
                results["skipped"] += 1
                continue

            if position.stop_loss_price is None and position.take_profit_price is None:
                results["skipped"] += 1
                continue

            results["checked"] += 1
            try:
                position.update_current_price(current_price)
                trigger = self.check_position(position, current_price)
                if trigger is None:
                    continue
                outcome = self.execute_trigger(position, trigger, current_price)
            except Exception as e:
                logger.error(f"Error processing {position.symbol} position {position.id}: {e}", exc_info=True)
                continue
            if outcome:
                results["triggered"].append(outcome)

        self._log_results(results)
        return results

    @staticmethod
    def check_position(position, current_price: float) -> Optional[str]:
        """Return the trigger that fires at ``current_price``; stop-loss wins ties."""
        if position.stop_loss_triggered(current_price):
            return STOP_LOSS
        if position.take_profit_triggered(current_price):
            return TAKE_PROFIT
        return None

    def create_close_decision(self, position, trigger: str, current_price: float) -> TradingDecision:
        return TradingDecision(
            symbol=position.symbol,
            operation=Operation.CLOSE.value,
            direction=position.direction,
            confidence=1.0,
            status=DecisionStatus.APPROVED.value,
            reasoning=f"Automated {trigger} trigger at {current_price}",
            automated=True,
        )

    def execute_trigger(self, position, trigger: str, current_price: float) -> Optional[Dict[str, Any]]:
        logger.warning(
            f"{trigger.upper()} triggered for {position.direction} {position.symbol} at "
            f"{_format_price(current_price)} (sl={_format_price(position.stop_loss_price)}, "
            f"tp={_format_price(position.take_profit_price)})"
        )
        decision = self.create_close_decision(position, trigger, current_price)
        result = self.executor.execute(decision, close_reason=CLOSE_REASON_FOR_TRIGGER[trigger])
        if not result.success:
            logger.error(f"Failed to execute {trigger} close for {position.symbol}: {result.error}")
            return None

        if self.audit:
            self.audit.log_success(
                "risk_trigger",
                ref=LogRef("position", position.id),
                request={
                    "trigger": trigger,
                    "stop_loss_price": position.stop_loss_price,
                    "take_profit_price": position.take_profit_price,
                },
                response={"trigger_price": current_price, "position_closed": True},
            )
        if self.metrics:
            self.metrics.record_stop_trigger(trigger)

        return {
            "position_id": position.id,
            "symbol": position.symbol,
            "trigger": trigger,
            "price": current_price,
            "order_id": result.order.id if result.order else None,
            "decision_id": decision.id,
            "realized_pnl": position.realized_pnl,
        }

    @staticmethod
    def _log_results(results: Dict[str, Any]) -> None:
        if results["triggered"]:
            logger.info(
                f"Stop-loss scan: {len(results['triggered'])} triggered, "
                f"{results['checked']} checked, {results['skipped']} skipped"
            )
        else:
            logger.debug(f"Stop-loss scan: {results['checked']} checked, {results['skipped']} skipped")


class TrailingStopMonitor:
    """
    Trailing stop management.

    Once a position's unrealized move reaches the activation threshold the
    stop follows the peak at a fixed distance. The stop only ever moves in
    the profit-protecting direction (up for longs, down for shorts).
    """

    def __init__(self, positions, profile_service, audit=None):
        self.positions = positions
        self.profile_service = profile_service
        self.audit = audit

    def check_all_positions(self, prices: Optional[Dict[str, float]] = None) -> Dict[str, int]:
        results = {"updated": 0, "activated": 0, "skipped": 0}
        params = self.profile_service.current().trailing_stop
        if not params.enabled:
            logger.debug(f"Trailing stop disabled for profile {self.profile_service.current_name()}")
            return results

        for position in self.positions.open_positions():
            try:
                if prices and prices.get(position.symbol) is not None:
                    position.update_current_price(prices[position.symbol])
                outcome = self.process_position(position, params)
            except Exception as e:
                logger.error(f"Trailing stop error for {position.symbol}: {e}", exc_info=True)
                outcome = "skipped"
            results[outcome] += 1

        if results["activated"] or results["updated"]:
            logger.info(
                f"Trailing stops: {results['activated']} activated, {results['updated']} updated, "
                f"{results['skipped']} skipped"
            )
        return results

    def process_position(self, position, params) -> str:
        if position.peak_price is None:
            logger.debug(f"{position.symbol}: no peak tracked yet")
            return "skipped"

        if not position.trailing_stop_active:
            profit = position.pnl_fraction()
            if profit < params.activation_profit_pct:
                return "skipped"
            position.activate_trailing_stop()
            logger.info(f"Trailing stop ACTIVATED for {position.symbol} at {profit * 100:.2f}% profit")
            self.update_trailing_stop(position, params.trail_distance_pct)
            return "activated"

        return "updated" if self.update_trailing_stop(position, params.trail_distance_pct) else "skipped"

    def update_trailing_stop(self, position, trail_distance: float) -> bool:
        """Move the stop toward the peak; a candidate that would loosen the stop is discarded."""
        if position.is_long:
            candidate = position.peak_price * (1 - trail_distance)
        else:
            candidate = position.peak_price * (1 + trail_distance)

        current = position.stop_loss_price
        if current is not None:
            tightens = candidate > current if position.is_long else candidate < current
            if not tightens:
                return False

        position.move_stop_loss(candidate)
        logger.info(
            f"{position.symbol}: SL moved from {_format_price(current)} to {_format_price(candidate)} "
            f"(trailing peak {_format_price(position.peak_price)})"
        )
        if self.audit:
            self.audit.log_success(
                "trailing_stop",
                ref=LogRef("position", position.id),
                request={"previous_stop_loss": current, "peak_price": position.peak_price},
                response={"stop_loss_price": candidate},
            )
        return True


class RiskMonitor:
    """One risk-monitoring tick: stop-loss scan, trailing scan, breaker check."""

    def __init__(self, stop_loss_monitor: StopLossMonitor, trailing_monitor: TrailingStopMonitor,
                 circuit_breaker, metrics=None):
        self.stop_loss_monitor = stop_loss_monitor
        self.trailing_monitor = trailing_monitor
        self.circuit_breaker = circuit_breaker
        self.metrics = metrics

    def run(self) -> Dict[str, Any]:
        prices = self.stop_loss_monitor.fetch_prices()
        stop_results = self.stop_loss_monitor.check_all_positions(prices)
        trailing_results = self.trailing_monitor.check_all_positions(prices)

        self.circuit_breaker.check_and_update()
        breaker_status = self.circuit_breaker.status()
        if breaker_status["triggered"]:
            logger.warning(f"Circuit breaker active: {breaker_status['trigger_reason']}")

        open_count = len(self.stop_loss_monitor.positions.open_positions())
        if self.metrics:
            self.metrics.record_open_positions(open_count)
            self.metrics.record_trading_mode(breaker_status["trading_mode"])

        triggered: List[Dict[str, Any]] = stop_results["triggered"]
        logger.info(
            f"Risk monitor: checked={stop_results['checked']}, triggers={len(triggered)}, "
            f"trailing_updates={trailing_results['updated'] + trailing_results['activated']}, "
            f"trading_allowed={breaker_status['trading_allowed']}"
        )
        return {
            "stop_loss_results": stop_results,
            "trailing_stop_results": trailing_results,
            "circuit_breaker_status": breaker_status,
        }
