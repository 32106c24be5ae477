"""
perptrader Core: Position Book

In-memory repository of positions (open and closed). Answers the position
queries used by the validator, stop monitors and balance reconciler, and
syncs local state with the exchange's view of open positions.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging
import threading

from core.models import CloseReason, Position, PositionStatus

logger = logging.getLogger(__name__)

CloseListener = Callable[[Position], None]


class PositionBook:
    """
    Thread-safe position store.

    Responsibilities:
    - Open / close positions
    - Query open positions by symbol
    - Apply mid-price ticks
    - Reconcile with exchange account state
    """

    def __init__(self, default_leverage: int = 3):
        self.default_leverage = default_leverage
        self._lock = threading.RLock()
        self._positions: Dict[str, Position] = {}
        self._close_listeners: List[CloseListener] = []

    def add(self, position: Position) -> Position:
        with self._lock:
            self._positions[position.id] = position
        return position

    def get(self, position_id: str) -> Optional[Position]:
        with self._lock:
            return self._positions.get(position_id)

    def open_position(self, symbol: str, direction: str, size: float, entry_price: float,
                      leverage: Optional[int] = None, stop_loss_price: Optional[float] = None,
                      take_profit_price: Optional[float] = None,
                      risk_amount: Optional[float] = None) -> Position:
        position = Position(
            symbol=symbol,
            direction=direction,
            size=size,
            entry_price=entry_price,
            leverage=leverage or self.default_leverage,
            stop_loss_price=stop_loss_price,
            take_profit_price=take_profit_price,
            risk_amount=risk_amount,
        )
        self.add(position)
        logger.info(
            f"Opened {direction} {symbol} position {position.id}: size={size} entry={entry_price} "
            f"sl={stop_loss_price} tp={take_profit_price}"
        )
        return position

    def subscribe_closed(self, listener: CloseListener) -> None:
        """Call ``listener(position)`` once after every successful close."""
        self._close_listeners.append(listener)

    def close_position(self, position: Position, reason: str = CloseReason.MANUAL.value,
                       pnl: Optional[float] = None) -> Position:
        with self._lock:
            position.close(reason=reason, pnl=pnl)
        for listener in list(self._close_listeners):
            try:
                listener(position)
            except Exception as e:
                logger.error(f"Close listener failed for position {position.id}: {e}", exc_info=True)
        return position

    def claim_for_close(self, symbol: str) -> Optional[Position]:
        """
        Mark the open position for ``symbol`` as closing.

        Returns:
            The claimed position, or None if there is no open position (none
            at all, or another close already holds it)
        """
        with self._lock:
            for position in self._positions.values():
                if position.symbol == symbol and position.status == PositionStatus.OPEN.value:
                    position.mark_closing()
                    return position
        return None

    def release_close(self, position: Position) -> None:
        """Hand a claimed position back after its close order failed."""
        with self._lock:
            if position.status == PositionStatus.CLOSING.value:
                position.reopen()

    def open_positions(self) -> List[Position]:
        with self._lock:
            positions = [p for p in self._positions.values() if p.status != PositionStatus.CLOSED.value]
        return sorted(positions, key=lambda p: p.opened_at, reverse=True)

    def open_positions_count(self) -> int:
        return len(self.open_positions())

    def has_open_position(self, symbol: str, direction: Optional[str] = None) -> bool:
        return any(
            p.symbol == symbol and (direction is None or p.direction == direction)
            for p in self.open_positions()
        )

    def get_open_position(self, symbol: str) -> Optional[Position]:
        for position in self.open_positions():
            if position.symbol == symbol:
                return position
        return None

    def closed_since(self, since: Optional[datetime]) -> List[Position]:
        with self._lock:
            closed = [p for p in self._positions.values() if p.is_closed]
        if since is None:
            return closed
        return [p for p in closed if p.closed_at >= since]

    def update_prices(self, mids: Dict[str, float]) -> int:
        updated = 0
        for position in self.open_positions():
            price = mids.get(position.symbol)
            if price is None:
                continue
            position.update_current_price(price)
            updated += 1
        logger.debug(f"Updated prices for {updated} positions")
        return updated

    def sync_from_exchange(self, user_state: Dict[str, Any]) -> Dict[str, int]:
        """
        Reconcile open positions with the exchange clearinghouse state.

        Creates missing positions, refreshes existing ones and closes local
        positions the exchange no longer reports.
        """
        results = {"created": 0, "updated": 0, "closed": 0}
        synced_symbols = set()

        for asset_position in user_state.get("assetPositions") or []:
            data = asset_position.get("position") or {}
            symbol = data.get("coin")
            if not symbol:
                continue
            entry_px = data.get("entryPx")
            if entry_px is None:
                logger.warning(f"Skipping position - missing entryPx for {symbol}")
                continue
            size = float(data.get("szi") or 0)
            if size == 0:
                logger.warning(f"Skipping position - zero size for {symbol}")
                continue

            synced_symbols.add(symbol)
            direction = "long" if size > 0 else "short"
            leverage = int((data.get("leverage") or {}).get("value") or self.default_leverage)
            mark_px = data.get("markPx")

            with self._lock:
                existing = self.get_open_position(symbol)
                if existing is None:
                    position = Position(
                        symbol=symbol,
                        direction=direction,
                        size=abs(size),
                        entry_price=float(entry_px),
                        leverage=leverage,
                        margin_used=float(data["marginUsed"]) if data.get("marginUsed") else None,
                    )
                    self.add(position)
                    results["created"] += 1
                else:
                    position = existing
                    position.direction = direction
                    position.size = abs(size)
                    position.entry_price = float(entry_px)
                    position.leverage = leverage
                    if data.get("marginUsed"):
                        position.margin_used = float(data["marginUsed"])
                    results["updated"] += 1
                if mark_px is not None:
                    position.update_current_price(float(mark_px))

        for position in self.open_positions():
            if position.symbol not in synced_symbols:
                self.close_position(position, reason=CloseReason.MANUAL.value)
                results["closed"] += 1

        logger.info(f"Position sync complete: {results}")
        return results
