"""
perptrader Core: Balance Reconciliation

Tracks the exchange account balance over time and separates trading
performance from external capital movements.

Each sync compares the current balance with the last recorded one and
explains the difference with the realized PnL of positions closed since
then. Whatever the trades cannot explain is classified as a deposit or a
withdrawal.
"""

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from core.models import AccountBalance, BalanceEventType

logger = logging.getLogger(__name__)

DEFAULT_MIN_CHANGE_THRESHOLD = 0.01
DEFAULT_DEPOSIT_WITHDRAWAL_THRESHOLD = 1.0


class BalanceLedger:
    """Append-only list of AccountBalance records ordered by ``recorded_at``."""

    def __init__(self):
        self._records: List[AccountBalance] = []
        self._lock = threading.Lock()

    def append(self, record: AccountBalance) -> AccountBalance:
        with self._lock:
            self._records.append(record)
            self._records.sort(key=lambda r: r.recorded_at)
        return record

    def records(self) -> List[AccountBalance]:
        with self._lock:
            return list(self._records)

    def latest(self) -> Optional[AccountBalance]:
        with self._lock:
            return self._records[-1] if self._records else None

    def initial(self) -> Optional[AccountBalance]:
        with self._lock:
            for record in self._records:
                if record.event_type == BalanceEventType.INITIAL.value:
                    return record
            return self._records[0] if self._records else None

    def total_deposits(self) -> float:
        return sum(r.delta or 0.0 for r in self.records() if r.event_type == BalanceEventType.DEPOSIT.value)

    def total_withdrawals(self) -> float:
        """Sum of withdrawals as a positive magnitude."""
        return sum(abs(r.delta or 0.0) for r in self.records()
                   if r.event_type == BalanceEventType.WITHDRAWAL.value)

    def current_balance(self) -> Optional[float]:
        record = self.latest()
        return record.balance if record else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class BalanceReconciler:
    """
    Records balance changes and classifies them.

    Args:
        account_manager: exposes ``fetch_account_state()``
        positions: exposes ``closed_since(since)``
        ledger: BalanceLedger receiving new records
        min_change_threshold: changes smaller than this are noise and not recorded
        deposit_withdrawal_threshold: unexplained amounts at or above this
            are external capital movements
    """

    def __init__(self, account_manager, positions, ledger: Optional[BalanceLedger] = None,
                 min_change_threshold: float = DEFAULT_MIN_CHANGE_THRESHOLD,
                 deposit_withdrawal_threshold: float = DEFAULT_DEPOSIT_WITHDRAWAL_THRESHOLD):
        self.account_manager = account_manager
        self.positions = positions
        self.ledger = ledger if ledger is not None else BalanceLedger()
        self.min_change_threshold = min_change_threshold
        self.deposit_withdrawal_threshold = deposit_withdrawal_threshold

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]], **kwargs) -> "BalanceReconciler":
        config = config or {}
        return cls(
            min_change_threshold=float(config.get("min_change_threshold", DEFAULT_MIN_CHANGE_THRESHOLD)),
            deposit_withdrawal_threshold=float(
                config.get("deposit_withdrawal_threshold", DEFAULT_DEPOSIT_WITHDRAWAL_THRESHOLD)
            ),
            **kwargs,
        )

    def sync(self) -> Dict[str, Any]:
        """
        Fetch the balance and record it if it changed.

        Returns:
            ``{"created": True, "balance", "event_type", "delta"}`` when a record
            was written, ``{"skipped": True, "reason": "no_change"}`` otherwise.

        Raises:
            ApiError / CriticalDataUnavailable from the account manager
        """
        current = float(self.account_manager.fetch_account_state()["account_value"])
        last = self.ledger.latest()

        if last is None:
            record = self.ledger.append(AccountBalance(
                balance=current,
                event_type=BalanceEventType.INITIAL.value,
                notes="Initial balance recorded",
            ))
            logger.info(f"Recorded initial balance: ${current:.2f}")
            return {"created": True, "balance": current, "event_type": record.event_type, "delta": None}

        delta = current - last.balance
        if abs(delta) < self.min_change_threshold:
            logger.debug(f"Balance unchanged (${current:.2f})")
            return {"skipped": True, "reason": "no_change"}

        expected_pnl = self.expected_pnl_since(last.recorded_at)
        event_type = self.classify(delta, expected_pnl)
        record = self.ledger.append(AccountBalance(
            balance=current,
            previous_balance=last.balance,
            delta=delta,
            event_type=event_type,
            notes=self._build_notes(event_type, delta, expected_pnl),
        ))

        if event_type == BalanceEventType.SYNC.value:
            logger.info(f"Balance synced: ${last.balance:.2f} -> ${current:.2f} (delta ${delta:+.2f})")
        else:
            logger.warning(
                f"Balance {event_type} detected: ${last.balance:.2f} -> ${current:.2f} "
                f"(delta ${delta:+.2f}, expected PnL ${expected_pnl:+.2f})"
            )
        return {"created": True, "balance": current, "event_type": record.event_type, "delta": delta}

    def expected_pnl_since(self, since: datetime) -> float:
        return sum(p.realized_pnl or 0.0 for p in self.positions.closed_since(since))

    def classify(self, delta: float, expected_pnl: float) -> str:
        unexplained = delta - expected_pnl
        if abs(unexplained) < self.deposit_withdrawal_threshold:
            return BalanceEventType.SYNC.value
        if unexplained > 0:
            return BalanceEventType.DEPOSIT.value
        return BalanceEventType.WITHDRAWAL.value

    def calculated_pnl(self) -> Optional[float]:
        """Trading PnL since the initial record, net of deposits and withdrawals."""
        initial = self.ledger.initial()
        current = self.ledger.current_balance()
        if initial is None or current is None:
            return None
        return current - initial.balance - self.ledger.total_deposits() + self.ledger.total_withdrawals()

    def balance_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        records = self.ledger.records()
        if limit is not None:
            records = records[-limit:]
        return [
            {
                "balance": r.balance,
                "previous_balance": r.previous_balance,
                "delta": r.delta,
                "event_type": r.event_type,
                "notes": r.notes,
                "recorded_at": r.recorded_at.isoformat(),
            }
            for r in records
        ]

    @staticmethod
    def _build_notes(event_type: str, delta: float, expected_pnl: float) -> Optional[str]:
        unexplained = delta - expected_pnl
        amounts = f"Balance change: ${delta:.2f}, Expected PnL: ${expected_pnl:.2f}, Unexplained: ${unexplained:.2f}"
        if event_type == BalanceEventType.DEPOSIT.value:
            return f"External deposit detected. {amounts}"
        if event_type == BalanceEventType.WITHDRAWAL.value:
            return f"External withdrawal detected. {amounts}"
        return None
