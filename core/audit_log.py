"""
perptrader Core: Audit Logger

Structured JSONL audit trail of execution log entries (orders placed,
automated risk triggers, trailing-stop moves, syncs, mode changes) and
per-cycle summaries.
"""

import json
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from core.models import ExecutionLog, LogRef

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Append-only audit trail.

    Output format: JSONL (one JSON object per line). The most recent entries
    are also kept in memory for status endpoints and tests.
    """

    def __init__(self, audit_file: Optional[str] = None, keep_recent: int = 500):
        """
        Args:
            audit_file: Path to audit log file; None keeps entries in memory only
            keep_recent: Number of entries retained in memory
        """
        self.audit_file = Path(audit_file) if audit_file else None
        if self.audit_file:
            self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=keep_recent)
        self._lock = threading.Lock()
        logger.info(f"Initialized AuditLogger at {self.audit_file or '<memory>'}")

    def record(self, entry: ExecutionLog) -> None:
        self._write({"type": "execution", **entry.to_dict()})

    def log_success(self, action: str, ref: Optional[LogRef] = None,
                    request: Optional[Dict[str, Any]] = None,
                    response: Optional[Dict[str, Any]] = None) -> ExecutionLog:
        entry = ExecutionLog(
            action=action,
            status="success",
            ref=ref,
            request_payload=request or {},
            response_payload=response or {},
        )
        self.record(entry)
        return entry

    def log_failure(self, action: str, error: str, ref: Optional[LogRef] = None,
                    request: Optional[Dict[str, Any]] = None) -> ExecutionLog:
        entry = ExecutionLog(
            action=action,
            status="failure",
            ref=ref,
            request_payload=request or {},
            error_message=error,
        )
        self.record(entry)
        return entry

    def log_cycle(self, summary: Dict[str, Any]) -> None:
        self._write({
            "type": "cycle",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **summary,
        })

    def recent(self, action: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            entries = list(self._recent)
        if action is None:
            return entries
        return [e for e in entries if e.get("action") == action]

    def _write(self, entry: Dict[str, Any]) -> None:
        with self._lock:
            self._recent.append(entry)
            if not self.audit_file:
                return
            try:
                with open(self.audit_file, "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, default=str) + "\n")
            except OSError as e:
                logger.error(f"Failed to write audit log: {e}")
