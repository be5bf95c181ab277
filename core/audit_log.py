"""
Trade Lifecycle Core: Exit Check Audit

Append-only record of every exit-monitor evaluation. The latest alerting
record for a (trade, alert type) pair is what keeps exit alerts idempotent.

Output format: JSONL (one JSON object per line)
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from core.exceptions import CriticalDataUnavailable
from core.models import ExitCheckRecord

logger = logging.getLogger(__name__)

EXIT_TARGET = "target_reached"
EXIT_STOP_LOSS = "stop_loss"
EXIT_MAX_DAYS = "max_days"
EXIT_SQUARE_OFF = "square_off"


class ExitCheckAudit:
    """
    JSONL-backed exit check trail.

    Writes never raise: a lost audit row must not undo a trade that has
    already been closed. Reads raise CriticalDataUnavailable so callers can
    hold off alerting when the trail cannot be consulted.
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize exit check audit.

        Args:
            audit_file: Path to audit log file (default: logs/exit_checks.jsonl)
        """
        self.audit_file = Path(audit_file) if audit_file else Path("logs/exit_checks.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._alert_index: Dict[Tuple[int, str], ExitCheckRecord] = {}
        self._index_offset = 0
        logger.info(f"Initialized ExitCheckAudit at {self.audit_file}")

    def record(
        self,
        trade_id: int,
        current_price: float,
        pl_percent: float,
        days_held: int,
        alert_sent: bool,
        alert_type: Optional[str] = None,
        check_time: Optional[datetime] = None,
    ) -> Optional[ExitCheckRecord]:
        entry = ExitCheckRecord(
            trade_id=trade_id,
            current_price=current_price,
            pl_percent=pl_percent,
            days_held=days_held,
            target_reached=alert_type == EXIT_TARGET,
            stop_loss_hit=alert_type == EXIT_STOP_LOSS,
            max_days_reached=alert_type in (EXIT_MAX_DAYS, EXIT_SQUARE_OFF),
            alert_sent=alert_sent,
            alert_type=alert_type,
            check_time=check_time or datetime.now(timezone.utc),
        )
        try:
            with self._lock, open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict()) + "\n")
        except OSError as e:
            logger.error(f"Failed to record exit check for trade {trade_id}: {e}")
            return None
        return entry

    def get_records(self, trade_id: Optional[int] = None) -> List[ExitCheckRecord]:
        """All records (optionally for one trade), oldest first."""
        if not self.audit_file.exists():
            return []

        try:
            with self._lock, open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            raise CriticalDataUnavailable(f"exit check audit {self.audit_file}", e) from e

        records = []
        for line in lines:
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            if trade_id is not None and data.get("trade_id") != trade_id:
                continue
            records.append(ExitCheckRecord.from_dict(data))
        return records

    def latest_alert(self, trade_id: int, exit_type: str) -> Optional[ExitCheckRecord]:
        """Most recent alerting record for (trade, type), from the alert index."""
        with self._lock:
            self._refresh_alert_index()
            return self._alert_index.get((trade_id, exit_type))

    def was_alert_sent(self, trade_id: int, exit_type: str) -> bool:
        return self.latest_alert(trade_id, exit_type) is not None

    def _refresh_alert_index(self) -> None:
        """
        Fold lines appended since the last refresh into the alert index.

        Only the unread tail of the file is parsed, so the cost of a check
        does not grow with the trail. Appends from other processes are
        picked up the same way. A file shorter than the last offset is
        re-read from the start. Caller holds self._lock.
        """
        if not self.audit_file.exists():
            self._alert_index.clear()
            self._index_offset = 0
            return

        try:
            with open(self.audit_file, "rb") as f:
                f.seek(0, 2)
                if f.tell() < self._index_offset:
                    self._alert_index.clear()
                    self._index_offset = 0
                f.seek(self._index_offset)
                tail = f.read()
        except OSError as e:
            raise CriticalDataUnavailable(f"exit check audit {self.audit_file}", e) from e

        # A partial last line is left for the next refresh
        complete = tail[:tail.rfind(b"\n") + 1]
        self._index_offset += len(complete)
        for line in complete.splitlines():
            try:
                data = json.loads(line)
                if not data.get("alert_sent") or not data.get("alert_type"):
                    continue
                record = ExitCheckRecord.from_dict(data)
            except (ValueError, KeyError, TypeError, AttributeError):
                continue
            key = (record.trade_id, record.alert_type)
            current = self._alert_index.get(key)
            if current is None or record.check_time >= current.check_time:
                self._alert_index[key] = record
