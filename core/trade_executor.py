"""
Trade Lifecycle Core: Scheduled Trade Execution

Turns each market's pending signals dated "today" (in that market's own
clock) into funded trades, once per scheduled trigger.

Flow per signal (sequential, store order):
1. Validate entry with the capital ledger
2. Invalid -> dismiss signal (skipped if capacity-limited, else failed)
3. Valid -> allocate capital, insert trade, mark signal added
4. Any error -> failed; the batch always continues
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Union
from zoneinfo import ZoneInfo

from core.capital_ledger import CAPACITY_CODES, CapitalLedger
from core.exceptions import ConfigurationError, TradeValidationError
from core.models import SIGNAL_ADDED, SIGNAL_DISMISSED, SIGNAL_PENDING, TRADE_ACTIVE, Signal, Trade
from infra.instance_lock import JobLease
from infra.notifications import AUDIENCE_EXECUTION

logger = logging.getLogger(__name__)

DEFAULT_MARKET_SCHEDULES = {
    "India": {"timezone": "Asia/Kolkata", "cron": "0 13 * * mon-fri"},
    "UK": {"timezone": "Europe/London", "cron": "0 13 * * mon-fri"},
    "US": {"timezone": "America/New_York", "cron": "0 13 * * mon-fri"},
}

MARKET_FLAGS = {"India": "🇮🇳", "UK": "🇬🇧", "US": "🇺🇸"}


@dataclass
class Executed:
    signal_id: int
    symbol: str
    trade_id: int
    trade_size: float
    currency: Optional[str] = None


@dataclass
class Skipped:
    signal_id: int
    symbol: str
    reason: str
    code: Optional[str] = None


@dataclass
class Failed:
    signal_id: int
    symbol: str
    error: str
    code: Optional[str] = None


SignalOutcome = Union[Executed, Skipped, Failed]


@dataclass
class ExecutionSummary:
    """Outcome of one market batch. `success` is False only when the batch itself broke."""
    market: str
    total: int = 0
    executed: List[Executed] = field(default_factory=list)
    skipped: List[Skipped] = field(default_factory=list)
    failed: List[Failed] = field(default_factory=list)
    duration_ms: float = 0.0
    success: bool = True
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_outcomes(cls, market: str, outcomes: List[SignalOutcome], **kwargs) -> "ExecutionSummary":
        return cls(
            market=market,
            total=len(outcomes),
            executed=[o for o in outcomes if isinstance(o, Executed)],
            skipped=[o for o in outcomes if isinstance(o, Skipped)],
            failed=[o for o in outcomes if isinstance(o, Failed)],
            **kwargs,
        )

    @property
    def executed_count(self) -> int:
        return len(self.executed)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "market": self.market,
            "total": self.total,
            "executed": self.executed_count,
            "failed": self.failed_count,
            "skipped": self.skipped_count,
            "duration_ms": round(self.duration_ms, 1),
            "error": self.error,
        }


class TradeExecutionScheduler:
    """
    Scheduled conversion of pending signals into trades.

    Args:
        ledger: CapitalLedger gating and funding every trade
        signal_store: get_pending_signals / update_signal_status /
            delete_pending_signals_before
        trade_store: insert_trade
        notifier: NotificationService (optional)
        job_scheduler: JobScheduler used by initialize() (optional)
        markets: market -> {"timezone": IANA name, "cron": crontab}
        lease_store: store offering acquire_lease/release_lease; when given,
            each market batch runs under an `execute:<market>` lease
        clock: returns the current aware datetime (UTC)
    """

    def __init__(
        self,
        ledger: CapitalLedger,
        signal_store,
        trade_store,
        notifier=None,
        job_scheduler=None,
        markets: Optional[Dict[str, Dict[str, str]]] = None,
        owner_ref: str = "default",
        stop_loss_percent: float = 5.0,
        cleanup_cron: str = "0 0 * * *",
        cleanup_enabled: bool = True,
        lease_store=None,
        lease_ttl_seconds: float = 900.0,
        metrics=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.signal_store = signal_store
        self.trade_store = trade_store
        self.notifier = notifier
        self.job_scheduler = job_scheduler
        self.markets = markets or DEFAULT_MARKET_SCHEDULES
        self.owner_ref = owner_ref
        self.stop_loss_percent = float(stop_loss_percent)
        self.cleanup_cron = cleanup_cron
        self.cleanup_enabled = cleanup_enabled
        self.lease_store = lease_store
        self.lease_ttl_seconds = lease_ttl_seconds
        self.metrics = metrics
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.initialized = False
        self.execution_logs: List[Dict[str, Any]] = []
        self._job_ids: List[str] = []
        self._running_markets = set()
        self._running_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Scheduling
    # ------------------------------------------------------------------ #
    def initialize(self) -> None:
        """Register one trigger per market plus the daily cleanup job."""
        if self.initialized:
            logger.warning("Trade executor already initialized")
            return
        if self.job_scheduler is None:
            raise ConfigurationError("Trade executor needs a job scheduler to initialize")

        logger.info("Initializing trade executor...")
        for market, schedule in self.markets.items():
            job_id = self.job_scheduler.schedule(
                schedule["cron"],
                schedule["timezone"],
                partial(self.run_scheduled, market),
                job_id=f"execute-{market}",
            )
            self._job_ids.append(job_id)
            logger.info(f"   {market} execution scheduled: '{schedule['cron']}' ({schedule['timezone']})")

        if self.cleanup_enabled:
            job_id = self.job_scheduler.schedule(
                self.cleanup_cron, "UTC", self.cleanup_old_pending_signals, job_id="cleanup-pending-signals",
            )
            self._job_ids.append(job_id)
            logger.info(f"   Daily cleanup scheduled: '{self.cleanup_cron}' (UTC)")

        self.initialized = True
        logger.info(f"Trade executor initialized for {len(self.markets)} markets")

    def stop(self) -> None:
        if self.job_scheduler is not None:
            for job_id in self._job_ids:
                self.job_scheduler.remove(job_id)
        self._job_ids = []
        self.initialized = False
        logger.info("Trade executor stopped")

    def run_scheduled(self, market: str) -> ExecutionSummary:
        logger.info(f"[{market}] Starting scheduled trade execution...")
        return self.execute_market_signals(market)

    def manual_execute(self, market: str) -> ExecutionSummary:
        logger.info(f"Manual execution triggered for {market}")
        return self.execute_market_signals(market)

    def get_execution_logs(self, limit: int = 10) -> List[Dict[str, Any]]:
        return self.execution_logs[-limit:]

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #
    def market_today(self, market: str) -> date:
        schedule = self.markets.get(market)
        if schedule is None:
            raise ConfigurationError(f"Market {market} has no execution schedule")
        return self.clock().astimezone(ZoneInfo(schedule["timezone"])).date()

    def execute_market_signals(self, market: str) -> ExecutionSummary:
        """
        Execute today's pending signals for `market`. Never raises.

        Returns:
            ExecutionSummary (success=False when the batch could not run)
        """
        started = time.monotonic()

        with self._running_lock:
            if market in self._running_markets:
                logger.warning(f"[{market}] Execution already in progress, skipping")
                return ExecutionSummary(market=market, success=False, error="execution already in progress")
            self._running_markets.add(market)

        lease = None
        try:
            if self.lease_store is not None:
                lease = JobLease(self.lease_store, f"execute:{market}", ttl_seconds=self.lease_ttl_seconds)
                if not lease.acquire():
                    return ExecutionSummary(market=market, success=False, error="lease held by another instance")

            summary = self._execute_batch(market, started)
        except Exception as e:
            logger.error(f"[{market}] Execution error: {e}", exc_info=True)
            summary = ExecutionSummary(
                market=market,
                success=False,
                error=str(e),
                duration_ms=(time.monotonic() - started) * 1000,
            )
        finally:
            if lease is not None:
                lease.release()
            with self._running_lock:
                self._running_markets.discard(market)

        if self.metrics is not None:
            self.metrics.record_job_run(
                f"execute:{market}", "ok" if summary.success else "error", summary.duration_ms / 1000
            )
        return summary

    def _execute_batch(self, market: str, started: float) -> ExecutionSummary:
        today = self.market_today(market)
        logger.info("=" * 60)
        logger.info(f"[{market}] EXECUTION STARTED (market date {today})")
        logger.info("=" * 60)

        signals = self.signal_store.get_pending_signals(SIGNAL_PENDING, market)
        logger.info(f"[{market}] Found {len(signals)} pending signals total")
        self._log_signal_dates(market, signals, today)

        todays = [s for s in signals if s.signal_date == today]
        if not todays:
            logger.info(f"[{market}] No signals to execute today")
            return ExecutionSummary(market=market, duration_ms=(time.monotonic() - started) * 1000)

        outcomes: List[SignalOutcome] = []
        for index, signal in enumerate(todays, start=1):
            logger.info(
                f"[{market}] [{index}/{len(todays)}] {signal.symbol}: entry={signal.entry_price:.2f} "
                f"target={signal.target_price:.2f} win_rate={signal.win_rate:.1f}%"
            )
            outcome = self._execute_signal(signal, market)
            self._log_outcome(market, outcome)
            outcomes.append(outcome)

        summary = ExecutionSummary.from_outcomes(
            market, outcomes, duration_ms=(time.monotonic() - started) * 1000
        )
        logger.info(
            f"[{market}] EXECUTION SUMMARY: total={summary.total} executed={summary.executed_count} "
            f"skipped={summary.skipped_count} failed={summary.failed_count} "
            f"duration={summary.duration_ms:.0f}ms"
        )

        if summary.executed_count > 0 or summary.failed_count > 0:
            self._send_execution_notification(summary)

        self.execution_logs.append({
            "timestamp": self.clock().isoformat(),
            "market": market,
            "summary": summary.to_dict(),
        })

        if self.metrics is not None:
            self.metrics.record_signal_outcomes(
                market, summary.executed_count, summary.skipped_count, summary.failed_count
            )
        return summary

    def _execute_signal(self, signal: Signal, market: str) -> SignalOutcome:
        try:
            validation = self.ledger.validate_trade_entry(market, signal.symbol)
            if not validation.valid:
                logger.info(f"   Validation failed: {validation.code} {validation.details or ''}")
                self.signal_store.update_signal_status(signal.id, SIGNAL_DISMISSED)
                return self._rejected(signal, validation.reason, validation.code)

            try:
                allocation = self.ledger.allocate_for_trade(market, signal.symbol, signal.entry_price)
            except TradeValidationError as e:
                # Capital moved between validation and allocation
                logger.info(f"   Allocation refused: {e.code} {e.details or ''}")
                self.signal_store.update_signal_status(signal.id, SIGNAL_DISMISSED)
                return self._rejected(signal, e.reason, e.code)

            trade = self._build_trade(signal, market, allocation)
            try:
                trade = self.trade_store.insert_trade(trade, self.owner_ref)
            except Exception:
                self.ledger.cancel_allocation(market, allocation["allocated"])
                raise

            self.signal_store.update_signal_status(signal.id, SIGNAL_ADDED, trade.id)
            return Executed(
                signal_id=signal.id,
                symbol=signal.symbol,
                trade_id=trade.id,
                trade_size=allocation["allocated"],
                currency=allocation["currency"],
            )
        except Exception as e:
            logger.error(f"   Error executing signal {signal.symbol}: {e}", exc_info=True)
            return Failed(signal_id=signal.id, symbol=signal.symbol, error=str(e))

    @staticmethod
    def _rejected(signal: Signal, reason: str, code: Optional[str]) -> SignalOutcome:
        if code in CAPACITY_CODES:
            return Skipped(signal_id=signal.id, symbol=signal.symbol, reason=reason, code=code)
        return Failed(signal_id=signal.id, symbol=signal.symbol, error=reason, code=code)

    def _build_trade(self, signal: Signal, market: str, allocation: Dict[str, Any]) -> Trade:
        return Trade(
            id=None,
            symbol=signal.symbol,
            market=market,
            entry_date=self.clock(),
            entry_price=signal.entry_price,
            target_price=signal.target_price,
            trade_size=allocation["allocated"],
            currency=allocation["currency"],
            stop_loss_percent=self.stop_loss_percent,
            status=TRADE_ACTIVE,
            notes=f"Auto-executed {market} session - Win Rate: {signal.win_rate:.1f}%",
            signal_date=signal.signal_date,
            win_rate=signal.win_rate,
            historical_signal_count=signal.historical_signal_count,
            auto_added=True,
            entry_dti=signal.entry_dti,
            entry_7day_dti=signal.entry_7day_dti,
            prev_dti=signal.prev_dti,
            prev_7day_dti=signal.prev_7day_dti,
            owner_ref=self.owner_ref,
        )

    # ------------------------------------------------------------------ #
    # Cleanup
    # ------------------------------------------------------------------ #
    def cleanup_old_pending_signals(self) -> Dict[str, Any]:
        """Delete pending signals dated before yesterday (UTC). Never raises."""
        started = time.monotonic()
        try:
            cutoff = self.clock().astimezone(timezone.utc).date() - timedelta(days=1)
            logger.info(f"[CLEANUP] Removing pending signals older than {cutoff}...")
            removed = self.signal_store.delete_pending_signals_before(cutoff)
            if removed:
                logger.info(f"[CLEANUP] Removed {len(removed)} old pending signals:")
                for row in removed:
                    logger.info(f"   - {row['symbol']} ({row['market']}) from {row['signal_date']}")
            else:
                logger.info("[CLEANUP] No old pending signals to remove")
            result = {"removed": len(removed), "signals": removed}
            status = "ok"
        except Exception as e:
            logger.error(f"[CLEANUP] Error cleaning up old signals: {e}", exc_info=True)
            result = {"error": str(e)}
            status = "error"

        if self.metrics is not None:
            self.metrics.record_job_run("cleanup", status, time.monotonic() - started)
        return result

    # ------------------------------------------------------------------ #
    # Reporting
    # ------------------------------------------------------------------ #
    def _log_signal_dates(self, market: str, signals: List[Signal], today: date) -> None:
        if not signals:
            return
        by_date: Dict[date, List[Signal]] = {}
        undated: List[Signal] = []
        for signal in signals:
            if signal.signal_date is None:
                undated.append(signal)
            else:
                by_date.setdefault(signal.signal_date, []).append(signal)

        if undated:
            logger.warning(
                f"[{market}]     undated: {len(undated)} signals - SKIPPED "
                f"(ids {', '.join(str(s.id) for s in undated)})"
            )
        for signal_date in sorted(by_date, reverse=True):
            group = by_date[signal_date]
            if signal_date == today:
                logger.info(
                    f"[{market}]  -> {signal_date}: {len(group)} signals - WILL EXECUTE "
                    f"({', '.join(s.symbol for s in group)})"
                )
            else:
                age = (today - signal_date).days
                logger.info(f"[{market}]     {signal_date}: {len(group)} signals - SKIPPED ({age} days old)")

    @staticmethod
    def _log_outcome(market: str, outcome: SignalOutcome) -> None:
        if isinstance(outcome, Executed):
            logger.info(f"[{market}]    SUCCESS trade_id={outcome.trade_id} size={outcome.trade_size:.0f}")
        elif isinstance(outcome, Skipped):
            logger.info(f"[{market}]    SKIPPED {outcome.code}: {outcome.reason}")
        else:
            logger.warning(f"[{market}]    FAILED {outcome.code or 'ERROR'}: {outcome.error}")

    def format_execution_message(self, summary: ExecutionSummary) -> str:
        flag = MARKET_FLAGS.get(summary.market, "📊")
        lines = [
            f"{flag} *{summary.market} Market - Execution Complete*",
            "",
            f"📊 Total Signals: {summary.total}",
            f"✓ Executed: {summary.executed_count} trades",
        ]
        if summary.executed:
            lines.append("")
            lines.append("*Trades Added:*")
            lines.extend(f"✓ {e.symbol} ({e.trade_size:.0f})" for e in summary.executed)
        if summary.skipped:
            lines.append("")
            lines.append(f"⊗ Skipped: {summary.skipped_count} (limits/capital)")
        if summary.failed:
            lines.append("")
            lines.append(f"✗ Failed: {summary.failed_count}")
            lines.extend(f"  • {f.symbol}: {f.error[:50]}" for f in summary.failed[:3])
        lines.append("")
        lines.append(f"⏱ Duration: {summary.duration_ms / 1000:.1f}s")
        return "\n".join(lines)

    def _send_execution_notification(self, summary: ExecutionSummary) -> None:
        if self.notifier is None:
            logger.info("Notifications not configured - skipping execution summary")
            return
        try:
            self.notifier.broadcast_to_subscribers(self.format_execution_message(summary), AUDIENCE_EXECUTION)
        except Exception as e:
            logger.error(f"Error sending execution notification: {e}")
