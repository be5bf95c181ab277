"""
Trade Lifecycle Core: Exit Monitor

Evaluates every active trade against exit targets on a fixed tick and
closes the ones that hit, releasing their capital and alerting once per
(trade, exit type).

Priority order (first match wins): target > stop loss > max hold > square-off
"""
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from core.audit_log import EXIT_MAX_DAYS, EXIT_SQUARE_OFF, EXIT_STOP_LOSS, EXIT_TARGET
from core.capital_ledger import CURRENCY_SYMBOLS, CapitalLedger
from core.exceptions import ConfigurationError
from core.models import Trade
from infra.instance_lock import JobLease
from infra.notifications import AUDIENCE_ALL

logger = logging.getLogger(__name__)

EXIT_TITLES = {
    EXIT_TARGET: ("🎯", "TARGET REACHED"),
    EXIT_STOP_LOSS: ("🛑", "STOP LOSS HIT"),
    EXIT_SQUARE_OFF: ("⏰", "SQUARE-OFF TRIGGERED"),
    EXIT_MAX_DAYS: ("📅", "MAX DAYS EXIT"),
}


@dataclass
class ExitSignal:
    """Matched exit condition for one trade"""
    exit_type: str  # "target_reached", "stop_loss", "max_days", "square_off"
    reason: str


@dataclass
class ExitDecision:
    """Outcome of evaluating one trade"""
    should_exit: bool
    trade_id: Optional[int] = None
    symbol: Optional[str] = None
    exit_type: Optional[str] = None
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    pl_percent: Optional[float] = None
    exit_reason: Optional[str] = None
    alert_sent: bool = False
    error: Optional[str] = None


@dataclass
class ExitSweepResult:
    """Outcome of one monitor tick"""
    checked: int = 0
    exits: List[ExitDecision] = field(default_factory=list)
    skipped: bool = False
    error: Optional[str] = None

    @property
    def exits_triggered(self) -> int:
        return len(self.exits)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "exits_triggered": self.exits_triggered,
            "exits": [decision.__dict__ for decision in self.exits],
            "skipped": self.skipped,
            "error": self.error,
        }


class ExitMonitor:
    """
    Closes active trades on target, stop loss, max holding period or
    square-off date.

    Responsibilities:
    - Fetch a current price per active trade (unavailable -> retry next tick)
    - Decide the exit type in fixed priority order
    - Close once, release capital, alert once per (trade, exit type)
    - Write an exit-check audit row for every evaluation
    """

    def __init__(
        self,
        ledger: CapitalLedger,
        trade_store,
        price_service,
        audit,
        notifier=None,
        job_scheduler=None,
        target_percent: float = 8.0,
        stop_loss_percent: float = 5.0,
        max_holding_days: int = 30,
        check_cron: str = "*/5 2-21 * * mon-fri",
        window_timezone: str = "Europe/London",
        window_start_hour: int = 2,
        window_end_hour: int = 22,
        lease_store=None,
        lease_ttl_seconds: float = 600.0,
        metrics=None,
        clock: Optional[Callable[[], datetime]] = None,
        currency_symbols: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize ExitMonitor.

        Args:
            ledger: CapitalLedger receiving released capital
            trade_store: get_active_trades / close_trade
            price_service: fetch_current_price(symbol) -> float | None
            audit: ExitCheckAudit (record / was_alert_sent)
            notifier: NotificationService (optional)
            job_scheduler: JobScheduler used by initialize() (optional)
            lease_store: store offering acquire_lease/release_lease (optional)
            clock: returns the current aware datetime (UTC)
        """
        self.ledger = ledger
        self.trade_store = trade_store
        self.price_service = price_service
        self.audit = audit
        self.notifier = notifier
        self.job_scheduler = job_scheduler

        self.target_percent = float(target_percent)
        self.stop_loss_percent = abs(float(stop_loss_percent))
        self.max_holding_days = int(max_holding_days)

        self.check_cron = check_cron
        self.window_timezone = window_timezone
        self.window_start_hour = int(window_start_hour)
        self.window_end_hour = int(window_end_hour)

        self.lease_store = lease_store
        self.lease_ttl_seconds = lease_ttl_seconds
        self.metrics = metrics
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.currency_symbols = currency_symbols or CURRENCY_SYMBOLS

        self.is_monitoring = False
        self._job_id: Optional[str] = None

        logger.info(
            f"ExitMonitor initialized: target={self.target_percent}%, "
            f"stop_loss=-{self.stop_loss_percent}%, max_hold={self.max_holding_days}d"
        )

    @classmethod
    def from_policy(cls, policy: Dict[str, Any], **kwargs) -> "ExitMonitor":
        exits = policy.get("exits") or {}
        markets = policy.get("markets") or {}
        symbols = {
            cfg["currency"]: cfg.get("currency_symbol") or CURRENCY_SYMBOLS.get(cfg["currency"], "")
            for cfg in markets.values()
        }
        return cls(
            target_percent=exits.get("target_percent", 8.0),
            stop_loss_percent=exits.get("stop_loss_percent", 5.0),
            max_holding_days=exits.get("max_holding_days", 30),
            check_cron=exits.get("check_cron", "*/5 2-21 * * mon-fri"),
            window_timezone=exits.get("window_timezone", "Europe/London"),
            window_start_hour=exits.get("window_start_hour", 2),
            window_end_hour=exits.get("window_end_hour", 22),
            currency_symbols=symbols or None,
            **kwargs,
        )

    # ------------------------------------------------------------------ #
    # Scheduling
    # ------------------------------------------------------------------ #
    def initialize(self) -> None:
        if self._job_id is not None:
            logger.warning("Exit monitor already initialized")
            return
        if self.job_scheduler is None:
            raise ConfigurationError("Exit monitor needs a job scheduler to initialize")

        self._job_id = self.job_scheduler.schedule(
            self.check_cron, self.window_timezone, self.run_scheduled_check, job_id="exit-monitor",
        )
        logger.info(
            f"Exit monitor scheduled '{self.check_cron}' ({self.window_timezone}), "
            f"window {self.window_start_hour:02d}:00-{self.window_end_hour:02d}:00 weekdays"
        )

    def stop(self) -> None:
        if self._job_id is not None and self.job_scheduler is not None:
            self.job_scheduler.remove(self._job_id)
        self._job_id = None
        logger.info("Exit monitor stopped")

    def is_within_trading_window(self, now: Optional[datetime] = None) -> bool:
        local = (now or self.clock()).astimezone(ZoneInfo(self.window_timezone))
        if local.weekday() >= 5:
            return False
        return self.window_start_hour <= local.hour < self.window_end_hour

    def run_scheduled_check(self) -> Optional[ExitSweepResult]:
        if not self.is_within_trading_window():
            logger.debug("Outside exit-monitor trading window, skipping tick")
            return None
        logger.info(f"Checking exits at {self.clock().isoformat()}")
        return self.check_all_exits()

    # ------------------------------------------------------------------ #
    # Evaluation
    # ------------------------------------------------------------------ #
    def check_all_exits(self) -> ExitSweepResult:
        """Evaluate every active trade. Never raises; overlapping ticks are skipped."""
        if self.is_monitoring:
            logger.warning("Exit check already running, skipping tick")
            return ExitSweepResult(skipped=True)

        self.is_monitoring = True
        started = time.monotonic()
        lease = None
        result = ExitSweepResult()
        try:
            if self.lease_store is not None:
                lease = JobLease(self.lease_store, "exit-monitor", ttl_seconds=self.lease_ttl_seconds)
                if not lease.acquire():
                    result = ExitSweepResult(skipped=True)
                    return result

            active_trades = self.trade_store.get_active_trades()
            logger.info(f"Checking {len(active_trades)} active trades")

            exits = []
            for trade in active_trades:
                decision = self.check_trade_exit(trade)
                if decision.should_exit:
                    exits.append(decision)

            result = ExitSweepResult(checked=len(active_trades), exits=exits)
            logger.info(f"Checked {result.checked} trades, {result.exits_triggered} exits triggered")
            return result
        except Exception as e:
            logger.error(f"Exit check failed: {e}", exc_info=True)
            result = ExitSweepResult(error=str(e))
            return result
        finally:
            if lease is not None:
                lease.release()
            self.is_monitoring = False
            if self.metrics is not None and not result.skipped:
                self.metrics.record_job_run(
                    "exit-monitor", "error" if result.error else "ok", time.monotonic() - started
                )

    def determine_exit(
        self,
        pl_percent: float,
        holding_days: int,
        square_off_date: Optional[date] = None,
        today: Optional[date] = None,
    ) -> Optional[ExitSignal]:
        """First matching exit condition, or None."""
        # 1. Target reached
        if pl_percent >= self.target_percent:
            return ExitSignal(EXIT_TARGET, f"Target reached: +{pl_percent:.2f}%")

        # 2. Stop loss hit
        if pl_percent <= -self.stop_loss_percent:
            return ExitSignal(EXIT_STOP_LOSS, f"Stop loss hit: {pl_percent:.2f}%")

        # 3. Max holding period
        if holding_days >= self.max_holding_days:
            return ExitSignal(EXIT_MAX_DAYS, f"Max holding period reached: {holding_days} days")

        # 4. Square-off date
        if square_off_date is not None and today is not None and today >= square_off_date:
            return ExitSignal(EXIT_SQUARE_OFF, "Square-off date reached")

        return None

    def check_trade_exit(self, trade: Trade) -> ExitDecision:
        """Evaluate one trade; any error means "no exit this tick"."""
        try:
            current_price = self.price_service.fetch_current_price(trade.symbol)
            if not current_price:
                logger.warning(f"Could not fetch price for {trade.symbol}")
                return ExitDecision(should_exit=False, trade_id=trade.id, symbol=trade.symbol)

            now = self.clock()
            today = now.astimezone(timezone.utc).date()
            entry_price = trade.entry_price

            pl_percent = ((current_price - entry_price) / entry_price) * 100
            holding_days = math.floor((now - trade.entry_date).total_seconds() / 86400)

            signal = self.determine_exit(pl_percent, holding_days, trade.square_off_date, today)
            if signal is None:
                self.audit.record(trade.id, current_price, pl_percent, holding_days, alert_sent=False)
                return ExitDecision(
                    should_exit=False, trade_id=trade.id, symbol=trade.symbol,
                    entry_price=entry_price, exit_price=current_price, pl_percent=pl_percent,
                )

            if self.audit.was_alert_sent(trade.id, signal.exit_type):
                logger.info(f"Alert already sent for {trade.symbol} ({signal.exit_type})")
                return ExitDecision(should_exit=False, trade_id=trade.id, symbol=trade.symbol)

            logger.info(
                f"EXIT SIGNAL: {trade.symbol} {signal.exit_type.upper()} - "
                f"PnL: {pl_percent:+.2f}%, Hold: {holding_days}d, "
                f"Price: {entry_price:.4f} → {current_price:.4f}"
            )
            closed = self._close_trade(trade, current_price, pl_percent, signal, today)
            if closed is None:
                logger.error(f"Failed to close trade {trade.symbol}, skipping alert")
                self.audit.record(
                    trade.id, current_price, pl_percent, holding_days,
                    alert_sent=False, alert_type=signal.exit_type,
                )
                return ExitDecision(
                    should_exit=False, trade_id=trade.id, symbol=trade.symbol, error="Trade close failed",
                )

            self._send_exit_alert(trade, current_price, pl_percent, signal)
            self.audit.record(
                trade.id, current_price, pl_percent, holding_days,
                alert_sent=True, alert_type=signal.exit_type,
            )
            if self.metrics is not None:
                self.metrics.record_exit(signal.exit_type)

            return ExitDecision(
                should_exit=True,
                trade_id=trade.id,
                symbol=trade.symbol,
                exit_type=signal.exit_type,
                entry_price=entry_price,
                exit_price=current_price,
                pl_percent=pl_percent,
                exit_reason=signal.reason,
                alert_sent=True,
            )
        except Exception as e:
            logger.error(f"Error checking {trade.symbol}: {e}", exc_info=True)
            return ExitDecision(should_exit=False, trade_id=trade.id, symbol=trade.symbol, error=str(e))

    def _close_trade(
        self,
        trade: Trade,
        exit_price: float,
        pl_percent: float,
        signal: ExitSignal,
        today: date,
    ) -> Optional[Trade]:
        """Close in the store, then release capital. None if the store refused the close."""
        pl_value = None
        if trade.shares:
            pl_value = (exit_price - trade.entry_price) * trade.shares

        closed = self.trade_store.close_trade(
            trade.id,
            exit_date=today,
            exit_price=exit_price,
            profit_loss_percent=pl_percent,
            exit_reason=signal.reason,
            profit_loss=pl_value,
        )
        if closed is None:
            return None

        self.ledger.release_from_trade({**trade.to_dict(), "profit_loss_percent": pl_percent})
        logger.info(f"Closed trade id={trade.id} symbol={trade.symbol} exit_type={signal.exit_type}")
        return closed

    def format_exit_message(self, trade: Trade, exit_price: float, pl_percent: float, signal: ExitSignal) -> str:
        emoji, title = EXIT_TITLES.get(signal.exit_type, ("📤", "EXIT TRIGGERED"))
        currency = self.currency_symbols.get(trade.currency, "$")
        sign = "+" if pl_percent >= 0 else "-"
        pl_amount = abs(trade.trade_size * pl_percent / 100)

        if signal.exit_type == EXIT_TARGET:
            closing = "🎉 Congratulations on the profitable trade!"
        elif signal.exit_type == EXIT_STOP_LOSS:
            closing = "⚠️ Better luck next time!"
        else:
            closing = "✅ Trade closed"

        return (
            f"{emoji} *{title}*\n\n"
            f"📊 *Stock:* {trade.symbol}\n"
            f"📍 *Entry:* {currency}{trade.entry_price:.2f}\n"
            f"📤 *Exit:* {currency}{exit_price:.2f}\n"
            f"💹 *P/L:* {sign}{abs(pl_percent):.2f}% ({sign}{currency}{pl_amount:.2f})\n"
            f"📝 *Reason:* {signal.reason}\n"
            f"🕐 *Time:* {self.clock().strftime('%Y-%m-%d %H:%M UTC')}\n\n"
            f"{closing}"
        )

    def _send_exit_alert(self, trade: Trade, exit_price: float, pl_percent: float, signal: ExitSignal) -> None:
        if self.notifier is None:
            logger.info("Notifications not configured - skipping exit alert")
            return
        try:
            self.notifier.broadcast_to_subscribers(
                self.format_exit_message(trade, exit_price, pl_percent, signal), AUDIENCE_ALL
            )
            logger.info(f"Alert sent for {trade.symbol}")
        except Exception as e:
            logger.error(f"Error sending alert for {trade.symbol}: {e}")
