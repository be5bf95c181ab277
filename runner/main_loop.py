"""
Trade Lifecycle Runner: Service Wiring

Builds the ledger, executor and exit monitor from config and runs their
scheduled jobs.

Jobs:
1. execute-<market>: today's pending signals -> trades (13:00 market time)
2. cleanup-pending-signals: purge stale pending signals (00:00 UTC)
3. exit-monitor: close trades on target / stop / max hold / square-off
   (every 5 minutes, weekdays 02:00-22:00 UK time)
"""

import json
import logging
import signal
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from core.audit_log import ExitCheckAudit
from core.capital_ledger import CapitalLedger
from core.exit_monitor import ExitMonitor
from core.trade_executor import TradeExecutionScheduler
from infra.job_scheduler import JobScheduler
from infra.metrics import MetricsRecorder
from infra.notifications import NotificationService
from infra.price_quotes import PriceQuoteService
from infra.state_store import StateStore
from tools.config_validator import load_config, market_schedules, seed_capital

logger = logging.getLogger(__name__)


class TradeLifecycleService:
    """
    Owns every collaborator and the job scheduler.

    Responsibilities:
    - Load and validate config
    - Seed per-market capital rows (existing rows untouched)
    - Register and run the scheduled jobs
    - Shut down cleanly on SIGINT/SIGTERM
    """

    def __init__(
        self,
        config_dir: str = "config",
        clock: Optional[Callable[[], datetime]] = None,
        job_scheduler: Optional[JobScheduler] = None,
        price_service: Optional[PriceQuoteService] = None,
        configure_logging: bool = True,
    ):
        self.config_dir = Path(config_dir)
        config = load_config(config_dir)
        self.policy_config: Dict[str, Any] = config["policy"]
        self.app_config: Dict[str, Any] = config["app"]

        if configure_logging:
            self._setup_logging()

        self.mode = self.app_config["app"]["mode"].upper()
        logger.info(f"Starting trade lifecycle service in mode={self.mode}")

        self.clock = clock or (lambda: datetime.now(timezone.utc))

        # Storage
        self.store = StateStore(self.app_config["state"]["file"])
        self.store.init_portfolio_capital(
            seed_capital(self.policy_config),
            self.policy_config["limits"]["max_positions_per_market"],
        )
        self.audit = ExitCheckAudit(self.app_config["audit"]["file"])

        # Collaborators
        notify_cfg = dict(self.app_config["notifications"])
        if self.mode == "DRY_RUN":
            notify_cfg["dry_run"] = True
        self.notifier = NotificationService.from_config(notify_cfg, self.store)
        self.price_service = price_service or PriceQuoteService.from_config(self.app_config["price_quotes"])

        metrics_cfg = self.app_config["metrics"]
        self.metrics = MetricsRecorder(enabled=metrics_cfg["enabled"], port=metrics_cfg["port"])

        self.job_scheduler = job_scheduler or JobScheduler()

        leases_cfg = self.app_config["leases"]
        lease_store = self.store if leases_cfg["enabled"] else None
        lease_ttl = leases_cfg["ttl_seconds"]

        self.ledger = CapitalLedger.from_policy(self.policy_config, self.store)

        execution_cfg = self.policy_config["execution"]
        self.executor = TradeExecutionScheduler(
            self.ledger,
            self.store,
            self.store,
            notifier=self.notifier,
            job_scheduler=self.job_scheduler,
            markets=market_schedules(self.policy_config),
            owner_ref=execution_cfg["owner_ref"],
            stop_loss_percent=execution_cfg["stop_loss_percent"],
            cleanup_cron=execution_cfg["cleanup_cron"],
            cleanup_enabled=execution_cfg["cleanup_enabled"],
            lease_store=lease_store,
            lease_ttl_seconds=lease_ttl,
            metrics=self.metrics,
            clock=self.clock,
        )

        self.monitor = ExitMonitor.from_policy(
            self.policy_config,
            ledger=self.ledger,
            trade_store=self.store,
            price_service=self.price_service,
            audit=self.audit,
            notifier=self.notifier,
            job_scheduler=self.job_scheduler,
            lease_store=lease_store,
            lease_ttl_seconds=lease_ttl,
            metrics=self.metrics,
            clock=self.clock,
        )

        self._running = False
        self._started = False
        logger.info(f"Initialized TradeLifecycleService in {self.mode} mode")

    def _setup_logging(self) -> None:
        log_cfg = self.app_config["logging"]
        log_file = log_cfg["file"]
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        logging.basicConfig(
            level=getattr(logging, log_cfg["level"].upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def start(self) -> None:
        """Register all jobs and start the scheduler."""
        self.executor.initialize()
        self.monitor.initialize()
        self.metrics.start()
        self.job_scheduler.start()
        self._started = True
        self._running = True
        logger.info(f"Scheduled jobs: {', '.join(self.job_scheduler.job_ids())}")

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self._running = False
        self.executor.stop()
        self.monitor.stop()
        self.job_scheduler.shutdown(wait=True)
        logger.info("Trade lifecycle service stopped")

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - stopping scheduled jobs")
        logger.warning("=" * 80)
        self._running = False

    def run_forever(self, poll_seconds: float = 1.0) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        self.start()
        try:
            while self._running:
                self._refresh_position_gauges()
                time.sleep(poll_seconds)
        finally:
            self.stop()

    def _refresh_position_gauges(self) -> None:
        if not self.metrics.is_enabled():
            return
        try:
            for market, capital in self.store.get_portfolio_capital().items():
                self.metrics.set_open_positions(market, capital.positions)
        except Exception as e:
            logger.warning(f"Failed to refresh position gauges: {e}")

    # ------------------------------------------------------------------ #
    # Status
    # ------------------------------------------------------------------ #
    def status(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "capital": self.ledger.get_capital_summary(),
            "active_trades": len(self.store.get_active_trades()),
            "pending_signals": len(self.store.get_pending_signals()),
            "execution_logs": self.executor.get_execution_logs(),
            "jobs": self.job_scheduler.job_ids(),
        }


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Trade lifecycle scheduler")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--execute", metavar="MARKET", help="Execute today's signals for one market and exit")
    group.add_argument("--check-exits", action="store_true", help="Run one exit check and exit")
    group.add_argument("--cleanup", action="store_true", help="Purge stale pending signals and exit")
    group.add_argument("--status", action="store_true", help="Print capital and job status and exit")

    args = parser.parse_args()

    # Logging configured in __init__
    service = TradeLifecycleService(config_dir=args.config_dir)

    if args.execute:
        summary = service.executor.manual_execute(args.execute)
        print(json.dumps(summary.to_dict(), indent=2))
    elif args.check_exits:
        result = service.monitor.check_all_exits()
        print(json.dumps(result.to_dict(), indent=2, default=str))
    elif args.cleanup:
        print(json.dumps(service.executor.cleanup_old_pending_signals(), indent=2, default=str))
    elif args.status:
        print(json.dumps(service.status(), indent=2, default=str))
    else:
        service.run_forever()


if __name__ == "__main__":
    main()
