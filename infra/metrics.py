"""Prometheus-backed metrics for the execution and exit-monitor jobs."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose job stats via Prometheus.

    Singleton pattern so repeated wiring never registers metrics twice.
    Metrics live in a private registry served by `start()`.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_job_status: Dict[str, str] = {}
        self.registry = CollectorRegistry()

        self._job_runs_counter = Counter(
            "lifecycle_job_runs_total",
            "Scheduled job runs by job and status",
            labelnames=("job", "status"),
            registry=self.registry,
        )
        self._job_duration_summary = Summary(
            "lifecycle_job_duration_seconds",
            "Duration of scheduled job runs",
            labelnames=("job",),
            registry=self.registry,
        )
        self._signal_outcomes_counter = Counter(
            "lifecycle_signal_outcomes_total",
            "Signals processed by market and outcome (executed/skipped/failed)",
            labelnames=("market", "outcome"),
            registry=self.registry,
        )
        self._exits_counter = Counter(
            "lifecycle_exits_total",
            "Trades closed by the exit monitor, by exit type",
            labelnames=("exit_type",),
            registry=self.registry,
        )
        self._positions_gauge = Gauge(
            "lifecycle_open_positions",
            "Open positions per market",
            labelnames=("market",),
            registry=self.registry,
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_job_run(self, job: str, status: str, duration_seconds: float) -> None:
        self._last_job_status[job] = status
        if not self._enabled:
            return
        self._job_runs_counter.labels(job=job, status=status).inc()
        self._job_duration_summary.labels(job=job).observe(max(duration_seconds, 0.0))

    def record_signal_outcomes(self, market: str, executed: int, skipped: int, failed: int) -> None:
        if not self._enabled:
            return
        for outcome, count in (("executed", executed), ("skipped", skipped), ("failed", failed)):
            if count:
                self._signal_outcomes_counter.labels(market=market, outcome=outcome).inc(count)

    def record_exit(self, exit_type: str) -> None:
        if self._enabled:
            self._exits_counter.labels(exit_type=exit_type).inc()

    def set_open_positions(self, market: str, positions: int) -> None:
        if self._enabled:
            self._positions_gauge.labels(market=market).set(positions)

    def last_job_status(self, job: str) -> Optional[str]:
        return self._last_job_status.get(job)


__all__ = ["MetricsRecorder"]
