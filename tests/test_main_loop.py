"""Tests for service wiring from config."""

import shutil
from pathlib import Path

import pytest
import yaml

from runner.main_loop import TradeLifecycleService
from tests.helpers import FakeJobScheduler, StubPriceService

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def config_dir(tmp_path):
    target = tmp_path / "config"
    shutil.copytree(REPO_CONFIG, target)
    app = yaml.safe_load((target / "app.yaml").read_text(encoding="utf-8"))
    app["state"]["file"] = str(tmp_path / "data" / "state.json")
    app["audit"]["file"] = str(tmp_path / "logs" / "exit_checks.jsonl")
    app["logging"]["file"] = str(tmp_path / "logs" / "service.log")
    (target / "app.yaml").write_text(yaml.safe_dump(app), encoding="utf-8")
    return target


@pytest.fixture
def service(config_dir, clock):
    return TradeLifecycleService(
        config_dir=str(config_dir),
        clock=clock,
        job_scheduler=FakeJobScheduler(),
        price_service=StubPriceService({"AAPL": 200.0}),
        configure_logging=False,
    )


def test_seeds_capital_from_policy(service):
    capital = service.store.get_portfolio_capital()

    assert set(capital) == {"India", "UK", "US"}
    assert capital["India"].initial == 500000.0
    assert capital["UK"].currency == "GBP"
    assert capital["US"].max_positions == 10


def test_dry_run_mode_forces_notification_dry_run(service):
    assert service.mode == "DRY_RUN"
    assert service.notifier.is_enabled()
    assert service.notifier._config.dry_run


def test_start_registers_all_jobs(service):
    service.start()

    assert sorted(service.job_scheduler.job_ids()) == [
        "cleanup-pending-signals", "execute-India", "execute-UK", "execute-US", "exit-monitor",
    ]
    assert service.job_scheduler.running

    service.stop()
    assert service.job_scheduler.job_ids() == []
    assert not service.job_scheduler.running


def test_signal_to_exit_round_trip(service, clock):
    service.store.add_signal("AAPL", "2024-01-17", 180.0, 194.4)

    summary = service.executor.manual_execute("US")
    assert summary.executed_count == 1

    clock.advance(hours=1)
    result = service.monitor.check_all_exits()

    assert result.exits_triggered == 1
    assert result.exits[0].exit_type == "target_reached"
    us = service.store.get_portfolio_capital()["US"]
    assert us.positions == 0
    # 500 * (200 - 180) / 180
    assert us.realized == pytest.approx(55.5556, rel=1e-4)


def test_status_snapshot(service):
    service.store.add_signal("VOD.L", "2024-01-17", 0.7, 0.76)

    status = service.status()

    assert status["pending_signals"] == 1
    assert status["active_trades"] == 0
    assert status["capital"]["UK"]["currency"] == "£"
