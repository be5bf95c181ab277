"""
Pytest configuration and fixtures for trade lifecycle tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
from datetime import datetime, timezone

import pytest

from tests.helpers import MARKETS_SEED, FakeJobScheduler, FixedClock, RecordingNotifier


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def store(tmp_path):
    """StateStore on a temp file, seeded with the three default markets."""
    from infra.state_store import StateStore

    state_store = StateStore(str(tmp_path / "state.json"))
    state_store.init_portfolio_capital(MARKETS_SEED, max_positions=10)
    return state_store


@pytest.fixture
def ledger(store):
    from core.capital_ledger import CapitalLedger

    return CapitalLedger(store)


@pytest.fixture
def clock():
    # Wednesday 2024-01-17 14:00 UTC
    return FixedClock(datetime(2024, 1, 17, 14, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def job_scheduler():
    return FakeJobScheduler()


@pytest.fixture
def audit(tmp_path):
    from core.audit_log import ExitCheckAudit

    return ExitCheckAudit(str(tmp_path / "exit_checks.jsonl"))
