"""Tests for store-backed job leases."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from infra.instance_lock import JobLease


def test_acquire_and_release(store):
    lease = JobLease(store, "exit-monitor", ttl_seconds=60, owner="host-a:1")

    assert lease.acquire()
    assert store.load()["leases"]["exit-monitor"]["owner"] == "host-a:1"

    lease.release()
    assert "exit-monitor" not in store.load()["leases"]
    assert not lease.acquired


def test_second_owner_blocked_until_release(store):
    first = JobLease(store, "execute:UK", owner="host-a:1")
    second = JobLease(store, "execute:UK", owner="host-b:2")

    assert first.acquire()
    assert not second.acquire()

    first.release()
    assert second.acquire()


def test_expired_lease_can_be_taken(store):
    stale = datetime.now(timezone.utc) - timedelta(hours=1)
    store.acquire_lease("exit-monitor", "crashed-host:9", 60, now=stale)

    assert JobLease(store, "exit-monitor", owner="host-a:1").acquire()


def test_release_without_acquire_is_noop(store):
    store.acquire_lease("exit-monitor", "host-b:2", 60)

    JobLease(store, "exit-monitor", owner="host-a:1").release()

    assert store.load()["leases"]["exit-monitor"]["owner"] == "host-b:2"


def test_store_error_means_not_acquired():
    broken = MagicMock()
    broken.acquire_lease.side_effect = RuntimeError("state file locked")

    assert not JobLease(broken, "exit-monitor").acquire()


def test_context_manager(store):
    with JobLease(store, "execute:US", owner="host-a:1"):
        assert not JobLease(store, "execute:US", owner="host-b:2").acquire()

    assert store.load()["leases"] == {}

    store.acquire_lease("execute:US", "host-b:2", 60)
    with pytest.raises(RuntimeError):
        with JobLease(store, "execute:US", owner="host-a:1"):
            pass


def test_default_owner_is_unique(store):
    assert JobLease(store, "x").owner != JobLease(store, "x").owner
