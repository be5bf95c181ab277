"""
Job Lease - Keep One Instance Per Job Class

A named, expiring lease row in the shared state store. Whichever instance
holds the lease runs the tick; others skip it. An instance that dies
without releasing only blocks the job until the lease expires.
"""

import logging
import os
import socket
import uuid
from typing import Optional

logger = logging.getLogger(__name__)


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class JobLease:
    """
    Store-backed lease.

    Usage:
        lease = JobLease(store, "exit-monitor", ttl_seconds=600)
        if not lease.acquire():
            return  # another instance is running this tick
        try:
            ...
        finally:
            lease.release()
    """

    def __init__(self, store, name: str, ttl_seconds: float = 600.0, owner: Optional[str] = None):
        self.store = store
        self.name = name
        self.ttl_seconds = float(ttl_seconds)
        self.owner = owner or default_owner()
        self.acquired = False

    def acquire(self) -> bool:
        """
        Acquire the lease.

        Returns:
            True if acquired (or renewed), False if another owner holds it
        """
        try:
            self.acquired = bool(self.store.acquire_lease(self.name, self.owner, self.ttl_seconds))
        except Exception as e:
            logger.error(f"Failed to acquire lease {self.name}: {e}")
            self.acquired = False

        if self.acquired:
            logger.debug(f"Lease acquired: {self.name} (owner={self.owner})")
        else:
            logger.warning(f"Lease {self.name} held by another instance, skipping")
        return self.acquired

    def release(self) -> None:
        """Release the lease if we hold it."""
        if not self.acquired:
            return

        try:
            self.store.release_lease(self.name, self.owner)
            logger.debug(f"Lease released: {self.name}")
        except Exception as e:
            logger.warning(f"Failed to release lease {self.name}: {e}")
        finally:
            self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lease {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
