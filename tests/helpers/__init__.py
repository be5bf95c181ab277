"""Test helpers for the trade lifecycle test suite"""

from tests.helpers.lifecycle_stubs import (
    MARKETS_SEED,
    FakeJobScheduler,
    FixedClock,
    RecordingNotifier,
    StubPriceService,
)

__all__ = [
    "MARKETS_SEED",
    "FakeJobScheduler",
    "FixedClock",
    "RecordingNotifier",
    "StubPriceService",
]
