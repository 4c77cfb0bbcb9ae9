from __future__ import annotations

from typing import Any, Callable, Sequence

import pytest

from mailrelay.app.core.config import DispatchConfig
from mailrelay.app.dispatch.dispatcher import EmailDispatcher
from tests.doubles import ManualClock, ManualTimer, RecordingSleep

# Small, fast defaults; individual tests override what they exercise
BASE_CONFIG = dict(
    rate_limit_max_requests=100,
    rate_limit_interval=60.0,
    circuit_breaker_failure_threshold=5,
    circuit_breaker_reset_timeout=30.0,
    max_retries=3,
    initial_backoff=1.0,
    queue_process_interval=3600.0,
)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def timer() -> ManualTimer:
    return ManualTimer()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_dispatcher(
    clock: ManualClock,
    timer: ManualTimer,
    sleep: RecordingSleep,
) -> Callable[..., EmailDispatcher]:
    """Build an EmailDispatcher wired to the manual clock, timer and sleep."""

    def _make(providers: Sequence[Any], **overrides: Any) -> EmailDispatcher:
        config = DispatchConfig(**{**BASE_CONFIG, **overrides})
        return EmailDispatcher(
            providers,
            config,
            clock=clock,
            sleep=sleep,
            timer_factory=timer,
        )

    return _make
