"""
circuit_breaker.py — Per-provider health gate.

═══════════════════════════════════════════════════════════════════════════
STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    ┌────────┐  failures ≥ threshold   ┌────────┐
    │ CLOSED │ ──────────────────────► │  OPEN  │ ◄─────────┐
    └────────┘                         └────────┘           │
        ▲                                  │ reset timer    │ any failure
        │ success                          ▼                │
        │                             ┌───────────┐         │
        └──────────────────────────── │ HALF_OPEN │ ────────┘
                                      └───────────┘

    • allow() is True in CLOSED and HALF_OPEN, False in OPEN.
    • CLOSED needs ``failure_threshold`` consecutive failures to trip,
      HALF_OPEN re-trips on the first one.
    • Any success zeroes the failure counter.
    • Tripping while already OPEN does not re-arm the reset timer.

The reset timer is produced by ``timer_factory(delay, callback)``; the
default schedules ``callback`` on the running asyncio loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED    = "closed"
    OPEN      = "open"
    HALF_OPEN = "half_open"


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def loop_timer(delay: float, callback: Callable[[], None]) -> TimerHandle:
    """Schedule ``callback`` after ``delay`` seconds on the running loop."""
    return asyncio.get_running_loop().call_later(delay, callback)


class CircuitBreaker:
    """
    Tracks consecutive failures of one provider.

    Parameters
    ----------
    name : str
        Provider name, used in logs and health output.
    failure_threshold : int
        Consecutive failures that open a closed circuit.
    reset_timeout : float
        Seconds an open circuit waits before going half-open.
    clock : callable
        Time source for ``last_failure_time``.
    timer_factory : callable
        Arms the open → half-open timer.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int,
        reset_timeout: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: TimerFactory = loop_timer,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._timer_factory = timer_factory

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._reset_timer: Optional[TimerHandle] = None
        self._lock = threading.RLock()

    # ── Read-only views ──

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def last_failure_time(self) -> Optional[float]:
        with self._lock:
            return self._last_failure_time

    # ── Contract ──

    def allow(self) -> bool:
        with self._lock:
            return self._state != CircuitState.OPEN

    def on_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._close()
                logger.info(
                    "Circuit for %s reset to CLOSED after a successful call",
                    self.name,
                    extra={"provider": self.name, "circuit_state": "closed"},
                )
            self._failure_count = 0

    def on_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if (
                self._state == CircuitState.HALF_OPEN
                or self._failure_count >= self.failure_threshold
            ):
                self._trip()

    # ── Transitions ──

    def _trip(self) -> None:
        if self._state == CircuitState.OPEN:
            return

        self._state = CircuitState.OPEN
        self._reset_timer = self._timer_factory(self.reset_timeout, self._enter_half_open)
        logger.error(
            "Circuit for %s tripped to OPEN (%d failures); half-open in %.1fs",
            self.name, self._failure_count, self.reset_timeout,
            extra={"provider": self.name, "circuit_state": "open"},
        )

    def _enter_half_open(self) -> None:
        with self._lock:
            self._reset_timer = None
            if self._state != CircuitState.OPEN:
                return
            self._state = CircuitState.HALF_OPEN
            logger.warning(
                "Circuit for %s is HALF_OPEN; next call is a trial",
                self.name,
                extra={"provider": self.name, "circuit_state": "half_open"},
            )

    def _close(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "provider": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "last_failure_time": self._last_failure_time,
            }
