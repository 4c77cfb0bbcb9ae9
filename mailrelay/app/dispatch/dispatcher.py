"""
dispatcher.py — Core email dispatch orchestration engine.

This is the central coordinator that:
    1. Short-circuits repeated idempotency keys to their recorded outcome
    2. Defers requests to the delivery queue when the rate limiter says no
    3. Walks the providers in priority order, skipping open circuits
    4. Retries each provider with exponential backoff
    5. Records the terminal status in the ledger
    6. Periodically drains the queue as rate-limit capacity returns

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  submit(request)    │
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐   key seen    ┌──────────────────────┐
    │  1. Ledger lookup   │ ────────────► │ DUPLICATE (+ record) │
    └─────────┬───────────┘               └──────────────────────┘
              │
              ▼
    ┌─────────────────────┐   denied      ┌──────────────────────┐
    │  2. Rate limiter    │ ────────────► │ enqueue, QUEUED,     │
    └─────────┬───────────┘               │ RATE_LIMITED         │
              │ admitted                  └──────────────────────┘
              ▼
    ┌─────────────────────┐
    │  3. PROCESSING      │
    │     provider walk   │  for each (provider, breaker):
    │                     │    open circuit  → skip
    │                     │    else retry ≤ max_retries with backoff
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. SUCCESS or      │
    │     FAILED          │
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
RETRY & FALLBACK STRATEGY
═══════════════════════════════════════════════════════════════════════════

Backoff formula (exponential, zero-indexed attempt):
    delay = initial_backoff × 2^attempt

    Example for initial_backoff=1s, max_retries=3:
        fail → 1s → fail → 2s → fail → 4s → fail → provider exhausted

Every failed attempt is reported to that provider's circuit breaker, every
success resets it. An exhausted provider hands over to the next one with a
fresh retry budget. A provider whose circuit is open is skipped without an
attempt and without consuming any backoff.

═══════════════════════════════════════════════════════════════════════════
CONCURRENCY
═══════════════════════════════════════════════════════════════════════════

Ledger, limiter, queue and breakers each guard themselves with a lock held
only for synchronous bookkeeping. The admission sequence (steps 1–2 and the
PROCESSING write) runs under one more lock so two submits racing on the same
key cannot both be admitted. Nothing is locked across an ``await``.
The periodic drain is serialised by an asyncio lock. Stopping it never
cancels a drain cycle that is already dispatching.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from mailrelay.app.core.config import DispatchConfig, settings
from mailrelay.app.core.errors import (
    AllProvidersFailed,
    ConfigurationError,
    ProviderExhausted,
    ProviderTransientFailure,
)
from mailrelay.app.core.health import run_health_check
from mailrelay.app.core.logging_config import (
    reset_dispatch_context,
    set_dispatch_context,
)
from mailrelay.app.dispatch.circuit_breaker import (
    CircuitBreaker,
    TimerFactory,
    loop_timer,
)
from mailrelay.app.dispatch.delivery_queue import DeliveryQueue
from mailrelay.app.dispatch.ledger import StatusLedger
from mailrelay.app.dispatch.models import (
    DeliveryStatus,
    DispatchOutcome,
    EmailRequest,
    ProviderResult,
    StatusRecord,
)
from mailrelay.app.dispatch.providers.base import EmailProvider
from mailrelay.app.dispatch.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


def compute_backoff(initial_backoff: float, attempt: int) -> float:
    """
    Delay before the retry that follows ``attempt``.

    Parameters
    ----------
    initial_backoff : float
        Seconds to wait after the first failure.
    attempt : int
        Zero-based index of the attempt that just failed.
    """
    return initial_backoff * (2 ** attempt)


class EmailDispatcher:
    """
    Idempotent, rate-limited, circuit-broken email dispatch.

    Usage:
        dispatcher = EmailDispatcher([ProviderA(), ProviderB()])
        await dispatcher.start()          # periodic queue drain

        outcome = await dispatcher.submit(
            EmailRequest(to="a@example.com", subject="Hi", body="...")
        )
        record = dispatcher.status(outcome.idempotency_key)

        await dispatcher.stop()

    Parameters
    ----------
    providers : sequence of EmailProvider
        In priority order; index 0 is tried first.
    config : DispatchConfig, optional
        Defaults to ``settings.dispatch_config()``.
    clock : callable
        Monotonic time source shared by the rate limiter and breakers.
    sleep : callable
        Awaitable used for backoff delays.
    timer_factory : callable
        Arms circuit-breaker reset timers.
    """

    def __init__(
        self,
        providers: Sequence[EmailProvider],
        config: Optional[DispatchConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        timer_factory: TimerFactory = loop_timer,
    ):
        self.providers: List[EmailProvider] = list(providers)
        if not self.providers:
            raise ConfigurationError("EmailDispatcher needs at least one provider")

        self.config = config or settings.dispatch_config()
        self.ledger = StatusLedger()
        self.queue = DeliveryQueue()
        self.rate_limiter = RateLimiter(
            self.config.rate_limit_max_requests,
            self.config.rate_limit_interval,
            clock=clock,
        )
        self.circuit_breakers: List[CircuitBreaker] = [
            CircuitBreaker(
                provider.name,
                self.config.circuit_breaker_failure_threshold,
                self.config.circuit_breaker_reset_timeout,
                clock=clock,
                timer_factory=timer_factory,
            )
            for provider in self.providers
        ]

        self._sleep = sleep
        self._admission_lock = threading.Lock()
        self._drain_lock = asyncio.Lock()
        self._drain_task: Optional[asyncio.Task] = None
        self._running = False
        self._loop_draining = False

    # ═══════════════════════════════════════════════════════════════════
    # Caller-facing operations
    # ═══════════════════════════════════════════════════════════════════

    async def submit(self, request: EmailRequest) -> DispatchOutcome:
        """Accept, defer or replay ``request`` and return its outcome."""
        token = set_dispatch_context(idempotency_key=request.idempotency_key)
        try:
            outcome = self._admit(request)
            if outcome is not None:
                return outcome
            return await self._dispatch(request)
        finally:
            reset_dispatch_context(token)

    def _admit(self, request: EmailRequest) -> Optional[DispatchOutcome]:
        """
        Atomic ledger check and rate-limit step of ``submit``.

        Returns the outcome when the request stops here (duplicate or
        deferred), or None once it is marked PROCESSING and must be sent.
        """
        key = request.idempotency_key
        with self._admission_lock:
            existing = self.ledger.get(key)
            if existing is not None:
                logger.warning(
                    "Duplicate request detected for key: %s", key,
                    extra={"idempotency_key": key},
                )
                return DispatchOutcome.duplicate(key, existing)

            if not self.rate_limiter.admit():
                self.queue.enqueue(request)
                self.ledger.record(key, DeliveryStatus.QUEUED)
                logger.warning(
                    "Rate limit exceeded. Queued email for key: %s (queue size %d)",
                    key, self.queue.size(),
                    extra={"idempotency_key": key, "queue_size": self.queue.size()},
                )
                return DispatchOutcome.rate_limited(key)

            self.ledger.record(key, DeliveryStatus.PROCESSING)
            return None

    def status(self, key: str) -> Optional[StatusRecord]:
        """Current ledger record for ``key``, or None if never submitted."""
        return self.ledger.get(key)

    @property
    def queue_size(self) -> int:
        return self.queue.size()

    def health(self) -> Dict[str, Any]:
        """Aggregated health report as a dict."""
        return run_health_check(self).to_dict()

    # ═══════════════════════════════════════════════════════════════════
    # Provider walk (fallback) and attempt loop (retry)
    # ═══════════════════════════════════════════════════════════════════

    async def _dispatch(self, request: EmailRequest) -> DispatchOutcome:
        key = request.idempotency_key
        set_dispatch_context(idempotency_key=key)
        failures: List[str] = []

        for provider, breaker in zip(self.providers, self.circuit_breakers):
            if not breaker.allow():
                logger.warning(
                    "Circuit for %s is OPEN. Falling back immediately.",
                    provider.name,
                    extra={"provider": provider.name, "circuit_state": "open"},
                )
                failures.append(f"{provider.name}: circuit open")
                continue

            try:
                await self._attempt_with_retries(provider, breaker, request)
            except ProviderExhausted as exc:
                logger.warning(
                    "Provider %s failed permanently after retries. Error: %s",
                    provider.name, exc.message,
                    extra={"provider": provider.name},
                )
                failures.append(exc.message)
                continue

            self.ledger.record(key, DeliveryStatus.SUCCESS, provider=provider.name)
            logger.info(
                "Successfully sent email with %s for key: %s", provider.name, key,
                extra={"provider": provider.name, "idempotency_key": key},
            )
            return DispatchOutcome.success(key, provider.name)

        error = AllProvidersFailed(key, failures)
        self.ledger.record(key, DeliveryStatus.FAILED, error=error.message)
        logger.error(
            "All providers failed for key: %s (%s)", key, "; ".join(failures),
            extra={"idempotency_key": key},
        )
        return DispatchOutcome.failed(key, error)

    async def _attempt_with_retries(
        self,
        provider: EmailProvider,
        breaker: CircuitBreaker,
        request: EmailRequest,
    ) -> ProviderResult:
        """
        Send via one provider, up to ``max_retries + 1`` attempts.

        Raises
        ------
        ProviderExhausted
            Every attempt failed; carries the last error.
        """
        max_retries = self.config.max_retries
        last_error: Optional[BaseException] = None

        for attempt in range(max_retries + 1):
            try:
                result = await provider.send(request)
                if not result.success:
                    raise ProviderTransientFailure(
                        provider.name, "provider reported an unsuccessful send"
                    )
            except Exception as exc:
                last_error = exc
                breaker.on_failure()
                retries_left = max_retries - attempt
                logger.warning(
                    "Attempt failed for %s (%d retries left). Error: %s",
                    provider.name, retries_left, exc,
                    extra={"provider": provider.name, "attempt": attempt + 1},
                )

                if retries_left > 0:
                    delay = compute_backoff(self.config.initial_backoff, attempt)
                    logger.info(
                        "Retrying with %s in %.2fs", provider.name, delay,
                        extra={"provider": provider.name, "delay_seconds": delay},
                    )
                    await self._sleep(delay)
                continue

            breaker.on_success()
            return result

        raise ProviderExhausted(provider.name, max_retries + 1, last_error)

    # ═══════════════════════════════════════════════════════════════════
    # Queue draining
    # ═══════════════════════════════════════════════════════════════════

    async def drain_queue(self) -> List[DispatchOutcome]:
        """
        Dispatch as many queued requests as the rate limiter admits now.

        Requests leave the queue in enqueue order. Draining stops at the
        first denial and leaves the rest for the next cycle; it never
        re-enqueues and never re-checks idempotency. Returns the outcomes
        of this cycle's batch, or an empty list if another drain is running.
        """
        if self._drain_lock.locked():
            logger.debug("Queue drain already in progress; skipping this cycle")
            return []

        async with self._drain_lock:
            batch: List[EmailRequest] = []
            with self._admission_lock:
                while not self.queue.is_empty() and self.rate_limiter.admit():
                    request = self.queue.dequeue()
                    if request is None:
                        break
                    self.ledger.record(request.idempotency_key, DeliveryStatus.PROCESSING)
                    batch.append(request)

            if not batch:
                return []

            logger.info(
                "Processing queue: dispatching %d, %d still queued",
                len(batch), self.queue.size(),
                extra={"queue_size": self.queue.size()},
            )
            outcomes = await asyncio.gather(*(self._dispatch(r) for r in batch))
            return list(outcomes)

    async def start(self) -> None:
        """Start the periodic queue drain."""
        if self._running:
            return

        self._running = True
        self._drain_task = asyncio.create_task(self._run_drain_loop())
        logger.info(
            "Queue drain started (interval: %.1fs)", self.config.queue_process_interval,
        )

    async def stop(self) -> None:
        """
        Stop the periodic queue drain.

        An idle loop is cancelled out of its sleep. A drain cycle that is
        already dispatching is awaited instead, so every request it took off
        the queue still reaches SUCCESS or FAILED.
        """
        self._running = False
        task = self._drain_task
        if task is not None and not task.done():
            if self._loop_draining:
                logger.info(
                    "Waiting for in-flight queue drain to finish",
                    extra={"queue_size": self.queue.size()},
                )
                await asyncio.shield(task)
            else:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._drain_task = None
        logger.info("Queue drain stopped")

    async def _run_drain_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.queue_process_interval)
            except asyncio.CancelledError:
                break

            # No await between waking and raising the flag
            self._loop_draining = True
            try:
                await self.drain_queue()
            except Exception:
                logger.exception("Queue drain cycle failed")
            finally:
                self._loop_draining = False
