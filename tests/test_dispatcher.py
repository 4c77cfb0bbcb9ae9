"""
test_dispatcher.py — Tests for the dispatch orchestration engine.

Covers:
    • Happy-path delivery through the primary provider
    • Retry with exponential backoff
    • Fallback to the next provider
    • Circuit breaker skip, trip and recovery
    • Idempotent replay of known keys
    • Rate limiting, queueing and queue draining
    • Periodic drain lifecycle
    • Log context around submit()

Run with:
    pytest tests/test_dispatcher.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from mailrelay.app.core.errors import ConfigurationError, ProviderTransientFailure
from mailrelay.app.core.logging_config import (
    get_dispatch_context,
    reset_dispatch_context,
    set_dispatch_context,
)
from mailrelay.app.dispatch.circuit_breaker import CircuitState
from mailrelay.app.dispatch.dispatcher import EmailDispatcher
from mailrelay.app.dispatch.models import (
    DeliveryStatus,
    EmailRequest,
    OutcomeStatus,
)
from tests.doubles import ScriptedProvider


def _make_request(key: str, to: str = "test@example.com") -> EmailRequest:
    return EmailRequest(to=to, subject="Test", body="This is a test", idempotency_key=key)


def _fail(name: str = "ProviderA") -> ProviderTransientFailure:
    return ProviderTransientFailure(name, "scripted failure")


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Delivery, Retry & Fallback
# ═══════════════════════════════════════════════════════════════════════════

class TestDelivery:

    @pytest.mark.asyncio
    async def test_primary_success(self, make_dispatcher, sleep):
        a, b = ScriptedProvider("ProviderA"), ScriptedProvider("ProviderB")
        dispatcher = make_dispatcher([a, b])

        outcome = await dispatcher.submit(_make_request("k1"))

        assert outcome.status == OutcomeStatus.SUCCESS
        assert outcome.provider == "ProviderA"
        assert a.call_count == 1
        assert b.call_count == 0
        assert sleep.delays == []

        record = dispatcher.status("k1")
        assert record.status == DeliveryStatus.SUCCESS
        assert record.provider == "ProviderA"

    @pytest.mark.asyncio
    async def test_retry_then_success(self, make_dispatcher, sleep):
        a = ScriptedProvider("ProviderA", [_fail()])
        b = ScriptedProvider("ProviderB")
        dispatcher = make_dispatcher([a, b])

        outcome = await dispatcher.submit(_make_request("k1"))

        assert outcome.status == OutcomeStatus.SUCCESS
        assert outcome.provider == "ProviderA"
        assert a.call_count == 2
        assert b.call_count == 0
        assert sleep.delays == [1.0]
        # Success zeroes the breaker's counter
        assert dispatcher.circuit_breakers[0].failure_count == 0

    @pytest.mark.asyncio
    async def test_fallback_after_exhausting_primary(self, make_dispatcher, sleep):
        a = ScriptedProvider("ProviderA", always_fail=True)
        b = ScriptedProvider("ProviderB")
        dispatcher = make_dispatcher([a, b])

        outcome = await dispatcher.submit(_make_request("k1"))

        assert outcome.status == OutcomeStatus.SUCCESS
        assert outcome.provider == "ProviderB"
        assert a.call_count == 4
        assert b.call_count == 1
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert dispatcher.status("k1").provider == "ProviderB"
        assert dispatcher.circuit_breakers[0].failure_count == 4
        assert dispatcher.circuit_breakers[0].state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_all_providers_fail(self, make_dispatcher, sleep):
        a = ScriptedProvider("ProviderA", always_fail=True)
        b = ScriptedProvider("ProviderB", always_fail=True)
        dispatcher = make_dispatcher([a, b])

        outcome = await dispatcher.submit(_make_request("k1"))

        assert outcome.status == OutcomeStatus.FAILED
        assert sleep.delays == [1.0, 2.0, 4.0, 1.0, 2.0, 4.0]
        assert a.call_count == 4
        assert b.call_count == 4

        assert outcome.error is not None
        assert outcome.error.message == "All providers failed to send the email."
        assert len(outcome.error.failures) == 2
        assert outcome.error.failures[0].startswith("Provider ProviderA failed after 4 attempts")
        assert outcome.error.failures[1].startswith("Provider ProviderB failed after 4 attempts")

        record = dispatcher.status("k1")
        assert record.status == DeliveryStatus.FAILED
        assert record.error == "All providers failed to send the email."

    @pytest.mark.asyncio
    async def test_zero_retries_means_single_attempt(self, make_dispatcher, sleep):
        a = ScriptedProvider("ProviderA", always_fail=True)
        b = ScriptedProvider("ProviderB")
        dispatcher = make_dispatcher([a, b], max_retries=0)

        outcome = await dispatcher.submit(_make_request("k1"))

        assert outcome.provider == "ProviderB"
        assert a.call_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_unsuccessful_result_counts_as_failure(self, make_dispatcher, sleep):
        a = ScriptedProvider("ProviderA", [False])
        dispatcher = make_dispatcher([a])

        outcome = await dispatcher.submit(_make_request("k1"))

        assert outcome.status == OutcomeStatus.SUCCESS
        assert a.call_count == 2
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_arbitrary_exception_counts_as_failure(self, make_dispatcher, sleep):
        a = ScriptedProvider("ProviderA", [RuntimeError("connection reset")])
        dispatcher = make_dispatcher([a])

        outcome = await dispatcher.submit(_make_request("k1"))

        assert outcome.status == OutcomeStatus.SUCCESS
        assert a.call_count == 2
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_backoff_scales_with_config(self, make_dispatcher, sleep):
        a = ScriptedProvider("ProviderA", always_fail=True)
        dispatcher = make_dispatcher([a], initial_backoff=0.5, max_retries=2)

        await dispatcher.submit(_make_request("k1"))

        assert sleep.delays == [0.5, 1.0]

    def test_requires_a_provider(self, make_dispatcher):
        with pytest.raises(ConfigurationError):
            make_dispatcher([])


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Circuit Breaking
# ═══════════════════════════════════════════════════════════════════════════

class TestCircuitBreaking:

    @pytest.mark.asyncio
    async def test_open_circuit_is_skipped(self, make_dispatcher, sleep):
        a = ScriptedProvider("ProviderA", always_fail=True)
        b = ScriptedProvider("ProviderB")
        dispatcher = make_dispatcher([a, b], circuit_breaker_failure_threshold=1)

        await dispatcher.submit(_make_request("k1"))
        # Breaker opens on the first failure; the retry loop still runs out
        assert a.call_count == 4
        assert dispatcher.circuit_breakers[0].state == CircuitState.OPEN

        sleep.delays.clear()
        outcome = await dispatcher.submit(_make_request("k2"))

        assert outcome.provider == "ProviderB"
        assert a.call_count == 4
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_all_circuits_open(self, make_dispatcher):
        a = ScriptedProvider("ProviderA", always_fail=True)
        b = ScriptedProvider("ProviderB", always_fail=True)
        dispatcher = make_dispatcher(
            [a, b], circuit_breaker_failure_threshold=1, max_retries=0,
        )

        first = await dispatcher.submit(_make_request("k1"))
        assert first.status == OutcomeStatus.FAILED

        second = await dispatcher.submit(_make_request("k2"))

        assert second.status == OutcomeStatus.FAILED
        assert second.error.failures == [
            "ProviderA: circuit open",
            "ProviderB: circuit open",
        ]
        assert a.call_count == 1
        assert b.call_count == 1
        assert dispatcher.status("k2").status == DeliveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_trip_and_half_open_recovery(self, make_dispatcher, timer):
        a = ScriptedProvider("ProviderA", [_fail(), _fail()])
        b = ScriptedProvider("ProviderB")
        dispatcher = make_dispatcher(
            [a, b], circuit_breaker_failure_threshold=2, max_retries=0,
        )
        breaker = dispatcher.circuit_breakers[0]

        assert (await dispatcher.submit(_make_request("k1"))).provider == "ProviderB"
        assert breaker.state == CircuitState.CLOSED
        assert (await dispatcher.submit(_make_request("k2"))).provider == "ProviderB"
        assert breaker.state == CircuitState.OPEN

        assert (await dispatcher.submit(_make_request("k3"))).provider == "ProviderB"
        assert a.call_count == 2

        timer.fire_all()
        assert breaker.state == CircuitState.HALF_OPEN

        outcome = await dispatcher.submit(_make_request("k4"))
        assert outcome.provider == "ProviderA"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, make_dispatcher, timer):
        a = ScriptedProvider("ProviderA", always_fail=True)
        b = ScriptedProvider("ProviderB")
        dispatcher = make_dispatcher(
            [a, b], circuit_breaker_failure_threshold=3, max_retries=0,
        )
        breaker = dispatcher.circuit_breakers[0]

        for i in range(3):
            await dispatcher.submit(_make_request(f"k{i}"))
        assert breaker.state == CircuitState.OPEN

        timer.fire_all()
        await dispatcher.submit(_make_request("trial"))

        assert a.call_count == 4
        assert breaker.state == CircuitState.OPEN
        assert len(timer.pending) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Idempotency
# ═══════════════════════════════════════════════════════════════════════════

class TestIdempotency:

    @pytest.mark.asyncio
    async def test_replay_of_delivered_key(self, make_dispatcher):
        a = ScriptedProvider("ProviderA")
        dispatcher = make_dispatcher([a])

        await dispatcher.submit(_make_request("k1"))
        record = dispatcher.status("k1")

        outcome = await dispatcher.submit(_make_request("k1", to="other@example.com"))

        assert outcome.status == OutcomeStatus.DUPLICATE
        assert outcome.original_status is record
        assert outcome.original_status.status == DeliveryStatus.SUCCESS
        assert a.call_count == 1
        assert dispatcher.status("k1") is record

    @pytest.mark.asyncio
    async def test_replay_of_failed_key_is_not_retried(self, make_dispatcher):
        a = ScriptedProvider("ProviderA", always_fail=True)
        dispatcher = make_dispatcher([a], max_retries=0)

        await dispatcher.submit(_make_request("k1"))
        outcome = await dispatcher.submit(_make_request("k1"))

        assert outcome.status == OutcomeStatus.DUPLICATE
        assert outcome.original_status.status == DeliveryStatus.FAILED
        assert a.call_count == 1

    @pytest.mark.asyncio
    async def test_replay_of_queued_key(self, make_dispatcher):
        a = ScriptedProvider("ProviderA")
        dispatcher = make_dispatcher([a], rate_limit_max_requests=1)

        await dispatcher.submit(_make_request("k1"))
        queued = await dispatcher.submit(_make_request("k2"))
        assert queued.status == OutcomeStatus.RATE_LIMITED

        outcome = await dispatcher.submit(_make_request("k2"))

        assert outcome.status == OutcomeStatus.DUPLICATE
        assert outcome.original_status.status == DeliveryStatus.QUEUED
        assert dispatcher.queue_size == 1

    @pytest.mark.asyncio
    async def test_duplicate_does_not_consume_rate_budget(self, make_dispatcher):
        a = ScriptedProvider("ProviderA")
        dispatcher = make_dispatcher([a], rate_limit_max_requests=1)

        await dispatcher.submit(_make_request("k1"))
        outcome = await dispatcher.submit(_make_request("k1"))

        assert outcome.status == OutcomeStatus.DUPLICATE
        assert dispatcher.rate_limiter.in_window() == 1
        assert dispatcher.queue_size == 0

    @pytest.mark.asyncio
    async def test_concurrent_submits_with_same_key(self, make_dispatcher):
        a = ScriptedProvider("ProviderA")
        dispatcher = make_dispatcher([a])
        request = _make_request("k1")

        outcomes = await asyncio.gather(
            dispatcher.submit(request), dispatcher.submit(request),
        )

        statuses = sorted(o.status.value for o in outcomes)
        assert statuses == ["duplicate", "success"]
        assert a.call_count == 1
        duplicate = next(o for o in outcomes if o.status == OutcomeStatus.DUPLICATE)
        assert duplicate.original_status.status == DeliveryStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_unknown_key_has_no_status(self, make_dispatcher):
        dispatcher = make_dispatcher([ScriptedProvider("ProviderA")])
        assert dispatcher.status("never-seen") is None


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Rate Limiting & Queue Draining
# ═══════════════════════════════════════════════════════════════════════════

class TestRateLimitingAndQueue:

    @pytest.mark.asyncio
    async def test_over_limit_is_queued(self, make_dispatcher):
        a = ScriptedProvider("ProviderA")
        dispatcher = make_dispatcher([a], rate_limit_max_requests=2)

        for i in range(2):
            await dispatcher.submit(_make_request(f"k{i}"))
        late = _make_request("late")
        outcome = await dispatcher.submit(late)

        assert outcome.status == OutcomeStatus.RATE_LIMITED
        assert outcome.message == "Email has been queued and will be sent later."
        assert a.call_count == 2
        assert dispatcher.queue_size == 1
        assert dispatcher.queue.snapshot()[-1] is late
        assert dispatcher.status("late").status == DeliveryStatus.QUEUED

    @pytest.mark.asyncio
    async def test_drain_dispatches_what_the_window_allows(self, make_dispatcher, clock):
        a = ScriptedProvider("ProviderA")
        dispatcher = make_dispatcher([a], rate_limit_max_requests=2)

        for i in range(6):
            await dispatcher.submit(_make_request(f"k{i}"))
        assert dispatcher.queue_size == 4

        clock.advance(60.0)
        outcomes = await dispatcher.drain_queue()

        assert [o.idempotency_key for o in outcomes] == ["k2", "k3"]
        assert all(o.status == OutcomeStatus.SUCCESS for o in outcomes)
        assert [r.idempotency_key for r in a.calls] == ["k0", "k1", "k2", "k3"]
        assert dispatcher.queue_size == 2
        assert dispatcher.status("k3").status == DeliveryStatus.SUCCESS
        assert dispatcher.status("k4").status == DeliveryStatus.QUEUED
        assert [r.idempotency_key for r in dispatcher.queue.snapshot()] == ["k4", "k5"]

    @pytest.mark.asyncio
    async def test_drain_with_full_window_does_nothing(self, make_dispatcher):
        a = ScriptedProvider("ProviderA")
        dispatcher = make_dispatcher([a], rate_limit_max_requests=1)

        await dispatcher.submit(_make_request("k0"))
        await dispatcher.submit(_make_request("k1"))

        assert await dispatcher.drain_queue() == []
        assert dispatcher.queue_size == 1
        assert dispatcher.status("k1").status == DeliveryStatus.QUEUED

    @pytest.mark.asyncio
    async def test_drain_of_empty_queue(self, make_dispatcher):
        dispatcher = make_dispatcher([ScriptedProvider("ProviderA")])
        assert await dispatcher.drain_queue() == []
        # No admission consumed
        assert dispatcher.rate_limiter.in_window() == 0

    @pytest.mark.asyncio
    async def test_drained_request_can_fail(self, make_dispatcher, clock):
        a = ScriptedProvider("ProviderA", [True], always_fail=True)
        dispatcher = make_dispatcher([a], rate_limit_max_requests=1, max_retries=0)

        await dispatcher.submit(_make_request("k0"))
        await dispatcher.submit(_make_request("k1"))
        clock.advance(60.0)

        outcomes = await dispatcher.drain_queue()

        assert len(outcomes) == 1
        assert outcomes[0].status == OutcomeStatus.FAILED
        assert dispatcher.status("k1").status == DeliveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_overlapping_drain_is_skipped(self, make_dispatcher, clock):
        gate = asyncio.Event()
        a = ScriptedProvider("ProviderA", gate=gate)
        dispatcher = make_dispatcher([a], rate_limit_max_requests=1)

        # Fill the window so the submit below is deferred
        assert dispatcher.rate_limiter.admit()
        await dispatcher.submit(_make_request("k1"))
        assert dispatcher.queue_size == 1
        clock.advance(60.0)

        first = asyncio.create_task(dispatcher.drain_queue())
        for _ in range(10):
            if a.call_count:
                break
            await asyncio.sleep(0)

        assert a.call_count == 1
        assert dispatcher.status("k1").status == DeliveryStatus.PROCESSING
        assert await dispatcher.drain_queue() == []

        gate.set()
        outcomes = await first

        assert [o.status for o in outcomes] == [OutcomeStatus.SUCCESS]
        assert dispatcher.status("k1").status == DeliveryStatus.SUCCESS


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Periodic Drain Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestPeriodicDrain:

    @pytest.mark.asyncio
    async def test_background_drain_delivers_queued_email(self, make_dispatcher, clock):
        a = ScriptedProvider("ProviderA")
        dispatcher = make_dispatcher(
            [a], rate_limit_max_requests=1, queue_process_interval=0.01,
        )

        await dispatcher.submit(_make_request("k0"))
        await dispatcher.submit(_make_request("k1"))
        clock.advance(60.0)

        await dispatcher.start()
        try:
            for _ in range(100):
                if dispatcher.status("k1").status == DeliveryStatus.SUCCESS:
                    break
                await asyncio.sleep(0.01)
        finally:
            await dispatcher.stop()

        assert dispatcher.status("k1").status == DeliveryStatus.SUCCESS
        assert dispatcher.queue_size == 0

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_cancels(self, make_dispatcher):
        dispatcher = make_dispatcher([ScriptedProvider("ProviderA")])

        await dispatcher.start()
        task = dispatcher._drain_task
        await dispatcher.start()
        assert dispatcher._drain_task is task

        await dispatcher.stop()
        assert task.done()
        assert dispatcher._drain_task is None

    @pytest.mark.asyncio
    async def test_stop_without_start(self, make_dispatcher):
        dispatcher = make_dispatcher([ScriptedProvider("ProviderA")])
        await dispatcher.stop()
        assert dispatcher._drain_task is None

    @pytest.mark.asyncio
    async def test_default_config_from_settings(self):
        dispatcher = EmailDispatcher([ScriptedProvider("ProviderA")])
        assert dispatcher.config.rate_limit_max_requests == 10
        assert dispatcher.config.max_retries == 3
        assert len(dispatcher.circuit_breakers) == 1

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_drain_finish(self, make_dispatcher, clock):
        gate = asyncio.Event()
        a = ScriptedProvider("ProviderA", gate=gate)
        dispatcher = make_dispatcher(
            [a], rate_limit_max_requests=1, queue_process_interval=0.01,
        )

        assert dispatcher.rate_limiter.admit()
        await dispatcher.submit(_make_request("k1"))
        clock.advance(60.0)

        await dispatcher.start()
        for _ in range(100):
            if a.call_count:
                break
            await asyncio.sleep(0.01)
        assert a.call_count == 1
        assert dispatcher.queue_size == 0

        stopping = asyncio.create_task(dispatcher.stop())
        await asyncio.sleep(0.02)
        assert not stopping.done()
        assert dispatcher.status("k1").status == DeliveryStatus.PROCESSING

        gate.set()
        await stopping

        assert dispatcher.status("k1").status == DeliveryStatus.SUCCESS
        assert dispatcher._drain_task is None


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: Log Context
# ═══════════════════════════════════════════════════════════════════════════

class TestLogContext:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit, resubmit", [
        (10, False),  # delivered
        (10, True),   # duplicate
        (1, True),    # second call is rate limited
    ])
    async def test_submit_restores_caller_context(self, make_dispatcher, limit, resubmit):
        dispatcher = make_dispatcher(
            [ScriptedProvider("ProviderA")], rate_limit_max_requests=limit,
        )
        token = set_dispatch_context(idempotency_key="caller")
        try:
            await dispatcher.submit(_make_request("k1"))
            assert get_dispatch_context() == {"idempotency_key": "caller"}
            if resubmit:
                key = "k1" if limit > 1 else "k2"
                await dispatcher.submit(_make_request(key))
                assert get_dispatch_context() == {"idempotency_key": "caller"}
        finally:
            reset_dispatch_context(token)
