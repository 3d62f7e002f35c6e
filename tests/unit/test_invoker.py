"""
Unit tests for the resilient invoker.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from pipeguard.faults import EmbeddingFault, NetworkFault, StorageFault, ValidationFault
from pipeguard.protocols import CircuitState, ErrorType
from pipeguard.resilience.circuit_breaker import CircuitBreaker
from pipeguard.resilience.events import EventBus, ResilienceEventType
from pipeguard.resilience.invoker import ResilientInvoker
from tests.helpers import RecordingSleep, fast_service


@pytest.fixture
def bus():
    return EventBus()


def make_invoker(clock, bus, error_type=ErrorType.STORAGE, **service_overrides):
    config = fast_service(error_type, **service_overrides)
    breaker = CircuitBreaker("vector-store", config.circuit_breaker, clock=clock, event_bus=bus)
    sleep = RecordingSleep(clock)
    invoker = ResilientInvoker("vector-store", config, breaker, event_bus=bus, sleep=sleep, clock=clock)
    return invoker, sleep


class TestInvokeSuccessAndRetry:
    """Happy path and retry loop."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, clock, bus):
        invoker, sleep = make_invoker(clock, bus)
        operation = AsyncMock(return_value="ack")

        result = await invoker.invoke(operation)

        assert result.ok
        assert result.value == "ack"
        assert result.attempts == 1
        assert sleep.delays == []
        assert invoker.metrics.successful_requests == 1

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, clock, bus):
        invoker, sleep = make_invoker(clock, bus, max_retries=3)
        operation = AsyncMock(side_effect=[StorageFault("busy"), StorageFault("busy"), "ack"])

        result = await invoker.invoke(operation)

        assert result.ok
        assert result.attempts == 3
        assert sleep.delays == [0.001, 0.002]
        assert invoker.metrics.retry_attempts == 2
        assert invoker.metrics.failed_requests == 2
        assert invoker.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, clock, bus):
        invoker, _ = make_invoker(clock, bus, max_retries=2)
        operation = AsyncMock(side_effect=StorageFault("down"))

        result = await invoker.invoke(operation, url="https://example.com/a")

        assert not result.ok
        assert operation.await_count == 3
        error = result.error
        assert error.error_type == ErrorType.STORAGE
        assert error.recoverable is True
        assert error.retry_count == 2
        assert error.url == "https://example.com/a"
        assert [e.event_type for e in bus.recent()] == [ResilienceEventType.RETRY_EXHAUSTED]

    @pytest.mark.asyncio
    async def test_non_recoverable_fault_not_retried(self, clock, bus):
        invoker, sleep = make_invoker(clock, bus, max_retries=3)
        operation = AsyncMock(side_effect=EmbeddingFault("bad model", recoverable=False))

        result = await invoker.invoke(operation)

        assert operation.await_count == 1
        assert result.error.error_type == ErrorType.EMBEDDING
        assert result.error.recoverable is False
        assert result.error.retry_count == 0
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_unclassified_exception_gets_service_type(self, clock, bus):
        invoker, _ = make_invoker(clock, bus, max_retries=0)
        operation = AsyncMock(side_effect=KeyError("vector"))

        result = await invoker.invoke(operation)

        assert result.error.error_type == ErrorType.STORAGE
        assert result.error.recoverable is True
        assert "KeyError" in result.error.message
        assert result.error.stack_trace

    @pytest.mark.asyncio
    async def test_each_attempt_gets_fresh_context(self, clock, bus):
        invoker, _ = make_invoker(clock, bus, max_retries=1)
        operation = AsyncMock(side_effect=NetworkFault("reset"))

        first = await invoker.invoke(operation, endpoint="/vectors", method="PUT")
        second = await invoker.invoke(operation, endpoint="/vectors", method="PUT")

        assert first.error.context.request_id != second.error.context.request_id
        assert first.error.context.endpoint == "/vectors"
        assert first.error.context.method == "PUT"
        assert first.error.context.additional_info["attempt"] == 2
        assert first.error.error_type == ErrorType.NETWORK


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_attempt_timeout_classified_with_service_type(self, clock, bus):
        invoker, _ = make_invoker(clock, bus, error_type=ErrorType.EMBEDDING, max_retries=0, call_timeout=0.05)

        async def slow():
            await asyncio.sleep(5)

        result = await invoker.invoke(slow)

        assert result.error.error_type == ErrorType.EMBEDDING
        assert result.error.recoverable is True
        assert "timed out" in result.error.message
        assert invoker.breaker.failure_count == 1


class TestBreakerIntegration:
    """Circuit breaker behaviour as seen through the invoker."""

    @pytest.mark.asyncio
    async def test_five_failures_open_and_sixth_rejected(self, clock, bus):
        invoker, _ = make_invoker(clock, bus, max_retries=0, failure_threshold=5)
        operation = AsyncMock(side_effect=StorageFault("down"))

        for _ in range(5):
            result = await invoker.invoke(operation)
            assert not result.ok

        assert invoker.breaker.state == CircuitState.OPEN
        assert operation.await_count == 5

        rejected = await invoker.invoke(operation)
        assert operation.await_count == 5
        assert rejected.error.recoverable is False
        assert "Circuit open" in rejected.error.message
        assert rejected.attempts == 0
        assert invoker.breaker.failure_count == 5

    @pytest.mark.asyncio
    async def test_open_breaker_ends_retry_loop(self, clock, bus):
        invoker, sleep = make_invoker(clock, bus, max_retries=10, failure_threshold=3)
        operation = AsyncMock(side_effect=StorageFault("down"))

        result = await invoker.invoke(operation)

        assert operation.await_count == 3
        assert result.error.recoverable is False
        assert result.error.retry_count == 2
        assert len(sleep.delays) == 3

    @pytest.mark.asyncio
    async def test_validation_faults_do_not_trip_breaker(self, clock, bus):
        invoker, _ = make_invoker(clock, bus, max_retries=0, failure_threshold=2)
        operation = AsyncMock(side_effect=ValidationFault("bad input"))

        for _ in range(5):
            result = await invoker.invoke(operation)
            assert result.error.error_type == ErrorType.VALIDATION

        assert invoker.breaker.state == CircuitState.CLOSED
        assert invoker.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_trial_released_on_cancellation(self, clock, bus):
        invoker, _ = make_invoker(clock, bus, max_retries=0, failure_threshold=1)
        await invoker.invoke(AsyncMock(side_effect=StorageFault("down")))
        clock.advance(30)

        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(60)

        task = asyncio.create_task(invoker.invoke(hang))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await invoker.breaker.can_execute()


class TestStopEvent:
    @pytest.mark.asyncio
    async def test_no_attempt_after_stop(self, clock, bus):
        invoker, _ = make_invoker(clock, bus)
        stop = asyncio.Event()
        stop.set()
        operation = AsyncMock(return_value="ack")

        result = await invoker.invoke(operation, stop_event=stop)

        assert operation.await_count == 0
        assert result.error.error_type == ErrorType.UNKNOWN
        assert result.error.recoverable is True

    @pytest.mark.asyncio
    async def test_no_retry_after_stop(self, clock, bus):
        invoker, sleep = make_invoker(clock, bus, max_retries=3)
        stop = asyncio.Event()

        async def fail_and_stop():
            stop.set()
            raise StorageFault("down")

        result = await invoker.invoke(fail_and_stop, stop_event=stop)

        assert result.error.error_type == ErrorType.STORAGE
        assert result.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_stop_during_backoff_returns_last_error(self, clock, bus):
        config = fast_service(ErrorType.STORAGE, max_retries=3)
        breaker = CircuitBreaker("vector-store", config.circuit_breaker, clock=clock)
        backing_off = asyncio.Event()

        async def long_sleep(delay):
            backing_off.set()
            await asyncio.sleep(3600)

        invoker = ResilientInvoker("vector-store", config, breaker, event_bus=bus, sleep=long_sleep, clock=clock)
        operation = AsyncMock(side_effect=StorageFault("write conflict"))
        stop = asyncio.Event()

        task = asyncio.create_task(invoker.invoke(operation, stop_event=stop))
        await backing_off.wait()
        stop.set()
        result = await asyncio.wait_for(task, timeout=5)

        assert operation.await_count == 1
        assert result.error.error_type == ErrorType.STORAGE
        assert result.error.message == "write conflict"
        assert result.attempts == 1
        assert invoker.metrics.retry_attempts == 0
        assert not [e for e in bus.recent() if e.event_type == ResilienceEventType.RETRY_EXHAUSTED]


class TestFallback:
    @pytest.mark.asyncio
    async def test_fallback_used_when_primary_fails(self, clock, bus):
        invoker, _ = make_invoker(clock, bus, max_retries=0)
        primary = AsyncMock(side_effect=StorageFault("down"))
        fallback = AsyncMock(return_value="cached")

        result = await invoker.invoke_with_fallback(primary, fallback)

        assert result.ok
        assert result.value == "cached"
        assert result.used_fallback
        assert ResilienceEventType.FALLBACK_TRIGGERED in [e.event_type for e in bus.recent()]

    @pytest.mark.asyncio
    async def test_fallback_not_called_on_success(self, clock, bus):
        invoker, _ = make_invoker(clock, bus)
        fallback = AsyncMock(return_value="cached")

        result = await invoker.invoke_with_fallback(AsyncMock(return_value="fresh"), fallback)

        assert result.value == "fresh"
        assert not result.used_fallback
        fallback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_both_failing_reports_both_messages(self, clock, bus):
        invoker, _ = make_invoker(clock, bus, max_retries=0)
        primary = AsyncMock(side_effect=StorageFault("primary down"))
        fallback = AsyncMock(side_effect=RuntimeError("replica down"))

        result = await invoker.invoke_with_fallback(primary, fallback)

        assert not result.ok
        info = result.error.context.additional_info
        assert info["primary_error"] == "primary down"
        assert "replica down" in info["fallback_error"]
        assert info["circuit_breaker_state"] == "closed"
        assert result.error.error_type == ErrorType.STORAGE
