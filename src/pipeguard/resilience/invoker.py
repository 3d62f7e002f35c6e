"""
Resilient invocation of a single external call.

Composes the rate limiter, the circuit breaker and the retry policy of one
service around an awaitable operation and always returns exactly one terminal
outcome: a value or a CrawlerError. Faults never propagate to the caller;
only task cancellation does.
"""

from __future__ import annotations

import asyncio
import time
import traceback
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Mapping, Optional, TypeVar

import structlog

from pipeguard.config.config import ServiceConfig
from pipeguard.faults import CollaboratorFault
from pipeguard.observability.metrics import METRICS
from pipeguard.protocols import CircuitState, CrawlerError, ErrorContext, ErrorType
from pipeguard.resilience.circuit_breaker import CircuitBreaker
from pipeguard.resilience.events import EventBus, EventSeverity, ResilienceEventType
from pipeguard.resilience.metrics import ResilienceMetrics
from pipeguard.resilience.rate_limiter import ServiceRateLimiter
from pipeguard.resilience.retry import RetryPolicy

logger = structlog.get_logger(__name__)

T = TypeVar("T")
Operation = Callable[[], Awaitable[T]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class InvocationResult(Generic[T]):
    """Terminal outcome of one invocation: either ``value`` or ``error``."""

    value: Optional[T] = None
    error: Optional[CrawlerError] = None
    attempts: int = 0
    used_fallback: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class ResilientInvoker:
    """
    Wraps calls to one external service.

    Per invocation the rate limiter is consulted once, then the breaker is
    checked before every attempt. Each attempt runs under the service's call
    timeout with a fresh ErrorContext. Failed attempts are retried while the
    retry policy allows it, sleeping for the backoff delay in the calling task.
    """

    def __init__(
        self,
        service_name: str,
        config: ServiceConfig,
        breaker: CircuitBreaker,
        *,
        limiter: Optional[ServiceRateLimiter] = None,
        metrics: Optional[ResilienceMetrics] = None,
        event_bus: Optional[EventBus] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.service_name = service_name
        self.config = config
        self.breaker = breaker
        self.limiter = limiter
        self.metrics = metrics or ResilienceMetrics(service_name)
        self.event_bus = event_bus
        self.retry_policy = retry_policy or RetryPolicy(config.retry)
        self._sleep = sleep
        self._clock = clock

    async def invoke(
        self,
        operation: Operation[T],
        *,
        url: Optional[str] = None,
        endpoint: Optional[str] = None,
        method: str = "call",
        parameters: Optional[Mapping[str, Any]] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> InvocationResult[T]:
        endpoint = endpoint or url or self.service_name

        if self.limiter is not None:
            permit = await self.limiter.acquire()
            if not permit.allowed:
                return self._rate_limited(url)
            if permit.deferred:
                self._record_rate_limit_hit(url, waited=permit.waited)

        attempt = 0
        while True:
            if stop_event is not None and stop_event.is_set():
                self._count("cancelled")
                return InvocationResult(
                    error=CrawlerError(
                        error_type=ErrorType.UNKNOWN,
                        message=f"Run cancelled before attempt {attempt + 1} against {self.service_name}",
                        recoverable=True,
                        url=url,
                        retry_count=max(0, attempt - 1),
                    ),
                    attempts=attempt,
                )

            admission = await self.breaker.admit()
            if admission is None:
                return self._circuit_open(url, attempt)

            attempt += 1
            context = ErrorContext(
                request_id=str(uuid.uuid4()),
                endpoint=endpoint,
                method=method,
                parameters=dict(parameters) if parameters else None,
                additional_info={"service": self.service_name, "attempt": attempt},
            )

            started = self._clock()
            trips_breaker = True
            try:
                value = await asyncio.wait_for(operation(), timeout=self.config.call_timeout)
            except asyncio.CancelledError:
                self.breaker.release_trial(admission)
                raise
            except asyncio.TimeoutError:
                error = CrawlerError(
                    error_type=self.config.error_type,
                    message=f"Call to {self.service_name} timed out after {self.config.call_timeout}s",
                    recoverable=True,
                    url=url,
                    context=context,
                    retry_count=attempt - 1,
                )
            except CollaboratorFault as fault:
                trips_breaker = fault.trips_breaker
                error = CrawlerError(
                    error_type=fault.error_type,
                    message=fault.message,
                    recoverable=fault.recoverable,
                    url=url,
                    context=context,
                    retry_count=attempt - 1,
                    stack_trace=traceback.format_exc(),
                )
            except Exception as e:
                error = CrawlerError(
                    error_type=self.config.error_type,
                    message=f"{type(e).__name__}: {e}",
                    recoverable=True,
                    url=url,
                    context=context,
                    retry_count=attempt - 1,
                    stack_trace=traceback.format_exc(),
                )
            else:
                elapsed = self._clock() - started
                self.metrics.record_attempt(True, elapsed)
                METRICS["request_latency_seconds"].labels(service=self.service_name).observe(elapsed)
                await self.breaker.record_success(admission)
                self._count("success")
                return InvocationResult(value=value, attempts=attempt)

            elapsed = self._clock() - started
            self.metrics.record_attempt(False, elapsed)
            METRICS["request_latency_seconds"].labels(service=self.service_name).observe(elapsed)
            if trips_breaker:
                await self.breaker.record_failure(admission)
            else:
                self.breaker.release_trial(admission)

            logger.warning(
                "Service call failed",
                service=self.service_name,
                attempt=attempt,
                error_type=error.error_type.value,
                recoverable=error.recoverable,
                error=error.message,
                url=url,
            )

            stopping = stop_event is not None and stop_event.is_set()
            if not stopping and self.retry_policy.should_retry(attempt, error):
                delay = self.retry_policy.next_delay(attempt)
                logger.debug("Retrying after backoff", service=self.service_name, attempt=attempt, delay=delay)
                if await self._backoff(delay, stop_event):
                    self.metrics.record_retry()
                    METRICS["retry_attempts_total"].labels(service=self.service_name).inc()
                    continue
                logger.info("Run stopped during backoff", service=self.service_name, attempt=attempt, url=url)
                stopping = True

            if error.recoverable and not stopping and self.event_bus is not None:
                self.event_bus.publish(
                    ResilienceEventType.RETRY_EXHAUSTED,
                    self.service_name,
                    f"Giving up after {attempt} attempts: {error.message}",
                    severity=EventSeverity.ERROR,
                    metadata={"attempts": attempt, "error_type": error.error_type.value, "url": url},
                )
            self._count("failure")
            return InvocationResult(error=error, attempts=attempt)

    async def invoke_with_fallback(
        self,
        primary: Operation[T],
        fallback: Operation[T],
        **kwargs: Any,
    ) -> InvocationResult[T]:
        """
        Run ``primary`` through the full resilience path and ``fallback`` once if it fails.

        The fallback bypasses breaker and retries. When it fails as well the
        returned error carries both messages and the breaker state.
        """
        result = await self.invoke(primary, **kwargs)
        if result.ok or result.error is None:
            return result

        primary_error = result.error
        if self.event_bus is not None:
            self.event_bus.publish(
                ResilienceEventType.FALLBACK_TRIGGERED,
                self.service_name,
                f"Primary failed, using fallback: {primary_error.message}",
                severity=EventSeverity.WARNING,
                metadata={"error_type": primary_error.error_type.value},
            )

        try:
            value = await asyncio.wait_for(fallback(), timeout=self.config.call_timeout)
        except asyncio.TimeoutError:
            fallback_message = f"Fallback timed out after {self.config.call_timeout}s"
        except Exception as e:
            fallback_message = str(e) if isinstance(e, CollaboratorFault) else f"{type(e).__name__}: {e}"
        else:
            logger.info("Fallback succeeded", service=self.service_name)
            return InvocationResult(value=value, attempts=result.attempts, used_fallback=True)

        breaker_state = self.breaker.state
        context = ErrorContext(
            request_id=str(uuid.uuid4()),
            endpoint=kwargs.get("endpoint") or kwargs.get("url") or self.service_name,
            method=kwargs.get("method", "call"),
            additional_info={
                "primary_error": primary_error.message,
                "fallback_error": fallback_message,
                "circuit_breaker_state": breaker_state.value,
            },
        )
        error = CrawlerError(
            error_type=primary_error.error_type,
            message=f"Primary and fallback both failed for {self.service_name}: "
            f"{primary_error.message}; fallback: {fallback_message}",
            recoverable=primary_error.recoverable,
            url=primary_error.url,
            context=context,
            retry_count=primary_error.retry_count,
        )
        return InvocationResult(error=error, attempts=result.attempts, used_fallback=True)

    # --- terminal outcomes that never reach the collaborator ---

    def _rate_limited(self, url: Optional[str]) -> InvocationResult[Any]:
        self._record_rate_limit_hit(url)
        self._count("rate_limited")
        return InvocationResult(
            error=CrawlerError(
                error_type=self.config.rate_limit_error_type,
                message=f"Rate limit exceeded for {self.service_name}",
                recoverable=True,
                url=url,
            ),
            attempts=0,
        )

    def _circuit_open(self, url: Optional[str], attempts: int) -> InvocationResult[Any]:
        self._count("circuit_open")
        snapshot = self.breaker.snapshot()
        logger.info(
            "Call rejected by open circuit",
            service=self.service_name,
            state=snapshot.state.value,
            next_attempt_time=snapshot.next_attempt_time,
        )
        state_label = "open" if snapshot.state == CircuitState.OPEN else "half-open (trial in flight)"
        return InvocationResult(
            error=CrawlerError(
                error_type=self.config.error_type,
                message=f"Circuit {state_label} for {self.service_name}",
                recoverable=False,
                url=url,
                retry_count=max(0, attempts - 1),
            ),
            attempts=attempts,
        )

    def _count(self, outcome: str) -> None:
        METRICS["requests_total"].labels(service=self.service_name, outcome=outcome).inc()

    def _record_rate_limit_hit(self, url: Optional[str], *, waited: Optional[float] = None) -> None:
        """Count a call the limiter deferred (``waited`` set) or denied."""
        self.metrics.record_rate_limit_hit()
        METRICS["rate_limit_hits_total"].labels(service=self.service_name).inc()
        if self.event_bus is None:
            return
        if waited is None:
            self.event_bus.publish(
                ResilienceEventType.RATE_LIMIT_EXCEEDED,
                self.service_name,
                f"Rate limit exceeded for {self.service_name}",
                severity=EventSeverity.WARNING,
                metadata={"url": url},
            )
        else:
            self.event_bus.publish(
                ResilienceEventType.RATE_LIMIT_EXCEEDED,
                self.service_name,
                f"Rate limit deferred call to {self.service_name} by {waited:.3f}s",
                severity=EventSeverity.INFO,
                metadata={"url": url, "waited": waited},
            )

    async def _backoff(self, delay: float, stop_event: Optional[asyncio.Event]) -> bool:
        """Sleep for ``delay``; False when ``stop_event`` fired first."""
        if stop_event is None:
            await self._sleep(delay)
            return True
        if stop_event.is_set():
            return False

        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopper = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [task for task in (sleeper, stopper) if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return not stop_event.is_set()
