"""
Circuit Breaker Pattern Implementation for Service Failure Isolation

Stops calls to a failing external service after a run of consecutive
failures and tests for recovery with a single trial call once the cooldown
has elapsed. Each failed trial lengthens the cooldown up to a ceiling.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional

import structlog

from pipeguard.config.config import CircuitBreakerConfig
from pipeguard.observability.metrics import METRICS, set_circuit_state
from pipeguard.protocols import CircuitBreakerState, CircuitState
from pipeguard.resilience.events import EventBus, EventSeverity, ResilienceEventType
from pipeguard.resilience.metrics import ResilienceMetrics

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class Admission:
    """
    Permission for one call, handed out by ``CircuitBreaker.admit``.

    ``trial_id`` is set only for the half-open trial call. Outcomes reported
    with an admission only settle the half-open verdict when they come from
    the current trial.
    """

    trial_id: Optional[int] = None

    @property
    def is_trial(self) -> bool:
        return self.trial_id is not None


class CircuitBreaker:
    """
    Circuit breaker guarding one external service.

    State changes happen under a per-breaker asyncio.Lock, so breakers for
    different services never contend with each other.
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Clock = time.time,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[ResilienceMetrics] = None,
    ) -> None:
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._event_bus = event_bus
        self._metrics = metrics

        # State tracking
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[float] = None
        self._last_success_time: Optional[float] = None
        self._next_attempt_time: Optional[float] = None
        self._cooldown = self.config.cooldown_seconds
        self._trial_seq = 0
        self._trial_owner: Optional[int] = None

        self._lock = asyncio.Lock()
        set_circuit_state(service_name, self._state)

        logger.debug(
            "Circuit breaker initialized",
            service=service_name,
            failure_threshold=self.config.failure_threshold,
        )

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def current_cooldown(self) -> float:
        return self._cooldown

    @property
    def trial_in_flight(self) -> bool:
        return self._trial_owner is not None

    async def admit(self) -> Optional[Admission]:
        """
        Decide whether a call may go out now.

        An open breaker whose cooldown has elapsed moves to half-open and
        admits exactly one trial call. Further calls are rejected until
        that trial reports back. Returns None for a rejected call.
        """
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return Admission()

            if self._state == CircuitState.OPEN:
                now = self._clock()
                if self._next_attempt_time is not None and now >= self._next_attempt_time:
                    self._transition(CircuitState.HALF_OPEN)
                    self._success_count = 0
                    return self._start_trial()
                return None

            # HALF_OPEN
            if self._trial_owner is not None:
                return None
            return self._start_trial()

    async def can_execute(self) -> bool:
        return await self.admit() is not None

    async def record_success(self, admission: Optional[Admission] = None) -> None:
        async with self._lock:
            if not self._settles(admission):
                logger.debug("Ignoring outcome of a call admitted before the trial", service=self.service_name)
                return
            self._last_success_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._trial_owner = None
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._close()

            elif self._state == CircuitState.CLOSED:
                # Consecutive-failure semantics
                self._failure_count = 0

    async def record_failure(self, admission: Optional[Admission] = None) -> CircuitState:
        """Record a failed call and return the resulting state."""
        async with self._lock:
            if not self._settles(admission):
                logger.debug("Ignoring outcome of a call admitted before the trial", service=self.service_name)
                return self._state
            now = self._clock()
            self._last_failure_time = now

            if self._state == CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.config.failure_threshold:
                    self._open(now)

            elif self._state == CircuitState.HALF_OPEN:
                self._failure_count += 1
                self._cooldown = min(
                    self.config.max_cooldown_seconds,
                    self._cooldown * self.config.cooldown_multiplier,
                )
                self._open(now)

            return self._state

    def release_trial(self, admission: Admission) -> None:
        """Give up a half-open trial slot without a verdict (cancelled or neutral call)."""
        if admission.is_trial and admission.trial_id == self._trial_owner:
            self._trial_owner = None

    def _settles(self, admission: Optional[Admission]) -> bool:
        # Unchecked callers (no admission) report as the trial itself
        if admission is None:
            return True
        if self._state == CircuitState.HALF_OPEN or admission.is_trial:
            return admission.trial_id is not None and admission.trial_id == self._trial_owner
        return True

    def _start_trial(self) -> Admission:
        self._trial_seq += 1
        self._trial_owner = self._trial_seq
        return Admission(trial_id=self._trial_seq)

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            service_name=self.service_name,
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_time=self._last_failure_time,
            next_attempt_time=self._next_attempt_time if self._state == CircuitState.OPEN else None,
        )

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state for monitoring."""
        return {
            "service": self.service_name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "last_failure_time": self._last_failure_time,
            "last_success_time": self._last_success_time,
            "next_attempt_time": self._next_attempt_time,
            "cooldown_seconds": self._cooldown,
        }

    async def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        async with self._lock:
            logger.info("Circuit breaker manually reset", service=self.service_name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
            self._last_success_time = None
            self._next_attempt_time = None
            self._cooldown = self.config.cooldown_seconds
            self._trial_owner = None
            set_circuit_state(self.service_name, self._state)

    async def force_open(self) -> None:
        """Manually force the circuit breaker to open state."""
        async with self._lock:
            logger.warning("Circuit breaker manually forced open", service=self.service_name)
            self._open(self._clock())

    # --- internal transitions, caller holds the lock ---

    def _open(self, now: float) -> None:
        self._trial_owner = None
        self._next_attempt_time = now + self._cooldown
        self._success_count = 0
        self._transition(CircuitState.OPEN)
        if self._metrics is not None:
            self._metrics.record_trip()
        METRICS["circuit_breaker_trips_total"].labels(service=self.service_name).inc()

    def _close(self) -> None:
        self._trial_owner = None
        self._failure_count = 0
        self._success_count = 0
        self._next_attempt_time = None
        self._cooldown = self.config.cooldown_seconds
        self._transition(CircuitState.CLOSED)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        set_circuit_state(self.service_name, new_state)
        logger.info(
            "Circuit breaker state change",
            service=self.service_name,
            from_state=old_state.value,
            to_state=new_state.value,
            failure_count=self._failure_count,
        )
        if self._event_bus is None:
            return
        if new_state == CircuitState.OPEN:
            self._event_bus.publish(
                ResilienceEventType.CIRCUIT_BREAKER_OPENED,
                self.service_name,
                f"Circuit breaker opened after {self._failure_count} failures",
                severity=EventSeverity.ERROR,
                metadata={
                    "failure_count": self._failure_count,
                    "cooldown_seconds": self._cooldown,
                    "next_attempt_time": self._next_attempt_time,
                },
            )
        elif new_state == CircuitState.HALF_OPEN:
            self._event_bus.publish(
                ResilienceEventType.CIRCUIT_BREAKER_HALF_OPEN,
                self.service_name,
                "Circuit breaker half-open, admitting a trial call",
                severity=EventSeverity.WARNING,
            )
        else:
            self._event_bus.publish(
                ResilienceEventType.CIRCUIT_BREAKER_CLOSED,
                self.service_name,
                "Circuit breaker closed, service recovered",
                severity=EventSeverity.INFO,
            )


class CircuitBreakerManager:
    """
    Service-keyed registry of circuit breakers.

    Breakers are built lazily by ``factory`` the first time a service name is seen.
    """

    def __init__(self, factory: Callable[[str], CircuitBreaker]) -> None:
        self._factory = factory
        self._circuit_breakers: Dict[str, CircuitBreaker] = {}

    def get_circuit_breaker(self, service_name: str) -> CircuitBreaker:
        """Get or create the circuit breaker for a service."""
        breaker = self._circuit_breakers.get(service_name)
        if breaker is None:
            breaker = self._factory(service_name)
            self._circuit_breakers[service_name] = breaker
            logger.debug("Created circuit breaker", service=service_name)
        return breaker

    def __contains__(self, service_name: object) -> bool:
        return service_name in self._circuit_breakers

    def __iter__(self) -> Iterator[CircuitBreaker]:
        return iter([self._circuit_breakers[name] for name in sorted(self._circuit_breakers)])

    def __len__(self) -> int:
        return len(self._circuit_breakers)

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers for monitoring."""
        return {name: cb.get_state() for name, cb in sorted(self._circuit_breakers.items())}

    async def reset_all(self) -> None:
        for cb in self._circuit_breakers.values():
            await cb.reset()
        logger.info("All circuit breakers reset")

    def clear(self) -> None:
        self._circuit_breakers.clear()
