"""
Service-keyed resilience registries with lifecycle management.
"""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

import structlog

from pipeguard.config import Config
from pipeguard.observability import MetricsManager, configure_logging
from pipeguard.protocols import (
    CircuitBreakerState,
    CircuitState,
    HealthCheckResult,
    ServiceDetail,
    ServiceStatus,
    SystemHealthSummary,
    utcnow,
)
from pipeguard.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerManager
from pipeguard.resilience.events import EventBus
from pipeguard.resilience.invoker import ResilientInvoker
from pipeguard.resilience.metrics import ResilienceMetrics
from pipeguard.resilience.rate_limiter import RateLimiterRegistry, ServiceRateLimiter
from pipeguard.resilience.retry import RetryPolicy

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False

    async def get(self) -> T:
        """Get or create the instance."""
        if not self._initialized:
            self._instance = self._factory(*self._args, **self._kwargs)
            if callable(getattr(self._instance, "initialize", None)):
                await self._instance.initialize()  # type: ignore
            self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        """Clean up the instance."""
        if self._instance is not None and callable(getattr(self._instance, "close", None)):
            await self._instance.close()  # type: ignore
        self._instance = None
        self._initialized = False


def classify_health(snapshot: CircuitBreakerState, degraded_threshold: int) -> ServiceStatus:
    """
    Map a breaker snapshot to a service status.

    closed with few failures is healthy, half-open or closed with an elevated
    failure count is degraded, open is unhealthy.
    """
    if snapshot.state == CircuitState.OPEN:
        return ServiceStatus.UNHEALTHY
    if snapshot.state == CircuitState.HALF_OPEN:
        return ServiceStatus.DEGRADED
    if snapshot.failure_count >= degraded_threshold:
        return ServiceStatus.DEGRADED
    return ServiceStatus.HEALTHY


class ResilienceContainer:
    """
    Owns the per-service breakers, rate limiters, metrics and invokers.

    Everything is created lazily the first time a service name is used and
    lives until ``shutdown()``. Breaker state therefore persists across
    pipeline runs while metrics are reset at the start of each run.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        config_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        setup_observability: bool = False,
    ) -> None:
        self.config_path = config_path
        if config is None:
            config = Config.from_yaml(config_path) if config_path and config_path.exists() else Config()
        self.config = config
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep
        self._rng = rng
        self._setup_observability = setup_observability
        self.metrics_manager = MetricsManager(config.monitoring)

        self.event_bus = EventBus(history_size=config.monitoring.event_history_size)
        self._metrics: Dict[str, ResilienceMetrics] = {}
        self._breakers = CircuitBreakerManager(self._build_breaker)
        self._limiters = RateLimiterRegistry(self._build_limiter)
        self._invokers: Dict[str, ResilientInvoker] = {}
        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._shutdown_handlers: List[Callable[[], Any]] = []

        self.container_id = str(uuid4())
        self.is_running = False

    # --- registries ---

    def _build_breaker(self, service_name: str) -> CircuitBreaker:
        return CircuitBreaker(
            service_name,
            self.config.service(service_name).circuit_breaker,
            clock=self._clock,
            event_bus=self.event_bus,
            metrics=self.get_metrics(service_name),
        )

    def _build_limiter(self, service_name: str) -> Optional[ServiceRateLimiter]:
        rate_limit = self.config.service(service_name).rate_limit
        if rate_limit is None:
            return None
        return ServiceRateLimiter(service_name, rate_limit, clock=self._monotonic, sleep=self._sleep)

    def get_metrics(self, service_name: str) -> ResilienceMetrics:
        metrics = self._metrics.get(service_name)
        if metrics is None:
            metrics = ResilienceMetrics(service_name)
            self._metrics[service_name] = metrics
        return metrics

    def get_circuit_breaker(self, service_name: str) -> CircuitBreaker:
        return self._breakers.get_circuit_breaker(service_name)

    def get_rate_limiter(self, service_name: str) -> Optional[ServiceRateLimiter]:
        return self._limiters.get_limiter(service_name)

    def get_invoker(self, service_name: str) -> ResilientInvoker:
        """Get or create the resilient invoker for a service."""
        invoker = self._invokers.get(service_name)
        if invoker is None:
            service_config = self.config.service(service_name)
            invoker = ResilientInvoker(
                service_name,
                service_config,
                self.get_circuit_breaker(service_name),
                limiter=self.get_rate_limiter(service_name),
                metrics=self.get_metrics(service_name),
                event_bus=self.event_bus,
                retry_policy=RetryPolicy(service_config.retry, rng=self._rng),
                sleep=self._sleep,
                clock=self._monotonic,
            )
            self._invokers[service_name] = invoker
            self.logger.debug("Created resilient invoker", service=service_name)
        return invoker

    def all_metrics(self) -> Dict[str, ResilienceMetrics]:
        return {name: self._metrics[name] for name in sorted(self._metrics)}

    def reset_metrics(self) -> None:
        for metrics in self._metrics.values():
            metrics.reset()

    # --- health ---

    def breaker_snapshots(self) -> List[CircuitBreakerState]:
        return [breaker.snapshot() for breaker in self._breakers]

    def health_checks(self) -> List[HealthCheckResult]:
        """One HealthCheckResult per known service, including average response time."""
        threshold = self.config.reporting.degraded_failure_threshold
        results: List[HealthCheckResult] = []
        now = utcnow()
        for snapshot in self.breaker_snapshots():
            status = classify_health(snapshot, threshold)
            metrics = self.get_metrics(snapshot.service_name)
            error_message = None
            if status != ServiceStatus.HEALTHY:
                error_message = f"Circuit {snapshot.state.value} with {snapshot.failure_count} consecutive failures"
            results.append(
                HealthCheckResult(
                    service_name=snapshot.service_name,
                    status=status,
                    timestamp=now,
                    response_time=metrics.average_response_time if metrics.total_requests else None,
                    error_message=error_message,
                    metadata={
                        "circuit_breaker_state": snapshot.state.value,
                        "failure_count": snapshot.failure_count,
                        "total_requests": metrics.total_requests,
                        "rate_limit_hits": metrics.rate_limit_hits,
                    },
                )
            )
        return results

    def system_health(self) -> SystemHealthSummary:
        threshold = self.config.reporting.degraded_failure_threshold
        details = tuple(
            ServiceDetail(
                name=snapshot.service_name,
                status=classify_health(snapshot, threshold),
                circuit_breaker_state=snapshot.state,
                failure_count=snapshot.failure_count,
                last_failure_time=snapshot.last_failure_time,
            )
            for snapshot in self.breaker_snapshots()
        )
        healthy = sum(1 for d in details if d.status == ServiceStatus.HEALTHY)
        degraded = sum(1 for d in details if d.status == ServiceStatus.DEGRADED)
        unhealthy = sum(1 for d in details if d.status == ServiceStatus.UNHEALTHY)
        if unhealthy:
            overall = ServiceStatus.UNHEALTHY
        elif degraded:
            overall = ServiceStatus.DEGRADED
        else:
            overall = ServiceStatus.HEALTHY
        return SystemHealthSummary(
            timestamp=utcnow(),
            overall_status=overall,
            total_services=len(details),
            healthy_services=healthy,
            degraded_services=degraded,
            unhealthy_services=unhealthy,
            service_details=details,
        )

    # --- managed collaborator instances ---

    def register_instance(self, name: str, factory: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Register a collaborator that is built on first use and closed on shutdown."""
        self._instances[name] = LazyInstance(factory, *args, **kwargs)

    async def get_instance(self, name: str) -> Any:
        return await self._instances[name].get()

    async def get_http_fetcher(self) -> Any:
        """The shared aiohttp fetcher, created and opened on first use."""
        if "http_fetcher" not in self._instances:
            from pipeguard.collaborators.http import HttpFetcher

            self.register_instance("http_fetcher", HttpFetcher, self.config.fetcher)
        return await self.get_instance("http_fetcher")

    async def get_text_chunker(self) -> Any:
        """The built-in chunker configured from ``config.chunking``."""
        if "text_chunker" not in self._instances:
            from pipeguard.collaborators.chunking import TextChunker

            self.register_instance("text_chunker", TextChunker, self.config.chunking)
        return await self.get_instance("text_chunker")

    # --- lifecycle ---

    async def initialize(self) -> None:
        if self._setup_observability:
            configure_logging(self.config.monitoring)
            self.metrics_manager.start()
        self.is_running = True
        self.logger.info(
            "Resilience container initialized",
            container_id=self.container_id,
            config_path=str(self.config_path) if self.config_path else "default",
        )

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[ResilienceContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        self._shutdown_handlers.append(handler)

    async def shutdown(self) -> None:
        """Close managed instances and clear every registry."""
        self.logger.info("Shutting down resilience container", container_id=self.container_id)

        for handler in self._shutdown_handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler()
                else:
                    handler()
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        for name, instance in self._instances.items():
            try:
                await instance.cleanup()
            except Exception as e:
                self.logger.error("Error cleaning up instance", instance=name, error=str(e))

        self._instances.clear()
        self._invokers.clear()
        self._breakers.clear()
        self._limiters.clear()
        self._metrics.clear()
        self.event_bus.clear()
        self.metrics_manager.stop()
        self.is_running = False
        self.logger.info("Resilience container shutdown complete")
