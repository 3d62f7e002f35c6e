"""Retry, circuit breaking and rate limiting around external service calls."""

from .circuit_breaker import Admission, CircuitBreaker, CircuitBreakerManager
from .events import EventBus, EventSeverity, ResilienceEvent, ResilienceEventType
from .invoker import InvocationResult, ResilientInvoker
from .metrics import ResilienceMetrics
from .rate_limiter import RateLimiterRegistry, RateLimitResult, ServiceRateLimiter
from .retry import RetryPolicy

__all__ = [
    "Admission",
    "CircuitBreaker",
    "CircuitBreakerManager",
    "EventBus",
    "EventSeverity",
    "ResilienceEvent",
    "ResilienceEventType",
    "InvocationResult",
    "ResilientInvoker",
    "ResilienceMetrics",
    "RateLimiterRegistry",
    "RateLimitResult",
    "ServiceRateLimiter",
    "RetryPolicy",
]
