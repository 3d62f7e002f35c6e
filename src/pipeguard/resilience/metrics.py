"""
In-process running counters per service.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict


@dataclass
class ResilienceMetrics:
    """Running counters for one service. Reset at the start of every run."""

    service_name: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time: float = 0.0
    circuit_breaker_trips: int = 0
    rate_limit_hits: int = 0
    retry_attempts: int = 0

    def record_attempt(self, success: bool, response_time: float) -> None:
        self.total_requests += 1
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
        # Incremental mean over every attempt made against the service.
        self.average_response_time += (response_time - self.average_response_time) / self.total_requests

    def record_retry(self) -> None:
        self.retry_attempts += 1

    def record_rate_limit_hit(self) -> None:
        self.rate_limit_hits += 1

    def record_trip(self) -> None:
        self.circuit_breaker_trips += 1

    def reset(self) -> None:
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.average_response_time = 0.0
        self.circuit_breaker_trips = 0
        self.rate_limit_hits = 0
        self.retry_attempts = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
