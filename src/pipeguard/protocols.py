"""
Core contracts and dataclasses for pipeguard.

This module defines the data structures shared by the resilience layer and the
narrow collaborator interfaces the pipeline calls through. Everything here is
plain data or a typing Protocol; behaviour lives in the resilience and
pipeline modules.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

# ============================================================================
# Enums
# ============================================================================


class ErrorType(str, Enum):
    """Failure taxonomy, assigned by the stage that produced the fault."""

    NETWORK = "network"
    STORAGE = "storage"
    EMBEDDING = "embedding"
    PARSING = "parsing"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, rejecting calls
    HALF_OPEN = "half-open"  # Testing if service recovered


class ServiceStatus(str, Enum):
    """Health classification for a single service."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class PipelineStage(str, Enum):
    """Pipeline processing stages, in execution order."""

    FETCH = "fetch"
    CHUNK = "chunk"
    EMBED = "embed"
    STORE = "store"
    INGEST = "ingest"


ITEM_STAGES: Tuple[PipelineStage, ...] = (
    PipelineStage.FETCH,
    PipelineStage.CHUNK,
    PipelineStage.EMBED,
    PipelineStage.STORE,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Error dataclasses
# ============================================================================


@dataclass(frozen=True)
class ErrorContext:
    """Per-attempt traceability record. A new one is built for every attempt."""

    request_id: str
    endpoint: str
    method: str
    parameters: Optional[Mapping[str, Any]] = None
    timestamp: datetime = field(default_factory=utcnow)
    additional_info: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class CrawlerError:
    """Terminal failure record for one invocation or one item."""

    error_type: ErrorType
    message: str
    recoverable: bool
    url: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    context: Optional[ErrorContext] = None
    retry_count: int = 0
    stack_trace: Optional[str] = None

    def __post_init__(self) -> None:
        if self.retry_count < 0:
            raise ValueError("retry_count cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["error_type"] = self.error_type.value
        data["timestamp"] = self.timestamp.isoformat()
        if self.context is not None:
            data["context"]["timestamp"] = self.context.timestamp.isoformat()
        return data


# ============================================================================
# Circuit breaker and health snapshots
# ============================================================================


@dataclass(frozen=True)
class CircuitBreakerState:
    """Point-in-time snapshot of one service's circuit breaker."""

    service_name: str
    state: CircuitState
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[float] = None
    next_attempt_time: Optional[float] = None


@dataclass(frozen=True)
class HealthCheckResult:
    """Health of a single service derived from its breaker snapshot."""

    service_name: str
    status: ServiceStatus
    timestamp: datetime
    response_time: Optional[float] = None
    error_message: Optional[str] = None
    metadata: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class ServiceDetail:
    name: str
    status: ServiceStatus
    circuit_breaker_state: CircuitState
    failure_count: int
    last_failure_time: Optional[float] = None


@dataclass(frozen=True)
class SystemHealthSummary:
    """Derived view over every breaker known to the container."""

    timestamp: datetime
    overall_status: ServiceStatus
    total_services: int
    healthy_services: int
    degraded_services: int
    unhealthy_services: int
    service_details: Tuple[ServiceDetail, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "overall_status": self.overall_status.value,
            "total_services": self.total_services,
            "healthy_services": self.healthy_services,
            "degraded_services": self.degraded_services,
            "unhealthy_services": self.unhealthy_services,
            "service_details": [
                {
                    "name": detail.name,
                    "status": detail.status.value,
                    "circuit_breaker_state": detail.circuit_breaker_state.value,
                    "failure_count": detail.failure_count,
                    "last_failure_time": detail.last_failure_time,
                }
                for detail in self.service_details
            ],
        }


# ============================================================================
# Pipeline items
# ============================================================================


@dataclass(frozen=True)
class ContentItem:
    """A unit of work: one URL to fetch, chunk, embed and store."""

    item_id: str
    url: str
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ItemOutcome:
    """What happened to one item during a run."""

    item_id: str
    stages_completed: Tuple[PipelineStage, ...] = ()
    final_error: Optional[CrawlerError] = None

    @property
    def succeeded(self) -> bool:
        return self.final_error is None


# ============================================================================
# Collaborator protocols
# ============================================================================


class Fetcher(Protocol):
    """Retrieves raw content for a URL. Faults are network-typed."""

    async def fetch(self, url: str) -> str:
        ...


class Chunker(Protocol):
    """Splits fetched content into embeddable text chunks. Faults are parsing-typed."""

    async def chunk(self, content: str) -> List[str]:
        ...


class Embedder(Protocol):
    """Turns a text chunk into a vector. Faults are embedding-typed."""

    async def embed(self, text_chunk: str) -> Sequence[float]:
        ...


class VectorStore(Protocol):
    """Persists a vector with its metadata. Faults are storage-typed."""

    async def store(self, vector: Sequence[float], metadata: Mapping[str, Any]) -> Any:
        ...


class IngestionTrigger(Protocol):
    """Starts the managed index ingestion job for a finished batch."""

    async def start_ingestion(self, batch_ref: str) -> str:
        ...
