"""
Run-level partial success reporting.

The reporter is a pure function of its inputs: the same outcomes, health
snapshot and metrics always give an equal report, and the order in which
outcomes arrive does not matter. Reports carry the health snapshot's time
unless an explicit timestamp is passed.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from pipeguard.config.config import ReportingConfig
from pipeguard.protocols import (
    CircuitState,
    CrawlerError,
    ErrorType,
    ItemOutcome,
    PipelineStage,
    SystemHealthSummary,
)
from pipeguard.resilience.metrics import ResilienceMetrics

logger = structlog.get_logger(__name__)

_ERROR_TYPE_ORDER = {error_type: index for index, error_type in enumerate(ErrorType)}

# Per error type: always-on advice, plus advice once the count exceeds a threshold.
_TYPE_RECOMMENDATIONS: Dict[ErrorType, Tuple[Tuple[str, ...], Optional[Tuple[int, str]]]] = {
    ErrorType.NETWORK: (
        ("Check network connectivity and DNS resolution", "Verify target URLs are accessible"),
        (5, "Consider longer retry delays for network operations"),
    ),
    ErrorType.STORAGE: (
        ("Verify vector store availability and permissions", "Check the storage provider's service health"),
        (3, "Consider a lower failure threshold for the vector store circuit breaker"),
    ),
    ErrorType.EMBEDDING: (
        ("Check embedding model limits and quotas", "Verify embedding model availability"),
        (10, "Apply more aggressive rate limiting to embedding calls"),
    ),
    ErrorType.PARSING: (
        ("Review content structure and parsing logic", "Use more robust content extraction methods"),
        None,
    ),
    ErrorType.VALIDATION: (
        ("Review input validation rules and data quality", "Sanitize and normalize input before submission"),
        None,
    ),
    ErrorType.UNKNOWN: (
        ("Inspect logs for unclassified failures and interrupted items",),
        None,
    ),
}


@dataclass(frozen=True)
class ErrorDetail:
    item_id: str
    error: CrawlerError
    stages_completed: Tuple[PipelineStage, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "stages_completed": [stage.value for stage in self.stages_completed],
            "error": self.error.to_dict(),
        }


@dataclass(frozen=True)
class ErrorSummary:
    total: int = 0
    by_type: Mapping[str, int] = field(default_factory=dict)
    recoverable: int = 0
    non_recoverable: int = 0
    details: Tuple[ErrorDetail, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "by_type": dict(self.by_type),
            "recoverable": self.recoverable,
            "non_recoverable": self.non_recoverable,
            "details": [detail.to_dict() for detail in self.details],
        }


@dataclass(frozen=True)
class IngestionSummary:
    """What happened to the batch-level ingestion trigger."""

    triggered: bool = False
    job_id: Optional[str] = None
    error: Optional[CrawlerError] = None
    skipped_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "triggered": self.triggered,
            "job_id": self.job_id,
            "error": self.error.to_dict() if self.error else None,
            "skipped_reason": self.skipped_reason,
        }


@dataclass(frozen=True)
class PartialSuccessReport:
    execution_id: str
    timestamp: datetime
    total_operations: int
    successful_operations: int
    failed_operations: int
    success_rate: float
    partial_success: bool
    errors: ErrorSummary
    recommendations: Tuple[str, ...]
    retryable_operations: Tuple[str, ...]
    system_health: SystemHealthSummary
    ingestion: IngestionSummary = field(default_factory=IngestionSummary)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "timestamp": self.timestamp.isoformat(),
            "total_operations": self.total_operations,
            "successful_operations": self.successful_operations,
            "failed_operations": self.failed_operations,
            "success_rate": self.success_rate,
            "partial_success": self.partial_success,
            "errors": self.errors.to_dict(),
            "recommendations": list(self.recommendations),
            "retryable_operations": list(self.retryable_operations),
            "system_health": self.system_health.to_dict(),
            "ingestion": self.ingestion.to_dict(),
        }


class ResilienceReporter:
    """Aggregates per-item outcomes into a PartialSuccessReport."""

    def __init__(self, config: Optional[ReportingConfig] = None) -> None:
        self.config = config or ReportingConfig()

    def build_report(
        self,
        execution_id: str,
        outcomes: Sequence[ItemOutcome],
        system_health: SystemHealthSummary,
        *,
        metrics: Optional[Mapping[str, ResilienceMetrics]] = None,
        ingestion: Optional[IngestionSummary] = None,
        timestamp: Optional[datetime] = None,
    ) -> PartialSuccessReport:
        ordered = sorted(outcomes, key=lambda outcome: outcome.item_id)
        failed = [(outcome, outcome.final_error) for outcome in ordered if outcome.final_error is not None]

        total = len(ordered)
        failed_count = len(failed)
        successful = total - failed_count
        success_rate = (successful / total) * 100 if total else 0.0

        errors = self._summarize_errors(failed)
        retryable = tuple(outcome.item_id for outcome, error in failed if error.recoverable)
        ingestion = ingestion or IngestionSummary()

        report = PartialSuccessReport(
            execution_id=execution_id,
            timestamp=timestamp or system_health.timestamp,
            total_operations=total,
            successful_operations=successful,
            failed_operations=failed_count,
            success_rate=success_rate,
            partial_success=failed_count > 0 and successful > 0,
            errors=errors,
            recommendations=tuple(
                self.recommend(total, success_rate, errors, system_health, metrics or {}, ingestion, retryable)
            ),
            retryable_operations=retryable,
            system_health=system_health,
            ingestion=ingestion,
        )
        logger.info(
            "Partial success report built",
            execution_id=execution_id,
            total=total,
            successful=successful,
            failed=failed_count,
            success_rate=round(success_rate, 2),
        )
        return report

    def _summarize_errors(self, failed: Sequence[Tuple[ItemOutcome, CrawlerError]]) -> ErrorSummary:
        counts: Counter = Counter()
        recoverable = 0
        details: List[ErrorDetail] = []
        for outcome, error in failed:
            counts[error.error_type] += 1
            if error.recoverable:
                recoverable += 1
            details.append(ErrorDetail(outcome.item_id, error, outcome.stages_completed))

        by_type = {
            error_type.value: counts[error_type]
            for error_type in sorted(counts, key=lambda t: _ERROR_TYPE_ORDER[t])
        }
        return ErrorSummary(
            total=len(failed),
            by_type=by_type,
            recoverable=recoverable,
            non_recoverable=len(failed) - recoverable,
            details=tuple(details),
        )

    def recommend(
        self,
        total: int,
        success_rate: float,
        errors: ErrorSummary,
        system_health: SystemHealthSummary,
        metrics: Mapping[str, ResilienceMetrics],
        ingestion: IngestionSummary,
        retryable: Sequence[str],
    ) -> List[str]:
        cfg = self.config
        recommendations: List[str] = []

        if total and success_rate < cfg.low_success_rate and errors.by_type:
            # Ties go to the first type in taxonomy order.
            top_type = max(errors.by_type, key=lambda t: (errors.by_type[t], -_ERROR_TYPE_ORDER[ErrorType(t)]))
            recommendations.append(
                f"Success rate is {success_rate:.1f}%: investigate {top_type} errors first "
                f"({errors.by_type[top_type]} of {errors.total} failures)"
            )

        for type_name, count in errors.by_type.items():
            always, escalation = _TYPE_RECOMMENDATIONS[ErrorType(type_name)]
            recommendations.extend(always)
            if escalation is not None and count > escalation[0]:
                recommendations.append(escalation[1])

        if errors.total > cfg.many_errors_threshold:
            recommendations.append("Consider reducing batch size to improve success rate")
            recommendations.append("Use progressive backoff for high error rates")

        for detail in sorted(system_health.service_details, key=lambda d: d.name):
            if detail.circuit_breaker_state == CircuitState.OPEN:
                recommendations.append(
                    f"Circuit breaker for {detail.name} is open: wait for the cooldown before retrying"
                )

        for service_name in sorted(metrics):
            hits = metrics[service_name].rate_limit_hits
            if hits > cfg.rate_limit_hits_threshold:
                recommendations.append(
                    f"{service_name} hit its rate limit {hits} times: lower batch concurrency"
                )

        if ingestion.error is not None:
            recommendations.append(
                f"Ingestion job failed to start ({ingestion.error.message}): re-trigger ingestion once storage recovers"
            )

        if retryable:
            recommendations.append(f"{len(retryable)} operations failed with recoverable errors and can be retried")

        return recommendations
