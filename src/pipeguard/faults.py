"""
Typed faults raised by collaborator adapters.

Adapters raise one of these at the point of failure so the resilience layer
never has to guess an error type from a message string.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pipeguard.protocols import ErrorType


class CollaboratorFault(Exception):
    """Base fault for any external collaborator call."""

    error_type: ErrorType = ErrorType.UNKNOWN
    default_recoverable: bool = True
    # Faults caused by bad input say nothing about the health of the service.
    trips_breaker: bool = True

    def __init__(
        self,
        message: str,
        *,
        recoverable: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.recoverable = self.default_recoverable if recoverable is None else recoverable
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.error_type.value}: {self.message}"


class NetworkFault(CollaboratorFault):
    error_type = ErrorType.NETWORK


class StorageFault(CollaboratorFault):
    error_type = ErrorType.STORAGE


class EmbeddingFault(CollaboratorFault):
    error_type = ErrorType.EMBEDDING


class ParsingFault(CollaboratorFault):
    error_type = ErrorType.PARSING
    default_recoverable = False


class ValidationFault(CollaboratorFault):
    error_type = ErrorType.VALIDATION
    default_recoverable = False
    trips_breaker = False

