"""
Structured resilience events and a small synchronous event bus.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

import structlog

from pipeguard.protocols import utcnow

logger = structlog.get_logger(__name__)


class ResilienceEventType(str, Enum):
    CIRCUIT_BREAKER_OPENED = "circuit_breaker_opened"
    CIRCUIT_BREAKER_HALF_OPEN = "circuit_breaker_half_open"
    CIRCUIT_BREAKER_CLOSED = "circuit_breaker_closed"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    RETRY_EXHAUSTED = "retry_exhausted"
    FALLBACK_TRIGGERED = "fallback_triggered"


class EventSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ResilienceEvent:
    event_type: ResilienceEventType
    service_name: str
    message: str
    severity: EventSeverity = EventSeverity.INFO
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "service_name": self.service_name,
            "message": self.message,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }


EventHandler = Callable[[ResilienceEvent], None]

_LOG_METHODS = {
    EventSeverity.INFO: "info",
    EventSeverity.WARNING: "warning",
    EventSeverity.ERROR: "error",
    EventSeverity.CRITICAL: "critical",
}


class EventBus:
    """
    Delivers resilience events to subscribed handlers and keeps a bounded history.

    Handlers run synchronously in the emitting task. An exception raised by a
    handler is logged and never reaches the component that emitted the event.
    """

    def __init__(self, history_size: int = 100) -> None:
        self._handlers: List[EventHandler] = []
        self._history: Deque[ResilienceEvent] = deque(maxlen=history_size)

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler. Returns a callable that removes it again."""
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def emit(self, event: ResilienceEvent) -> None:
        self._history.append(event)
        log_method = getattr(logger, _LOG_METHODS[event.severity])
        log_method(
            "Resilience event",
            event_type=event.event_type.value,
            service=event.service_name,
            message=event.message,
            metadata=dict(event.metadata),
        )
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    "Resilience event handler failed",
                    event_type=event.event_type.value,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                )

    def publish(
        self,
        event_type: ResilienceEventType,
        service_name: str,
        message: str,
        severity: EventSeverity = EventSeverity.INFO,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ResilienceEvent:
        event = ResilienceEvent(
            event_type=event_type,
            service_name=service_name,
            message=message,
            severity=severity,
            metadata=dict(metadata or {}),
        )
        self.emit(event)
        return event

    def recent(self, limit: Optional[int] = None) -> List[ResilienceEvent]:
        """Most recent events, oldest first."""
        events = list(self._history)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def clear(self) -> None:
        self._history.clear()
