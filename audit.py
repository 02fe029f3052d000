import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from periods import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    action: str
    entity_type: str
    entity_id: Optional[object]
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    def record(self, event: AuditEvent) -> None:
        logger.info(
            f"audit: action={event.action} entity={event.entity_type}:"
            f"{event.entity_id} details={event.details}"
        )


class MemoryAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)


def notify(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """Hand an event to the sink after the core work has committed.

    Sink failures are logged and dropped; they never undo or fail the
    operation that produced the event.
    """
    if sink is None:
        return
    try:
        sink.record(event)
    except Exception:
        logger.exception(f"audit sink failed for action={event.action}")
