"""
Persistence and metrics port.

The core never stores events itself; handlers describe what happened as
EventRecord/MetricRecord values and hand them to an EventRecorder.
"""

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol, runtime_checkable

from companyos.core.events import DomainEvent

logger = logging.getLogger(__name__)


def provider_payload(published: Any) -> Mapping[str, Any]:
    """The provider payload, whether it was published raw or as a DomainEvent."""
    if isinstance(published, DomainEvent):
        return published.payload
    return published


@dataclass(frozen=True, slots=True)
class EventRecord:
    """An audit-log entry for something that happened in an integration."""

    organization_id: str | None
    event_type: str
    event_source: str
    actor_type: str | None = None
    actor_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class MetricRecord:
    """A single metric sample."""

    organization_id: str | None
    metric_type: str
    value: float
    unit: str | None = None
    dimensions: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@runtime_checkable
class EventRecorder(Protocol):
    """Where handlers send events and metrics."""

    async def log_event(self, record: EventRecord) -> None: ...

    async def record_metric(self, record: MetricRecord) -> None: ...


class LoggingEventRecorder:
    """Recorder used when no store is configured; writes records to the log."""

    def __init__(self, logger_name: str = "companyos.events"):
        self._log = logging.getLogger(logger_name)

    async def log_event(self, record: EventRecord) -> None:
        self._log.info(
            f"event {record.event_type} from {record.event_source} "
            f"org={record.organization_id} resource={record.resource_id}"
        )

    async def record_metric(self, record: MetricRecord) -> None:
        unit = f" {record.unit}" if record.unit else ""
        self._log.info(
            f"metric {record.metric_type}={record.value}{unit} org={record.organization_id}"
        )


class MemoryEventRecorder:
    """Keeps records in memory, for tests and local runs."""

    def __init__(self) -> None:
        self.events: list[EventRecord] = []
        self.metrics: list[MetricRecord] = []

    async def log_event(self, record: EventRecord) -> None:
        self.events.append(record)

    async def record_metric(self, record: MetricRecord) -> None:
        self.metrics.append(record)

    def event_types(self) -> list[str]:
        return [e.event_type for e in self.events]
