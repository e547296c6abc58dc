"""
In-process event bus.

Producers (webhook normalizers, the agent runtime) publish to exact topic
strings; consumers (persistence, metrics, real-time fan-out) subscribe once
at startup. Delivery is fire-and-forget: `publish` runs the synchronous part
of every subscriber in registration order and schedules any awaitable result
as a task it never waits for. A failing subscriber is logged and skipped.

The bus is volatile. Events published with no subscribers are dropped.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from companyos.core.errors import SubscriberError

logger = logging.getLogger(__name__)

Subscriber = Callable[[Any], Any]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dig(payload: Mapping[str, Any], *path: str) -> Any:
    """Follow a key path through nested mappings, None if any hop is missing."""
    current: Any = payload
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


# Where each provider puts the organization and resource ids
_ORGANIZATION_PATHS = (("organizationId",), ("organization", "id"), ("team", "id"))
_RESOURCE_PATHS = (
    ("resourceId",),
    ("repository", "id"),
    ("deployment", "projectId"),
    ("agentId",),
    ("task", "agentId"),
)


@dataclass(frozen=True, slots=True)
class EventScope:
    """Organizational scope of an event."""

    organization_id: str | None = None
    resource_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EventScope":
        """Extract the scope from a normalized provider payload."""
        return cls(
            organization_id=_first_id(payload, _ORGANIZATION_PATHS),
            resource_id=_first_id(payload, _RESOURCE_PATHS),
        )


def _first_id(payload: Mapping[str, Any], paths: tuple[tuple[str, ...], ...]) -> str | None:
    for path in paths:
        value = _dig(payload, *path)
        if value not in (None, ""):
            return str(value)
    return None


@dataclass(frozen=True, slots=True)
class DomainEvent:
    """
    Immutable record of something that happened in an integration.

    Attributes:
        topic: Hierarchical bus topic, e.g. "github.pull_request"
        scope: Organization (and optional resource) the event belongs to
        payload: Topic-specific data, opaque to the core
        occurred_at: When the event happened (UTC)
    """

    topic: str
    scope: EventScope = field(default_factory=EventScope)
    payload: Mapping[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=_utc_now)

    @property
    def organization_id(self) -> str | None:
        return self.scope.organization_id

    @property
    def resource_id(self) -> str | None:
        return self.scope.resource_id

    @classmethod
    def from_payload(cls, topic: str, payload: Any) -> "DomainEvent":
        """Wrap whatever was published on `topic` as a DomainEvent."""
        if isinstance(payload, DomainEvent):
            return payload
        if not isinstance(payload, Mapping):
            return cls(topic=topic, payload={"value": payload})
        return cls(topic=topic, scope=EventScope.from_payload(payload), payload=payload)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "topic": self.topic,
            "organizationId": self.scope.organization_id,
            "resourceId": self.scope.resource_id,
            "payload": dict(self.payload),
            "occurredAt": self.occurred_at.isoformat().replace("+00:00", "Z"),
        }


def _subscriber_name(callback: Subscriber) -> str:
    return getattr(callback, "__qualname__", None) or repr(callback)


class EventBus:
    """
    Topic registry and dispatcher.

    Example:
        bus = EventBus()
        bus.subscribe("github.pull_request", on_pull_request)
        bus.publish("github.pull_request", payload)
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, topic: str, callback: Subscriber) -> None:
        """Register a sync or async callback for an exact topic."""
        self._subscribers[str(topic)].append(callback)
        logger.debug(f"Subscribed {_subscriber_name(callback)} to {topic}")

    def publish(self, topic: str, payload: Any) -> None:
        """
        Invoke every subscriber of `topic` in registration order.

        Returns once the synchronous part of each subscriber has run;
        coroutine results are scheduled and not awaited.
        """
        topic = str(topic)
        subscribers = list(self._subscribers.get(topic, ()))
        if not subscribers:
            logger.debug(f"No subscribers for {topic}, event dropped")
            return

        for callback in subscribers:
            name = _subscriber_name(callback)
            try:
                result = callback(payload)
            except Exception as e:
                self._report(SubscriberError(topic, name, e))
                continue

            if inspect.isawaitable(result):
                self._schedule(topic, name, result)

    def publish_event(self, event: DomainEvent) -> None:
        """Publish a DomainEvent under its own topic."""
        self.publish(event.topic, event)

    def get_subscriptions(self) -> list[str]:
        """Topics with at least one subscriber."""
        return [topic for topic, subs in self._subscribers.items() if subs]

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(str(topic), ()))

    @property
    def pending_count(self) -> int:
        """Number of subscriber tasks still in flight."""
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for all in-flight subscriber tasks (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, topic: str, name: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Nothing can drive the coroutine outside a loop
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning(f"No running event loop, dropped async subscriber {name} for {topic}")
            return

        task = asyncio.ensure_future(awaitable, loop=loop)

        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_done(t, topic, name))

    def _on_done(self, task: asyncio.Task, topic: str, name: str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._report(SubscriberError(topic, name, exc))

    @staticmethod
    def _report(error: SubscriberError) -> None:
        logger.error(
            f"Error in event handler for {error.topic}: {error}",
            exc_info=(type(error.cause), error.cause, error.cause.__traceback__),
        )


# Global event bus instance
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """
    Get the global event bus instance.

    Returns:
        The process-wide EventBus
    """
    global _event_bus

    if _event_bus is None:
        _event_bus = EventBus()

    return _event_bus


def reset_event_bus() -> None:
    """Drop the global bus (used by tests and app shutdown)."""
    global _event_bus
    _event_bus = None
