"""
Channel routing for real-time delivery.

Maps a DomainEvent to the rooms/topics that should hear about it. Room names
are only ever built from ChannelKey/UserKey so every delivery target carries
its organization explicitly:

    org:<org>                       organization room
    org:<org>:<channel>             channel room
    org:<org>:<channel>:<resource>  resource-scoped channel room
    user:<user>                     per-user room
"""

import logging
from dataclasses import dataclass
from enum import Enum

from companyos.core.errors import RoutingError
from companyos.core.events import DomainEvent
from companyos.core.topics import AGENT_TASK_TOPICS, DEPLOYMENT_TOPICS, BusTopic

logger = logging.getLogger(__name__)


class Channel(str, Enum):
    """Named sub-channels a client can opt into."""

    DEPLOYMENTS = "deployments"
    PULL_REQUESTS = "pull_requests"
    AGENT_TASKS = "agent_tasks"
    EVENTS = "events"


class RealtimeMessage(str, Enum):
    """Message names emitted to socket clients."""

    DEPLOYMENT_CREATED = "deployment.created"
    DEPLOYMENT_READY = "deployment.ready"
    DEPLOYMENT_ERROR = "deployment.error"
    PULL_REQUEST_UPDATED = "pull_request.updated"
    AGENT_TASK_STARTED = "agent_task.started"
    AGENT_TASK_COMPLETED = "agent_task.completed"
    AGENT_TASK_NEEDS_APPROVAL = "agent_task.needs_approval"
    EVENT_CREATED = "event.created"


MESSAGE_TYPES: dict[str, RealtimeMessage] = {
    BusTopic.DEPLOYMENT_CREATED.value: RealtimeMessage.DEPLOYMENT_CREATED,
    BusTopic.DEPLOYMENT_READY.value: RealtimeMessage.DEPLOYMENT_READY,
    BusTopic.DEPLOYMENT_ERROR.value: RealtimeMessage.DEPLOYMENT_ERROR,
    BusTopic.PULL_REQUEST.value: RealtimeMessage.PULL_REQUEST_UPDATED,
    BusTopic.AGENT_TASK_STARTED.value: RealtimeMessage.AGENT_TASK_STARTED,
    BusTopic.AGENT_TASK_COMPLETED.value: RealtimeMessage.AGENT_TASK_COMPLETED,
    BusTopic.AGENT_TASK_NEEDS_APPROVAL.value: RealtimeMessage.AGENT_TASK_NEEDS_APPROVAL,
    BusTopic.EVENT_CREATED.value: RealtimeMessage.EVENT_CREATED,
}

# Bus topics the bridge subscribes to
ROUTED_TOPICS: tuple[str, ...] = tuple(MESSAGE_TYPES)


def _check_id(kind: str, value: str | None) -> str:
    if value is None or str(value).strip() == "":
        raise RoutingError(f"Missing {kind} id")
    value = str(value)
    if ":" in value:
        raise RoutingError(f"Invalid {kind} id {value!r}: ':' is reserved")
    return value


@dataclass(frozen=True, slots=True)
class ChannelKey:
    """
    Structured room name scoped to one organization.

    A resource without a channel is rejected; room names are only produced
    by `__str__`.
    """

    organization_id: str
    channel: Channel | None = None
    resource_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "organization_id", _check_id("organization", self.organization_id))
        if self.channel is not None and not isinstance(self.channel, Channel):
            object.__setattr__(self, "channel", Channel(self.channel))
        if self.resource_id is not None:
            if self.channel is None:
                raise RoutingError("A resource-scoped key needs a channel")
            object.__setattr__(self, "resource_id", _check_id("resource", self.resource_id))

    @classmethod
    def organization(cls, organization_id: str) -> "ChannelKey":
        return cls(organization_id)

    def __str__(self) -> str:
        name = f"org:{self.organization_id}"
        if self.channel is not None:
            name += f":{self.channel.value}"
        if self.resource_id is not None:
            name += f":{self.resource_id}"
        return name

    @property
    def room(self) -> str:
        return str(self)


@dataclass(frozen=True, slots=True)
class UserKey:
    """Per-user room."""

    user_id: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "user_id", _check_id("user", self.user_id))

    def __str__(self) -> str:
        return f"user:{self.user_id}"

    @property
    def room(self) -> str:
        return str(self)


def message_type_for(topic: str) -> RealtimeMessage:
    """Client-facing message name for a bus topic (generic events by default)."""
    return MESSAGE_TYPES.get(str(topic), RealtimeMessage.EVENT_CREATED)


def channel_for(topic: str) -> Channel:
    topic = str(topic)
    if topic in DEPLOYMENT_TOPICS or topic.startswith("deployment."):
        return Channel.DEPLOYMENTS
    if topic == BusTopic.PULL_REQUEST.value or topic.startswith("pull_request."):
        return Channel.PULL_REQUESTS
    if topic in AGENT_TASK_TOPICS:
        return Channel.AGENT_TASKS
    return Channel.EVENTS


class ChannelRouter:
    """
    Pure mapping from a DomainEvent to its delivery keys.

    Events without an organization are dropped with a warning; they are
    never delivered to a broader audience.
    """

    def route(self, event: DomainEvent) -> list[ChannelKey]:
        """
        Compute delivery keys for an event.

        Returns:
            Zero or more ChannelKeys, all within the event's organization
        """
        organization_id = event.scope.organization_id
        if not organization_id:
            logger.warning(f"Dropping {event.topic} event without organization id")
            return []

        channel = channel_for(event.topic)
        try:
            keys = [ChannelKey(organization_id, channel)]
            if channel is Channel.PULL_REQUESTS and event.scope.resource_id:
                keys.append(ChannelKey(organization_id, channel, event.scope.resource_id))
        except RoutingError as e:
            logger.warning(f"Dropping {event.topic} event: {e}")
            return []

        return keys
