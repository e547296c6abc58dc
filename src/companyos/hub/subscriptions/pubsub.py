"""
Topic-keyed async iterators for subscription clients.

Each subscribe call returns an independent TopicIterator with its own queue.
Closing an iterator (aclose, leaving an `async with` block, or cancelling the
task waiting on it) unregisters it immediately, so no event is pushed into a
discarded sequence.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import uuid4

from companyos.core.config import get_config
from companyos.core.errors import AuthorizationError
from companyos.core.events import DomainEvent
from companyos.hub.auth.jwt import Principal
from companyos.hub.channels import Channel, ChannelKey

logger = logging.getLogger(__name__)


class SubscriptionKind(str, Enum):
    """Logical subscriptions offered to clients."""

    EVENT_CREATED = "eventCreated"
    DEPLOYMENT_STATUS_CHANGED = "deploymentStatusChanged"
    PULL_REQUEST_UPDATED = "pullRequestUpdated"
    AGENT_TASK_CREATED = "agentTaskCreated"


@dataclass(frozen=True, slots=True)
class SubscriptionMessage:
    """An item yielded by a subscription iterator."""

    kind: SubscriptionKind
    event: DomainEvent

    @property
    def data(self) -> dict[str, Any]:
        return dict(self.event.payload)

    def to_dict(self) -> dict[str, Any]:
        return {self.kind.value: self.event.to_dict()}


_CHANNEL_KINDS: dict[Channel, SubscriptionKind] = {
    Channel.EVENTS: SubscriptionKind.EVENT_CREATED,
    Channel.DEPLOYMENTS: SubscriptionKind.DEPLOYMENT_STATUS_CHANGED,
    Channel.PULL_REQUESTS: SubscriptionKind.PULL_REQUEST_UPDATED,
    Channel.AGENT_TASKS: SubscriptionKind.AGENT_TASK_CREATED,
}

Predicate = Callable[[DomainEvent], bool]


class TopicIterator:
    """
    Lazy, potentially infinite sequence of events for one subscription.

    Usage:
        async with pubsub.subscribe(key) as events:
            async for message in events:
                ...
    """

    def __init__(
        self,
        pubsub: "TopicPubSub",
        topics: tuple[str, ...],
        predicate: Predicate | None,
        max_queue_size: int,
    ):
        self.id = str(uuid4())
        self.topics = topics
        self._pubsub = pubsub
        self._predicate = predicate
        self._queue: asyncio.Queue[SubscriptionMessage | None] = asyncio.Queue(maxsize=max_queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, message: SubscriptionMessage) -> bool:
        if self._closed:
            return False
        if self._predicate is not None and not self._predicate(message.event):
            return False
        if self._queue.full():
            self._queue.get_nowait()
            logger.warning(f"Subscription {self.id} queue full, dropped oldest event")
        self._queue.put_nowait(message)
        return True

    def __aiter__(self) -> "TopicIterator":
        return self

    async def __anext__(self) -> SubscriptionMessage:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        try:
            message = await self._queue.get()
        except asyncio.CancelledError:
            self.close()
            raise
        if message is None:
            raise StopAsyncIteration
        return message

    async def aclose(self) -> None:
        """Stop receiving events and release the registration."""
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pubsub._unregister(self)
        # Wake a consumer blocked in __anext__
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def __aenter__(self) -> "TopicIterator":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class TopicPubSub:
    """In-memory topic registry feeding TopicIterators."""

    def __init__(self, max_queue_size: int | None = None):
        self._max_queue_size = (
            max_queue_size if max_queue_size is not None else get_config().realtime.subscription_queue_size
        )
        self._iterators: dict[str, list[TopicIterator]] = defaultdict(list)

    def subscribe(self, *topics: ChannelKey | str, predicate: Predicate | None = None) -> TopicIterator:
        """Create a fresh iterator over one or more topics."""
        if not topics:
            raise ValueError("At least one topic is required")
        names = tuple(str(t) for t in topics)
        iterator = TopicIterator(self, names, predicate, self._max_queue_size)
        for name in names:
            self._iterators[name].append(iterator)
        logger.debug(f"Subscription {iterator.id} opened on {', '.join(names)}")
        return iterator

    def publish(self, topic: ChannelKey | str, message: SubscriptionMessage) -> int:
        """
        Push a message to every open iterator on `topic`.

        Returns:
            Number of iterators that accepted the message
        """
        return sum(1 for it in list(self._iterators.get(str(topic), ())) if it._push(message))

    def _unregister(self, iterator: TopicIterator) -> None:
        for name in iterator.topics:
            iterators = self._iterators.get(name)
            if iterators is None:
                continue
            if iterator in iterators:
                iterators.remove(iterator)
            if not iterators:
                del self._iterators[name]
        logger.debug(f"Subscription {iterator.id} closed")

    def iterator_count(self, topic: ChannelKey | str | None = None) -> int:
        if topic is not None:
            return len(self._iterators.get(str(topic), ()))
        return len({id(it) for its in self._iterators.values() for it in its})


class SubscriptionService:
    """
    Logical subscriptions for authenticated clients.

    Each method checks the requested organization against the caller's
    principal before registering anything.
    """

    def __init__(self, pubsub: TopicPubSub):
        self.pubsub = pubsub

    @staticmethod
    def _authorize(principal: Principal, organization_id: str | None) -> str:
        organization_id = organization_id or principal.organization_id
        if organization_id != principal.organization_id:
            logger.warning(
                f"User {principal.user_id} (org {principal.organization_id}) "
                f"requested subscription for org {organization_id}"
            )
            raise AuthorizationError("Not allowed to subscribe to another organization", status_code=403)
        return organization_id

    def event_created(self, principal: Principal, organization_id: str | None = None) -> TopicIterator:
        org = self._authorize(principal, organization_id)
        return self.pubsub.subscribe(ChannelKey(org, Channel.EVENTS))

    def deployment_status_changed(
        self,
        principal: Principal,
        project_id: str | None = None,
        organization_id: str | None = None,
    ) -> TopicIterator:
        org = self._authorize(principal, organization_id)
        predicate = (lambda e: e.scope.resource_id == str(project_id)) if project_id else None
        return self.pubsub.subscribe(ChannelKey(org, Channel.DEPLOYMENTS), predicate=predicate)

    def pull_request_updated(
        self,
        principal: Principal,
        repo_id: str | None = None,
        organization_id: str | None = None,
    ) -> TopicIterator:
        org = self._authorize(principal, organization_id)
        return self.pubsub.subscribe(ChannelKey(org, Channel.PULL_REQUESTS, repo_id))

    def agent_task_created(
        self,
        principal: Principal,
        agent_id: str | None = None,
        organization_id: str | None = None,
    ) -> TopicIterator:
        org = self._authorize(principal, organization_id)
        predicate = (lambda e: e.scope.resource_id == str(agent_id)) if agent_id else None
        return self.pubsub.subscribe(ChannelKey(org, Channel.AGENT_TASKS), predicate=predicate)

    def deliver(self, key: ChannelKey, event: DomainEvent) -> int:
        """Push a routed event to the iterators of one key."""
        kind = _CHANNEL_KINDS[key.channel or Channel.EVENTS]
        return self.pubsub.publish(key, SubscriptionMessage(kind=kind, event=event))
