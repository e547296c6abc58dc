"""
Bus to real-time bridge.

Subscribes to every routed bus topic, turns the published payload into a
DomainEvent, asks the ChannelRouter where it goes and hands each key to both
sinks: the socket RoomManager and the subscription TopicPubSub. The sinks
never talk to each other; this is the only place that decides who gets told
what.
"""

import logging
from typing import Any

from companyos.core.events import DomainEvent, EventBus
from companyos.core.topics import AGENT_TASK_TOPICS, DEPLOYMENT_TOPICS, BusTopic
from companyos.hub.channels import ROUTED_TOPICS, ChannelRouter, message_type_for
from companyos.hub.subscriptions.pubsub import SubscriptionService
from companyos.hub.websockets.manager import RoomManager

logger = logging.getLogger(__name__)


def message_data(event: DomainEvent) -> Any:
    """The part of the payload socket clients receive for a topic."""
    payload = event.payload
    if event.topic in DEPLOYMENT_TOPICS:
        return payload.get("deployment", {})
    if event.topic == BusTopic.PULL_REQUEST.value:
        return payload.get("pull_request", {})
    if event.topic in AGENT_TASK_TOPICS:
        return payload.get("task", {})
    return dict(payload)


class RealtimeBridge:
    """
    Fan-out from the event bus to both real-time sinks.

    Example:
        bridge = RealtimeBridge(router, rooms, subscriptions)
        bridge.attach(get_event_bus())
    """

    def __init__(
        self,
        router: ChannelRouter,
        rooms: RoomManager,
        subscriptions: SubscriptionService,
    ):
        self.router = router
        self.rooms = rooms
        self.subscriptions = subscriptions
        self._attached = False

    def attach(self, bus: EventBus, topics: tuple[str, ...] = ROUTED_TOPICS) -> None:
        """Subscribe to the routed topics (once per bridge)."""
        if self._attached:
            return
        for topic in topics:
            bus.subscribe(topic, self._make_handler(topic))
        self._attached = True
        logger.info("Real-time bridge initialized")

    def _make_handler(self, topic: str):
        async def handle(payload: Any) -> None:
            await self.dispatch(DomainEvent.from_payload(topic, payload))

        handle.__qualname__ = f"RealtimeBridge.handle[{topic}]"
        return handle

    async def dispatch(self, event: DomainEvent) -> int:
        """
        Route one event and deliver it to both sinks.

        Returns:
            Number of keys the event was delivered to
        """
        keys = self.router.route(event)
        if not keys:
            return 0

        message_type = message_type_for(event.topic)
        data = message_data(event)

        for key in keys:
            self.subscriptions.deliver(key, event)
            await self.rooms.emit(key, message_type, data)

        logger.debug(f"Delivered {event.topic} to {', '.join(map(str, keys))}")
        return len(keys)
