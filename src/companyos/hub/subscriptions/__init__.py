"""Topic-keyed async iterators for subscription clients."""

from companyos.hub.subscriptions.pubsub import (
    SubscriptionKind,
    SubscriptionMessage,
    SubscriptionService,
    TopicIterator,
    TopicPubSub,
)

__all__ = [
    "SubscriptionKind",
    "SubscriptionMessage",
    "SubscriptionService",
    "TopicIterator",
    "TopicPubSub",
]
