"""
CompanyOS Hub - real-time fan-out and HTTP surface.

Routes bus events to organization-scoped rooms (WebSocket) and topic
iterators (subscriptions).
"""

from companyos.hub.bridge import RealtimeBridge
from companyos.hub.channels import Channel, ChannelKey, ChannelRouter, UserKey, message_type_for

__all__ = [
    "Channel",
    "ChannelKey",
    "ChannelRouter",
    "RealtimeBridge",
    "UserKey",
    "message_type_for",
]
