"""WebSocket connection and room management."""

from companyos.hub.websockets.manager import (
    Connection,
    RoomManager,
    WSMessage,
)

__all__ = [
    "Connection",
    "RoomManager",
    "WSMessage",
]
