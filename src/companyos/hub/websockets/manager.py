"""
WebSocket Room Manager for real-time dashboards.

Every connection authenticates once; its principal fixes the organization
whose rooms it may join. On connect it joins its organization room and its
user room, and it can opt into channel rooms with explicit subscribe
messages. Room names come from ChannelKey so a publish to a router-computed
key reaches exactly the connections that asked for it.

Features:
- Connection limits (global and per-IP)
- Organization-scoped room membership
- Heartbeat/ping-pong support
- Graceful connection rejection
"""

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import WebSocket

from companyos.core.config import RealtimeConfig, get_config
from companyos.core.errors import AuthorizationError, RoutingError
from companyos.hub.auth.jwt import Principal
from companyos.hub.channels import Channel, ChannelKey, UserKey

logger = logging.getLogger(__name__)

# Close code for policy violations (bad or missing token)
WS_POLICY_VIOLATION = 1008
WS_TRY_AGAIN_LATER = 1013


class ClientMessageType(str, Enum):
    """Messages a client may send."""

    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PING = "ping"


class SystemMessage(str, Enum):
    """Messages the server sends outside of routed events."""

    CONNECTED = "system.connected"
    SUBSCRIBED = "system.subscribed"
    UNSUBSCRIBED = "system.unsubscribed"
    PING = "system.ping"
    PONG = "system.pong"
    ERROR = "system.error"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class WSMessage:
    """WebSocket message format."""

    type: str
    timestamp: str = field(default_factory=_timestamp)
    data: Any = field(default_factory=dict)

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, data: str) -> "WSMessage":
        """Create from JSON string."""
        parsed = json.loads(data)
        if not isinstance(parsed, dict):
            raise ValueError("Message must be a JSON object")
        return cls(
            type=parsed.get("type", "unknown"),
            timestamp=parsed.get("timestamp", _timestamp()),
            data=parsed.get("data") or {},
        )


@dataclass
class Connection:
    """An authenticated WebSocket connection."""

    id: str
    websocket: WebSocket
    principal: Principal
    rooms: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_ping: datetime | None = None

    @property
    def organization_id(self) -> str:
        return self.principal.organization_id


def channel_keys(organization_id: str, channel: str, filters: dict[str, Any] | None = None) -> list[ChannelKey]:
    """
    Translate a client subscription into room keys.

    Raises:
        ValueError: If the channel is unknown
        RoutingError: If a filter id is malformed
    """
    parsed = Channel(channel)
    keys = [ChannelKey(organization_id, parsed)]
    repo_id = (filters or {}).get("repoId")
    if parsed is Channel.PULL_REQUESTS and repo_id:
        keys.append(ChannelKey(organization_id, parsed, str(repo_id)))
    return keys


class RoomManager:
    """
    Manages WebSocket connections and their room memberships.

    Features:
    - Connection pool management with enterprise limits
    - Per-IP connection limiting (DoS protection)
    - Organization and user rooms joined at connect time
    - Opt-in channel rooms via subscribe/unsubscribe messages
    - Heartbeat/ping-pong support
    """

    def __init__(self, config: RealtimeConfig | None = None):
        config = config or get_config().realtime
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)
        self._ip_counts: dict[str, int] = defaultdict(int)  # Track connections per IP
        self._connection_ips: dict[str, str] = {}  # Map connection_id -> IP
        self._lock = asyncio.Lock()
        self._heartbeat_interval = config.heartbeat_interval
        self._heartbeat_task: asyncio.Task | None = None
        self._max_connections = config.max_connections
        self._max_per_ip = config.max_connections_per_ip

    def _get_client_ip(self, websocket: WebSocket) -> str:
        """Extract client IP from WebSocket, handling proxies."""
        forwarded = websocket.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if websocket.client:
            return websocket.client.host
        return "unknown"

    async def connect(
        self,
        websocket: WebSocket,
        connection_id: str,
        principal: Principal,
    ) -> bool:
        """
        Accept and register an authenticated connection.

        Enforces global and per-IP connection limits, then joins the
        organization room and the user room.

        Args:
            websocket: FastAPI WebSocket instance
            connection_id: Unique connection identifier
            principal: Principal established by token authentication

        Returns:
            True if connection was established successfully
        """
        try:
            org_key = ChannelKey.organization(principal.organization_id)
            user_key = UserKey(principal.user_id)
        except RoutingError as e:
            logger.warning(f"WebSocket connection rejected: {e}")
            await websocket.close(code=WS_POLICY_VIOLATION, reason="Invalid principal")
            return False

        client_ip = self._get_client_ip(websocket)

        async with self._lock:
            if len(self._connections) >= self._max_connections:
                logger.warning(
                    f"WebSocket connection rejected: global limit reached "
                    f"({self._max_connections} connections)"
                )
                await websocket.close(code=WS_TRY_AGAIN_LATER, reason="Server at capacity")
                return False

            if self._ip_counts[client_ip] >= self._max_per_ip:
                logger.warning(
                    f"WebSocket connection rejected: per-IP limit reached "
                    f"for {client_ip} ({self._max_per_ip} connections)"
                )
                await websocket.close(code=WS_TRY_AGAIN_LATER, reason="Too many connections from your IP")
                return False

        await websocket.accept()

        async with self._lock:
            conn = Connection(id=connection_id, websocket=websocket, principal=principal)
            self._connections[connection_id] = conn
            self._connection_ips[connection_id] = client_ip
            self._ip_counts[client_ip] += 1
            self._join(conn, org_key.room)
            self._join(conn, user_key.room)

        logger.info(
            f"WebSocket connected: {connection_id} user={principal.user_id} "
            f"org={principal.organization_id} from {client_ip} "
            f"(total: {len(self._connections)}/{self._max_connections})"
        )

        sent = await self.send_to_connection(
            connection_id,
            WSMessage(
                type=SystemMessage.CONNECTED.value,
                data={"connection_id": connection_id, "rooms": sorted(conn.rooms)},
            ),
        )
        return sent

    async def disconnect(self, connection_id: str) -> None:
        """
        Remove a connection and all of its room memberships.

        Args:
            connection_id: Connection to remove
        """
        async with self._lock:
            conn = self._connections.pop(connection_id, None)
            if conn is None:
                return

            for room in list(conn.rooms):
                self._leave(conn, room)

            if connection_id in self._connection_ips:
                client_ip = self._connection_ips.pop(connection_id)
                self._ip_counts[client_ip] = max(0, self._ip_counts[client_ip] - 1)
                if self._ip_counts[client_ip] == 0:
                    del self._ip_counts[client_ip]

        logger.info(f"WebSocket disconnected: {connection_id} (remaining: {len(self._connections)})")

    # =========================================================================
    # ROOM MEMBERSHIP
    # =========================================================================

    def _join(self, conn: Connection, room: str) -> None:
        conn.rooms.add(room)
        self._rooms[room].add(conn.id)

    def _leave(self, conn: Connection, room: str) -> None:
        conn.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn.id)
            if not members:
                del self._rooms[room]

    @staticmethod
    def _authorize(conn: Connection, key: ChannelKey) -> None:
        if key.organization_id != conn.organization_id:
            logger.warning(
                f"Connection {conn.id} (org {conn.organization_id}) tried to join {key}"
            )
            raise AuthorizationError(f"Not allowed to join {key}", status_code=403)

    async def join(self, connection_id: str, key: ChannelKey) -> bool:
        """
        Add a connection to a room.

        Raises:
            AuthorizationError: If the key belongs to another organization
        """
        async with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None:
                return False
            self._authorize(conn, key)
            self._join(conn, key.room)
        return True

    async def leave(self, connection_id: str, key: ChannelKey) -> bool:
        """Remove a connection from a room."""
        async with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None or key.room not in conn.rooms:
                return False
            self._leave(conn, key.room)
        return True

    async def subscribe(
        self,
        connection_id: str,
        channel: str,
        filters: dict[str, Any] | None = None,
    ) -> list[ChannelKey]:
        """
        Opt a connection into a channel of its own organization.

        Returns:
            The keys joined (empty if the connection is gone)
        """
        conn = self._connections.get(connection_id)
        if conn is None:
            return []

        keys = channel_keys(conn.organization_id, channel, filters)
        for key in keys:
            await self.join(connection_id, key)

        logger.debug(f"Connection {connection_id} subscribed to {', '.join(map(str, keys))}")
        return keys

    async def unsubscribe(
        self,
        connection_id: str,
        channel: str,
        filters: dict[str, Any] | None = None,
    ) -> list[ChannelKey]:
        """Leave a channel room (and its resource room when a filter is given)."""
        conn = self._connections.get(connection_id)
        if conn is None:
            return []

        parsed = Channel(channel)
        repo_id = (filters or {}).get("repoId")
        if parsed is Channel.PULL_REQUESTS and repo_id:
            keys = [ChannelKey(conn.organization_id, parsed, str(repo_id))]
        else:
            keys = channel_keys(conn.organization_id, channel)

        left = [key for key in keys if await self.leave(connection_id, key)]
        logger.debug(f"Connection {connection_id} unsubscribed from {channel}")
        return left

    def get_rooms(self, connection_id: str) -> set[str]:
        conn = self._connections.get(connection_id)
        return set(conn.rooms) if conn else set()

    def get_room_members(self, key: ChannelKey | UserKey) -> set[str]:
        return set(self._rooms.get(key.room, ()))

    # =========================================================================
    # DELIVERY
    # =========================================================================

    async def send_to_connection(
        self,
        connection_id: str,
        message: WSMessage,
    ) -> bool:
        """
        Send a message to a specific connection.

        Returns:
            True if sent successfully
        """
        async with self._lock:
            conn = self._connections.get(connection_id)

        if not conn:
            return False

        try:
            await conn.websocket.send_text(message.to_json())
            return True
        except Exception as e:
            logger.error(f"Failed to send to {connection_id}: {e}")
            await self.disconnect(connection_id)
            return False

    async def emit(self, key: ChannelKey | UserKey, message_type: str, data: Any) -> int:
        """
        Send a message to every member of exactly one room.

        Args:
            key: Target room
            message_type: Client-facing message name
            data: Message payload

        Returns:
            Number of connections that received the message
        """
        message = WSMessage(type=str(getattr(message_type, "value", message_type)), data=data)
        payload = message.to_json()

        async with self._lock:
            targets = [
                self._connections[conn_id]
                for conn_id in self._rooms.get(key.room, ())
                if conn_id in self._connections
            ]

        sent_count = 0
        failed_ids: list[str] = []

        for conn in targets:
            try:
                await conn.websocket.send_text(payload)
                sent_count += 1
            except Exception as e:
                logger.error(f"Failed to emit to {conn.id}: {e}")
                failed_ids.append(conn.id)

        for conn_id in failed_ids:
            await self.disconnect(conn_id)

        return sent_count

    async def broadcast_all(self, message: WSMessage) -> int:
        """Send a system message to every connection (heartbeat only)."""
        async with self._lock:
            connections = list(self._connections.values())

        sent_count = 0
        failed_ids: list[str] = []

        for conn in connections:
            try:
                await conn.websocket.send_text(message.to_json())
                sent_count += 1
            except Exception as e:
                logger.error(f"Failed to send to {conn.id}: {e}")
                failed_ids.append(conn.id)

        for conn_id in failed_ids:
            await self.disconnect(conn_id)

        return sent_count

    # =========================================================================
    # CLIENT MESSAGES
    # =========================================================================

    async def handle_client_message(self, connection_id: str, message: str) -> None:
        """
        Handle an incoming message from a client.

        Supported: {"type": "subscribe"|"unsubscribe", "data": {"channel": ..., "filters": {...}}}
        and {"type": "ping"}.
        """
        try:
            ws_message = WSMessage.from_json(message)
        except (json.JSONDecodeError, ValueError):
            logger.error(f"Invalid JSON from {connection_id}: {message}")
            await self._send_error(connection_id, "Invalid JSON format")
            return

        if ws_message.type in (ClientMessageType.PING.value, SystemMessage.PING.value):
            conn = self._connections.get(connection_id)
            if conn:
                conn.last_ping = datetime.now(timezone.utc)
            await self.send_to_connection(connection_id, WSMessage(type=SystemMessage.PONG.value))
            return

        if ws_message.type == SystemMessage.PONG.value:
            return

        if ws_message.type not in (ClientMessageType.SUBSCRIBE.value, ClientMessageType.UNSUBSCRIBE.value):
            await self._send_error(connection_id, f"Unknown message type: {ws_message.type}")
            return

        data = ws_message.data if isinstance(ws_message.data, dict) else {}
        channel = data.get("channel")
        filters = data.get("filters") if isinstance(data.get("filters"), dict) else None

        try:
            if ws_message.type == ClientMessageType.SUBSCRIBE.value:
                keys = await self.subscribe(connection_id, channel, filters)
                reply = SystemMessage.SUBSCRIBED
            else:
                keys = await self.unsubscribe(connection_id, channel, filters)
                reply = SystemMessage.UNSUBSCRIBED
        except ValueError:
            logger.warning(f"Unknown subscription channel: {channel}")
            await self._send_error(connection_id, f"Unknown channel: {channel}")
            return
        except (RoutingError, AuthorizationError) as e:
            await self._send_error(connection_id, str(e))
            return

        await self.send_to_connection(
            connection_id,
            WSMessage(type=reply.value, data={"channel": channel, "rooms": [k.room for k in keys]}),
        )

    async def _send_error(self, connection_id: str, error: str) -> None:
        await self.send_to_connection(
            connection_id,
            WSMessage(type=SystemMessage.ERROR.value, data={"error": error}),
        )

    # =========================================================================
    # STATS & HEARTBEAT
    # =========================================================================

    def get_connection_count(self) -> int:
        """Get the number of active connections."""
        return len(self._connections)

    def get_connection_stats(self) -> dict[str, Any]:
        """Get connection statistics for monitoring."""
        return {
            "total_connections": len(self._connections),
            "max_connections": self._max_connections,
            "max_per_ip": self._max_per_ip,
            "unique_ips": len(self._ip_counts),
            "rooms": len(self._rooms),
            "capacity_percent": (
                len(self._connections) / self._max_connections * 100
                if self._max_connections > 0
                else 0
            ),
        }

    async def start_heartbeat(self) -> None:
        """Start the heartbeat task to keep connections alive."""
        if self._heartbeat_task is not None:
            return

        async def heartbeat_loop():
            while True:
                await asyncio.sleep(self._heartbeat_interval)
                await self.broadcast_all(WSMessage(type=SystemMessage.PING.value))

        self._heartbeat_task = asyncio.create_task(heartbeat_loop())
        logger.info("WebSocket heartbeat started")

    async def stop_heartbeat(self) -> None:
        """Stop the heartbeat task."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
            logger.info("WebSocket heartbeat stopped")

