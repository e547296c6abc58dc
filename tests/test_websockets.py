"""Tests for the WebSocket room manager."""

import asyncio
import json
from datetime import datetime

import pytest

from companyos.core.config import RealtimeConfig
from companyos.core.errors import AuthorizationError
from companyos.hub.auth.jwt import Principal
from companyos.hub.channels import Channel, ChannelKey, UserKey
from companyos.hub.websockets.manager import (
    WS_POLICY_VIOLATION,
    WS_TRY_AGAIN_LATER,
    Connection,
    RoomManager,
    WSMessage,
    channel_keys,
)


def principal(user="user-1", org="org-1", role="member"):
    return Principal(sub=user, organization_id=org, role=role)


def sent_messages(ws):
    return [json.loads(call.args[0]) for call in ws.send_text.call_args_list]


@pytest.fixture
def manager():
    """Create a fresh manager for each test."""
    return RoomManager(RealtimeConfig())


# =============================================================================
# WSMessage Tests
# =============================================================================


class TestWSMessage:
    """Tests for WSMessage dataclass."""

    def test_create_message(self):
        """Test creating a message with default values."""
        msg = WSMessage(type="deployment.ready")
        assert msg.type == "deployment.ready"
        assert msg.data == {}
        assert msg.timestamp.endswith("Z")

    def test_to_json(self):
        msg = WSMessage(type="event.created", timestamp="2026-01-01T00:00:00Z", data={"k": "v"})
        assert json.loads(msg.to_json()) == {
            "type": "event.created",
            "timestamp": "2026-01-01T00:00:00Z",
            "data": {"k": "v"},
        }

    def test_from_json_missing_fields(self):
        msg = WSMessage.from_json(json.dumps({}))
        assert msg.type == "unknown"
        assert msg.data == {}

    def test_from_json_rejects_non_object(self):
        with pytest.raises(ValueError):
            WSMessage.from_json("[1, 2]")


class TestChannelKeys:
    def test_plain_channel(self):
        assert channel_keys("org-1", "deployments") == [ChannelKey("org-1", Channel.DEPLOYMENTS)]

    def test_pull_requests_with_repo(self):
        keys = channel_keys("org-1", "pull_requests", {"repoId": 7})
        assert [k.room for k in keys] == ["org:org-1:pull_requests", "org:org-1:pull_requests:7"]

    def test_repo_filter_ignored_for_other_channels(self):
        assert len(channel_keys("org-1", "events", {"repoId": 7})) == 1

    def test_unknown_channel(self):
        with pytest.raises(ValueError):
            channel_keys("org-1", "billing")


# =============================================================================
# Connect / Disconnect Tests
# =============================================================================


class TestRoomManagerConnect:
    """Tests for RoomManager.connect()."""

    @pytest.mark.asyncio
    async def test_connect_accepts_websocket(self, manager, ws_factory):
        ws = ws_factory()
        assert await manager.connect(ws, "conn-1", principal()) is True
        ws.accept.assert_called_once()
        assert manager.get_connection_count() == 1

    @pytest.mark.asyncio
    async def test_connect_joins_org_and_user_rooms(self, manager, ws_factory):
        await manager.connect(ws_factory(), "conn-1", principal("user-1", "org-1"))
        assert manager.get_rooms("conn-1") == {"org:org-1", "user:user-1"}
        assert manager.get_room_members(ChannelKey("org-1")) == {"conn-1"}
        assert manager.get_room_members(UserKey("user-1")) == {"conn-1"}

    @pytest.mark.asyncio
    async def test_connect_sends_connected_event(self, manager, ws_factory):
        ws = ws_factory()
        await manager.connect(ws, "conn-1", principal())

        msg = sent_messages(ws)[-1]
        assert msg["type"] == "system.connected"
        assert msg["data"]["connection_id"] == "conn-1"
        assert msg["data"]["rooms"] == ["org:org-1", "user:user-1"]

    @pytest.mark.asyncio
    async def test_connect_rejects_malformed_principal(self, manager, ws_factory):
        ws = ws_factory()
        assert await manager.connect(ws, "conn-1", principal(org="a:b")) is False
        ws.accept.assert_not_called()
        ws.close.assert_called_once()
        assert ws.close.call_args.kwargs["code"] == WS_POLICY_VIOLATION

    @pytest.mark.asyncio
    async def test_global_limit(self, ws_factory):
        manager = RoomManager(RealtimeConfig(max_connections=1))
        await manager.connect(ws_factory(ip="10.0.0.1"), "conn-1", principal())

        ws = ws_factory(ip="10.0.0.2")
        assert await manager.connect(ws, "conn-2", principal("user-2")) is False
        assert ws.close.call_args.kwargs["code"] == WS_TRY_AGAIN_LATER
        assert manager.get_connection_count() == 1

    @pytest.mark.asyncio
    async def test_per_ip_limit(self, ws_factory):
        manager = RoomManager(RealtimeConfig(max_connections_per_ip=1))
        await manager.connect(ws_factory(ip="10.0.0.1"), "conn-1", principal())

        assert await manager.connect(ws_factory(ip="10.0.0.1"), "conn-2", principal()) is False
        assert await manager.connect(ws_factory(ip="10.0.0.2"), "conn-3", principal()) is True

    @pytest.mark.asyncio
    async def test_forwarded_ip_counts(self, ws_factory):
        manager = RoomManager(RealtimeConfig(max_connections_per_ip=1))
        await manager.connect(ws_factory(forwarded="203.0.113.5, 10.0.0.1"), "conn-1", principal())
        assert manager.get_connection_stats()["unique_ips"] == 1

        ws = ws_factory(ip="10.0.0.9", forwarded="203.0.113.5")
        assert await manager.connect(ws, "conn-2", principal()) is False


class TestRoomManagerDisconnect:
    """Tests for RoomManager.disconnect()."""

    @pytest.mark.asyncio
    async def test_disconnect_drops_all_memberships(self, manager, ws_factory):
        await manager.connect(ws_factory(), "conn-1", principal())
        await manager.subscribe("conn-1", "pull_requests", {"repoId": "r1"})

        await manager.disconnect("conn-1")

        assert manager.get_connection_count() == 0
        assert manager.get_rooms("conn-1") == set()
        assert manager.get_connection_stats()["rooms"] == 0

    @pytest.mark.asyncio
    async def test_disconnect_nonexistent_connection(self, manager):
        await manager.disconnect("nonexistent")
        assert manager.get_connection_count() == 0

    @pytest.mark.asyncio
    async def test_disconnect_frees_ip_slot(self, ws_factory):
        manager = RoomManager(RealtimeConfig(max_connections_per_ip=1))
        await manager.connect(ws_factory(), "conn-1", principal())
        await manager.disconnect("conn-1")
        assert await manager.connect(ws_factory(), "conn-2", principal()) is True


# =============================================================================
# Subscription Tests
# =============================================================================


class TestRoomManagerSubscribe:
    """Tests for channel subscribe/unsubscribe."""

    @pytest.mark.asyncio
    async def test_subscribe_joins_channel_room(self, manager, ws_factory):
        await manager.connect(ws_factory(), "conn-1", principal())
        keys = await manager.subscribe("conn-1", "deployments")

        assert keys == [ChannelKey("org-1", Channel.DEPLOYMENTS)]
        assert "org:org-1:deployments" in manager.get_rooms("conn-1")

    @pytest.mark.asyncio
    async def test_subscribe_pull_requests_with_repo(self, manager, ws_factory):
        await manager.connect(ws_factory(), "conn-1", principal())
        await manager.subscribe("conn-1", "pull_requests", {"repoId": "repo-9"})

        rooms = manager.get_rooms("conn-1")
        assert "org:org-1:pull_requests" in rooms
        assert "org:org-1:pull_requests:repo-9" in rooms

    @pytest.mark.asyncio
    async def test_unsubscribe_leaves_room(self, manager, ws_factory):
        await manager.connect(ws_factory(), "conn-1", principal())
        await manager.subscribe("conn-1", "agent_tasks")

        left = await manager.unsubscribe("conn-1", "agent_tasks")

        assert left == [ChannelKey("org-1", Channel.AGENT_TASKS)]
        assert "org:org-1:agent_tasks" not in manager.get_rooms("conn-1")
        assert "org:org-1" in manager.get_rooms("conn-1")

    @pytest.mark.asyncio
    async def test_unsubscribe_repo_keeps_channel(self, manager, ws_factory):
        await manager.connect(ws_factory(), "conn-1", principal())
        await manager.subscribe("conn-1", "pull_requests", {"repoId": "repo-9"})

        await manager.unsubscribe("conn-1", "pull_requests", {"repoId": "repo-9"})

        rooms = manager.get_rooms("conn-1")
        assert "org:org-1:pull_requests:repo-9" not in rooms
        assert "org:org-1:pull_requests" in rooms

    @pytest.mark.asyncio
    async def test_subscribe_unknown_connection(self, manager):
        assert await manager.subscribe("ghost", "events") == []

    @pytest.mark.asyncio
    async def test_join_other_org_forbidden(self, manager, ws_factory):
        """A connection may only join rooms of its own organization."""
        await manager.connect(ws_factory(), "conn-1", principal(org="org-B"))

        with pytest.raises(AuthorizationError) as exc_info:
            await manager.join("conn-1", ChannelKey("org-A", Channel.PULL_REQUESTS))

        assert exc_info.value.status_code == 403
        assert not any(room.startswith("org:org-A") for room in manager.get_rooms("conn-1"))


# =============================================================================
# Delivery Tests
# =============================================================================


class TestRoomManagerEmit:
    """Tests for RoomManager.emit()."""

    @pytest.mark.asyncio
    async def test_emit_reaches_room_members_only(self, manager, ws_factory):
        ws1, ws2 = ws_factory(ip="10.0.0.1"), ws_factory(ip="10.0.0.2")
        await manager.connect(ws1, "conn-1", principal("u1"))
        await manager.connect(ws2, "conn-2", principal("u2"))
        await manager.subscribe("conn-1", "deployments")
        ws1.send_text.reset_mock()
        ws2.send_text.reset_mock()

        count = await manager.emit(
            ChannelKey("org-1", Channel.DEPLOYMENTS), "deployment.ready", {"id": "dpl_1"}
        )

        assert count == 1
        msg = sent_messages(ws1)[0]
        assert msg["type"] == "deployment.ready"
        assert msg["data"] == {"id": "dpl_1"}
        ws2.send_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_emit_is_org_isolated(self, manager, ws_factory):
        """A connection of org B never receives a message sent to org A."""
        ws_a, ws_b = ws_factory(ip="10.0.0.1"), ws_factory(ip="10.0.0.2")
        await manager.connect(ws_a, "conn-a", principal("ua", "A"))
        await manager.connect(ws_b, "conn-b", principal("ub", "B"))
        await manager.subscribe("conn-a", "pull_requests")
        await manager.subscribe("conn-b", "pull_requests")
        ws_b.send_text.reset_mock()

        await manager.emit(ChannelKey("A", Channel.PULL_REQUESTS), "pull_request.updated", {})
        await manager.emit(ChannelKey("A"), "event.created", {})

        ws_b.send_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_emit_to_user_room(self, manager, ws_factory):
        ws = ws_factory()
        await manager.connect(ws, "conn-1", principal("user-1"))
        ws.send_text.reset_mock()

        assert await manager.emit(UserKey("user-1"), "event.created", {"n": 1}) == 1

    @pytest.mark.asyncio
    async def test_emit_accepts_enum_message_types(self, manager, ws_factory):
        from companyos.hub.channels import RealtimeMessage

        ws = ws_factory()
        await manager.connect(ws, "conn-1", principal())
        ws.send_text.reset_mock()

        await manager.emit(ChannelKey("org-1"), RealtimeMessage.EVENT_CREATED, {})
        assert sent_messages(ws)[0]["type"] == "event.created"

    @pytest.mark.asyncio
    async def test_emit_failure_disconnects(self, manager, ws_factory):
        ws = ws_factory()
        await manager.connect(ws, "conn-1", principal())
        ws.send_text.side_effect = Exception("Connection closed")

        assert await manager.emit(ChannelKey("org-1"), "event.created", {}) == 0
        assert manager.get_connection_count() == 0

    @pytest.mark.asyncio
    async def test_emit_empty_room(self, manager):
        assert await manager.emit(ChannelKey("org-1", Channel.EVENTS), "event.created", {}) == 0

    @pytest.mark.asyncio
    async def test_send_to_nonexistent_connection(self, manager):
        assert await manager.send_to_connection("nonexistent", WSMessage(type="x")) is False


# =============================================================================
# Client Message Tests
# =============================================================================


class TestHandleClientMessage:
    """Tests for RoomManager.handle_client_message()."""

    @pytest.mark.asyncio
    async def test_ping(self, manager, ws_factory):
        ws = ws_factory()
        await manager.connect(ws, "conn-1", principal())
        ws.send_text.reset_mock()

        await manager.handle_client_message("conn-1", json.dumps({"type": "ping"}))

        assert sent_messages(ws)[0]["type"] == "system.pong"
        assert isinstance(manager._connections["conn-1"].last_ping, datetime)

    @pytest.mark.asyncio
    async def test_subscribe_message(self, manager, ws_factory):
        ws = ws_factory()
        await manager.connect(ws, "conn-1", principal())
        ws.send_text.reset_mock()

        await manager.handle_client_message(
            "conn-1",
            json.dumps({"type": "subscribe", "data": {"channel": "pull_requests", "filters": {"repoId": "r1"}}}),
        )

        reply = sent_messages(ws)[0]
        assert reply["type"] == "system.subscribed"
        assert reply["data"]["rooms"] == ["org:org-1:pull_requests", "org:org-1:pull_requests:r1"]

    @pytest.mark.asyncio
    async def test_unsubscribe_message(self, manager, ws_factory):
        ws = ws_factory()
        await manager.connect(ws, "conn-1", principal())
        await manager.subscribe("conn-1", "events")
        ws.send_text.reset_mock()

        await manager.handle_client_message(
            "conn-1", json.dumps({"type": "unsubscribe", "data": {"channel": "events"}})
        )

        assert sent_messages(ws)[0]["type"] == "system.unsubscribed"
        assert "org:org-1:events" not in manager.get_rooms("conn-1")

    @pytest.mark.asyncio
    async def test_unknown_channel(self, manager, ws_factory):
        ws = ws_factory()
        await manager.connect(ws, "conn-1", principal())
        ws.send_text.reset_mock()

        await manager.handle_client_message(
            "conn-1", json.dumps({"type": "subscribe", "data": {"channel": "billing"}})
        )

        reply = sent_messages(ws)[0]
        assert reply["type"] == "system.error"
        assert "billing" in reply["data"]["error"]

    @pytest.mark.asyncio
    async def test_malformed_repo_filter(self, manager, ws_factory):
        ws = ws_factory()
        await manager.connect(ws, "conn-1", principal())
        ws.send_text.reset_mock()

        await manager.handle_client_message(
            "conn-1",
            json.dumps({"type": "subscribe", "data": {"channel": "pull_requests", "filters": {"repoId": "a:b"}}}),
        )

        assert sent_messages(ws)[0]["type"] == "system.error"
        assert "org:org-1:pull_requests" not in manager.get_rooms("conn-1")

    @pytest.mark.asyncio
    async def test_invalid_json(self, manager, ws_factory):
        ws = ws_factory()
        await manager.connect(ws, "conn-1", principal())
        ws.send_text.reset_mock()

        await manager.handle_client_message("conn-1", "not json")

        reply = sent_messages(ws)[0]
        assert reply["type"] == "system.error"
        assert reply["data"]["error"] == "Invalid JSON format"

    @pytest.mark.asyncio
    async def test_unknown_type(self, manager, ws_factory):
        ws = ws_factory()
        await manager.connect(ws, "conn-1", principal())
        ws.send_text.reset_mock()

        await manager.handle_client_message("conn-1", json.dumps({"type": "join", "data": {}}))

        assert "Unknown message type" in sent_messages(ws)[0]["data"]["error"]


# =============================================================================
# Stats & Heartbeat Tests
# =============================================================================


class TestStatsAndHeartbeat:
    @pytest.mark.asyncio
    async def test_connection_stats(self, manager, ws_factory):
        await manager.connect(ws_factory(), "conn-1", principal())
        stats = manager.get_connection_stats()

        assert stats["total_connections"] == 1
        assert stats["max_connections"] == 1000
        assert stats["rooms"] == 2
        assert stats["capacity_percent"] == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_heartbeat_pings_connections(self, ws_factory):
        manager = RoomManager(RealtimeConfig(heartbeat_interval=0))
        ws = ws_factory()
        await manager.connect(ws, "conn-1", principal())
        ws.send_text.reset_mock()

        await manager.start_heartbeat()
        await asyncio.sleep(0.01)
        await manager.stop_heartbeat()

        assert any(m["type"] == "system.ping" for m in sent_messages(ws))

    @pytest.mark.asyncio
    async def test_stop_heartbeat_without_start(self, manager):
        await manager.stop_heartbeat()


class TestConnection:
    def test_connection_defaults(self, ws_factory):
        conn = Connection(id="c", websocket=ws_factory(), principal=principal(org="org-7"))
        assert conn.organization_id == "org-7"
        assert conn.rooms == set()
        assert conn.last_ping is None
