"""Tests for the in-process event bus."""

import asyncio
import logging

import pytest

from companyos.core.events import (
    DomainEvent,
    EventBus,
    EventScope,
    get_event_bus,
    reset_event_bus,
)
from companyos.core.topics import BusTopic

# =============================================================================
# DomainEvent Tests
# =============================================================================


class TestDomainEvent:
    """Tests for DomainEvent construction."""

    def test_scope_from_github_payload(self):
        """Organization and repository ids come from the GitHub payload."""
        event = DomainEvent.from_payload(
            BusTopic.PULL_REQUEST.value,
            {"organization": {"id": 42}, "repository": {"id": 7}, "pull_request": {}},
        )
        assert event.organization_id == "42"
        assert event.resource_id == "7"

    def test_scope_from_vercel_payload(self):
        """Vercel teams act as organizations; the project is the resource."""
        event = DomainEvent.from_payload(
            BusTopic.DEPLOYMENT_READY.value,
            {"team": {"id": "team_1"}, "deployment": {"id": "dpl_1", "projectId": "prj_1"}},
        )
        assert event.scope == EventScope("team_1", "prj_1")

    def test_scope_from_agent_payload(self):
        event = DomainEvent.from_payload(
            BusTopic.AGENT_TASK_STARTED.value,
            {"organizationId": "org-1", "agentId": "agent-9", "task": {}},
        )
        assert event.scope == EventScope("org-1", "agent-9")

    def test_missing_scope(self):
        """Payloads without ids produce an empty scope."""
        event = DomainEvent.from_payload("event.created", {"title": "hello"})
        assert event.organization_id is None
        assert event.resource_id is None

    def test_non_mapping_payload_is_wrapped(self):
        event = DomainEvent.from_payload("event.created", "plain")
        assert event.payload == {"value": "plain"}

    def test_event_passes_through(self):
        original = DomainEvent(topic="event.created", scope=EventScope("org-1"))
        assert DomainEvent.from_payload("event.created", original) is original

    def test_event_is_frozen(self):
        event = DomainEvent(topic="event.created")
        with pytest.raises(AttributeError):
            event.topic = "other"

    def test_to_dict(self):
        event = DomainEvent.from_payload("event.created", {"organizationId": "org-1"})
        data = event.to_dict()
        assert data["topic"] == "event.created"
        assert data["organizationId"] == "org-1"
        assert data["occurredAt"].endswith("Z")


# =============================================================================
# EventBus Tests
# =============================================================================


class TestEventBusPublish:
    """Tests for EventBus.publish()."""

    @pytest.fixture
    def bus(self):
        return EventBus()

    def test_publish_without_subscribers_is_noop(self, bus):
        """Publishing to a topic nobody listens to does nothing."""
        bus.publish("github.push", {"ref": "refs/heads/main"})
        assert bus.pending_count == 0

    def test_subscribe_returns_none(self, bus):
        assert bus.subscribe("github.push", lambda payload: None) is None

    def test_subscribers_run_in_registration_order(self, bus):
        calls = []
        bus.subscribe("github.push", lambda p: calls.append("first"))
        bus.subscribe("github.push", lambda p: calls.append("second"))
        bus.subscribe("github.push", lambda p: calls.append("third"))

        bus.publish("github.push", {})

        assert calls == ["first", "second", "third"]

    def test_exact_topic_match_only(self, bus):
        """There is no wildcarding or prefix matching."""
        calls = []
        bus.subscribe("vercel.deployment", lambda p: calls.append(p))
        bus.subscribe("vercel.deployment.ready.extra", lambda p: calls.append(p))

        bus.publish("vercel.deployment.ready", {"id": 1})

        assert calls == []

    def test_payload_delivered_unchanged(self, bus):
        received = []
        payload = {"organizationId": "org-1"}
        bus.subscribe("event.created", received.append)

        bus.publish("event.created", payload)

        assert received == [payload]

    def test_failing_subscriber_does_not_stop_siblings(self, bus, caplog):
        """Every subscriber runs once, in order, even if some raise."""
        calls = []

        def broken(payload):
            calls.append("broken")
            raise RuntimeError("boom")

        bus.subscribe("github.push", lambda p: calls.append("before"))
        bus.subscribe("github.push", broken)
        bus.subscribe("github.push", lambda p: calls.append("after"))

        with caplog.at_level(logging.ERROR, logger="companyos.core.events"):
            bus.publish("github.push", {})

        assert calls == ["before", "broken", "after"]
        assert "Error in event handler for github.push" in caplog.text

    def test_error_never_reaches_publisher(self, bus):
        bus.subscribe("github.push", lambda p: 1 / 0)
        bus.publish("github.push", {})

    def test_publish_event_uses_event_topic(self, bus):
        received = []
        bus.subscribe("event.created", received.append)
        event = DomainEvent(topic="event.created", scope=EventScope("org-1"))

        bus.publish_event(event)

        assert received == [event]

    def test_get_subscriptions(self, bus):
        bus.subscribe("github.push", lambda p: None)
        bus.subscribe("github.pull_request", lambda p: None)
        bus.subscribe("github.push", lambda p: None)

        assert sorted(bus.get_subscriptions()) == ["github.pull_request", "github.push"]
        assert bus.subscriber_count("github.push") == 2
        assert bus.subscriber_count("unknown") == 0

    def test_async_subscriber_without_loop_is_dropped(self, bus, caplog):
        """Outside an event loop a coroutine result is closed, not leaked."""

        async def handler(payload):
            return None

        bus.subscribe("github.push", handler)
        with caplog.at_level(logging.WARNING, logger="companyos.core.events"):
            bus.publish("github.push", {})

        assert bus.pending_count == 0
        assert "No running event loop" in caplog.text


class TestEventBusAsync:
    """Tests for asynchronous subscribers."""

    @pytest.fixture
    def bus(self):
        return EventBus()

    @pytest.mark.asyncio
    async def test_publish_does_not_await_async_subscribers(self, bus):
        started = asyncio.Event()
        release = asyncio.Event()
        done = []

        async def slow(payload):
            started.set()
            await release.wait()
            done.append(payload)

        bus.subscribe("github.push", slow)
        bus.publish("github.push", "payload")

        assert done == []
        assert bus.pending_count == 1

        await asyncio.wait_for(started.wait(), timeout=1)
        release.set()
        await bus.drain()

        assert done == ["payload"]
        assert bus.pending_count == 0

    @pytest.mark.asyncio
    async def test_sync_parts_start_in_order(self, bus):
        """Sync subscribers run inline; async ones are scheduled in order."""
        calls = []

        async def async_handler(payload):
            calls.append("async")

        bus.subscribe("github.push", lambda p: calls.append("sync-1"))
        bus.subscribe("github.push", async_handler)
        bus.subscribe("github.push", lambda p: calls.append("sync-2"))

        bus.publish("github.push", {})
        assert calls == ["sync-1", "sync-2"]

        await bus.drain()
        assert calls == ["sync-1", "sync-2", "async"]

    @pytest.mark.asyncio
    async def test_failed_task_is_logged(self, bus, caplog):
        calls = []

        async def broken(payload):
            raise ValueError("bad payload")

        async def healthy(payload):
            calls.append(payload)

        bus.subscribe("vercel.deployment.ready", broken)
        bus.subscribe("vercel.deployment.ready", healthy)

        with caplog.at_level(logging.ERROR, logger="companyos.core.events"):
            bus.publish("vercel.deployment.ready", {"n": 1})
            await bus.drain()

        assert calls == [{"n": 1}]
        assert "Error in event handler for vercel.deployment.ready" in caplog.text
        assert "bad payload" in caplog.text

    @pytest.mark.asyncio
    async def test_concurrent_publishes_interleave(self, bus):
        """Independent publishes each get their own in-flight task."""
        gate = asyncio.Event()
        seen = []

        async def handler(payload):
            await gate.wait()
            seen.append(payload)

        bus.subscribe("event.created", handler)
        bus.publish("event.created", 1)
        bus.publish("event.created", 2)
        assert bus.pending_count == 2

        gate.set()
        await bus.drain()
        assert sorted(seen) == [1, 2]


class TestGlobalEventBus:
    """Tests for the process-wide bus."""

    def test_singleton(self):
        assert get_event_bus() is get_event_bus()

    def test_reset(self):
        bus = get_event_bus()
        reset_event_bus()
        assert get_event_bus() is not bus
