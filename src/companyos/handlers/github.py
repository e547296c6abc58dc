"""
GitHub event handlers.

Turn normalized GitHub webhook payloads into audit-log events and metrics.
"""

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from companyos.core.events import EventBus
from companyos.core.topics import BusTopic
from companyos.handlers.ports import EventRecord, EventRecorder, MetricRecord, provider_payload

logger = logging.getLogger(__name__)

EVENT_SOURCE = "github"


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def merge_time_hours(pull_request: dict[str, Any]) -> float:
    """Hours between a pull request being opened and merged."""
    created = _parse_timestamp(pull_request["created_at"])
    merged = _parse_timestamp(pull_request["merged_at"])
    return (merged - created).total_seconds() / 3600


def _organization_id(payload: Mapping[str, Any]) -> str | None:
    organization = payload.get("organization") or {}
    org_id = organization.get("id")
    return str(org_id) if org_id is not None else None


def _sender_id(payload: Mapping[str, Any]) -> str | None:
    sender = payload.get("sender") or {}
    return str(sender["id"]) if sender.get("id") is not None else None


class GitHubHandlers:
    """Subscribers for `github.*` topics."""

    def __init__(self, recorder: EventRecorder):
        self.recorder = recorder

    async def on_pull_request(self, payload: Any) -> None:
        payload = provider_payload(payload)
        action = payload.get("action")
        pr = payload["pull_request"]
        repository = payload.get("repository") or {}

        if action == "opened":
            logger.info(f"PR opened: {pr.get('title')}")
            await self.recorder.log_event(
                EventRecord(
                    organization_id=_organization_id(payload),
                    event_type="pull_request.opened",
                    event_source=EVENT_SOURCE,
                    actor_type="user",
                    actor_id=_sender_id(payload),
                    resource_type="pull_request",
                    resource_id=str(pr.get("id")),
                    metadata={
                        "prNumber": pr.get("number"),
                        "repoName": repository.get("full_name"),
                        "title": pr.get("title"),
                    },
                )
            )

        elif action == "closed" and pr.get("merged"):
            logger.info(f"PR merged: {pr.get('title')}")
            await self.recorder.log_event(
                EventRecord(
                    organization_id=_organization_id(payload),
                    event_type="pull_request.merged",
                    event_source=EVENT_SOURCE,
                    resource_type="pull_request",
                    resource_id=str(pr.get("id")),
                    metadata={
                        "prNumber": pr.get("number"),
                        "repoName": repository.get("full_name"),
                    },
                )
            )
            await self.recorder.record_metric(
                MetricRecord(
                    organization_id=_organization_id(payload),
                    metric_type="pr_merge_time",
                    value=merge_time_hours(pr),
                    unit="hours",
                )
            )

    async def on_push(self, payload: Any) -> None:
        payload = provider_payload(payload)
        repository = payload["repository"]
        default_branch = repository.get("default_branch")
        pushed_branch = payload.get("ref", "").removeprefix("refs/heads/")

        if pushed_branch != default_branch:
            return

        logger.info(f"Push to {default_branch}: {repository.get('full_name')}")
        await self.recorder.log_event(
            EventRecord(
                organization_id=_organization_id(payload),
                event_type="push.main_branch",
                event_source=EVENT_SOURCE,
                actor_type="user",
                actor_id=_sender_id(payload),
                resource_type="repository",
                metadata={
                    "repoName": repository.get("full_name"),
                    "branch": pushed_branch,
                    "commitSha": payload.get("after"),
                },
            )
        )


def register_github_handlers(bus: EventBus, recorder: EventRecorder) -> GitHubHandlers:
    """Subscribe the GitHub handlers to the bus."""
    handlers = GitHubHandlers(recorder)
    bus.subscribe(BusTopic.PULL_REQUEST.value, handlers.on_pull_request)
    bus.subscribe(BusTopic.PUSH.value, handlers.on_push)
    logger.info("GitHub event handlers initialized")
    return handlers
