"""
Vercel event handlers.

Deployment lifecycle events become audit-log entries; every ready deployment
also counts towards the deployment frequency metric.
"""

import logging
from collections.abc import Mapping
from typing import Any

from companyos.core.events import EventBus
from companyos.core.topics import BusTopic
from companyos.handlers.ports import EventRecord, EventRecorder, MetricRecord, provider_payload

logger = logging.getLogger(__name__)

EVENT_SOURCE = "vercel"


def _team_id(payload: Mapping[str, Any]) -> str | None:
    team = payload.get("team") or {}
    team_id = team.get("id")
    return str(team_id) if team_id is not None else None


def _deployment_record(payload: Mapping[str, Any], event_type: str, metadata: dict[str, Any]) -> EventRecord:
    deployment = payload["deployment"]
    return EventRecord(
        organization_id=_team_id(payload),
        event_type=event_type,
        event_source=EVENT_SOURCE,
        resource_type="deployment",
        resource_id=str(deployment.get("id")),
        metadata=metadata,
    )


class VercelHandlers:
    """Subscribers for `vercel.deployment.*` topics."""

    def __init__(self, recorder: EventRecorder):
        self.recorder = recorder

    async def on_deployment_created(self, payload: Any) -> None:
        payload = provider_payload(payload)
        deployment = payload["deployment"]
        logger.info(f"Deployment created: {deployment.get('url')}")
        await self.recorder.log_event(
            _deployment_record(
                payload,
                "deployment.created",
                {
                    "projectName": deployment.get("name"),
                    "url": deployment.get("url"),
                    "environment": deployment.get("target"),
                },
            )
        )

    async def on_deployment_ready(self, payload: Any) -> None:
        payload = provider_payload(payload)
        deployment = payload["deployment"]
        logger.info(f"Deployment ready: {deployment.get('url')}")
        await self.recorder.log_event(
            _deployment_record(
                payload,
                "deployment.ready",
                {"projectName": deployment.get("name"), "url": deployment.get("url")},
            )
        )
        await self.recorder.record_metric(
            MetricRecord(
                organization_id=_team_id(payload),
                metric_type="deployment_frequency",
                value=1,
                unit="count",
                dimensions={
                    "project": deployment.get("name"),
                    "environment": deployment.get("target"),
                },
            )
        )

    async def on_deployment_error(self, payload: Any) -> None:
        payload = provider_payload(payload)
        deployment = payload["deployment"]
        logger.error(f"Deployment failed: {deployment.get('url')}")
        await self.recorder.log_event(
            _deployment_record(
                payload,
                "deployment.error",
                {"projectName": deployment.get("name"), "error": deployment.get("errorMessage")},
            )
        )


def register_vercel_handlers(bus: EventBus, recorder: EventRecorder) -> VercelHandlers:
    """Subscribe the Vercel handlers to the bus."""
    handlers = VercelHandlers(recorder)
    bus.subscribe(BusTopic.DEPLOYMENT_CREATED.value, handlers.on_deployment_created)
    bus.subscribe(BusTopic.DEPLOYMENT_READY.value, handlers.on_deployment_ready)
    bus.subscribe(BusTopic.DEPLOYMENT_ERROR.value, handlers.on_deployment_error)
    logger.info("Vercel event handlers initialized")
    return handlers
