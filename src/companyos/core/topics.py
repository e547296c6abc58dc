"""Bus topics published by the integration normalizers and agent runtime."""

from enum import Enum


class BusTopic(str, Enum):
    """Topics with a registered handler in the core."""

    # Deployment provider (Vercel)
    DEPLOYMENT_CREATED = "vercel.deployment.created"
    DEPLOYMENT_READY = "vercel.deployment.ready"
    DEPLOYMENT_ERROR = "vercel.deployment.error"

    # Source control (GitHub)
    PULL_REQUEST = "github.pull_request"
    PUSH = "github.push"

    # Agent task lifecycle
    AGENT_TASK_STARTED = "agent.task.started"
    AGENT_TASK_COMPLETED = "agent.task.completed"
    AGENT_TASK_NEEDS_APPROVAL = "agent.task.needs_approval"

    # Generic system events
    EVENT_CREATED = "event.created"


DEPLOYMENT_TOPICS = frozenset(
    t.value
    for t in (BusTopic.DEPLOYMENT_CREATED, BusTopic.DEPLOYMENT_READY, BusTopic.DEPLOYMENT_ERROR)
)

AGENT_TASK_TOPICS = frozenset(
    t.value
    for t in (
        BusTopic.AGENT_TASK_STARTED,
        BusTopic.AGENT_TASK_COMPLETED,
        BusTopic.AGENT_TASK_NEEDS_APPROVAL,
    )
)
