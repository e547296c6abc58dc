"""
Agent task lifecycle.

An agent task runs in three visible steps: it starts, it produces a change,
and it either completes (auto-approved) or waits for a human. The change is
classified synchronously by the caller before any lifecycle event goes out,
so every published task already carries its verdict.
"""

import logging
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from companyos.approval.classifier import ApprovalClassifier
from companyos.approval.models import Change, ClassificationVerdict
from companyos.core.errors import TaskStateError
from companyos.core.events import EventBus
from companyos.core.topics import BusTopic
from companyos.handlers.ports import EventRecord, EventRecorder, LoggingEventRecorder

logger = logging.getLogger(__name__)

EVENT_SOURCE = "agent"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(value: datetime | None) -> str | None:
    return value.isoformat().replace("+00:00", "Z") if value else None


class AgentTaskStatus(str, Enum):
    """Lifecycle states of an agent task."""

    RUNNING = "running"
    NEEDS_APPROVAL = "needs_approval"
    COMPLETED = "completed"
    REJECTED = "rejected"


@dataclass
class AgentTask:
    """A unit of work performed by an AI agent for one organization."""

    organization_id: str
    agent_id: str
    title: str
    id: str = field(default_factory=lambda: str(uuid4()))
    status: AgentTaskStatus = AgentTaskStatus.RUNNING
    change: Change | None = None
    verdict: ClassificationVerdict | None = None
    created_at: datetime = field(default_factory=_utc_now)
    completed_at: datetime | None = None
    decided_by: str | None = None
    decision_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "organizationId": self.organization_id,
            "title": self.title,
            "status": self.status.value,
            "filePath": self.change.file_path if self.change else None,
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "createdAt": _timestamp(self.created_at),
            "completedAt": _timestamp(self.completed_at),
            "decidedBy": self.decided_by,
            "decisionReason": self.decision_reason,
        }

    def event_payload(self) -> dict[str, Any]:
        """Bus payload for lifecycle topics."""
        return {
            "organizationId": self.organization_id,
            "agentId": self.agent_id,
            "task": self.to_dict(),
        }


class AgentTaskService:
    """
    Runs agent task lifecycles and publishes them on the bus.

    Human decisions are written to the EventRecorder as an audit trail.
    Finished tasks stay readable until `max_finished_tasks` newer ones have
    finished; tasks waiting for approval are never evicted.

    Example:
        service = AgentTaskService(bus, ApprovalClassifier(), recorder)
        task = service.start("org-1", "agent-7", "Fix date parsing")
        verdict = service.submit_change(task.id, change)
        await service.approve(task.id, "user-1")
    """

    def __init__(
        self,
        bus: EventBus,
        classifier: ApprovalClassifier | None = None,
        recorder: EventRecorder | None = None,
        max_finished_tasks: int = 1000,
    ):
        self.bus = bus
        self.classifier = classifier or ApprovalClassifier()
        self.recorder = recorder or LoggingEventRecorder()
        self.max_finished_tasks = max_finished_tasks
        self._tasks: dict[str, AgentTask] = {}
        self._finished: deque[str] = deque()

    @property
    def task_count(self) -> int:
        """Tasks currently held in the registry."""
        return len(self._tasks)

    def start(self, organization_id: str, agent_id: str, title: str) -> AgentTask:
        """Register a task and announce it."""
        task = AgentTask(organization_id=organization_id, agent_id=agent_id, title=title)
        self._tasks[task.id] = task
        logger.info(f"Agent task started: {task.id} agent={agent_id} org={organization_id}")
        self._publish(BusTopic.AGENT_TASK_STARTED, task)
        return task

    def get(self, task_id: str) -> AgentTask:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise KeyError(f"Unknown agent task: {task_id}") from None

    def submit_change(self, task_id: str, change: Change | Mapping[str, Any]) -> ClassificationVerdict:
        """
        Classify the task's change, attach the verdict and publish the outcome.

        Auto-approved changes complete the task; anything else parks it until
        approve() or reject() is called.

        Raises:
            KeyError: If the task is unknown
            TaskStateError: If the task is not running
            ClassificationInputError: If `change` is not a change
        """
        task = self.get(task_id)
        if task.status is not AgentTaskStatus.RUNNING:
            raise TaskStateError(f"Task {task_id} is {task.status.value}, not running")

        task.verdict = self.classifier.classify(change)
        task.change = change if isinstance(change, Change) else Change.from_dict(change)

        if task.verdict.needs_approval:
            task.status = AgentTaskStatus.NEEDS_APPROVAL
            logger.info(
                f"Agent task {task.id} needs approval "
                f"(risk {task.verdict.risk_level.value}): {'; '.join(task.verdict.reasons)}"
            )
            self._publish(BusTopic.AGENT_TASK_NEEDS_APPROVAL, task)
        else:
            self._complete(task)

        return task.verdict

    async def approve(self, task_id: str, user_id: str) -> AgentTask:
        """Human sign-off on a parked task."""
        task = self._pending(task_id)
        task.decided_by = user_id
        logger.info(f"Agent task {task.id} approved by {user_id}")
        self._complete(task)
        await self._record_decision(task, "agent_task.approved")
        return task

    async def reject(self, task_id: str, user_id: str, reason: str = "") -> AgentTask:
        """Refuse a parked task; the change is not applied."""
        task = self._pending(task_id)
        task.status = AgentTaskStatus.REJECTED
        task.decided_by = user_id
        task.decision_reason = reason or None
        task.completed_at = _utc_now()
        logger.info(f"Agent task {task.id} rejected by {user_id}: {reason}")
        self._publish(BusTopic.AGENT_TASK_COMPLETED, task)
        self._retire(task)
        await self._record_decision(task, "agent_task.rejected")
        return task

    def pending_approvals(self, organization_id: str) -> list[AgentTask]:
        """Tasks of one organization waiting for a human."""
        return [
            task
            for task in self._tasks.values()
            if task.organization_id == organization_id
            and task.status is AgentTaskStatus.NEEDS_APPROVAL
        ]

    def _pending(self, task_id: str) -> AgentTask:
        task = self.get(task_id)
        if task.status is not AgentTaskStatus.NEEDS_APPROVAL:
            raise TaskStateError(f"Task {task_id} is {task.status.value}, not awaiting approval")
        return task

    def _complete(self, task: AgentTask) -> None:
        task.status = AgentTaskStatus.COMPLETED
        task.completed_at = _utc_now()
        logger.info(f"Agent task completed: {task.id}")
        self._publish(BusTopic.AGENT_TASK_COMPLETED, task)
        self._retire(task)

    def _retire(self, task: AgentTask) -> None:
        self._finished.append(task.id)
        while len(self._finished) > self.max_finished_tasks:
            evicted = self._finished.popleft()
            self._tasks.pop(evicted, None)
            logger.debug(f"Agent task {evicted} evicted from the registry")

    async def _record_decision(self, task: AgentTask, event_type: str) -> None:
        await self.recorder.log_event(
            EventRecord(
                organization_id=task.organization_id,
                event_type=event_type,
                event_source=EVENT_SOURCE,
                actor_type="user",
                actor_id=task.decided_by,
                resource_type="agent_task",
                resource_id=task.id,
                metadata={
                    "agentId": task.agent_id,
                    "title": task.title,
                    "filePath": task.change.file_path if task.change else None,
                    "verdict": task.verdict.to_dict() if task.verdict else None,
                    "reason": task.decision_reason,
                },
            )
        )

    def _publish(self, topic: BusTopic, task: AgentTask) -> None:
        self.bus.publish(topic.value, task.event_payload())
