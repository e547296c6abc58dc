"""CompanyOS agents - task lifecycle with approval gating."""

from companyos.agents.tasks import AgentTask, AgentTaskService, AgentTaskStatus

__all__ = ["AgentTask", "AgentTaskService", "AgentTaskStatus"]
