"""
CompanyOS handlers - persistence and metrics subscribers.

Example:
    bus = get_event_bus()
    register_handlers(bus, LoggingEventRecorder())
"""

from companyos.core.events import EventBus
from companyos.handlers.github import GitHubHandlers, register_github_handlers
from companyos.handlers.ports import (
    EventRecord,
    EventRecorder,
    LoggingEventRecorder,
    MemoryEventRecorder,
    MetricRecord,
)
from companyos.handlers.vercel import VercelHandlers, register_vercel_handlers


def register_handlers(bus: EventBus, recorder: EventRecorder | None = None) -> None:
    """Subscribe every integration handler to the bus."""
    recorder = recorder or LoggingEventRecorder()
    register_github_handlers(bus, recorder)
    register_vercel_handlers(bus, recorder)


__all__ = [
    "EventRecord",
    "EventRecorder",
    "GitHubHandlers",
    "LoggingEventRecorder",
    "MemoryEventRecorder",
    "MetricRecord",
    "VercelHandlers",
    "register_github_handlers",
    "register_handlers",
    "register_vercel_handlers",
]
