"""
CompanyOS core - configuration, errors and the in-process event bus.
"""

from companyos.core.config import CompanyOSConfig, configure_logging, get_config
from companyos.core.errors import (
    AuthorizationError,
    ClassificationInputError,
    CompanyOSError,
    RoutingError,
    SubscriberError,
    TaskStateError,
)
from companyos.core.events import DomainEvent, EventBus, EventScope, get_event_bus
from companyos.core.topics import BusTopic

__all__ = [
    # Config
    "CompanyOSConfig",
    "configure_logging",
    "get_config",
    # Errors
    "CompanyOSError",
    "SubscriberError",
    "RoutingError",
    "AuthorizationError",
    "ClassificationInputError",
    "TaskStateError",
    # Events
    "BusTopic",
    "DomainEvent",
    "EventBus",
    "EventScope",
    "get_event_bus",
]
