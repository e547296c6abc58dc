"""
CompanyOS Core - event distribution and change approval for AI-assisted teams.

Integration events flow through an in-process bus to persistence handlers
and organization-scoped real-time subscribers; AI-authored changes are
classified by risk before they are applied.
"""

__version__ = "1.2026.10"
__version_tuple__ = (1, 2026, 10)

from companyos.approval import ApprovalClassifier, ClassificationVerdict
from companyos.core.config import CompanyOSConfig, get_config
from companyos.core.events import DomainEvent, EventBus, get_event_bus

__all__ = [
    "__version__",
    "__version_tuple__",
    "ApprovalClassifier",
    "ClassificationVerdict",
    "CompanyOSConfig",
    "DomainEvent",
    "EventBus",
    "get_config",
    "get_event_bus",
]
