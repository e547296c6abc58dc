"""
CompanyOS Approval - risk classification for AI-generated changes.

Example:
    from companyos.approval import ApprovalClassifier

    verdict = ApprovalClassifier().classify({
        "type": "fix",
        "code": patch,
        "filePath": "src/utils/dates.js",
        "testResults": {"passed": True},
    })
    verdict.needs_approval  # False for a small passing fix
"""

from companyos.approval.classifier import AUTO_APPROVAL_REASON, ApprovalClassifier
from companyos.approval.models import (
    Change,
    ChangeCategory,
    ChangeType,
    ClassificationVerdict,
    RiskLevel,
)
from companyos.approval.rules import ApprovalRule, categorize, default_rules

__all__ = [
    # Classifier
    "ApprovalClassifier",
    "AUTO_APPROVAL_REASON",
    # Models
    "Change",
    "ChangeCategory",
    "ChangeType",
    "ClassificationVerdict",
    "RiskLevel",
    # Rules
    "ApprovalRule",
    "categorize",
    "default_rules",
]
