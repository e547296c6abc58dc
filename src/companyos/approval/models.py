"""
Approval Models - Data structures for change classification.

Defines:
- Change: an AI-generated code change awaiting a decision
- RiskLevel: ordered risk tiers (low < medium < high < critical)
- ChangeCategory: coarse kind of change, independent of risk
- ClassificationVerdict: the classifier's immutable answer
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ChangeType(str, Enum):
    """What the agent was asked to produce."""

    FEATURE = "feature"
    FIX = "fix"
    REFACTOR = "refactor"
    TEST = "test"
    DOCS = "docs"
    FORMAT = "format"
    COMMENTS = "comments"
    GENERATE = "generate"


class RiskLevel(str, Enum):
    """Risk tiers, totally ordered by `rank`."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank >= other.rank


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class ChangeCategory(str, Enum):
    """Coarse category shown to reviewers. Never affects risk."""

    TEST = "test"
    SMALL_FIX = "small-fix"
    REFACTOR = "refactor"
    DATABASE = "database"
    CONFIG = "config"
    API = "api"
    FEATURE = "feature"


def _coerce_type(value: Any) -> ChangeType | None:
    if isinstance(value, ChangeType) or value is None:
        return value
    try:
        return ChangeType(str(value).lower())
    except ValueError:
        return None


@dataclass(frozen=True)
class Change:
    """
    A candidate change produced by an agent task.

    Every field may be missing; rules treat absent data as non-matching.
    """

    type: ChangeType | None = None
    code: str = ""
    file_path: str | None = None
    security_issues: tuple[Any, ...] = ()
    test_results: Mapping[str, Any] = field(default_factory=dict)
    description: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Change":
        """Build a Change from camelCase or snake_case wire data."""

        def pick(*keys: str) -> Any:
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return None

        issues = pick("securityIssues", "security_issues") or ()
        results = pick("testResults", "test_results")
        return cls(
            type=_coerce_type(pick("type")),
            code=str(pick("code") or ""),
            file_path=pick("filePath", "file_path"),
            security_issues=tuple(issues) if isinstance(issues, (list, tuple)) else (issues,),
            test_results=results if isinstance(results, Mapping) else {},
            description=str(pick("description") or ""),
        )

    @property
    def line_count(self) -> int:
        """Number of lines in `code` (an empty change counts as one line)."""
        return len(self.code.split("\n"))

    @property
    def tests_failed(self) -> bool:
        """True only when the test run explicitly failed."""
        return self.test_results.get("passed") is False


@dataclass(frozen=True)
class ClassificationVerdict:
    """
    Result of classifying a change.

    Attributes:
        needs_approval: A human must sign off before the change is applied
        risk_level: Highest risk among the matching rules
        reasons: One entry per matching rule, in evaluation order
        auto_approved: True iff needs_approval is False
        category: Coarse kind of change
    """

    needs_approval: bool
    risk_level: RiskLevel
    reasons: tuple[str, ...]
    auto_approved: bool
    category: ChangeCategory

    def to_dict(self) -> dict[str, Any]:
        """Wire format attached to agent tasks."""
        return {
            "needsApproval": self.needs_approval,
            "riskLevel": self.risk_level.value,
            "reasons": list(self.reasons),
            "autoApproved": self.auto_approved,
            "category": self.category.value,
        }
