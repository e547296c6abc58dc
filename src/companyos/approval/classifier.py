"""
Approval Classifier.

Decides whether an AI-generated change needs human sign-off.

Evaluation policy:
- Rules run in priority order; every match appends its reason.
- needs_approval is sticky: once a match forces it, later matches cannot clear it.
- risk_level is the maximum over all matches.
- A critical match ends evaluation; critical findings fully determine the verdict.
- With no approval required the change is auto-approved.
"""

import logging
from collections.abc import Callable, Mapping
from typing import Any

from companyos.approval.models import Change, ClassificationVerdict, RiskLevel
from companyos.approval.rules import (
    DEFAULT_MAX_AUTO_APPROVE_LINES,
    ApprovalRule,
    categorize,
    default_rules,
)
from companyos.core.errors import ClassificationInputError

logger = logging.getLogger(__name__)

AUTO_APPROVAL_REASON = "Meets auto-approval criteria"


def stop_on_critical(level: RiskLevel) -> bool:
    return level is RiskLevel.CRITICAL


class ApprovalClassifier:
    """
    Ordered-rule evaluator for AI-generated changes.

    Holds no mutable state beyond its rule list, so a configured instance is
    safe to share between concurrent callers.

    Example:
        classifier = ApprovalClassifier()
        verdict = classifier.classify({"type": "fix", "code": patch})
        if verdict.needs_approval:
            ...
    """

    def __init__(
        self,
        rules: list[ApprovalRule] | None = None,
        max_auto_approve_lines: int = DEFAULT_MAX_AUTO_APPROVE_LINES,
        short_circuit: Callable[[RiskLevel], bool] = stop_on_critical,
    ):
        self.max_auto_approve_lines = max_auto_approve_lines
        self.rules = list(rules) if rules is not None else default_rules(max_auto_approve_lines)
        self._short_circuit = short_circuit

    @classmethod
    def from_config(cls, config: Any) -> "ApprovalClassifier":
        """Build from a CompanyOSConfig."""
        return cls(max_auto_approve_lines=config.approval.max_auto_approve_lines)

    def classify(self, change: Change | Mapping[str, Any]) -> ClassificationVerdict:
        """
        Classify a change.

        Args:
            change: A Change or its wire dictionary

        Returns:
            A fresh, immutable verdict

        Raises:
            ClassificationInputError: If `change` is not a change at all
        """
        change = self._coerce(change)

        needs_approval = False
        risk_level = RiskLevel.LOW
        reasons: list[str] = []

        for rule in self.rules:
            matched, reason, rule_needs_approval = self._evaluate(rule, change)
            if not matched:
                continue

            reasons.append(reason)
            needs_approval = needs_approval or rule_needs_approval
            risk_level = max(risk_level, rule.risk_level)

            if self._short_circuit(rule.risk_level):
                break

        if not needs_approval:
            reasons.append(AUTO_APPROVAL_REASON)

        return ClassificationVerdict(
            needs_approval=needs_approval,
            risk_level=risk_level,
            reasons=tuple(reasons),
            auto_approved=not needs_approval,
            category=categorize(change, self.max_auto_approve_lines),
        )

    def _evaluate(self, rule: ApprovalRule, change: Change) -> tuple[bool, str, bool]:
        try:
            if not rule.matches(change):
                return False, "", False
            return True, rule.reason_for(change), rule.needs_approval
        except Exception:
            # A broken custom rule must not let a change through unreviewed
            logger.exception(f"Approval rule {rule.name} failed, requiring review")
            return True, f"Rule {rule.name} could not be evaluated - requires review", True

    @staticmethod
    def _coerce(change: Any) -> Change:
        if isinstance(change, Change):
            return change
        if isinstance(change, Mapping):
            return Change.from_dict(change)
        raise ClassificationInputError(
            f"Expected a change mapping, got {type(change).__name__}"
        )

    def add_rule(self, rule: ApprovalRule) -> None:
        """Append a custom rule (evaluated after the existing ones)."""
        self.rules.append(rule)

    def rules_summary(self) -> list[dict[str, Any]]:
        """Summary of the configured rules, in evaluation order."""
        return [
            {
                "name": rule.name,
                "risk_level": rule.risk_level.value,
                "needs_approval": rule.needs_approval,
                "description": rule.description,
            }
            for rule in self.rules
        ]
