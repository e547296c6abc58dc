"""
Approval rules.

Each rule pairs a predicate over a Change with the verdict contribution it
makes when the predicate matches. The default list is ordered by priority:
critical rules first, then high, then medium, then the auto-approve tier.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import PurePosixPath

from companyos.approval.models import Change, ChangeCategory, ChangeType, RiskLevel

DEFAULT_MAX_AUTO_APPROVE_LINES = 50

# Key name followed by a quoted literal of 8+ chars (matched on lowercased code)
SECRET_ASSIGNMENT = re.compile(
    r"(?:password|secret|token|api[_\- ]?key)\s*[:=]\s*['\"][^'\"]{8,}['\"]"
)

DDL_STATEMENT = re.compile(r"\b(?:ALTER|DROP|CREATE)\s+TABLE\b", re.IGNORECASE)

# router.get(...), app.post(...), express.Router(), @app.get("/x"), @router.delete(...)
API_CODE_MARKERS = re.compile(
    r"\brouter\.|\bexpress\.|@?\b(?:app|router|api)\.(?:get|post|put|patch|delete|route|api_route)\s*\("
)

# Whole "api" or "route(s)" path parts only: src/api/users.js, api-client.ts and
# routes.py match, apiClient.js and rapid.js do not
API_PATH = re.compile(r"(?:^|[/\\._-])(?:routes?|api)(?:[/\\._-]|$)", re.IGNORECASE)

DEPENDENCY_MANIFESTS = frozenset(
    {
        "package.json",
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "requirements.txt",
        "pyproject.toml",
        "poetry.lock",
        "pipfile",
        "pipfile.lock",
        "go.mod",
        "go.sum",
        "cargo.toml",
        "cargo.lock",
        "gemfile",
        "gemfile.lock",
    }
)

CONFIG_EXTENSIONS = re.compile(r"\.(?:env|yaml|yml)$", re.IGNORECASE)
CONFIG_CATEGORY_EXTENSIONS = re.compile(r"\.(?:json|env|yaml|yml)$", re.IGNORECASE)
DOC_EXTENSIONS = re.compile(r"\.(?:md|txt|rst)$", re.IGNORECASE)
LINE_COMMENT_START = re.compile(r"^[\s/*]*//|^\s*#(?!!)")
BLOCK_COMMENT_START = ("/*", '"""')


def _path(change: Change) -> str:
    return change.file_path or ""


def _basename(path: str) -> str:
    return PurePosixPath(path.replace("\\", "/")).name.lower()


def is_test_file(path: str | None) -> bool:
    """foo.test.js, foo.spec.ts, test_foo.py, foo_test.go and the like."""
    if not path:
        return False
    name = _basename(path)
    return (
        ".test." in name
        or ".spec." in name
        or (name.startswith("test_") and name.endswith(".py"))
        or re.search(r"_test\.\w+$", name) is not None
    )


def is_database_change(change: Change) -> bool:
    path = _path(change).lower()
    return "migration" in path or "schema" in path or bool(DDL_STATEMENT.search(change.code))


def is_api_change(change: Change) -> bool:
    return bool(API_PATH.search(_path(change))) or bool(API_CODE_MARKERS.search(change.code))


def is_dependency_change(change: Change) -> bool:
    name = _basename(_path(change))
    return name in DEPENDENCY_MANIFESTS or (name.startswith("requirements") and name.endswith(".txt"))


def is_config_change(change: Change) -> bool:
    path = _path(change)
    return "config" in path.lower() or bool(CONFIG_EXTENSIONS.search(path))


def is_small_fix(change: Change, max_lines: int) -> bool:
    return change.type is ChangeType.FIX and change.line_count <= max_lines


@dataclass(frozen=True)
class ApprovalRule:
    """
    A single classification rule.

    Attributes:
        name: Stable identifier, e.g. "security-issues"
        risk_level: Risk contributed when the rule matches
        needs_approval: Whether a match forces human sign-off
        description: One-line summary for `rules_summary()`
        predicate: Decides whether the rule matches a change
        reason: Reason text, or a callable building it from the change
    """

    name: str
    risk_level: RiskLevel
    needs_approval: bool
    description: str
    predicate: Callable[[Change], bool]
    reason: str | Callable[[Change], str]

    def matches(self, change: Change) -> bool:
        return bool(self.predicate(change))

    def reason_for(self, change: Change) -> str:
        return self.reason(change) if callable(self.reason) else self.reason


def default_rules(max_lines: int = DEFAULT_MAX_AUTO_APPROVE_LINES) -> list[ApprovalRule]:
    """Build the default rule set in priority order."""
    return [
        # CRITICAL - always need approval, stop evaluation
        ApprovalRule(
            name="security-issues",
            risk_level=RiskLevel.CRITICAL,
            needs_approval=True,
            description="Security scanner reported at least one issue",
            predicate=lambda c: len(c.security_issues) > 0,
            reason=lambda c: f"Security issues detected: {len(c.security_issues)} issue(s)",
        ),
        ApprovalRule(
            name="failed-tests",
            risk_level=RiskLevel.CRITICAL,
            needs_approval=True,
            description="Test run explicitly failed",
            predicate=lambda c: c.tests_failed,
            reason="Tests failed - requires review",
        ),
        ApprovalRule(
            name="hardcoded-secrets",
            risk_level=RiskLevel.CRITICAL,
            needs_approval=True,
            description="Code assigns a quoted literal to a password/secret/token/api key",
            predicate=lambda c: bool(SECRET_ASSIGNMENT.search(c.code.lower())),
            reason="Potential hardcoded secrets detected",
        ),
        # HIGH
        ApprovalRule(
            name="large-change",
            risk_level=RiskLevel.HIGH,
            needs_approval=True,
            description=f"More than {max_lines} lines changed",
            predicate=lambda c: c.line_count > max_lines,
            reason=lambda c: f"Large change ({c.line_count} lines) - requires review",
        ),
        ApprovalRule(
            name="database-migration",
            risk_level=RiskLevel.HIGH,
            needs_approval=True,
            description="Touches migrations, schema files or DDL statements",
            predicate=is_database_change,
            reason="Database schema change - requires review",
        ),
        ApprovalRule(
            name="api-change",
            risk_level=RiskLevel.HIGH,
            needs_approval=True,
            description="Touches route registration or HTTP handlers",
            predicate=is_api_change,
            reason="API endpoint change - requires review",
        ),
        ApprovalRule(
            name="breaking-change",
            risk_level=RiskLevel.HIGH,
            needs_approval=True,
            description="Flagged as breaking or deprecates an API",
            predicate=lambda c: (
                "breaking" in c.description.lower()
                or "BREAKING CHANGE" in c.code
                or "@deprecated" in c.code
            ),
            reason="Breaking change detected - requires review",
        ),
        # MEDIUM
        ApprovalRule(
            name="dependency-change",
            risk_level=RiskLevel.MEDIUM,
            needs_approval=True,
            description="Touches a dependency manifest or lockfile",
            predicate=is_dependency_change,
            reason="Dependency change - requires review",
        ),
        ApprovalRule(
            name="config-change",
            risk_level=RiskLevel.MEDIUM,
            needs_approval=True,
            description="Touches a config directory or .env/.yaml/.yml file",
            predicate=is_config_change,
            reason="Configuration change - requires review",
        ),
        ApprovalRule(
            name="new-feature",
            risk_level=RiskLevel.MEDIUM,
            needs_approval=True,
            description="Generated code or a new feature",
            predicate=lambda c: c.type in (ChangeType.GENERATE, ChangeType.FEATURE),
            reason="New feature - requires review",
        ),
        # AUTO-APPROVE (checked last)
        ApprovalRule(
            name="test-addition",
            risk_level=RiskLevel.LOW,
            needs_approval=False,
            description="Adds or changes tests only",
            predicate=lambda c: c.type is ChangeType.TEST or is_test_file(c.file_path),
            reason="Test addition - auto-approved",
        ),
        ApprovalRule(
            name="small-bug-fix",
            risk_level=RiskLevel.LOW,
            needs_approval=False,
            description=f"Bug fix of at most {max_lines} lines",
            predicate=lambda c: is_small_fix(c, max_lines),
            reason=lambda c: f"Small bug fix ({c.line_count} lines) - auto-approved",
        ),
        ApprovalRule(
            name="formatting",
            risk_level=RiskLevel.LOW,
            needs_approval=False,
            description="Formatting or lint fixes",
            predicate=lambda c: (
                c.type is ChangeType.FORMAT
                or "format" in c.description.lower()
                or "lint" in c.description.lower()
            ),
            reason="Formatting/linting only - auto-approved",
        ),
        ApprovalRule(
            name="documentation",
            risk_level=RiskLevel.LOW,
            needs_approval=False,
            description="Documentation files or block comments",
            predicate=lambda c: (
                bool(DOC_EXTENSIONS.search(_path(c)))
                or c.code.startswith(BLOCK_COMMENT_START)
                or c.type is ChangeType.DOCS
            ),
            reason="Documentation update - auto-approved",
        ),
        ApprovalRule(
            name="comments",
            risk_level=RiskLevel.LOW,
            needs_approval=False,
            description="Comment additions",
            predicate=lambda c: c.type is ChangeType.COMMENTS or bool(LINE_COMMENT_START.match(c.code)),
            reason="Comment addition - auto-approved",
        ),
    ]


def categorize(change: Change, max_lines: int = DEFAULT_MAX_AUTO_APPROVE_LINES) -> ChangeCategory:
    """First matching category wins; categorization never affects risk."""
    path = _path(change)

    if change.type is ChangeType.TEST or is_test_file(path):
        return ChangeCategory.TEST
    if is_small_fix(change, max_lines):
        return ChangeCategory.SMALL_FIX
    if change.type is ChangeType.REFACTOR:
        return ChangeCategory.REFACTOR
    if "migration" in path.lower() or "schema" in path.lower():
        return ChangeCategory.DATABASE
    if "config" in path.lower() or CONFIG_CATEGORY_EXTENSIONS.search(path):
        return ChangeCategory.CONFIG
    if API_CODE_MARKERS.search(change.code):
        return ChangeCategory.API
    return ChangeCategory.FEATURE
