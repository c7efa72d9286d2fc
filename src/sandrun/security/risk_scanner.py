"""Static risk scanner for untrusted JavaScript snippets.

Two layers run over the source and their issues are unioned:

1. Pattern layer: dangerous module imports (critical) and the suspicious
   pattern table (high).
2. Heuristic layer: a syntax validity check. A failure becomes a medium
   issue; on success the DOM/global heuristic table and the input-to-sink
   data flow check run.

The scanner holds no mutable state and performs no I/O.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Final

import structlog

from sandrun.constants import DEFAULT_MAX_CODE_BYTES
from sandrun.domain.models import Issue, IssueKind, ScanResult, Severity
from sandrun.security.js_syntax import check_syntax
from sandrun.security.patterns import (
    DANGEROUS_MODULES,
    DANGEROUS_SINK_PATTERNS,
    DATA_FLOW_DESCRIPTION,
    HEURISTIC_RULES,
    INPUT_SOURCE_PATTERNS,
    SUSPICIOUS_RULES,
    PatternRule,
    module_base_name,
    referenced_modules,
)

logger = structlog.get_logger(__name__)

SYNTAX_ERROR_DESCRIPTION: Final[str] = "Code syntax analysis failed - potential malformed code"
CODE_SIZE_DESCRIPTION: Final[str] = "Code size exceeds recommended limits"


class RiskScanner:
    """Pure ``code -> ScanResult`` assessment.

    ``extra_rules`` are appended to the suspicious table (pattern layer) and
    always run; ``extra_heuristic_rules`` run only when the syntax check passes.
    """

    def __init__(
        self,
        *,
        max_code_bytes: int = DEFAULT_MAX_CODE_BYTES,
        dangerous_modules: Iterable[str] = DANGEROUS_MODULES,
        extra_rules: Iterable[PatternRule] = (),
        extra_heuristic_rules: Iterable[PatternRule] = (),
    ) -> None:
        if isinstance(max_code_bytes, bool) or max_code_bytes <= 0:
            raise ValueError("max_code_bytes must be a positive integer")
        self._max_code_bytes = max_code_bytes
        self._dangerous_modules = frozenset(dangerous_modules)
        self._pattern_rules = (*SUSPICIOUS_RULES, *extra_rules)
        self._heuristic_rules = (*HEURISTIC_RULES, *extra_heuristic_rules)

    @property
    def max_code_bytes(self) -> int:
        return self._max_code_bytes

    def scan(self, code: str) -> ScanResult:
        issues: list[Issue] = []
        issues.extend(self._dangerous_module_issues(code))
        issues.extend(_rule_issues(self._pattern_rules, code))
        issues.extend(self._heuristic_issues(code))

        size = len(code.encode("utf-8"))
        if size > self._max_code_bytes:
            issues.append(
                Issue(
                    kind=IssueKind.CODE_SIZE,
                    severity=Severity.MEDIUM,
                    description=CODE_SIZE_DESCRIPTION,
                    detail=f"{size} bytes > {self._max_code_bytes} bytes",
                )
            )

        result = ScanResult.from_issues(issues)
        logger.debug(
            "code_scanned",
            safe=result.safe,
            risk_level=result.risk_level.value,
            issue_count=len(result.issues),
            code_bytes=size,
        )
        return result

    def _dangerous_module_issues(self, code: str) -> list[Issue]:
        issues: list[Issue] = []
        seen: set[str] = set()
        for specifier in referenced_modules(code):
            base = module_base_name(specifier)
            if base not in self._dangerous_modules or base in seen:
                continue
            seen.add(base)
            issues.append(
                Issue(
                    kind=IssueKind.DANGEROUS_PACKAGE,
                    severity=Severity.CRITICAL,
                    description=f"Use of dangerous package: {base}",
                    matched_pattern=specifier,
                )
            )
        return issues

    def _heuristic_issues(self, code: str) -> list[Issue]:
        problem = check_syntax(code)
        if problem is not None:
            return [
                Issue(
                    kind=IssueKind.SYNTAX_ERROR,
                    severity=Severity.MEDIUM,
                    description=SYNTAX_ERROR_DESCRIPTION,
                    detail=str(problem),
                )
            ]

        issues = _rule_issues(self._heuristic_rules, code)
        has_source = any(pattern.search(code) for pattern in INPUT_SOURCE_PATTERNS)
        if has_source and any(pattern.search(code) for pattern in DANGEROUS_SINK_PATTERNS):
            issues.append(
                Issue(
                    kind=IssueKind.DATA_FLOW,
                    severity=Severity.HIGH,
                    description=DATA_FLOW_DESCRIPTION,
                )
            )
        return issues


def _rule_issues(rules: Iterable[PatternRule], code: str) -> list[Issue]:
    return [
        Issue(
            kind=item.kind,
            severity=item.severity,
            description=item.description,
            matched_pattern=item.pattern.pattern,
        )
        for item in rules
        if item.matches(code)
    ]


def scan_code(code: str, *, max_code_bytes: int = DEFAULT_MAX_CODE_BYTES) -> ScanResult:
    """Scan ``code`` with the built-in rule tables."""

    return RiskScanner(max_code_bytes=max_code_bytes).scan(code)


__all__ = [
    "CODE_SIZE_DESCRIPTION",
    "SYNTAX_ERROR_DESCRIPTION",
    "RiskScanner",
    "scan_code",
]
