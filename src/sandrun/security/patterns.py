"""Rule tables for the risk scanner.

Every table is plain data: a tuple of :class:`PatternRule` values evaluated in
order. Patterns avoid nested quantifiers so matching stays linear in the input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

from sandrun.domain.models import IssueKind, Severity

# Built-in modules that spawn processes or open network servers/sockets.
DANGEROUS_MODULES: Final[frozenset[str]] = frozenset(
    {
        "child_process",
        "cluster",
        "dgram",
        "dns",
        "net",
        "tls",
        "worker_threads",
    }
)

# require('x'), import ... from 'x', import 'x', export ... from 'x', import('x').
MODULE_REFERENCE_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"\brequire\s*\(\s*(['\"`])(?P<module>[^'\"`\s]{1,214})\1\s*\)"),
    re.compile(r"\bfrom\s*(['\"])(?P<module>[^'\"\s]{1,214})\1"),
    re.compile(r"\bimport\s*(['\"])(?P<module>[^'\"\s]{1,214})\1"),
    re.compile(r"\bimport\s*\(\s*(['\"`])(?P<module>[^'\"`\s]{1,214})\1\s*\)"),
)

_NODE_SCHEME: Final[str] = "node:"


@dataclass(frozen=True, slots=True)
class PatternRule:
    """One detection rule: a compiled pattern plus the issue it produces."""

    name: str
    pattern: re.Pattern[str]
    kind: IssueKind
    severity: Severity
    description: str

    def matches(self, code: str) -> bool:
        return self.pattern.search(code) is not None


def rule(
    name: str,
    pattern: str,
    kind: IssueKind,
    severity: Severity,
    description: str,
    *,
    flags: int = 0,
) -> PatternRule:
    """Compile ``pattern`` into a :class:`PatternRule`."""

    return PatternRule(
        name=name,
        pattern=re.compile(pattern, flags),
        kind=kind,
        severity=severity,
        description=description,
    )


def module_base_name(specifier: str) -> str:
    """Normalize a module specifier: drop the ``node:`` scheme and any sub-path.

    ``node:fs/promises`` -> ``fs``; ``@scope/pkg/sub`` -> ``@scope/pkg``.
    """

    name = specifier.strip()
    if name.startswith(_NODE_SCHEME):
        name = name[len(_NODE_SCHEME) :]
    if name.startswith("@"):
        parts = name.split("/", 2)
        return "/".join(parts[:2])
    return name.split("/", 1)[0]


def referenced_modules(code: str) -> list[str]:
    """Return every module specifier referenced by require/import, in source order."""

    found: list[tuple[int, str]] = []
    for pattern in MODULE_REFERENCE_PATTERNS:
        for match in pattern.finditer(code):
            found.append((match.start(), match.group("module")))
    found.sort(key=lambda item: item[0])
    return [module for _, module in found]


_SUSPICIOUS = "Potentially dangerous code pattern detected"

SUSPICIOUS_RULES: Final[tuple[PatternRule, ...]] = (
    rule(
        "require_fs",
        r"\brequire\s*\(\s*['\"](?:node:)?fs(?:/[\w/]*)?['\"]\s*\)",
        IssueKind.SUSPICIOUS_PATTERN,
        Severity.HIGH,
        f"{_SUSPICIOUS}: filesystem module import",
    ),
    rule(
        "require_os",
        r"\brequire\s*\(\s*['\"](?:node:)?os['\"]\s*\)",
        IssueKind.SUSPICIOUS_PATTERN,
        Severity.HIGH,
        f"{_SUSPICIOUS}: operating system module import",
    ),
    rule(
        "require_process",
        r"\brequire\s*\(\s*['\"](?:node:)?process['\"]\s*\)",
        IssueKind.SUSPICIOUS_PATTERN,
        Severity.HIGH,
        f"{_SUSPICIOUS}: process module import",
    ),
    rule(
        "process_exit",
        r"\bprocess\.exit\b",
        IssueKind.SUSPICIOUS_PATTERN,
        Severity.HIGH,
        f"{_SUSPICIOUS}: process.exit",
    ),
    rule(
        "process_kill",
        r"\bprocess\.kill\b",
        IssueKind.SUSPICIOUS_PATTERN,
        Severity.HIGH,
        f"{_SUSPICIOUS}: process.kill",
    ),
    rule(
        "eval_call",
        r"\beval\s*\(",
        IssueKind.SUSPICIOUS_PATTERN,
        Severity.HIGH,
        f"{_SUSPICIOUS}: eval()",
    ),
    rule(
        "function_constructor",
        r"\bFunction\s*\(",
        IssueKind.SUSPICIOUS_PATTERN,
        Severity.HIGH,
        f"{_SUSPICIOUS}: Function constructor",
    ),
    rule(
        "path_traversal",
        r"\.\./|\.\.\\",
        IssueKind.SUSPICIOUS_PATTERN,
        Severity.HIGH,
        f"{_SUSPICIOUS}: path traversal",
    ),
    rule(
        "system_paths",
        r"/etc/|/proc/|/sys/",
        IssueKind.SUSPICIOUS_PATTERN,
        Severity.HIGH,
        f"{_SUSPICIOUS}: system path reference",
    ),
    rule(
        "rm_rf",
        r"\brm\s+-rf\b",
        IssueKind.SUSPICIOUS_PATTERN,
        Severity.HIGH,
        f"{_SUSPICIOUS}: recursive delete command",
    ),
    rule(
        "del_command",
        r"\bdel\s+/[qfs]",
        IssueKind.SUSPICIOUS_PATTERN,
        Severity.HIGH,
        f"{_SUSPICIOUS}: forced delete command",
        flags=re.IGNORECASE,
    ),
)

HEURISTIC_RULES: Final[tuple[PatternRule, ...]] = (
    rule(
        "inner_html_assignment",
        r"\.innerHTML\s*=(?!=)",
        IssueKind.HEURISTIC,
        Severity.MEDIUM,
        "Potential XSS vulnerability - use textContent or createElement instead",
    ),
    rule(
        "document_write",
        r"\bdocument\.write\s*\(",
        IssueKind.HEURISTIC,
        Severity.HIGH,
        "document.write can cause security issues",
    ),
    rule(
        "string_set_timeout",
        r"\bsetTimeout\s*\(\s*['\"][^'\"]*['\"]",
        IssueKind.HEURISTIC,
        Severity.MEDIUM,
        "String-based setTimeout can be dangerous",
    ),
    rule(
        "string_set_interval",
        r"\bsetInterval\s*\(\s*['\"][^'\"]*['\"]",
        IssueKind.HEURISTIC,
        Severity.MEDIUM,
        "String-based setInterval can be dangerous",
    ),
    rule(
        "new_function",
        r"\bnew\s+Function\s*\(",
        IssueKind.HEURISTIC,
        Severity.HIGH,
        "Dynamic function creation detected",
    ),
    rule(
        "dynamic_window_access",
        r"\bwindow\s*\[\s*['\"][^'\"]*['\"]\s*\]",
        IssueKind.HEURISTIC,
        Severity.MEDIUM,
        "Dynamic window property access",
    ),
    rule(
        "local_storage_write",
        r"\blocalStorage\.setItem\s*\(\s*['\"][^'\"]*['\"][^)]*\)",
        IssueKind.HEURISTIC,
        Severity.LOW,
        "Local storage usage detected",
    ),
    rule(
        "session_storage_write",
        r"\bsessionStorage\.setItem\s*\(\s*['\"][^'\"]*['\"][^)]*\)",
        IssueKind.HEURISTIC,
        Severity.LOW,
        "Session storage usage detected",
    ),
    rule(
        "fetch_call",
        r"\bfetch\s*\(",
        IssueKind.HEURISTIC,
        Severity.MEDIUM,
        "Network request detected - ensure proper validation",
    ),
    rule(
        "xml_http_request",
        r"\bXMLHttpRequest\b",
        IssueKind.HEURISTIC,
        Severity.MEDIUM,
        "XMLHttpRequest usage - ensure proper validation",
    ),
)

INPUT_SOURCE_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"\bprompt\s*\("),
    re.compile(r"\bconfirm\s*\("),
)

DANGEROUS_SINK_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"\.innerHTML\s*=(?!=)"),
    re.compile(r"\bdocument\.write\b"),
    re.compile(r"\beval\s*\("),
    re.compile(r"\bsetTimeout\s*\(\s*['\"`]"),
    re.compile(r"\bsetInterval\s*\(\s*['\"`]"),
)

DATA_FLOW_DESCRIPTION: Final[str] = (
    "User input may be used in dangerous context without proper sanitization"
)

__all__ = [
    "DANGEROUS_MODULES",
    "DANGEROUS_SINK_PATTERNS",
    "DATA_FLOW_DESCRIPTION",
    "HEURISTIC_RULES",
    "INPUT_SOURCE_PATTERNS",
    "MODULE_REFERENCE_PATTERNS",
    "PatternRule",
    "SUSPICIOUS_RULES",
    "module_base_name",
    "referenced_modules",
    "rule",
]
