"""
sandrun — unit tests for the risk scanner

File: tests/unit/security/test_risk_scanner.py

Purpose
- Validate the pattern layer, the heuristic layer, score aggregation and the
  safe-iff-no-critical rule.
"""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from sandrun.domain.models import IssueKind, RiskLevel, Severity
from sandrun.security.patterns import rule
from sandrun.security.risk_scanner import (
    CODE_SIZE_DESCRIPTION,
    SYNTAX_ERROR_DESCRIPTION,
    RiskScanner,
    scan_code,
)


def test_benign_code_is_safe_with_no_issues() -> None:
    result = scan_code("console.log('hi')")

    assert result.safe
    assert result.issues == ()
    assert result.risk_level is RiskLevel.LOW


def test_child_process_is_critical_and_unsafe() -> None:
    result = scan_code("require('child_process').exec('ls')")

    assert not result.safe
    assert result.risk_level is RiskLevel.CRITICAL
    [issue] = result.issues_of(IssueKind.DANGEROUS_PACKAGE)
    assert issue.severity is Severity.CRITICAL
    assert issue.description == "Use of dangerous package: child_process"
    assert issue.matched_pattern == "child_process"


@pytest.mark.parametrize(
    "code",
    [
        "import { exec } from 'node:child_process';",
        "const { Worker } = require('worker_threads');",
        "const net = await import('net');",
        "import 'cluster';",
    ],
)
def test_dangerous_module_forms_are_detected(code: str) -> None:
    result = scan_code(code)

    assert not result.safe
    assert result.issues_of(IssueKind.DANGEROUS_PACKAGE)


def test_dangerous_module_reported_once_per_module() -> None:
    code = "require('net'); require('node:net'); require('dgram');"

    result = scan_code(code)

    modules = [issue.description for issue in result.issues_of(IssueKind.DANGEROUS_PACKAGE)]
    assert modules == ["Use of dangerous package: net", "Use of dangerous package: dgram"]


def test_filesystem_import_is_high_but_not_unsafe() -> None:
    result = scan_code("const fs = require('fs'); fs.readFileSync('data.txt');")

    assert result.safe
    assert result.risk_level is RiskLevel.HIGH
    [issue] = result.issues
    assert issue.kind is IssueKind.SUSPICIOUS_PATTERN
    assert issue.severity is Severity.HIGH


def test_syntax_failure_is_medium_and_skips_heuristics() -> None:
    result = scan_code("document.write(")

    kinds = [issue.kind for issue in result.issues]
    assert kinds == [IssueKind.SYNTAX_ERROR]
    assert result.issues[0].description == SYNTAX_ERROR_DESCRIPTION
    assert result.issues[0].severity is Severity.MEDIUM
    assert result.risk_level is RiskLevel.MEDIUM
    assert result.safe


def test_heuristics_run_when_syntax_is_valid() -> None:
    result = scan_code("el.innerHTML = '<b>x</b>'; fetch('/api');")

    descriptions = {issue.description for issue in result.issues_of(IssueKind.HEURISTIC)}
    assert "Potential XSS vulnerability - use textContent or createElement instead" in descriptions
    assert "Network request detected - ensure proper validation" in descriptions
    assert result.score == 4
    assert result.risk_level is RiskLevel.MEDIUM


def test_input_reaching_sink_is_data_flow_issue() -> None:
    result = scan_code("const v = prompt('x'); eval(v);")

    [flow] = result.issues_of(IssueKind.DATA_FLOW)
    assert flow.severity is Severity.HIGH
    assert result.safe
    assert result.score == 10
    assert result.risk_level is RiskLevel.CRITICAL


def test_input_without_sink_is_not_data_flow() -> None:
    result = scan_code("const ok = confirm('continue?'); console.log(ok);")

    assert result.issues_of(IssueKind.DATA_FLOW) == ()


def test_oversized_code_adds_medium_issue() -> None:
    scanner = RiskScanner(max_code_bytes=10)

    result = scanner.scan("console.log('hello world')")

    [issue] = result.issues_of(IssueKind.CODE_SIZE)
    assert issue.description == CODE_SIZE_DESCRIPTION
    assert issue.severity is Severity.MEDIUM
    assert issue.detail == "26 bytes > 10 bytes"


def test_extra_rules_extend_both_layers() -> None:
    critical = rule(
        "no_debugger",
        r"\bdebugger\b",
        IssueKind.SUSPICIOUS_PATTERN,
        Severity.CRITICAL,
        "debugger statement",
    )
    heuristic = rule("alert", r"\balert\s*\(", IssueKind.HEURISTIC, Severity.LOW, "alert call")
    scanner = RiskScanner(extra_rules=[critical], extra_heuristic_rules=[heuristic])

    assert not scanner.scan("debugger;").safe
    assert [i.description for i in scanner.scan("alert(1)").issues] == ["alert call"]
    assert scanner.scan("alert(").issues[0].kind is IssueKind.SYNTAX_ERROR


def test_custom_dangerous_module_set() -> None:
    scanner = RiskScanner(dangerous_modules={"left-pad"})

    assert not scanner.scan("require('left-pad')").safe
    assert scanner.scan("require('net')").safe


def test_invalid_max_code_bytes_is_rejected() -> None:
    with pytest.raises(ValueError):
        RiskScanner(max_code_bytes=0)


@settings(max_examples=100, deadline=None)
@given(code=st.text(max_size=300))
def test_safe_iff_no_critical_for_arbitrary_input(code: str) -> None:
    result = scan_code(code)

    has_critical = any(issue.severity is Severity.CRITICAL for issue in result.issues)
    assert result.safe is (not has_critical)


@settings(max_examples=50, deadline=None)
@given(prefix=st.text(alphabet="abc ;\n", max_size=40))
def test_child_process_is_always_rejected(prefix: str) -> None:
    result = scan_code(prefix + "\nrequire('child_process')")

    assert not result.safe
