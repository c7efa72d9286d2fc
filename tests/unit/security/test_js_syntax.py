"""Unit tests for the lightweight JavaScript validity check."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from sandrun.security.js_syntax import SyntaxProblem, check_syntax, is_valid_syntax


@pytest.mark.parametrize(
    "source",
    [
        "",
        "console.log('hi')",
        "const a = b / c / d;",
        r"const re = /[/]\//g; re.test('x');",
        "if (x) { return /ab+c/i.test(y) }",
        "const s = `a ${ {x: `b ${1}`}.x } c`;",
        "#!/usr/bin/env node\n// (\n/* ) */\nconsole.log(1)",
        "let i = 0; i++ / 2;",
        "const q = \"it's\"; const r = 'say \\'hi\\'';",
    ],
)
def test_valid_sources_pass(source: str) -> None:
    assert check_syntax(source) is None
    assert is_valid_syntax(source)


@pytest.mark.parametrize(
    ("source", "message"),
    [
        ("function f() {", "unclosed '{'"),
        ("foo(]", "mismatched ']' (expected ')')"),
        (")", "unexpected ')'"),
        ("const s = 'abc\nfoo'", "unterminated string literal"),
        ("const t = `abc", "unterminated template literal"),
        ("const t = `a ${b`", "unterminated template literal"),
        ("/* never closed", "unterminated block comment"),
        ("const r = /abc", "unterminated regular expression literal"),
        ("a \\ b", "unexpected '\\'"),
    ],
)
def test_invalid_sources_report_first_problem(source: str, message: str) -> None:
    problem = check_syntax(source)

    assert problem is not None
    assert problem.message == message
    assert not is_valid_syntax(source)


def test_problem_location_is_one_based() -> None:
    problem = check_syntax("let a = 1;\nlet b = (;")

    assert problem == SyntaxProblem(message="unclosed '('", line=2, column=9)
    assert str(problem) == "unclosed '(' (line 2, column 9)"


def test_unclosed_template_substitution_is_reported() -> None:
    problem = check_syntax("const t = `a ${ (b) ")

    assert problem is not None
    assert problem.message == "unterminated template substitution"


_PLAIN_TEXT = st.text(alphabet="abcxyz0189 ;+=.\n", max_size=60)


@settings(max_examples=75, deadline=None)
@given(text=_PLAIN_TEXT, depth=st.integers(min_value=0, max_value=20))
def test_balanced_nesting_is_valid_and_extra_closer_is_not(text: str, depth: int) -> None:
    balanced = "(" * depth + text + ")" * depth

    assert check_syntax(balanced) is None
    assert check_syntax(balanced + ")") is not None


@settings(max_examples=100, deadline=None)
@given(source=st.text(max_size=200))
def test_check_never_raises_on_arbitrary_input(source: str) -> None:
    problem = check_syntax(source)

    assert problem is None or problem.line >= 1
