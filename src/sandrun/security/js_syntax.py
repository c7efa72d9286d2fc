"""Lightweight JavaScript validity check.

A single forward pass over the source that recognizes strings, template
literals (with nested ``${...}`` substitutions), comments, regular-expression
literals and bracket nesting. It never builds a syntax tree and never
evaluates anything; it only answers "could this plausibly parse?".

Template substitutions are tracked on the same explicit stack as brackets, so
the pass is iterative and runs in time linear in the input.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

_OPENERS: Final[dict[str, str]] = {"(": ")", "[": "]", "{": "}"}
_CLOSERS: Final[dict[str, str]] = {")": "(", "]": "[", "}": "{"}
_TEMPLATE_MARK: Final[str] = "${"

# After these keywords a '/' starts a regular expression, not a division.
_REGEX_PREFIX_KEYWORDS: Final[frozenset[str]] = frozenset(
    {
        "await",
        "case",
        "delete",
        "do",
        "else",
        "in",
        "instanceof",
        "new",
        "return",
        "throw",
        "typeof",
        "void",
        "yield",
    }
)
# After these punctuators a '/' ends an expression, so it is a division.
_VALUE_END_PUNCTUATORS: Final[frozenset[str]] = frozenset({")", "]"})
_LINE_TERMINATORS: Final[frozenset[str]] = frozenset({"\n", "\r", "\u2028", "\u2029"})


@dataclass(frozen=True, slots=True)
class SyntaxProblem:
    """First problem found by :func:`check_syntax`, with a 1-based location."""

    message: str
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.message} (line {self.line}, column {self.column})"


class _Problem(Exception):
    def __init__(self, message: str, offset: int) -> None:
        super().__init__(message)
        self.message = message
        self.offset = offset


def check_syntax(source: str) -> SyntaxProblem | None:
    """Return the first lexical/bracket problem in ``source``, or ``None``."""

    try:
        _scan(source)
    except _Problem as problem:
        return _locate(source, problem.message, problem.offset)
    return None


def is_valid_syntax(source: str) -> bool:
    return check_syntax(source) is None


def _scan(source: str) -> None:
    length = len(source)
    stack: list[tuple[str, int]] = []
    # "value" when the previous token ends an expression, "operator" otherwise.
    previous = "operator"
    index = 0

    if source.startswith("#!"):
        index = _skip_line(source, index)

    while index < length:
        char = source[index]

        if char.isspace():
            index += 1
            continue

        if char == "/" and index + 1 < length and source[index + 1] == "/":
            index = _skip_line(source, index)
            continue

        if char == "/" and index + 1 < length and source[index + 1] == "*":
            end = source.find("*/", index + 2)
            if end < 0:
                raise _Problem("unterminated block comment", index)
            index = end + 2
            continue

        if char in ("'", '"'):
            index = _skip_string(source, index, char)
            previous = "value"
            continue

        if char == "`":
            index = _scan_template(source, index + 1, stack)
            previous = "value"
            continue

        if char == "/":
            if previous == "value":
                index += 1
                previous = "operator"
            else:
                index = _skip_regex(source, index)
                previous = "value"
            continue

        if char in _OPENERS:
            stack.append((char, index))
            index += 1
            previous = "operator"
            continue

        if char in _CLOSERS:
            if not stack:
                raise _Problem(f"unexpected '{char}'", index)
            opener, _ = stack.pop()
            if opener == _TEMPLATE_MARK:
                if char != "}":
                    raise _Problem(f"unexpected '{char}' in template substitution", index)
                index = _scan_template(source, index + 1, stack)
                previous = "value"
                continue
            if _CLOSERS[char] != opener:
                raise _Problem(f"mismatched '{char}' (expected '{_OPENERS[opener]}')", index)
            index += 1
            previous = "value" if char in _VALUE_END_PUNCTUATORS else "operator"
            continue

        if char.isalnum() or char in "_$" or ord(char) > 0x7F:
            start = index
            while index < length and (
                source[index].isalnum() or source[index] in "_$." or ord(source[index]) > 0x7F
            ):
                index += 1
            word = source[start:index]
            previous = "operator" if word in _REGEX_PREFIX_KEYWORDS else "value"
            continue

        if char == "\\":
            raise _Problem("unexpected '\\'", index)

        index += 1
        if char in "+-" and index < length and source[index] == char:
            # Postfix increment/decrement keeps the operand a value.
            index += 1
            continue
        previous = "operator"

    if stack:
        opener, offset = stack[-1]
        if opener == _TEMPLATE_MARK:
            raise _Problem("unterminated template substitution", offset)
        raise _Problem(f"unclosed '{opener}'", offset)


def _skip_line(source: str, index: int) -> int:
    while index < len(source) and source[index] not in _LINE_TERMINATORS:
        index += 1
    return index


def _skip_string(source: str, start: int, quote: str) -> int:
    index = start + 1
    length = len(source)
    while index < length:
        char = source[index]
        if char == "\\":
            index += 2
            continue
        if char == quote:
            return index + 1
        if char in ("\n", "\r"):
            break
        index += 1
    raise _Problem("unterminated string literal", start)


def _scan_template(source: str, index: int, stack: list[tuple[str, int]]) -> int:
    """Scan template text from ``index``.

    Returns the offset after the closing backtick, or after ``${`` (having
    pushed a substitution marker so the matching ``}`` resumes the template).
    """

    start = index - 1
    length = len(source)
    while index < length:
        char = source[index]
        if char == "\\":
            index += 2
            continue
        if char == "`":
            return index + 1
        if char == "$" and index + 1 < length and source[index + 1] == "{":
            stack.append((_TEMPLATE_MARK, index))
            return index + 2
        index += 1
    raise _Problem("unterminated template literal", max(start, 0))


def _skip_regex(source: str, start: int) -> int:
    index = start + 1
    length = len(source)
    in_class = False
    while index < length:
        char = source[index]
        if char in _LINE_TERMINATORS:
            break
        if char == "\\":
            index += 2
            continue
        if char == "[":
            in_class = True
        elif char == "]":
            in_class = False
        elif char == "/" and not in_class:
            index += 1
            while index < length and (source[index].isalnum() or source[index] == "_"):
                index += 1
            return index
        index += 1
    raise _Problem("unterminated regular expression literal", start)


def _locate(source: str, message: str, offset: int) -> SyntaxProblem:
    line = source.count("\n", 0, offset) + 1
    column = offset - (source.rfind("\n", 0, offset) + 1) + 1
    return SyntaxProblem(message=message, line=line, column=column)


__all__ = ["SyntaxProblem", "check_syntax", "is_valid_syntax"]
