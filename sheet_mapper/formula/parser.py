"""
Tokenising for CALC: expressions.

An expression is split into top-level segments: operands (column names,
literals, quoted text, function calls, parenthesised groups) alternating with
operators. Nothing inside quotes or parentheses is split; those parts are
re-segmented when they are evaluated.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from sheet_mapper.errors import FormulaError
from sheet_mapper.formula.functions import FormulaFunction

QUOTE_CHARS = ("'", '"')
OPERATOR_CHARS = frozenset("+-×÷/*><=!≠")
TWO_CHAR_OPERATORS = frozenset({">=", "<=", "==", "!="})

ARITHMETIC_OPERATORS = frozenset({"+", "-", "×", "*", "÷", "/"})
COMPARISON_OPERATORS = frozenset({">", "<", ">=", "<=", "=", "==", "!=", "≠"})
SIGN_OPERATORS = frozenset({"+", "-"})
OPERATORS = ARITHMETIC_OPERATORS | COMPARISON_OPERATORS

_CALL_NAME_RE = re.compile(r"^([A-Z][A-Z0-9_]*)\(")


@dataclass(frozen=True)
class FunctionCall:
    function: FormulaFunction
    arguments: tuple[str, ...]
    text: str

    @property
    def name(self) -> str:
        return self.function.value


def is_quoted(text: str) -> bool:
    return len(text) >= 2 and text[0] in QUOTE_CHARS and text[-1] == text[0]


def unquote(text: str) -> str:
    return text[1:-1] if is_quoted(text) else text


def segment_formula(text: str) -> list[str]:
    """
    Split ``text`` into top-level operands and operators.

    >>> segment_formula("A + B × (C - D)")
    ['A', '+', 'B', '×', '(C - D)']
    """
    segments: list[str] = []
    current: list[str] = []
    depth = 0
    quote: str | None = None

    def flush() -> None:
        chunk = "".join(current).strip()
        if chunk:
            segments.append(chunk)
        current.clear()

    i = 0
    while i < len(text):
        char = text[i]
        if quote is not None:
            current.append(char)
            if char == quote:
                quote = None
        elif char in QUOTE_CHARS:
            quote = char
            current.append(char)
        elif char == "(":
            depth += 1
            current.append(char)
        elif char == ")":
            if depth == 0:
                raise FormulaError("Unbalanced ')'", text)
            depth -= 1
            current.append(char)
            if depth == 0:
                flush()
        elif depth == 0 and char in OPERATOR_CHARS:
            flush()
            pair = text[i : i + 2]
            if pair in TWO_CHAR_OPERATORS:
                segments.append(pair)
                i += 2
                continue
            segments.append(char)
        else:
            current.append(char)
        i += 1

    flush()
    return segments


def split_arguments(text: str) -> list[str]:
    """Split a call's argument text on top-level ``,`` or ``;``."""
    arguments: list[str] = []
    current: list[str] = []
    depth = 0
    quote: str | None = None

    for char in text:
        if quote is not None:
            if char == quote:
                quote = None
        elif char in QUOTE_CHARS:
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif char in ",;" and depth == 0:
            arguments.append("".join(current).strip())
            current = []
            continue
        current.append(char)

    tail = "".join(current).strip()
    if tail:
        arguments.append(tail)
    return arguments


def _closing_paren(text: str, open_index: int) -> int:
    depth = 0
    quote: str | None = None
    for index in range(open_index, len(text)):
        char = text[index]
        if quote is not None:
            if char == quote:
                quote = None
        elif char in QUOTE_CHARS:
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return index
    return -1


def call_name(text: str) -> str | None:
    """Name of a ``NAME(...)`` segment whose parentheses close at the end, known or not."""
    match = _CALL_NAME_RE.match(text)
    if not match:
        return None
    open_index = match.end() - 1
    if _closing_paren(text, open_index) != len(text) - 1:
        return None
    return match.group(1)


def parse_call(text: str) -> FunctionCall | None:
    """
    Parse ``text`` as a call to one of the FormulaFunction members.

    Returns None when ``text`` is not call-shaped. Raises FormulaError for a
    call-shaped segment whose name is not a known function.
    """
    name = call_name(text)
    if name is None:
        return None
    try:
        function = FormulaFunction(name)
    except ValueError:
        raise FormulaError(f"Unknown function {name}", text) from None
    inner = text[len(name) + 1 : -1]
    return FunctionCall(function=function, arguments=tuple(split_arguments(inner)), text=text)


def is_parenthetical(text: str) -> bool:
    return text.startswith("(") and _closing_paren(text, 0) == len(text) - 1
