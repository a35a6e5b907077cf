"""
Row-level evaluation of CALC: expressions.

Usage:
    evaluator = Evaluator()
    evaluator.evaluate('LEFT(Filename, FIND("_", Filename)-1)', row)

Operators fold strictly left to right with no precedence: ``A + B * C`` is
``(A + B) * C``. The first comparison operator ends the fold and its boolean
is the result. Evaluation failures are logged and yield ``""`` so one broken
field never stops a batch.
"""

from __future__ import annotations

import logging
import math
import re
import sys
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping

from sheet_mapper.errors import FormulaDepthError, FormulaError
from sheet_mapper.formula.functions import call_function
from sheet_mapper.formula.parser import (
    COMPARISON_OPERATORS,
    OPERATORS,
    SIGN_OPERATORS,
    call_name,
    is_parenthetical,
    is_quoted,
    parse_call,
    segment_formula,
    unquote,
)
from sheet_mapper.shared import DEFAULT_MAX_FORMULA_DEPTH, DEFAULT_ROUND_DECIMALS, FOLD_DECIMALS

logger = logging.getLogger(__name__)

_PLAIN_NUMBER_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")
_DOTTED_THOUSANDS_RE = re.compile(r"^[+-]?\d{1,3}(?:\.\d{3})+$")

# Python frames spent per nesting level of a call argument
FRAMES_PER_LEVEL = 10

# Condition splitting for AND/OR/NOT, checked in this order.
CONDITION_SPLITS = (
    (" = ", "="),
    (" ≠ ", "≠"),
    (" > ", ">"),
    (" < ", "<"),
)


def parse_number(value: Any) -> float | None:
    """
    Read ``value`` as a number, accepting European formatting.

    Text with a comma is European: every ``.`` is a thousands separator and
    the comma is the decimal point (``"1.234,56"`` -> 1234.56). Without a
    comma, only strict thousands groups drop their dots (``"1.000"`` ->
    1000); anything else parses as a plain decimal (``"1.21"`` -> 1.21).
    Returns None when ``value`` is not a number.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    if "," in text:
        text = text.replace(".", "").replace(",", ".", 1)
    elif _DOTTED_THOUSANDS_RE.match(text):
        text = text.replace(".", "")
    if not _PLAIN_NUMBER_RE.match(text):
        return None
    return float(text)


def round_half_up(value: float, decimals: int = DEFAULT_ROUND_DECIMALS) -> float:
    """Round with halves away from zero, on the shortest decimal repr of ``value``."""
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return value
    try:
        quantum = Decimal(1).scaleb(-decimals)
        return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation as exc:
        raise FormulaError(f"Cannot round {value!r} to {decimals} decimals") from exc


def is_truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return value.strip() not in ("", "0")
    if isinstance(value, (int, float)):
        return value != 0
    return bool(value)


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _clean_number(value: float) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def compare(left: Any, right: Any, operator: str) -> bool:
    """Numeric comparison when both sides are numbers, text comparison otherwise."""
    left_number = parse_number(left)
    right_number = parse_number(right)
    if left_number is not None and right_number is not None:
        a: Any = left_number
        b: Any = right_number
    else:
        a = to_text(left)
        b = to_text(right)

    if operator == ">":
        return a > b
    if operator == "<":
        return a < b
    if operator == ">=":
        return a >= b
    if operator == "<=":
        return a <= b
    if operator in ("=", "=="):
        return a == b
    if operator in ("!=", "≠"):
        return a != b
    raise FormulaError(f"Unsupported comparison {operator!r}")


class Evaluator:
    """Evaluates expressions against one row at a time; holds no row state."""

    def __init__(self, max_depth: int = DEFAULT_MAX_FORMULA_DEPTH) -> None:
        if max_depth < 1:
            raise ValueError("max_depth must be at least 1")
        ceiling = max(1, sys.getrecursionlimit() // FRAMES_PER_LEVEL)
        if max_depth > ceiling:
            logger.debug("max_depth %d capped to %d by the interpreter recursion limit", max_depth, ceiling)
        self.max_depth = min(max_depth, ceiling)

    # ── public ────────────────────────────────────────────────────────────────

    def evaluate(self, expression: str, row: Mapping[str, Any] | None = None) -> Any:
        """Evaluate ``expression`` for ``row``; ``""`` when it cannot be evaluated."""
        try:
            return self.evaluate_expression(expression, row or {}, 0)
        except (FormulaError, ArithmeticError, TypeError, ValueError, RecursionError) as exc:
            logger.warning("Formula evaluation failed for %r: %s", expression, exc)
            return ""

    # ── hooks used by functions ───────────────────────────────────────────────

    to_text = staticmethod(to_text)
    is_truthy = staticmethod(is_truthy)

    @staticmethod
    def to_number(value: Any) -> float:
        number = parse_number(value)
        if number is None:
            if value not in ("", None):
                logger.debug("Non-numeric operand %r treated as 0", value)
            return 0
        return number

    @staticmethod
    def round_value(value: float, decimals: int | None = None) -> Any:
        return _clean_number(round_half_up(value, DEFAULT_ROUND_DECIMALS if decimals is None else decimals))

    def evaluate_expression(self, text: str, row: Mapping[str, Any], depth: int) -> Any:
        depth = self._enter(depth, text)
        segments = segment_formula(text)
        if not segments:
            return ""
        if len(segments) == 1:
            return self._evaluate_single(segments[0], row, depth)
        return self._fold(segments, row, depth, text)

    def resolve_argument(self, argument: str, row: Mapping[str, Any], depth: int) -> Any:
        if is_quoted(argument):
            return unquote(argument)
        if argument in row:
            return row[argument]
        if len(segment_formula(argument)) > 1:
            return self.evaluate_expression(argument, row, depth)
        return self.resolve_operand(argument, row, depth)

    def resolve_operand(self, operand: str, row: Mapping[str, Any], depth: int) -> Any:
        depth = self._enter(depth, operand)
        text = operand.strip()

        call = parse_call(text) if self._is_call_candidate(text, row) else None
        if call is not None:
            return call_function(self, call.function, call.arguments, row, depth)
        if is_parenthetical(text):
            return self.evaluate_expression(text[1:-1], row, depth)
        if text in row:
            return row[text]
        if is_quoted(text):
            return unquote(text)
        number = parse_number(text)
        if number is not None:
            return number
        return text

    def evaluate_condition(self, condition: str, row: Mapping[str, Any], depth: int) -> bool:
        depth = self._enter(depth, condition)
        for token, operator in CONDITION_SPLITS:
            if token in condition:
                left, right = condition.split(token, 1)
                return compare(
                    self.resolve_argument(left.strip(), row, depth),
                    self.resolve_argument(right.strip(), row, depth),
                    operator,
                )
        if "(" in condition:
            return is_truthy(self.evaluate_expression(condition, row, depth))
        return is_truthy(self.resolve_argument(condition.strip(), row, depth))

    # ── internals ─────────────────────────────────────────────────────────────

    def _enter(self, depth: int, text: str) -> int:
        depth += 1
        if depth > self.max_depth:
            raise FormulaDepthError(self.max_depth, text)
        return depth

    @staticmethod
    def _is_call_candidate(text: str, row: Mapping[str, Any]) -> bool:
        # a column literally named like a call, e.g. "BTW(21%)", is a column
        return call_name(text) is not None and text not in row

    def _evaluate_single(self, segment: str, row: Mapping[str, Any], depth: int) -> Any:
        if self._is_call_candidate(segment, row):
            call = parse_call(segment)
            if call is not None:
                return call_function(self, call.function, call.arguments, row, depth)
        if is_quoted(segment):
            return unquote(segment)
        if is_parenthetical(segment):
            return self.evaluate_expression(segment[1:-1], row, depth)
        if segment in row:
            return row[segment]
        return segment

    def _take_operand(self, segments: list[str], index: int, row: Mapping[str, Any], depth: int) -> tuple[Any, int]:
        signed = False
        negate = False
        while index < len(segments) and segments[index] in SIGN_OPERATORS:
            signed = True
            negate ^= segments[index] == "-"
            index += 1
        if index >= len(segments):
            raise FormulaError(f"Missing operand after {segments[index - 1]!r}")
        token = segments[index]
        if token in OPERATORS or token == "!":
            raise FormulaError(f"Unexpected operator {token!r}")
        value = self.resolve_operand(token, row, depth)
        if not signed:
            return value, index + 1
        number = self.to_number(value)
        return (-number if negate else number), index + 1

    def _fold(self, segments: list[str], row: Mapping[str, Any], depth: int, expression: str) -> Any:
        accumulator, index = self._take_operand(segments, 0, row, depth)
        while index < len(segments):
            operator = segments[index]
            if operator not in OPERATORS:
                raise FormulaError(f"Expected an operator, found {operator!r}", expression)
            operand, index = self._take_operand(segments, index + 1, row, depth)
            if operator in COMPARISON_OPERATORS:
                return compare(accumulator, operand, operator)
            accumulator = self._apply(operator, self.to_number(accumulator), self.to_number(operand))

        if isinstance(accumulator, (int, float)) and not isinstance(accumulator, bool):
            return _clean_number(round_half_up(accumulator, FOLD_DECIMALS))
        return accumulator

    @staticmethod
    def _apply(operator: str, left: float, right: float) -> float:
        if operator == "+":
            return left + right
        if operator == "-":
            return left - right
        if operator in ("×", "*"):
            return left * right
        if operator in ("÷", "/"):
            return left / right if right != 0 else 0
        raise FormulaError(f"Unsupported operator {operator!r}")


_DEFAULT_EVALUATOR = Evaluator()


def evaluate_formula(expression: str, row: Mapping[str, Any] | None = None) -> Any:
    return _DEFAULT_EVALUATOR.evaluate(expression, row)
