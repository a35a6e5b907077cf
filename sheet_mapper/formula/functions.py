"""
The closed catalog of CALC: functions.

Every FormulaFunction member has exactly one entry in FUNCTIONS. A function
receives an ArgumentReader and resolves only the arguments it needs, so IF
never evaluates the branch it does not take.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Mapping

from sheet_mapper.errors import FormulaError

if TYPE_CHECKING:
    from sheet_mapper.formula.evaluator import Evaluator


class FormulaFunction(str, Enum):
    # text
    LEFT = "LEFT"
    RIGHT = "RIGHT"
    MID = "MID"
    FIND = "FIND"
    REGEX = "REGEX"
    SPLIT = "SPLIT"
    TRIM = "TRIM"
    UPPER = "UPPER"
    LOWER = "LOWER"
    REPLACE = "REPLACE"
    CONCAT = "CONCAT"
    CONTAINS = "CONTAINS"
    STARTSWITH = "STARTSWITH"
    ENDSWITH = "ENDSWITH"
    LENGTH = "LENGTH"
    ISEMPTY = "ISEMPTY"
    # math
    ROUND = "ROUND"
    ABS = "ABS"
    MIN = "MIN"
    MAX = "MAX"
    CEILING = "CEILING"
    FLOOR = "FLOOR"
    # logic
    IF = "IF"
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class ArgumentReader:
    """Lazy access to the raw argument texts of one call, resolved against one row."""

    def __init__(
        self,
        evaluator: "Evaluator",
        function: FormulaFunction,
        arguments: tuple[str, ...],
        row: Mapping[str, Any],
        depth: int,
    ) -> None:
        self.evaluator = evaluator
        self.function = function
        self.arguments = arguments
        self.row = row
        self.depth = depth

    def __len__(self) -> int:
        return len(self.arguments)

    def has(self, index: int) -> bool:
        return index < len(self.arguments) and self.arguments[index] != ""

    def value(self, index: int, default: Any = "") -> Any:
        if not self.has(index):
            return default
        return self.evaluator.resolve_argument(self.arguments[index], self.row, self.depth)

    def text(self, index: int) -> str:
        return self.evaluator.to_text(self.value(index))

    def number(self, index: int, default: float = 0) -> float:
        if not self.has(index):
            return default
        return self.evaluator.to_number(self.value(index))

    def integer(self, index: int, default: int = 0) -> int:
        return int(self.number(index, default))

    def condition(self, index: int) -> bool:
        return self.evaluator.evaluate_condition(self.arguments[index], self.row, self.depth)

    def expression(self, index: int) -> Any:
        return self.evaluator.evaluate_expression(self.arguments[index], self.row, self.depth)


@dataclass(frozen=True)
class FunctionSpec:
    min_args: int
    impl: Callable[[ArgumentReader], Any]


# ── text ──────────────────────────────────────────────────────────────────────

def _left(args: ArgumentReader) -> str:
    return args.text(0)[: max(0, args.integer(1))]


def _right(args: ArgumentReader) -> str:
    text = args.text(0)
    return text[max(0, len(text) - args.integer(1)) :]


def _mid(args: ArgumentReader) -> str:
    text = args.text(0)
    start = max(0, (args.integer(1) or 1) - 1)
    length = args.integer(2) or 1
    return text[start : start + length] if length > 0 else ""


def _find(args: ArgumentReader) -> int:
    needle = args.text(0)
    haystack = args.text(1)
    start = max(0, (args.integer(2) or 1) - 1) if args.has(2) else 0
    found = haystack.find(needle, start)
    return found + 1 if found >= 0 else 0


def _regex(args: ArgumentReader) -> str:
    text = args.text(0)
    pattern = args.text(1).replace("\\\\", "\\")
    group = args.integer(2) or 1
    try:
        match = re.search(pattern, text)
    except re.error as exc:
        raise FormulaError(f"Invalid pattern {pattern!r}: {exc}") from exc
    if match is None or not 1 <= group <= match.re.groups:
        return ""
    return match.group(group) or ""


def _split(args: ArgumentReader) -> str:
    text = args.text(0)
    delimiter = args.text(1)
    parts = text.split(delimiter) if delimiter else list(text)
    index = (args.integer(2) or 1) - 1
    return parts[index] if 0 <= index < len(parts) else ""


def _replace(args: ArgumentReader) -> str:
    text = args.text(0)
    search = args.text(1)
    if not search:
        return text
    return text.replace(search, args.text(2))


def _concat(args: ArgumentReader) -> str:
    return "".join(args.text(index) for index in range(len(args)))


def _isempty(args: ArgumentReader) -> bool:
    return args.value(0, default=None) in ("", None)


# ── math ──────────────────────────────────────────────────────────────────────

def _round(args: ArgumentReader) -> float:
    decimals = args.integer(1) if args.has(1) else None
    return args.evaluator.round_value(args.number(0), decimals)


def _min(args: ArgumentReader) -> float:
    return min(args.number(index) for index in range(len(args)))


def _max(args: ArgumentReader) -> float:
    return max(args.number(index) for index in range(len(args)))


# ── logic ─────────────────────────────────────────────────────────────────────

def _if(args: ArgumentReader) -> Any:
    if args.evaluator.is_truthy(args.expression(0)):
        return args.value(1)
    return args.value(2)


FUNCTIONS: dict[FormulaFunction, FunctionSpec] = {
    FormulaFunction.LEFT: FunctionSpec(2, _left),
    FormulaFunction.RIGHT: FunctionSpec(2, _right),
    FormulaFunction.MID: FunctionSpec(2, _mid),
    FormulaFunction.FIND: FunctionSpec(2, _find),
    FormulaFunction.REGEX: FunctionSpec(2, _regex),
    FormulaFunction.SPLIT: FunctionSpec(2, _split),
    FormulaFunction.TRIM: FunctionSpec(1, lambda args: args.text(0).strip()),
    FormulaFunction.UPPER: FunctionSpec(1, lambda args: args.text(0).upper()),
    FormulaFunction.LOWER: FunctionSpec(1, lambda args: args.text(0).lower()),
    FormulaFunction.REPLACE: FunctionSpec(2, _replace),
    FormulaFunction.CONCAT: FunctionSpec(1, _concat),
    FormulaFunction.CONTAINS: FunctionSpec(2, lambda args: args.text(1) in args.text(0)),
    FormulaFunction.STARTSWITH: FunctionSpec(2, lambda args: args.text(0).startswith(args.text(1))),
    FormulaFunction.ENDSWITH: FunctionSpec(2, lambda args: args.text(0).endswith(args.text(1))),
    FormulaFunction.LENGTH: FunctionSpec(1, lambda args: len(args.text(0))),
    FormulaFunction.ISEMPTY: FunctionSpec(1, _isempty),
    FormulaFunction.ROUND: FunctionSpec(1, _round),
    FormulaFunction.ABS: FunctionSpec(1, lambda args: abs(args.number(0))),
    FormulaFunction.MIN: FunctionSpec(1, _min),
    FormulaFunction.MAX: FunctionSpec(1, _max),
    FormulaFunction.CEILING: FunctionSpec(1, lambda args: math.ceil(args.number(0))),
    FormulaFunction.FLOOR: FunctionSpec(1, lambda args: math.floor(args.number(0))),
    FormulaFunction.IF: FunctionSpec(2, _if),
    FormulaFunction.AND: FunctionSpec(1, lambda args: all(args.condition(i) for i in range(len(args)))),
    FormulaFunction.OR: FunctionSpec(1, lambda args: any(args.condition(i) for i in range(len(args)))),
    FormulaFunction.NOT: FunctionSpec(1, lambda args: not args.condition(0)),
}


def call_function(
    evaluator: "Evaluator",
    function: FormulaFunction,
    arguments: tuple[str, ...],
    row: Mapping[str, Any],
    depth: int,
) -> Any:
    entry = FUNCTIONS[function]
    if len(arguments) < entry.min_args:
        raise FormulaError(
            f"{function.value} expects at least {entry.min_args} argument(s), got {len(arguments)}"
        )
    return entry.impl(ArgumentReader(evaluator, function, arguments, row, depth))
