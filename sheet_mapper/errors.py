"""sheet-mapper exception hierarchy."""

from __future__ import annotations


class SheetMapperError(Exception):
    """Base exception for all sheet-mapper errors."""


class InvalidInputError(SheetMapperError, ValueError):
    """Caller passed input no partial result can be built from."""


class FormulaError(SheetMapperError):
    """A formula could not be evaluated for one row."""

    def __init__(self, message: str, expression: str | None = None) -> None:
        self.expression = expression
        if expression is not None:
            message = f"{message} (formula: {expression})"
        super().__init__(message)


class FormulaDepthError(FormulaError):
    """Nested evaluation went deeper than the evaluator allows."""

    def __init__(self, max_depth: int, expression: str | None = None) -> None:
        self.max_depth = max_depth
        super().__init__(f"Formula nesting exceeds {max_depth} levels", expression)
