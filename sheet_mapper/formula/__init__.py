"""CALC: expression language: segmenting, the function catalog and row evaluation."""

from sheet_mapper.formula.evaluator import (
    Evaluator,
    compare,
    evaluate_formula,
    is_truthy,
    parse_number,
    round_half_up,
)
from sheet_mapper.formula.functions import FUNCTIONS, FormulaFunction
from sheet_mapper.formula.parser import (
    FunctionCall,
    is_parenthetical,
    parse_call,
    segment_formula,
    split_arguments,
)

__all__ = [
    "Evaluator",
    "FUNCTIONS",
    "FormulaFunction",
    "FunctionCall",
    "compare",
    "evaluate_formula",
    "is_parenthetical",
    "is_truthy",
    "parse_call",
    "parse_number",
    "round_half_up",
    "segment_formula",
    "split_arguments",
]
