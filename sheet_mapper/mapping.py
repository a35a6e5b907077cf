"""
mapping.py

A ColumnMapping says, per target field, where the value comes from:

    "Polisnummer": "Polis nr."                          copy a source column
    "Maatschappij": "FIXED:Allianz"                     fixed literal
    "Premie incl.": "CALC:ROUND(Bruto * 1.21, 2)"       calculated per row

The persisted form is exactly that flat JSON object.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from sheet_mapper.column_mapper import MappingSuggestion, suggest_mapping
from sheet_mapper.errors import InvalidInputError
from sheet_mapper.formula import Evaluator
from sheet_mapper.grid import Grid
from sheet_mapper.region_detector import DataSection, extract_headers
from sheet_mapper.shared import (
    CALC_PREFIX,
    DATE_FIELD_RE,
    DEFAULT_CONFIDENCE_THRESHOLD,
    EXCEL_DATE_SERIAL_MAX,
    FIXED_PREFIX,
)

logger = logging.getLogger(__name__)

_KEY_WHITESPACE_RE = re.compile(r"\s+")
_EXCEL_EPOCH = date(1899, 12, 31)


class RuleKind(str, Enum):
    COPY = "copy"
    FIXED = "fixed"
    CALC = "calc"


@dataclass(frozen=True)
class MappingRule:
    kind: RuleKind
    value: str

    def to_string(self) -> str:
        if self.kind is RuleKind.FIXED:
            return f"{FIXED_PREFIX}{self.value}"
        if self.kind is RuleKind.CALC:
            return f"{CALC_PREFIX}{self.value}"
        return self.value


def parse_rule(text: str) -> MappingRule:
    if not isinstance(text, str):
        raise InvalidInputError(f"Mapping rule must be a string, got {type(text).__name__}")
    if text.startswith(FIXED_PREFIX):
        return MappingRule(RuleKind.FIXED, text[len(FIXED_PREFIX) :])
    if text.startswith(CALC_PREFIX):
        return MappingRule(RuleKind.CALC, text[len(CALC_PREFIX) :])
    return MappingRule(RuleKind.COPY, text)


@dataclass
class ColumnMapping:
    rules: dict[str, MappingRule] = field(default_factory=dict)
    confidence: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ColumnMapping":
        if not isinstance(payload, Mapping):
            raise InvalidInputError("Mapping must be a JSON object of target field -> rule")
        return cls(rules={str(target): parse_rule(rule) for target, rule in payload.items()})

    @classmethod
    def load(cls, path: "str | Path") -> "ColumnMapping":
        path = Path(path)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise InvalidInputError(f"Mapping file {path} is not valid JSON: {exc}") from exc
        return cls.from_dict(payload)

    def to_dict(self) -> dict[str, str]:
        return {target: rule.to_string() for target, rule in self.rules.items()}

    def save(self, path: "str | Path") -> Path:
        path = Path(path)
        path.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        return path

    @property
    def targets(self) -> list[str]:
        return list(self.rules)

    def __len__(self) -> int:
        return len(self.rules)


# ══════════════════════════════════════════════════════════════════════════════
# VALUE HELPERS
# ══════════════════════════════════════════════════════════════════════════════

def normalize_key(key: str) -> str:
    return _KEY_WHITESPACE_RE.sub(" ", str(key)).strip()


def lookup_source(record: Mapping[str, Any], column: str) -> Any:
    """Exact key first, then the key with line breaks, tabs and runs of spaces collapsed."""
    if column in record:
        return record[column]
    wanted = normalize_key(column)
    for key, value in record.items():
        if normalize_key(key) == wanted:
            return value
    return None


def is_date_field(name: str) -> bool:
    return bool(DATE_FIELD_RE.search(name))


def is_excel_serial(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and 0 < value < EXCEL_DATE_SERIAL_MAX
    )


def format_excel_date(serial: float) -> str:
    """Excel serial day number -> DD-MM-YYYY, skipping the phantom 29-02-1900."""
    days = int(serial)
    if days > 59:
        days -= 1
    return (_EXCEL_EPOCH + timedelta(days=days)).strftime("%d-%m-%Y")


def _copy_value(target: str, value: Any) -> Any:
    if value is None:
        return ""
    if is_date_field(target):
        if is_excel_serial(value):
            return format_excel_date(value)
        if isinstance(value, (datetime, date)):
            return value.strftime("%d-%m-%Y")
    return value


# ══════════════════════════════════════════════════════════════════════════════
# APPLICATION
# ══════════════════════════════════════════════════════════════════════════════

def apply_rule(target: str, rule: MappingRule, record: Mapping[str, Any], evaluator: Evaluator) -> Any:
    if rule.kind is RuleKind.FIXED:
        return rule.value
    if rule.kind is RuleKind.CALC:
        return evaluator.evaluate(rule.value, record)
    return _copy_value(target, lookup_source(record, rule.value))


def apply_mapping(
    records: Iterable[Mapping[str, Any]],
    mapping: "ColumnMapping | Mapping[str, str]",
    evaluator: Evaluator | None = None,
) -> list[dict[str, Any]]:
    """Build one output record per source record, with the mapping's target fields in order."""
    if not isinstance(mapping, ColumnMapping):
        mapping = ColumnMapping.from_dict(mapping)
    evaluator = evaluator or Evaluator()

    output: list[dict[str, Any]] = []
    for record in records:
        output.append({target: apply_rule(target, rule, record, evaluator) for target, rule in mapping.rules.items()})
    logger.info("Applied %d mapping rules to %d records", len(mapping), len(output))
    return output


def suggest_column_mapping(
    grid: Grid,
    section: DataSection,
    targets: Sequence[str],
    threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
) -> tuple[ColumnMapping, MappingSuggestion]:
    """Match the detected headers of ``grid`` to ``targets`` and return copy rules for the matches."""
    headers = extract_headers(grid, section)
    suggestion = suggest_mapping(headers, targets, threshold)
    mapping = ColumnMapping(
        rules={target: MappingRule(RuleKind.COPY, source) for target, source in suggestion.mapping.items()},
        confidence=dict(suggestion.confidence_scores),
    )
    return mapping, suggestion
