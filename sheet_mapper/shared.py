from __future__ import annotations

import os
import re
from dataclasses import dataclass

# Region detection
HEADER_MIN_DENSITY = 0.7
START_COLUMN_MIN_DENSITY = 0.2
ROW_THRESHOLD_FLOOR = 0.5
COL_THRESHOLD_FLOOR = 0.3
THRESHOLD_RATIO = 0.7
MAX_HEADER_GAP = 2
SUMMARY_ROW_MIN_DENSITY = 0.7
CONFIDENCE_BOOST = 1.2
HEADER_ONLY_CONFIDENCE_FACTOR = 0.6
DATA_LENGTH_SHEET_RATIO = 0.1
FALLBACK_END_COLUMN = 20
PATTERN_FILL_THRESHOLD = 0.5
QUALITY_SAMPLE_ROWS = 10
DATE_SAMPLE_ROWS = 5
DATE_COLUMN_MIN_RATIO = 0.7
EXCEL_SERIAL_MIN = 25567
EXCEL_SERIAL_MAX = 65000
MIN_DETECTION_CONFIDENCE = 0.3

SUMMARY_ROW_RE = re.compile(
    r"(grand\s+total|eindtotaal|sub-?totaal|sub-?total|totaal|total|\bsum\b)",
    re.IGNORECASE,
)
DATE_TEXT_RE = re.compile(r"^\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}$")
ISO_DATE_TEXT_RE = re.compile(r"^\d{4}-\d{2}-\d{2}(?:[ T]\d{2}:\d{2}(?::\d{2})?)?$")

# Column mapping
DEFAULT_CONFIDENCE_THRESHOLD = 30.0
EXACT_MATCH_CONFIDENCE = 100.0
FUZZY_MATCH_CEILING = 99.0
NAME_PUNCTUATION_RE = re.compile(r"[%$#@&*()\[\]{}|\\:\";'<>?,.]")

# Formulas
DEFAULT_MAX_FORMULA_DEPTH = 64
FOLD_DECIMALS = 4
DEFAULT_ROUND_DECIMALS = 2
FIXED_PREFIX = "FIXED:"
CALC_PREFIX = "CALC:"

DATE_FIELD_RE = re.compile(r"datum|date|periode|van$|tot$|dtm$", re.IGNORECASE)
EXCEL_DATE_SERIAL_MAX = 100000

CONFIDENCE_LABELS = {
    "low": "Very short data section detected. Manual review recommended.",
    "medium": "Short data section. Verify detection accuracy.",
}


@dataclass(frozen=True)
class Settings:
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    max_formula_depth: int = DEFAULT_MAX_FORMULA_DEPTH
    log_level: str = "INFO"
    output_stamp: str | None = None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def load_settings() -> Settings:
    level = os.environ.get("SHEET_MAPPER_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    return Settings(
        confidence_threshold=_env_float("SHEET_MAPPER_CONFIDENCE_THRESHOLD", DEFAULT_CONFIDENCE_THRESHOLD),
        max_formula_depth=_env_int("SHEET_MAPPER_MAX_FORMULA_DEPTH", DEFAULT_MAX_FORMULA_DEPTH),
        log_level=level,
        output_stamp=os.environ.get("SHEET_MAPPER_OUTPUT_STAMP") or None,
    )
