"""
region_detector.py

Finds the table inside an arbitrary sheet: the header row, the column span
of the table, and the data rows below it, using row and column fill density.
Detection never raises; a sheet without a recognisable table comes back as a
DataSection with confidence 0 and a reason.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any

from openpyxl.utils import get_column_letter

from sheet_mapper.grid import Grid, cell_text, is_filled_value
from sheet_mapper.shared import (
    COL_THRESHOLD_FLOOR,
    CONFIDENCE_BOOST,
    CONFIDENCE_LABELS,
    DATA_LENGTH_SHEET_RATIO,
    DATE_COLUMN_MIN_RATIO,
    DATE_SAMPLE_ROWS,
    DATE_TEXT_RE,
    EXCEL_SERIAL_MAX,
    EXCEL_SERIAL_MIN,
    FALLBACK_END_COLUMN,
    HEADER_MIN_DENSITY,
    HEADER_ONLY_CONFIDENCE_FACTOR,
    ISO_DATE_TEXT_RE,
    MAX_HEADER_GAP,
    PATTERN_FILL_THRESHOLD,
    QUALITY_SAMPLE_ROWS,
    ROW_THRESHOLD_FLOOR,
    START_COLUMN_MIN_DENSITY,
    SUMMARY_ROW_MIN_DENSITY,
    SUMMARY_ROW_RE,
    THRESHOLD_RATIO,
)

logger = logging.getLogger(__name__)

NOT_DETECTED = "Not detected"
MONTH_DATE_RE = re.compile(
    r"^\d{1,2}\s+(?:jan|feb|mar|apr|may|mei|jun|jul|aug|sep|oct|okt|nov|dec)[a-z]*\.?\s+\d{2,4}$",
    re.IGNORECASE,
)


# ══════════════════════════════════════════════════════════════════════════════
# DENSITY
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LineDensity:
    index: int
    filled: int
    total: int

    @property
    def density(self) -> float:
        return self.filled / self.total if self.total else 0.0

    @property
    def is_empty(self) -> bool:
        return self.filled == 0


@dataclass(frozen=True)
class DensityProfile:
    rows: tuple[LineDensity, ...]
    columns: tuple[LineDensity, ...]

    @classmethod
    def compute(cls, grid: Grid) -> "DensityProfile":
        row_filled = [0] * grid.row_count
        col_filled = [0] * grid.col_count
        for r, row in enumerate(grid.rows()):
            for c, value in enumerate(row):
                if is_filled_value(value):
                    row_filled[r] += 1
                    col_filled[c] += 1
        return cls(
            rows=tuple(LineDensity(r, filled, grid.col_count) for r, filled in enumerate(row_filled)),
            columns=tuple(LineDensity(c, filled, grid.row_count) for c, filled in enumerate(col_filled)),
        )

    def rows_by_density(self) -> list[LineDensity]:
        # sorted() is stable, so equal densities keep sheet order
        return sorted((line for line in self.rows if not line.is_empty), key=lambda line: -line.density)

    def columns_by_density(self) -> list[LineDensity]:
        return sorted((line for line in self.columns if not line.is_empty), key=lambda line: -line.density)

    @property
    def top_row_density(self) -> float:
        return max((line.density for line in self.rows), default=0.0)

    @property
    def top_col_density(self) -> float:
        return max((line.density for line in self.columns), default=0.0)

    @property
    def row_threshold(self) -> float:
        return max(ROW_THRESHOLD_FLOOR, self.top_row_density * THRESHOLD_RATIO)

    @property
    def col_threshold(self) -> float:
        return max(COL_THRESHOLD_FLOOR, self.top_col_density * THRESHOLD_RATIO)

    def dense_rows(self) -> list[int]:
        threshold = self.row_threshold
        return [line.index for line in self.rows if line.density >= threshold]

    def dense_columns(self) -> list[int]:
        threshold = self.col_threshold
        return [line.index for line in self.columns if line.density >= threshold]


# ══════════════════════════════════════════════════════════════════════════════
# DATA SECTION
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DataSection:
    header_row_index: int | None
    start_column_index: int
    end_column_index: int
    data_start_index: int | None
    data_end_index: int | None
    confidence: float
    reason: str | None = None
    length: int = 0
    avg_density: float = 0.0
    start_cell: str = NOT_DETECTED
    pattern: str = ""
    summary_rows: tuple[int, ...] = ()

    @property
    def found(self) -> bool:
        return self.header_row_index is not None and self.confidence > 0

    @property
    def column_count(self) -> int:
        return self.end_column_index - self.start_column_index + 1

    def data_rows(self) -> range:
        if self.data_start_index is None or self.data_end_index is None:
            return range(0)
        return range(self.data_start_index, self.data_end_index + 1)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["summary_rows"] = list(self.summary_rows)
        payload["confidence"] = round(self.confidence, 4)
        payload["avg_density"] = round(self.avg_density, 4)
        return payload


def _failed_section(reason: str) -> DataSection:
    logger.info("Table detection failed: %s", reason)
    return DataSection(
        header_row_index=None,
        start_column_index=0,
        end_column_index=0,
        data_start_index=None,
        data_end_index=None,
        confidence=0.0,
        reason=reason,
    )


def scan_header_span(grid: Grid, header_row: int, start_col: int) -> int:
    """Return the last column of the header run that starts at ``start_col``.

    Up to MAX_HEADER_GAP consecutive empty header cells are bridged when a
    filled cell follows; a longer gap or the sheet edge ends the run.
    """
    end_col = start_col
    gap = 0
    for col in range(start_col, grid.col_count):
        if grid.is_filled(header_row, col):
            end_col = col
            gap = 0
            continue
        gap += 1
        if gap > MAX_HEADER_GAP:
            break
    return end_col


def find_last_data_row(grid: Grid, header_row: int, start_col: int, end_col: int) -> int:
    last_row = header_row
    for row in range(header_row + 1, grid.row_count):
        if any(grid.is_filled(row, col) for col in range(start_col, end_col + 1)):
            last_row = row
    return last_row


def span_row_text(grid: Grid, row: int, start_col: int, end_col: int) -> str:
    return " ".join(
        cell_text(grid.cell(row, col)).lower()
        for col in range(start_col, end_col + 1)
        if grid.is_filled(row, col)
    )


def find_summary_rows(grid: Grid, first_row: int, last_row: int, start_col: int, end_col: int) -> list[int]:
    width = end_col - start_col + 1
    summary_rows: list[int] = []
    for row in range(first_row, last_row + 1):
        filled = sum(1 for col in range(start_col, end_col + 1) if grid.is_filled(row, col))
        density = filled / width if width else 0.0
        if density <= SUMMARY_ROW_MIN_DENSITY:
            continue
        text = span_row_text(grid, row, start_col, end_col)
        if SUMMARY_ROW_RE.search(text):
            logger.debug("Summary row detected at %d: %r (density %.2f)", row, text, density)
            summary_rows.append(row)
    return summary_rows


def fill_pattern(profile: DensityProfile, start: int, end: int) -> str:
    return "".join(
        "F" if line.density > PATTERN_FILL_THRESHOLD else "E"
        for line in profile.rows[start : end + 1]
    )


def detect_data_section(grid: Grid) -> DataSection:
    """Locate header row, column span and data rows of the table in ``grid``."""
    if grid.is_empty():
        return _failed_section("Grid is empty")

    profile = DensityProfile.compute(grid)
    rows_by_density = profile.rows_by_density()
    cols_by_density = profile.columns_by_density()
    if not rows_by_density or not cols_by_density:
        return _failed_section("No data found")

    top_row = rows_by_density[0]
    if top_row.density <= HEADER_MIN_DENSITY:
        return _failed_section(
            f"No header row found: densest row {top_row.index} has density "
            f"{top_row.density:.2f} (needs > {HEADER_MIN_DENSITY:.2f})"
        )

    header_row = top_row.index
    header_density = top_row.density
    logger.debug("Header row identified at row %d (density %.2f)", header_row, header_density)

    top_col = cols_by_density[0]
    reason: str | None = None
    if top_col.density > START_COLUMN_MIN_DENSITY:
        column_found = True
        start_col = top_col.index
        end_col = scan_header_span(grid, header_row, start_col)
        logger.debug(
            "Table columns %s-%s (start column density %.2f)",
            get_column_letter(start_col + 1),
            get_column_letter(end_col + 1),
            top_col.density,
        )
    else:
        column_found = False
        start_col = 0
        end_col = min(FALLBACK_END_COLUMN, grid.col_count - 1)
        reason = (
            f"No clear start column found (highest density {top_col.density:.2f}); "
            f"using columns A-{get_column_letter(end_col + 1)}"
        )
        logger.info(reason)

    data_start = header_row + 1
    last_row = find_last_data_row(grid, header_row, start_col, end_col)
    summary_rows = find_summary_rows(grid, data_start, last_row, start_col, end_col)
    data_end = last_row
    if summary_rows and summary_rows[0] <= data_end:
        data_end = summary_rows[0] - 1
        logger.debug("Data end adjusted to row %d to exclude summary rows %s", data_end, summary_rows)

    length = max(1, data_end - data_start + 1)
    density_sum = header_density + sum(line.density for line in profile.rows[data_start : data_end + 1])
    avg_density = density_sum / length

    if column_found:
        adequacy = min(1.0, length / max(1.0, grid.row_count * DATA_LENGTH_SHEET_RATIO))
        confidence = header_density * top_col.density * adequacy * CONFIDENCE_BOOST
        start_cell = f"{get_column_letter(start_col + 1)}{header_row + 1}"
    else:
        confidence = header_density * HEADER_ONLY_CONFIDENCE_FACTOR
        start_cell = NOT_DETECTED
    confidence = max(0.0, min(1.0, confidence))

    section = DataSection(
        header_row_index=header_row,
        start_column_index=start_col,
        end_column_index=end_col,
        data_start_index=data_start,
        data_end_index=data_end,
        confidence=confidence,
        reason=reason,
        length=length,
        avg_density=avg_density,
        start_cell=start_cell,
        pattern=fill_pattern(profile, header_row, max(header_row, data_end)),
        summary_rows=tuple(summary_rows),
    )
    logger.info(
        "Data section: start cell %s, header %d, data %d-%d (%d rows), confidence %.3f",
        start_cell,
        header_row,
        data_start,
        data_end,
        length,
        confidence,
    )
    return section


# ══════════════════════════════════════════════════════════════════════════════
# SHEET ANALYSIS
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class HeaderAnalysis:
    found: bool
    row: int | None
    headers: list[str] = field(default_factory=list)
    filled_count: int = 0
    total_count: int = 0
    fill_ratio: float = 0.0
    suggested_columns: list[str] = field(default_factory=list)


@dataclass
class ColumnQuality:
    column: int
    fill_ratio: float
    data_types: list[str]
    sample_values: list[Any]
    likely_data_column: bool


@dataclass
class QualityAnalysis:
    sample_size: int
    columns: list[ColumnQuality]
    likely_data_columns: int
    average_fill_ratio: float


@dataclass
class DateColumn:
    column: int
    confidence: float
    sample_size: int


@dataclass
class MultiRowPattern:
    type: str
    pattern1: str
    pattern2: str
    confidence: float


@dataclass
class Suggestions:
    data_start_method: str = "auto-detect"
    confidence: str = "high"
    recommendations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    use_header_row: bool = False
    header_row: int | None = None
    row_processing: str = "single"
    skip_rows: int = 0


@dataclass
class SheetAnalysis:
    data_section: DataSection
    header_analysis: HeaderAnalysis
    quality_analysis: QualityAnalysis
    date_columns: list[DateColumn]
    multi_row_pattern: MultiRowPattern | None
    suggestions: Suggestions
    row_threshold: float
    col_threshold: float
    dense_rows: list[int]
    dense_columns: list[int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_section": self.data_section.to_dict(),
            "header_analysis": asdict(self.header_analysis),
            "quality_analysis": asdict(self.quality_analysis),
            "date_columns": [asdict(item) for item in self.date_columns],
            "multi_row_pattern": asdict(self.multi_row_pattern) if self.multi_row_pattern else None,
            "suggestions": asdict(self.suggestions),
            "row_threshold": round(self.row_threshold, 4),
            "col_threshold": round(self.col_threshold, 4),
            "dense_rows": list(self.dense_rows),
            "dense_columns": list(self.dense_columns),
        }


def value_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, (datetime, date)):
        return "date"
    return "string"


def is_likely_date(value: Any) -> bool:
    if not is_filled_value(value):
        return False
    if isinstance(value, (datetime, date)):
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return EXCEL_SERIAL_MIN < value < EXCEL_SERIAL_MAX
    text = str(value).strip()
    return bool(DATE_TEXT_RE.match(text) or ISO_DATE_TEXT_RE.match(text) or MONTH_DATE_RE.match(text))


def analyze_header_row(grid: Grid, section: DataSection) -> HeaderAnalysis:
    if section.header_row_index is None:
        return HeaderAnalysis(found=False, row=None)

    headers = [
        cell_text(grid.cell(section.header_row_index, col)).strip()
        for col in range(section.start_column_index, section.end_column_index + 1)
    ]
    filled = sum(1 for header in headers if header)
    return HeaderAnalysis(
        found=filled > 0,
        row=section.header_row_index,
        headers=headers,
        filled_count=filled,
        total_count=len(headers),
        fill_ratio=filled / len(headers) if headers else 0.0,
        suggested_columns=[header for header in headers if header],
    )


def analyze_data_quality(grid: Grid, section: DataSection) -> QualityAnalysis:
    rows = list(section.data_rows())[:QUALITY_SAMPLE_ROWS]
    sample_size = len(rows)
    columns: list[ColumnQuality] = []
    for col in range(section.start_column_index, section.end_column_index + 1):
        filled = 0
        types: list[str] = []
        samples: list[Any] = []
        for row in rows:
            value = grid.cell(row, col)
            if not is_filled_value(value):
                continue
            filled += 1
            kind = value_type(value)
            if kind not in types:
                types.append(kind)
            if len(samples) < 3:
                samples.append(cell_text(value))
        columns.append(
            ColumnQuality(
                column=col,
                fill_ratio=filled / sample_size if sample_size else 0.0,
                data_types=types,
                sample_values=samples,
                likely_data_column=filled > 0,
            )
        )
    average = sum(item.fill_ratio for item in columns) / len(columns) if columns else 0.0
    return QualityAnalysis(
        sample_size=sample_size,
        columns=columns,
        likely_data_columns=sum(1 for item in columns if item.likely_data_column),
        average_fill_ratio=average,
    )


def detect_date_columns(grid: Grid, section: DataSection) -> list[DateColumn]:
    rows = list(section.data_rows())[:DATE_SAMPLE_ROWS]
    date_columns: list[DateColumn] = []
    for col in range(section.start_column_index, section.end_column_index + 1):
        values = [grid.cell(row, col) for row in rows if grid.is_filled(row, col)]
        if not values:
            continue
        ratio = sum(1 for value in values if is_likely_date(value)) / len(values)
        if ratio > DATE_COLUMN_MIN_RATIO:
            date_columns.append(DateColumn(column=col, confidence=ratio, sample_size=len(values)))
    return date_columns


def detect_multi_row_pattern(grid: Grid, section: DataSection) -> MultiRowPattern | None:
    """Spot records spread over two alternating rows (A/B/A/B fill signatures)."""
    rows = list(section.data_rows())[:6]
    signatures = [
        "".join(
            "F" if grid.is_filled(row, col) else "E"
            for col in range(section.start_column_index, section.end_column_index + 1)
        )
        for row in rows
    ]
    if len(signatures) < 4:
        return None
    if signatures[0] == signatures[2] and signatures[1] == signatures[3] and signatures[0] != signatures[1]:
        return MultiRowPattern(
            type="alternating-2-row",
            pattern1=signatures[0],
            pattern2=signatures[1],
            confidence=0.8,
        )
    return None


def generate_suggestions(
    section: DataSection,
    header_analysis: HeaderAnalysis,
    quality_analysis: QualityAnalysis,
) -> Suggestions:
    suggestions = Suggestions()

    if section.length < 5:
        suggestions.confidence = "low"
        suggestions.warnings.append(CONFIDENCE_LABELS["low"])
    elif section.length < 10:
        suggestions.confidence = "medium"
        suggestions.warnings.append(CONFIDENCE_LABELS["medium"])

    if header_analysis.found and header_analysis.row is not None:
        suggestions.use_header_row = True
        suggestions.header_row = header_analysis.row
        if header_analysis.fill_ratio > 0.7:
            suggestions.recommendations.append(f"Strong header row detected at row {header_analysis.row + 1}")
        else:
            suggestions.recommendations.append(
                f"Partial header row detected at row {header_analysis.row + 1}. Manual verification recommended."
            )
    else:
        suggestions.recommendations.append("No clear header row detected. Consider position-based parsing.")

    if quality_analysis.average_fill_ratio > 0.8:
        suggestions.recommendations.append("High data quality detected. Standard single-row processing recommended.")
    elif quality_analysis.average_fill_ratio > 0.4:
        suggestions.recommendations.append("Mixed data quality. Review for possible multi-row patterns.")
        suggestions.warnings.append("Consider filtering empty or incomplete rows.")
    else:
        suggestions.recommendations.append("Low data density. Multi-row or complex parsing may be needed.")
        suggestions.row_processing = "review"

    if section.header_row_index:
        suggestions.recommendations.append(f"Skip first {section.header_row_index} rows to reach data section.")
        suggestions.skip_rows = section.header_row_index

    return suggestions


def analyze_sheet(grid: Grid) -> SheetAnalysis:
    """Run detection plus the header, quality, date and layout checks built on it."""
    profile = DensityProfile.compute(grid)
    section = detect_data_section(grid)
    header_analysis = analyze_header_row(grid, section)
    quality_analysis = analyze_data_quality(grid, section)
    return SheetAnalysis(
        data_section=section,
        header_analysis=header_analysis,
        quality_analysis=quality_analysis,
        date_columns=detect_date_columns(grid, section),
        multi_row_pattern=detect_multi_row_pattern(grid, section),
        suggestions=generate_suggestions(section, header_analysis, quality_analysis),
        row_threshold=profile.row_threshold,
        col_threshold=profile.col_threshold,
        dense_rows=profile.dense_rows(),
        dense_columns=profile.dense_columns(),
    )


# ══════════════════════════════════════════════════════════════════════════════
# EXTRACTION
# ══════════════════════════════════════════════════════════════════════════════

_HEADER_WHITESPACE_RE = re.compile(r"\s+")


def clean_header(value: Any, position: int) -> str:
    text = _HEADER_WHITESPACE_RE.sub(" ", cell_text(value)).strip()
    return text or f"Column{position + 1}"


def dedupe_headers(headers: list[str]) -> list[str]:
    seen: dict[str, int] = {}
    result: list[str] = []
    for header in headers:
        count = seen.get(header, 0) + 1
        seen[header] = count
        if count == 1:
            result.append(header)
            continue
        candidate = f"{header}_{count}"
        while candidate in seen:
            count += 1
            candidate = f"{header}_{count}"
        seen[header] = count
        seen[candidate] = 1
        result.append(candidate)
    return result


def extract_headers(grid: Grid, section: DataSection) -> list[str]:
    """Header names across the detected span; position names when no header row was found."""
    columns = range(section.start_column_index, section.end_column_index + 1)
    if section.header_row_index is None:
        return [f"Column{col + 1}" for col in columns]
    return dedupe_headers([clean_header(grid.cell(section.header_row_index, col), col) for col in columns])


def extract_records(
    grid: Grid,
    section: DataSection,
    filename: str | None = None,
    *,
    footer_keyword: str | None = None,
) -> list[dict[str, Any]]:
    """
    Slice the data rows of ``section`` into one dict per row.

    Fully empty rows are skipped. Each record carries ``__row_index`` (the grid
    row it came from) and, when given, ``Filename``. Extraction stops before
    the first row whose text contains ``footer_keyword``.
    """
    if not section.found:
        return []

    headers = extract_headers(grid, section)
    columns = range(section.start_column_index, section.end_column_index + 1)
    keyword = footer_keyword.lower() if footer_keyword else None
    records: list[dict[str, Any]] = []

    for row in section.data_rows():
        values = [grid.cell(row, col) for col in columns]
        if not any(is_filled_value(value) for value in values):
            continue
        if keyword and keyword in span_row_text(grid, row, section.start_column_index, section.end_column_index):
            logger.debug("Footer keyword %r found at row %d; stopping extraction", footer_keyword, row)
            break
        record: dict[str, Any] = {
            header: (value if is_filled_value(value) else None) for header, value in zip(headers, values)
        }
        record["__row_index"] = row
        if filename:
            record["Filename"] = filename
        records.append(record)

    logger.info("Extracted %d records from rows %s-%s", len(records), section.data_start_index, section.data_end_index)
    return records
