from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Mapping, Sequence

import openpyxl
from openpyxl.cell import WriteOnlyCell
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from sheet_mapper.mapping import ColumnMapping

WRITE_ONLY_THRESHOLD = 5000
DATA_HEADER_COLOR = "1565C0"
MAPPING_HEADER_COLOR = "4CAF50"
OUTPUT_FORMATS = {".xlsx", ".csv"}


def _header_font() -> Font:
    return Font(bold=True, color="FFFFFF")


def _header_fill(hex_color: str) -> PatternFill:
    return PatternFill("solid", fgColor=hex_color)


def _style_sheet(ws, col_widths: list[int], header_color: str):
    """Bold coloured header, frozen first row, column widths."""
    fill = _header_fill(header_color)
    font = _header_font()
    for cell in ws[1]:
        cell.font = font
        cell.fill = fill
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=False)
    ws.freeze_panes = "A2"
    for i, width in enumerate(col_widths, start=1):
        ws.column_dimensions[get_column_letter(i)].width = width


def _infer_col_widths(rows: list[list], min_width: int = 10, max_width: int = 60, sample: int = 300) -> list[int]:
    if not rows:
        return []
    widths = [max(min_width, min(max_width, len(str(v)) + 2)) for v in rows[0]]
    for row in rows[1 : sample + 1]:
        for i, val in enumerate(row):
            widths[i] = max(widths[i], min(max_width, len(str(val)) + 2))
    return widths


def _rows(records: Sequence[Mapping[str, Any]], headers: Sequence[str]) -> list[list[Any]]:
    return [[record.get(header, "") for header in headers] for record in records]


def _mapping_rows(mapping: ColumnMapping) -> list[list[Any]]:
    rows: list[list[Any]] = [["target_field", "rule", "confidence"]]
    for target, rule in mapping.rules.items():
        confidence = mapping.confidence.get(target)
        rows.append([target, rule.to_string(), round(confidence, 1) if confidence is not None else ""])
    return rows


def _write_xlsx_standard(rows: list[list[Any]], headers: list[str], path: Path, mapping: ColumnMapping | None) -> None:
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Data"
    ws.append(headers)
    for row in rows:
        ws.append(row)
    _style_sheet(ws, _infer_col_widths([headers] + rows), DATA_HEADER_COLOR)

    if mapping is not None:
        mapping_rows = _mapping_rows(mapping)
        ws_map = wb.create_sheet("Mapping")
        for row in mapping_rows:
            ws_map.append(row)
        _style_sheet(ws_map, _infer_col_widths(mapping_rows), MAPPING_HEADER_COLOR)

    wb.save(path)


def _write_xlsx_fast(rows: list[list[Any]], headers: list[str], path: Path, mapping: ColumnMapping | None) -> None:
    """write_only workbook for large outputs; only the header row is styled."""
    wb = openpyxl.Workbook(write_only=True)
    font = _header_font()

    def _hdr_cell(ws, value: str, hex_color: str) -> WriteOnlyCell:
        cell = WriteOnlyCell(ws, value=value)
        cell.font = font
        cell.fill = _header_fill(hex_color)
        return cell

    ws = wb.create_sheet("Data")
    for i in range(1, len(headers) + 1):
        ws.column_dimensions[get_column_letter(i)].width = 15
    ws.append([_hdr_cell(ws, header, DATA_HEADER_COLOR) for header in headers])
    for row in rows:
        ws.append(row)

    if mapping is not None:
        mapping_rows = _mapping_rows(mapping)
        ws_map = wb.create_sheet("Mapping")
        ws_map.append([_hdr_cell(ws_map, value, MAPPING_HEADER_COLOR) for value in mapping_rows[0]])
        for row in mapping_rows[1:]:
            ws_map.append(row)

    wb.save(path)


def write_records(
    records: Sequence[Mapping[str, Any]],
    headers: Sequence[str],
    path: "str | Path",
    *,
    mapping: ColumnMapping | None = None,
) -> Path:
    """
    Write mapped records to ``.xlsx`` (styled, plus a Mapping sheet when
    ``mapping`` is given) or ``.csv``. Returns the written path.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in OUTPUT_FORMATS:
        raise ValueError(f"Unsupported output format '{suffix}'. Supported: {', '.join(sorted(OUTPUT_FORMATS))}")

    headers = list(headers)
    rows = _rows(records, headers)
    path.parent.mkdir(parents=True, exist_ok=True)

    if suffix == ".csv":
        with path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            writer.writerow(headers)
            writer.writerows(rows)
    elif len(rows) > WRITE_ONLY_THRESHOLD:
        _write_xlsx_fast(rows, headers, path, mapping)
    else:
        _write_xlsx_standard(rows, headers, path, mapping)
    return path
