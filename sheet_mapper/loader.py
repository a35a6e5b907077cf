"""
loader.py — turn a partner export into a Grid snapshot

Supports: .csv .tsv .txt .xlsx .xlsm .xls .ods

Public API:
    loaded = load_grid("path/to/file.xlsx")
    grid   = loaded.grid

Every call for the same file content and sheet returns the same Grid
instance, so a DataSection detected on one call can be used to slice the
rows returned by another.
"""

from __future__ import annotations

import csv
import hashlib
import io
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import chardet
import openpyxl
import pandas as pd

from sheet_mapper.grid import Grid

logger = logging.getLogger(__name__)

# ── Format groups ──────────────────────────────────────────────────────────────
TEXT_FORMATS = {".csv", ".tsv", ".txt"}
OPENPYXL_FORMATS = {".xlsx", ".xlsm"}
LEGACY_EXCEL_FORMATS = {".xls"}
ODS_FORMATS = {".ods"}
ALL_FORMATS = TEXT_FORMATS | OPENPYXL_FORMATS | LEGACY_EXCEL_FORMATS | ODS_FORMATS

_SNAPSHOT_CACHE: dict[tuple[str, str | None, bool], "LoadedGrid"] = {}


@dataclass
class LoadedGrid:
    grid: Grid
    path: str
    detected_format: str
    detected_encoding: str | None = None
    delimiter: str | None = None
    sheet_name: str | None = None
    sheet_names: list[str] | None = None
    original_rows: int = 0
    removed_empty_rows: int = 0
    content_hash: str = ""
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.path,
            "detected_format": self.detected_format,
            "detected_encoding": self.detected_encoding,
            "delimiter": self.delimiter,
            "sheet_name": self.sheet_name,
            "sheet_names": self.sheet_names,
            "original_rows": self.original_rows,
            "removed_empty_rows": self.removed_empty_rows,
            "rows": self.grid.row_count,
            "columns": self.grid.col_count,
            "warnings": list(self.warnings),
            "fingerprint": self.grid.fingerprint(),
        }


# ══════════════════════════════════════════════════════════════════════════════
# TEXT DECODING
# ══════════════════════════════════════════════════════════════════════════════

def detect_encoding(raw: bytes) -> str:
    result = chardet.detect(raw)
    detected = result.get("encoding")
    return detected or "utf-8"


def _read_text_safely(raw: bytes, preferred_encoding: str) -> str:
    """
    Decode raw bytes line-by-line.

    Strategy per line: UTF-8, then the detected encoding, then latin-1, and
    finally CP1252 with replacement so a stray byte never aborts a load.
    """
    decoded_lines: list[str] = []
    for raw_line in raw.split(b"\n"):
        decoded: str | None = None
        for enc in ("utf-8", preferred_encoding, "latin-1"):
            if not enc:
                continue
            try:
                decoded = raw_line.decode(enc)
                break
            except (LookupError, UnicodeDecodeError):
                continue
        if decoded is None:
            decoded = raw_line.decode("cp1252", errors="replace")
        decoded_lines.append(decoded.replace("\x00", ""))
    return "\n".join(decoded_lines)


def detect_delimiter(text: str) -> str:
    """
    Infer the delimiter from sample lines.

    csv.Sniffer first; otherwise score each candidate by column-count
    consistency and width.
    """
    sample_lines = [line for line in text.splitlines() if line.strip()][:50]
    sample = "\n".join(sample_lines[:25])

    if sample:
        try:
            return csv.Sniffer().sniff(sample, delimiters=",;\t|").delimiter
        except csv.Error:
            pass

    best_delim = ","
    best_score = float("-inf")
    for delim in (",", ";", "\t", "|"):
        rows = [
            row
            for row in csv.reader(io.StringIO("\n".join(sample_lines)), delimiter=delim)
            if any(cell.strip() for cell in row)
        ]
        if len(rows) < 2:
            continue
        widths = Counter(len(row) for row in rows)
        mode_width, mode_count = widths.most_common(1)[0]
        score = mode_width * 2.0 + (mode_count / len(rows)) * mode_width
        if mode_width == 1:
            score -= 10.0
        if score > best_score:
            best_score = score
            best_delim = delim
    return best_delim


# ══════════════════════════════════════════════════════════════════════════════
# FORMAT LOADERS
# ══════════════════════════════════════════════════════════════════════════════

def _load_text(path: Path, raw: bytes, suffix: str) -> LoadedGrid:
    encoding = detect_encoding(raw)
    text = _read_text_safely(raw, encoding)
    delimiter = "\t" if suffix == ".tsv" else detect_delimiter(text)

    # Ragged rows (titles, notes, footers) are the point of region detection,
    # so every line is kept at its own width instead of going through read_csv.
    try:
        rows = [
            [cell if cell != "" else None for cell in row]
            for row in csv.reader(io.StringIO(text), delimiter=delimiter)
        ]
    except csv.Error as exc:
        raise ValueError(f"Could not parse {suffix} file: {exc}") from exc

    return LoadedGrid(
        grid=Grid.from_rows(rows),
        path=str(path),
        detected_format=suffix.lstrip("."),
        detected_encoding=encoding,
        delimiter=delimiter,
    )


def _pick_sheet(all_sheets: list[str], sheet_name: str | None, warnings: list[str]) -> str:
    if not all_sheets:
        raise ValueError("Workbook contains no sheets.")
    if sheet_name is not None:
        if sheet_name not in all_sheets:
            raise ValueError(f"Sheet '{sheet_name}' not found. Available: {all_sheets}")
        return sheet_name
    if len(all_sheets) > 1:
        warnings.append(
            f"Multiple sheets found ({len(all_sheets)} total); used '{all_sheets[0]}'. "
            f"Ignored: {all_sheets[1:]}"
        )
    return all_sheets[0]


def _load_openpyxl(path: Path, suffix: str, sheet_name: str | None) -> LoadedGrid:
    warnings: list[str] = []
    try:
        workbook = openpyxl.load_workbook(path, read_only=True, data_only=True)
    except Exception as exc:
        raise ValueError(f"Could not read workbook: {exc}") from exc

    try:
        all_sheets = list(workbook.sheetnames)
        chosen = _pick_sheet(all_sheets, sheet_name, warnings)
        worksheet = workbook[chosen]
        rows = [list(row) for row in worksheet.iter_rows(values_only=True)]
    finally:
        workbook.close()

    return LoadedGrid(
        grid=Grid.from_rows(rows),
        path=str(path),
        detected_format=suffix.lstrip("."),
        sheet_name=chosen,
        sheet_names=all_sheets,
        warnings=warnings,
    )


def _load_pandas_workbook(path: Path, suffix: str, sheet_name: str | None) -> LoadedGrid:
    """Load .xls (xlrd) or .ods (odfpy) through pandas."""
    engine = "odf" if suffix in ODS_FORMATS else "xlrd"
    warnings: list[str] = []
    try:
        with pd.ExcelFile(path, engine=engine) as xf:
            all_sheets = [str(name) for name in xf.sheet_names]
            chosen = _pick_sheet(all_sheets, sheet_name, warnings)
            df = xf.parse(chosen, header=None, dtype=object)
    except (ImportError, ValueError):
        raise
    except Exception as exc:
        raise ValueError(f"Could not read workbook: {exc}") from exc

    return LoadedGrid(
        grid=Grid.from_dataframe(df),
        path=str(path),
        detected_format=suffix.lstrip("."),
        sheet_name=chosen,
        sheet_names=all_sheets,
        warnings=warnings,
    )


# ══════════════════════════════════════════════════════════════════════════════
# PUBLIC API
# ══════════════════════════════════════════════════════════════════════════════

def load_grid(
    path: "str | Path",
    sheet_name: str | None = None,
    *,
    compact: bool = True,
) -> LoadedGrid:
    """
    Load any supported file into a Grid snapshot.

    Args:
        path:       Path to the file.
        sheet_name: Workbook sheet to read; the first sheet when omitted.
        compact:    Drop fully empty rows before returning. Detection and
                    extraction must agree on this choice, so it is part of
                    the snapshot key.

    Raises:
        FileNotFoundError  if the file does not exist.
        ValueError         if the format is unsupported or unreadable.
        ImportError        if the optional reader for .xls/.ods is missing.
    """
    path = Path(path)
    suffix = path.suffix.lower()

    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if suffix not in ALL_FORMATS:
        supported = ", ".join(sorted(ALL_FORMATS))
        raise ValueError(f"Unsupported format '{suffix}'. Supported: {supported}")

    raw = path.read_bytes()
    content_hash = hashlib.sha256(raw).hexdigest()
    key = (content_hash, sheet_name, compact)
    cached = _SNAPSHOT_CACHE.get(key)
    if cached is not None:
        logger.debug("Reusing grid snapshot for %s (%s)", path.name, content_hash[:12])
        return cached

    if suffix in TEXT_FORMATS:
        loaded = _load_text(path, raw, suffix)
    elif suffix in OPENPYXL_FORMATS:
        loaded = _load_openpyxl(path, suffix, sheet_name)
    else:
        loaded = _load_pandas_workbook(path, suffix, sheet_name)

    loaded.content_hash = content_hash
    loaded.original_rows = loaded.grid.row_count
    if compact:
        compacted = loaded.grid.compact()
        loaded.removed_empty_rows = loaded.grid.row_count - compacted.row_count
        loaded.grid = compacted
        if loaded.removed_empty_rows:
            logger.info(
                "Compacted %s: %d rows -> %d rows (removed %d empty rows)",
                path.name,
                loaded.original_rows,
                compacted.row_count,
                loaded.removed_empty_rows,
            )

    _SNAPSHOT_CACHE[key] = loaded
    return loaded


def clear_cache() -> None:
    _SNAPSHOT_CACHE.clear()


def is_cached(path: "str | Path", sheet_name: str | None = None, *, compact: bool = True) -> bool:
    path = Path(path)
    if not path.exists():
        return False
    content_hash = hashlib.sha256(path.read_bytes()).hexdigest()
    return (content_hash, sheet_name, compact) in _SNAPSHOT_CACHE
