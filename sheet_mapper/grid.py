"""
grid.py: read-only cell matrix for one sheet.

A Grid is built once per source file and every later consumer (detection,
header extraction, row extraction) reads the same instance. Cells that were
never written hold the ``EMPTY`` sentinel; a cell that holds ``""`` is kept
as ``""`` but counts as unfilled, the same as ``EMPTY``.
"""

from __future__ import annotations

import hashlib
import json
import math
from datetime import date, datetime, time
from typing import Any, Iterable, Iterator, Sequence

import pandas as pd


class _Empty:
    _instance: "_Empty | None" = None

    def __new__(cls) -> "_Empty":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "EMPTY"

    def __reduce__(self):
        return (_Empty, ())


EMPTY = _Empty()


def normalize_cell(value: Any) -> Any:
    if value is None or value is EMPTY:
        return EMPTY
    if isinstance(value, bool):
        return value
    if isinstance(value, pd.Timestamp):
        if pd.isna(value):
            return EMPTY
        if value.tzinfo is not None:
            value = value.tz_convert(None)
        return value.to_pydatetime()
    if isinstance(value, (datetime, date, time)):
        return value
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        # numpy scalars
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return EMPTY
    if isinstance(value, (int, float)):
        return value
    try:
        if pd.isna(value):
            return EMPTY
    except (TypeError, ValueError):
        pass
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return str(value).replace("\x00", "")


def is_filled_value(value: Any) -> bool:
    return value is not EMPTY and value is not None and value != ""


def cell_text(value: Any) -> str:
    if not is_filled_value(value):
        return ""
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class Grid:
    """Immutable rectangular sheet; rows shorter than the widest row are padded with EMPTY."""

    __slots__ = ("_rows", "_col_count")

    def __init__(self, rows: Iterable[Sequence[Any]] = ()) -> None:
        normalized = [tuple(normalize_cell(value) for value in row) for row in rows]
        width = max((len(row) for row in normalized), default=0)
        self._rows: tuple[tuple[Any, ...], ...] = tuple(
            row + (EMPTY,) * (width - len(row)) for row in normalized
        )
        self._col_count = width

    @classmethod
    def from_rows(cls, rows: Iterable[Sequence[Any]]) -> "Grid":
        return cls(rows)

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, *, include_header: bool = False) -> "Grid":
        rows: list[list[Any]] = []
        if include_header:
            rows.append([str(column) for column in df.columns])
        rows.extend(df.itertuples(index=False, name=None))
        return cls(rows)

    @property
    def row_count(self) -> int:
        return len(self._rows)

    @property
    def col_count(self) -> int:
        return self._col_count

    @property
    def shape(self) -> tuple[int, int]:
        return self.row_count, self.col_count

    def is_empty(self) -> bool:
        return self.row_count == 0 or self.col_count == 0

    def cell(self, row: int, col: int) -> Any:
        if row < 0 or col < 0 or row >= self.row_count or col >= self.col_count:
            return EMPTY
        return self._rows[row][col]

    def is_filled(self, row: int, col: int) -> bool:
        return is_filled_value(self.cell(row, col))

    def row(self, row: int) -> tuple[Any, ...]:
        return self._rows[row]

    def column(self, col: int) -> tuple[Any, ...]:
        return tuple(row[col] for row in self._rows)

    def rows(self) -> Iterator[tuple[Any, ...]]:
        return iter(self._rows)

    def compact(self) -> "Grid":
        """Drop rows without any filled cell. Row indices of the result differ from the original."""
        return Grid(row for row in self._rows if any(is_filled_value(value) for value in row))

    def fingerprint(self) -> str:
        payload = json.dumps(
            [[None if value is EMPTY else value for value in row] for row in self._rows],
            default=str,
            ensure_ascii=False,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Grid):
            return NotImplemented
        return self._rows == other._rows

    def __hash__(self) -> int:
        return hash(self._rows)

    def __repr__(self) -> str:
        return f"Grid(rows={self.row_count}, cols={self.col_count})"
