"""Typed cell variants resolved once at parse time."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Union


@dataclass(frozen=True)
class EmptyCell:
    def display(self) -> str:
        return ""


@dataclass(frozen=True)
class TextCell:
    text: str

    def display(self) -> str:
        return self.text


@dataclass(frozen=True)
class NumberCell:
    value: Decimal
    is_currency: bool = False
    number_format: str = ""

    def display(self) -> str:
        if self.is_currency:
            return f"{self.value:.2f}"
        return format(self.value.normalize(), "f") if self.value == self.value.to_integral() else str(self.value)


@dataclass(frozen=True)
class DateCell:
    value: date
    raw: str = ""

    def display(self) -> str:
        return self.value.isoformat()


Cell = Union[EmptyCell, TextCell, NumberCell, DateCell]

EMPTY = EmptyCell()


def is_empty(cell: Cell) -> bool:
    return isinstance(cell, EmptyCell)


@dataclass
class SheetGrid:
    """Rectangular typed grid of one worksheet, trimmed to its used extent.

    ``row_offset``/``col_offset`` are the 0-based position of ``rows[0][0]``
    in the original sheet, so results can report sheet coordinates.
    """

    name: str
    rows: list[list[Cell]] = field(default_factory=list)
    row_offset: int = 0
    col_offset: int = 0
    truncated_rows: int = 0

    @property
    def height(self) -> int:
        return len(self.rows)

    @property
    def width(self) -> int:
        return len(self.rows[0]) if self.rows else 0

    def cell(self, row: int, col: int) -> Cell:
        try:
            return self.rows[row][col]
        except IndexError:
            return EMPTY

    def row_is_blank(self, row: int, start_col: int = 0, end_col: int | None = None) -> bool:
        end = self.width - 1 if end_col is None else end_col
        return all(is_empty(self.cell(row, c)) for c in range(start_col, end + 1))

    def col_is_blank(self, col: int, start_row: int = 0, end_row: int | None = None) -> bool:
        end = self.height - 1 if end_row is None else end_row
        return all(is_empty(self.cell(r, col)) for r in range(start_row, end + 1))

    def sheet_row(self, row: int) -> int:
        """1-based sheet row number for grid row ``row``."""
        return self.row_offset + row + 1

    def sheet_col(self, col: int) -> int:
        return self.col_offset + col + 1
