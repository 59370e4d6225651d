"""Spreadsheet cell parser.

Reads xlsx workbooks (openpyxl, read-only) and delimited text files into
typed ``SheetGrid`` objects. Cells keep their native type: numbers stay
``Decimal``, dates become ``date``, text that plainly holds a date or an
amount is resolved once here instead of downstream.
"""

from __future__ import annotations

import csv
import datetime as dt
import io
import logging
import zipfile
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from .cells import EMPTY, Cell, DateCell, EmptyCell, NumberCell, SheetGrid, TextCell, is_empty
from .errors import HeaderNotFound, SpreadsheetParseError
from .options import ExtractionOptions
from .value_transformer import (
    has_currency_marker,
    looks_like_date,
    looks_numeric,
    parse_currency,
    parse_date,
    strip_accents,
)

logger = logging.getLogger(__name__)

CSV_ENCODINGS = ("utf-8-sig", "cp1252", "latin-1")
CSV_DELIMITERS = (",", ";", "\t", "|")
_CURRENCY_FORMAT_MARKERS = ("R$", "$", "€", "£", "[$")
MAX_HEADER_TOKEN_LENGTH = 40


# ---------------------------------------------------------------------------
# Cell typing
# ---------------------------------------------------------------------------


def classify_text(text: str) -> Cell:
    stripped = text.strip()
    if not stripped:
        return EMPTY
    if looks_like_date(stripped):
        return DateCell(value=parse_date(stripped, allow_serial=False), raw=stripped)
    if looks_numeric(stripped):
        try:
            value = parse_currency(stripped)
        except ValueError:
            return TextCell(stripped)
        if value is not None:
            return NumberCell(value=value, is_currency=has_currency_marker(stripped))
    return TextCell(stripped)


def classify_xlsx_value(value: Any, number_format: str = "") -> Cell:
    if value is None:
        return EMPTY
    if isinstance(value, bool):
        return TextCell("sim" if value else "não")
    if isinstance(value, dt.datetime):
        return DateCell(value=value.date(), raw=value.isoformat())
    if isinstance(value, dt.date):
        return DateCell(value=value, raw=value.isoformat())
    if isinstance(value, dt.time):
        return TextCell(value.isoformat())
    if isinstance(value, (int, float)):
        try:
            number = Decimal(str(value))
        except InvalidOperation:
            return TextCell(str(value))
        fmt = number_format or ""
        return NumberCell(
            value=number,
            is_currency=any(marker in fmt for marker in _CURRENCY_FORMAT_MARKERS),
            number_format=fmt,
        )
    return classify_text(str(value))


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------


def read_xlsx(content: bytes, options: ExtractionOptions) -> list[SheetGrid]:
    try:
        wb = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise SpreadsheetParseError(f"Planilha ilegível: {exc}") from exc

    grids: list[SheetGrid] = []
    try:
        for ws in wb.worksheets:
            rows = (
                [classify_xlsx_value(c.value, getattr(c, "number_format", "")) for c in row]
                for row in ws.iter_rows()
            )
            grids.append(build_grid(ws.title, rows, options))
    finally:
        wb.close()
    return grids


def decode_text(content: bytes) -> str:
    for encoding in CSV_ENCODINGS:
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise SpreadsheetParseError("Codificação de texto não reconhecida")


def sniff_delimiter(text: str, sample_lines: int = 20) -> str:
    """Pick the delimiter that splits the first lines most consistently."""
    lines = [line for line in text.splitlines()[:sample_lines] if line.strip()]
    if not lines:
        return ","
    best, best_key = ",", (0, 0)
    for delimiter in CSV_DELIMITERS:
        widths = [len(row) for row in csv.reader(lines, delimiter=delimiter)]
        multi = [w for w in widths if w > 1]
        if not multi:
            continue
        common = max(set(multi), key=multi.count)
        key = (multi.count(common), common)
        if key > best_key:
            best, best_key = delimiter, key
    return best


def read_delimited(content: bytes, name: str, options: ExtractionOptions) -> list[SheetGrid]:
    text = decode_text(content)
    delimiter = sniff_delimiter(text)
    logger.info("Reading %s as delimited text (delimiter=%r)", name, delimiter)
    try:
        reader = csv.reader(io.StringIO(text, newline=""), delimiter=delimiter)
        rows = ([classify_text(value) for value in row] for row in reader)
        return [build_grid(_sheet_name(name), rows, options)]
    except csv.Error as exc:
        raise SpreadsheetParseError(f"CSV ilegível: {exc}") from exc


def _sheet_name(file_name: str) -> str:
    base = file_name.rsplit("/", 1)[-1]
    return base.rsplit(".", 1)[0] or base


def parse_spreadsheet(content: bytes, *, parser: str, file_name: str, options: ExtractionOptions) -> list[SheetGrid]:
    """Parse every sheet of a tabular file. Raises ``SpreadsheetParseError``."""
    if parser == "xlsx":
        return read_xlsx(content, options)
    return read_delimited(content, file_name, options)


# ---------------------------------------------------------------------------
# Trimming
# ---------------------------------------------------------------------------


def build_grid(name: str, rows: Iterable[list[Cell]], options: ExtractionOptions) -> SheetGrid:
    """Collect rows and trim empty leading/trailing rows and columns.

    Trailing blank rows are only kept while a later non-blank row arrives,
    so sheets padded with thousands of empty rows cost nothing.
    """
    kept: list[list[Cell]] = []
    pending_blank: list[list[Cell]] = []
    first_row: int | None = None
    truncated = 0

    for index, row in enumerate(rows):
        blank = all(is_empty(c) for c in row)
        if first_row is None:
            if blank:
                continue
            first_row = index
        if blank:
            pending_blank.append(row)
            continue
        if len(kept) + len(pending_blank) >= options.max_rows_per_sheet:
            truncated += 1
            pending_blank = []
            continue
        kept.extend(pending_blank)
        pending_blank = []
        kept.append(list(row))

    if not kept:
        return SheetGrid(name=name)

    width = max(len(r) for r in kept)
    used_cols = [c for c in range(width) if any(c < len(r) and not is_empty(r[c]) for r in kept)]
    first_col, last_col = used_cols[0], used_cols[-1]

    grid_rows: list[list[Cell]] = []
    for r in kept:
        padded = r + [EMPTY] * (width - len(r))
        grid_rows.append(padded[first_col : last_col + 1])

    if truncated:
        logger.warning("Sheet %r: %d rows beyond the %d-row limit dropped", name, truncated, options.max_rows_per_sheet)

    return SheetGrid(
        name=name,
        rows=grid_rows,
        row_offset=first_row or 0,
        col_offset=first_col,
        truncated_rows=truncated,
    )


# ---------------------------------------------------------------------------
# Header detection
# ---------------------------------------------------------------------------


def has_keyword(text: str, keywords: frozenset[str]) -> bool:
    lowered = strip_accents(text).lower()
    tokens = set(lowered.replace("/", " ").replace("_", " ").replace("-", " ").split())
    normalized = {strip_accents(k) for k in keywords}
    return bool(tokens & normalized) or lowered in normalized


def score_header_row(cells: list[Cell], keywords: frozenset[str]) -> float:
    """Score how much a row looks like a header, in ``[0, 1]``.

    Weighted mix of: share of short text tokens, share of cells carrying
    header vocabulary, fill ratio and absence of numbers/dates. Rows with
    fewer than two non-empty cells (titles, notes) score 0.
    """
    non_empty = [c for c in cells if not isinstance(c, EmptyCell)]
    if len(non_empty) < 2 or not cells:
        return 0.0

    short_text = [
        c for c in non_empty if isinstance(c, TextCell) and len(c.text) <= MAX_HEADER_TOKEN_LENGTH
    ]
    typed = sum(1 for c in non_empty if isinstance(c, (NumberCell, DateCell)))
    keyword_hits = sum(1 for c in short_text if has_keyword(c.text, keywords))

    text_ratio = len(short_text) / len(non_empty)
    keyword_ratio = min(1.0, keyword_hits / 2)
    fill_ratio = len(non_empty) / len(cells)
    untyped_ratio = 1.0 - typed / len(non_empty)

    score = 0.45 * text_ratio + 0.25 * keyword_ratio + 0.15 * fill_ratio + 0.15 * untyped_ratio
    return round(score, 4)


def detect_header(
    grid: SheetGrid,
    options: ExtractionOptions,
    *,
    start_row: int = 0,
    end_row: int | None = None,
    start_col: int = 0,
    end_col: int | None = None,
) -> tuple[int, float]:
    """Return ``(row_index, score)`` of the best header among the first rows.

    Only the first ``options.header_scan_rows`` rows of the extent are
    considered; the earliest row wins ties. Raises ``HeaderNotFound``.
    """
    last_row = grid.height - 1 if end_row is None else end_row
    last_col = grid.width - 1 if end_col is None else end_col
    scan_end = min(last_row, start_row + options.header_scan_rows - 1)

    best_row, best_score = -1, 0.0
    for r in range(start_row, scan_end + 1):
        cells = [grid.cell(r, c) for c in range(start_col, last_col + 1)]
        score = score_header_row(cells, options.header_keywords)
        if score > best_score:
            best_row, best_score = r, score

    if best_row < 0 or best_score <= options.header_min_score:
        raise HeaderNotFound(
            f"Nenhuma linha de cabeçalho encontrada nas primeiras {options.header_scan_rows} linhas",
            sheet=grid.name,
        )
    return best_row, best_score


def header_labels(grid: SheetGrid, header_row: int, start_col: int, end_col: int) -> list[str]:
    labels = []
    for c in range(start_col, end_col + 1):
        text = grid.cell(header_row, c).display().strip()
        labels.append(text or f"Coluna {grid.sheet_col(c)}")
    return labels
