"""Table boundary segmenter.

Splits one parsed sheet into independent table regions: first into row bands
separated by runs of blank rows, then each band into side-by-side regions
separated by runs of blank columns.

All indices are 0-based grid indices and every range is inclusive on both
ends. A blank run always belongs to the region before it, so the regions
tile the used extent with no gaps and no overlaps.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .cells import SheetGrid
from .errors import HeaderNotFound
from .options import ExtractionOptions
from .spreadsheet_parser import detect_header, has_keyword, score_header_row

logger = logging.getLogger(__name__)

RUN_WEIGHT = 0.4
HEADER_WEIGHT = 0.6

# Header vocabulary of a money column; every importable table has one.
VALUE_KEYWORDS = frozenset({"valor", "value", "amount", "total", "preço", "preco", "price"})


@dataclass(frozen=True)
class Boundary:
    axis: str  # "row" | "col"
    start: int
    end: int
    confidence: float
    accepted: bool

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass
class TableRegion:
    start_row: int
    end_row: int
    start_col: int
    end_col: int
    header_row: int | None
    boundary_confidence: float

    @property
    def height(self) -> int:
        return self.end_row - self.start_row + 1

    @property
    def width(self) -> int:
        return self.end_col - self.start_col + 1

    def data_rows(self, grid: SheetGrid) -> list[int]:
        """Non-blank rows below the header, within the region's columns."""
        first = self.start_row if self.header_row is None else self.header_row + 1
        return [
            r
            for r in range(first, self.end_row + 1)
            if not grid.row_is_blank(r, self.start_col, self.end_col)
        ]


def find_blank_runs(flags: list[bool], start: int, end: int) -> list[tuple[int, int]]:
    """Maximal runs of ``True`` in ``flags[start..end]``, as inclusive pairs."""
    runs: list[tuple[int, int]] = []
    run_start: int | None = None
    for i in range(start, end + 1):
        if flags[i]:
            if run_start is None:
                run_start = i
        elif run_start is not None:
            runs.append((run_start, i - 1))
            run_start = None
    if run_start is not None:
        runs.append((run_start, end))
    return runs


def _run_score(length: int, options: ExtractionOptions) -> float:
    return min(1.0, length / options.strong_blank_run)


def score_row_boundary(grid: SheetGrid, run: tuple[int, int], options: ExtractionOptions) -> Boundary:
    start, end = run
    length = end - start + 1
    if length < options.min_blank_rows or end + 1 >= grid.height:
        return Boundary("row", start, end, 0.0, False)
    next_row = [grid.cell(end + 1, c) for c in range(grid.width)]
    header_follows = score_header_row(next_row, options.header_keywords) > options.header_min_score
    confidence = round(RUN_WEIGHT * _run_score(length, options) + HEADER_WEIGHT * header_follows, 4)
    return Boundary("row", start, end, confidence, confidence >= options.boundary_min_confidence)


def has_own_table_header(grid: SheetGrid, r0: int, r1: int, c0: int, c1: int, options: ExtractionOptions) -> bool:
    """True when columns ``c0..c1`` carry a complete table header of their own.

    A complete header is a detected header row with at least one value
    column. A spacer column inside one table leaves a side without one
    (e.g. trailing ``Status`` / ``Observação`` columns).
    """
    try:
        header, _ = detect_header(grid, options, start_row=r0, end_row=r1, start_col=c0, end_col=c1)
    except HeaderNotFound:
        return False
    return any(
        has_keyword(grid.cell(header, c).display(), VALUE_KEYWORDS) for c in range(c0, c1 + 1)
    )


def score_col_boundary(
    grid: SheetGrid,
    run: tuple[int, int],
    band: tuple[int, int],
    left_start: int,
    right_end: int,
    options: ExtractionOptions,
) -> Boundary:
    start, end = run
    length = end - start + 1
    r0, r1 = band
    if length < options.min_blank_cols or start <= left_start or end >= right_end:
        return Boundary("col", start, end, 0.0, False)

    separate = has_own_table_header(grid, r0, r1, end + 1, right_end, options) and has_own_table_header(
        grid, r0, r1, left_start, start - 1, options
    )
    confidence = round(RUN_WEIGHT * _run_score(length, options) + HEADER_WEIGHT * separate, 4)
    return Boundary("col", start, end, confidence, confidence >= options.boundary_min_confidence)


def _split(bounds: tuple[int, int], accepted: list[Boundary]) -> list[tuple[int, int, float, float]]:
    """Cut ``bounds`` after each accepted boundary.

    Returns ``(start, end, confidence_before, confidence_after)`` per part,
    where the confidences are those of the boundaries enclosing the part
    (1.0 at the outer edges).
    """
    parts = []
    cursor = bounds[0]
    before = 1.0
    for boundary in accepted:
        parts.append((cursor, boundary.end, before, boundary.confidence))
        cursor = boundary.end + 1
        before = boundary.confidence
    parts.append((cursor, bounds[1], before, 1.0))
    return parts


def segment_sheet(grid: SheetGrid, header_row: int, options: ExtractionOptions) -> list[TableRegion]:
    """Detect the table regions of *grid*, whose first header is ``header_row``."""
    if grid.height == 0 or grid.width == 0:
        return []

    full = TableRegion(0, grid.height - 1, 0, grid.width - 1, header_row, 1.0)
    if not options.support_mixed_sheets:
        return [full]

    blank_rows = [grid.row_is_blank(r) for r in range(grid.height)]
    row_boundaries = [
        score_row_boundary(grid, run, options)
        for run in find_blank_runs(blank_rows, header_row + 1, grid.height - 1)
    ]
    accepted_rows = [b for b in row_boundaries if b.accepted]
    for b in row_boundaries:
        if not b.accepted and b.confidence > 0:
            logger.info(
                "Sheet %r: blank rows %d-%d not a boundary (confidence %.2f)",
                grid.name, grid.sheet_row(b.start), grid.sheet_row(b.end), b.confidence,
            )

    regions: list[TableRegion] = []
    for band_index, (r0, r1, top, bottom) in enumerate(_split((0, grid.height - 1), accepted_rows)):
        band_header = header_row if band_index == 0 else None
        regions.extend(_segment_band(grid, (r0, r1), band_header, min(top, bottom), options))

    if len(regions) > 1:
        logger.info("Sheet %r: %d table regions detected", grid.name, len(regions))
    return regions


def _segment_band(
    grid: SheetGrid,
    band: tuple[int, int],
    band_header: int | None,
    band_confidence: float,
    options: ExtractionOptions,
) -> list[TableRegion]:
    r0, r1 = band
    last_col = grid.width - 1
    blank_cols = [grid.col_is_blank(c, r0, r1) for c in range(grid.width)]

    accepted: list[Boundary] = []
    left_start = 0
    for run in find_blank_runs(blank_cols, 0, last_col):
        boundary = score_col_boundary(grid, run, band, left_start, last_col, options)
        if boundary.accepted:
            accepted.append(boundary)
            left_start = boundary.end + 1

    regions = []
    for c0, c1, left, right in _split((0, last_col), accepted):
        header = band_header if not accepted else None
        if header is None:
            try:
                header, _ = detect_header(grid, options, start_row=r0, end_row=r1, start_col=c0, end_col=c1)
            except HeaderNotFound:
                header = None
        regions.append(TableRegion(r0, r1, c0, c1, header, min(band_confidence, left, right)))
    return regions
