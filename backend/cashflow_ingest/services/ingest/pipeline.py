"""Batch orchestration: detect -> parse -> segment -> analyze -> transform -> materialize.

Failures stay inside the smallest unit that caused them. Every unit result
carries its own issues and the batch only fails when every file fails.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from cashflow_ingest.schemas.ingest import (
    BatchResult,
    EntityCounts,
    FileResult,
    FormatKind,
    Issue,
    IssueScope,
    KindCounts,
    RegionResult,
    SheetResult,
    UnitStatus,
)
from cashflow_ingest.schemas.records import EntityKind
from cashflow_ingest.services.ai.common.providers.base import ProviderResult
from cashflow_ingest.services.ai.sheet_analysis.service import analyze_region
from cashflow_ingest.services.ai.vision_extract.service import extract_document
from cashflow_ingest.services.audit import AuditSink

from .cells import SheetGrid
from .errors import (
    FileTooLarge,
    HeaderNotFound,
    IngestError,
    LowConfidenceClassification,
    ProviderError,
    ProviderTimeout,
    ValueTransformFailure,
)
from .format_detector import DetectedFormat, detect_format
from .materializer import MaterializeItem, emit_batch_summary, materialize
from .options import ExtractionOptions
from .record_store import ConflictPolicy, RecordStore
from .spreadsheet_parser import detect_header, header_labels, parse_spreadsheet
from .table_segmenter import TableRegion, segment_sheet
from .value_transformer import build_record, collect_row_values

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceFile:
    name: str
    content: bytes


@dataclass
class _Pending:
    """An extracted record waiting for materialization, tied to its result node."""

    item: MaterializeItem
    kind: EntityKind
    file: FileResult
    region: Optional[RegionResult] = None


@dataclass
class _AIUsage:
    calls: int = 0
    failed_calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    models: set[str] = field(default_factory=set)

    def record(self, result: Optional[ProviderResult]) -> None:
        if result is None:
            return
        self.calls += 1
        self.prompt_tokens += result.prompt_tokens
        self.completion_tokens += result.completion_tokens
        self.models.add(f"{result.provider}:{result.model}")

    def as_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "failed_calls": self.failed_calls,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "models": sorted(self.models),
        }


def _tally(pending_file: FileResult, region: Optional[RegionResult], kind: EntityKind, attr: str) -> None:
    counts = pending_file.counts.for_kind(kind)
    setattr(counts, attr, getattr(counts, attr) + 1)
    if region is not None:
        setattr(region.counts, attr, getattr(region.counts, attr) + 1)


class BatchRunner:
    """State of one running batch. Shared only through read-only options and the limiter."""

    def __init__(self, options: ExtractionOptions) -> None:
        self.options = options
        self.limiter = asyncio.Semaphore(options.max_concurrency)
        self.pending: list[_Pending] = []
        self.usage = _AIUsage()

    # --- files ---------------------------------------------------------------

    async def process_file(self, source: SourceFile) -> FileResult:
        result = FileResult(name=source.name, format=FormatKind.UNSUPPORTED)
        try:
            detected = detect_format(source.name, source.content)
            result.format = detected.kind
            if len(source.content) > self.options.max_file_bytes:
                raise FileTooLarge(
                    f"Arquivo com {len(source.content)} bytes excede o limite de "
                    f"{self.options.max_file_bytes} bytes"
                )
        except IngestError as exc:
            logger.warning("File %s rejected: %s", source.name, exc.message)
            result.status = UnitStatus.FAILED
            result.issues.append(exc.to_issue(file_name=source.name))
            return result

        logger.info("File %s detected as %s", source.name, detected.kind)
        try:
            if detected.kind == FormatKind.TABULAR:
                await self._process_tabular(source, detected, result)
            else:
                await self._process_vision(source, detected, result)
        except IngestError as exc:
            result.status = UnitStatus.FAILED
            result.issues.append(exc.to_issue(file_name=source.name))
        except Exception:
            logger.exception("Unexpected failure while processing %s", source.name)
            result.status = UnitStatus.FAILED
            result.issues.append(
                Issue(
                    scope=IssueScope.FILE,
                    code="INTERNAL_ERROR",
                    message="Erro inesperado ao processar o arquivo",
                    file_name=source.name,
                )
            )
        return result

    async def _process_tabular(self, source: SourceFile, detected: DetectedFormat, result: FileResult) -> None:
        grids = await asyncio.to_thread(
            parse_spreadsheet,
            source.content,
            parser=detected.parser,
            file_name=source.name,
            options=self.options,
        )
        sheets = await asyncio.gather(*(self._process_sheet(source.name, grid, result) for grid in grids))
        result.sheets = list(sheets)

    async def _process_vision(self, source: SourceFile, detected: DetectedFormat, result: FileResult) -> None:
        try:
            extraction = await extract_document(
                source.content,
                media_type=detected.media_type,
                file_name=source.name,
                options=self.options,
                limiter=self.limiter,
            )
        except (ProviderTimeout, ProviderError):
            self.usage.failed_calls += 1
            raise

        self.usage.record(extraction.provider_result)
        result.note = extraction.note or None
        for kind, failure in extraction.failures:
            _tally(result, None, kind, "failed")
            result.issues.append(failure.to_issue(file_name=source.name))
        for record in extraction.records:
            kind = EntityKind(record.kind)
            self.pending.append(
                _Pending(MaterializeItem(record, {"file_name": source.name}), kind, result)
            )

    # --- sheets --------------------------------------------------------------

    async def _process_sheet(self, file_name: str, grid: SheetGrid, file_result: FileResult) -> SheetResult:
        sheet = SheetResult(name=grid.name, row_count=grid.height, column_count=grid.width)
        where = {"file_name": file_name, "sheet": grid.name}
        try:
            queued = await self._fill_sheet(sheet, grid, file_result, where)
        except Exception:
            logger.exception("Unexpected failure while processing sheet %s/%s", file_name, grid.name)
            sheet.status = UnitStatus.FAILED
            sheet.regions = []
            sheet.issues.append(
                Issue(
                    scope=IssueScope.SHEET,
                    code="INTERNAL_ERROR",
                    message="Erro inesperado ao processar a aba",
                    **where,
                )
            )
            return sheet

        # A sheet hands its records and row failures to the file only once it is done.
        for region in sheet.regions:
            if region.counts.failed:
                file_result.counts.for_kind(region.entity_kind).failed += region.counts.failed
        self.pending.extend(queued)
        return sheet

    async def _fill_sheet(
        self, sheet: SheetResult, grid: SheetGrid, file_result: FileResult, where: dict[str, Any]
    ) -> list[_Pending]:
        if grid.truncated_rows:
            sheet.issues.append(
                Issue(
                    scope=IssueScope.SHEET,
                    code="ROWS_TRUNCATED",
                    message=(
                        f"{grid.truncated_rows} linhas além do limite de "
                        f"{self.options.max_rows_per_sheet} foram ignoradas"
                    ),
                    severity="warning",
                    **where,
                )
            )
        if grid.height == 0:
            sheet.status = UnitStatus.SKIPPED
            sheet.issues.append(
                Issue(scope=IssueScope.SHEET, code="EMPTY_SHEET", message="Aba vazia", severity="info", **where)
            )
            return []

        try:
            regions = await asyncio.to_thread(self._layout, grid)
        except HeaderNotFound as exc:
            logger.warning("Sheet %s/%s skipped: %s", where["file_name"], grid.name, exc.message)
            sheet.status = UnitStatus.SKIPPED
            sheet.issues.append(exc.to_issue(**where))
            return []

        if len(regions) == 1:
            results = [await self._process_region(grid, regions[0], 1, file_result, where)]
        else:
            results = await asyncio.gather(
                *(
                    self._process_region(grid, region, i, file_result, where)
                    for i, region in enumerate(regions, start=1)
                )
            )
        sheet.regions = [region_result for region_result, _ in results]
        return [pending for _, records in results for pending in records]

    def _layout(self, grid: SheetGrid) -> list[TableRegion]:
        header_row, _ = detect_header(grid, self.options)
        return segment_sheet(grid, header_row, self.options)

    # --- regions -------------------------------------------------------------

    async def _process_region(
        self,
        grid: SheetGrid,
        region: TableRegion,
        number: int,
        file_result: FileResult,
        sheet_where: dict[str, Any],
    ) -> tuple[RegionResult, list[_Pending]]:
        result = RegionResult(
            index=number,
            start_row=grid.sheet_row(region.start_row),
            end_row=grid.sheet_row(region.end_row),
            start_col=grid.sheet_col(region.start_col),
            end_col=grid.sheet_col(region.end_col),
            header_row=grid.sheet_row(region.header_row) if region.header_row is not None else None,
            boundary_confidence=region.boundary_confidence,
        )
        where = {**sheet_where, "region": number}
        try:
            records = await self._extract_region(grid, region, result, file_result, where)
        except Exception:
            logger.exception(
                "Unexpected failure in region %d of %s/%s", number, where["file_name"], grid.name
            )
            result.counts = KindCounts()
            result.issues.append(
                Issue(
                    scope=IssueScope.REGION,
                    code="INTERNAL_ERROR",
                    message="Erro inesperado ao processar a tabela",
                    **where,
                )
            )
            return result, []
        return result, records

    async def _extract_region(
        self,
        grid: SheetGrid,
        region: TableRegion,
        result: RegionResult,
        file_result: FileResult,
        where: dict[str, Any],
    ) -> list[_Pending]:
        file_name, number = where["file_name"], where["region"]
        if region.header_row is None:
            result.issues.append(
                Issue(
                    scope=IssueScope.REGION,
                    code=HeaderNotFound.code,
                    message="Tabela sem linha de cabeçalho reconhecível",
                    **where,
                )
            )
            return []

        data_rows = region.data_rows(grid)
        if not data_rows:
            result.issues.append(
                Issue(
                    scope=IssueScope.REGION,
                    code="EMPTY_REGION",
                    message="Tabela sem linhas de dados",
                    severity="info",
                    **where,
                )
            )
            return []

        headers = header_labels(grid, region.header_row, region.start_col, region.end_col)
        sample = [
            [grid.cell(r, c).display() for c in range(region.start_col, region.end_col + 1)]
            for r in data_rows[: self.options.sample_rows]
        ]
        try:
            analysis = await analyze_region(
                file_name=file_name,
                sheet_name=grid.name,
                headers=headers,
                sample=sample,
                options=self.options,
                limiter=self.limiter,
            )
        except LowConfidenceClassification as exc:
            logger.warning("Region %d of %s/%s skipped: %s", number, file_name, grid.name, exc.message)
            result.issues.append(exc.to_issue(**where))
            return []
        except (ProviderTimeout, ProviderError) as exc:
            logger.warning("Region %d of %s/%s: AI call failed: %s", number, file_name, grid.name, exc.message)
            self.usage.failed_calls += 1
            result.issues.append(exc.to_issue(**where))
            return []

        self.usage.record(analysis.provider_result)
        result.entity_kind = analysis.entity_kind
        result.classification_confidence = analysis.confidence
        if analysis.entity_kind == EntityKind.SKIP:
            result.issues.append(
                Issue(
                    scope=IssueScope.REGION,
                    code="NOT_FINANCIAL",
                    message=analysis.reason or "Tabela sem dados financeiros",
                    severity="info",
                    **where,
                )
            )
            return []

        result.field_mapping = {
            str(grid.sheet_col(region.start_col + i)): name for i, name in sorted(analysis.mapping.items())
        }
        return self._transform_rows(
            grid, region, analysis.entity_kind, analysis.mapping, headers, data_rows, result, file_result, where
        )

    def _transform_rows(
        self,
        grid: SheetGrid,
        region: TableRegion,
        kind: EntityKind,
        mapping: dict[int, str],
        headers: list[str],
        data_rows: Sequence[int],
        result: RegionResult,
        file_result: FileResult,
        where: dict[str, Any],
    ) -> list[_Pending]:
        records: list[_Pending] = []
        columns = sorted(mapping.items())
        for r in data_rows:
            row_number = grid.sheet_row(r)
            pairs = [(name, headers[i], grid.cell(r, region.start_col + i)) for i, name in columns]
            values = collect_row_values(pairs, kind)
            if not values.values and not values.warnings:
                result.issues.append(
                    Issue(
                        scope=IssueScope.ROW,
                        code="ROW_WITHOUT_MAPPED_VALUES",
                        message="Linha ignorada: só há dados em colunas não mapeadas",
                        severity="info",
                        row=row_number,
                        **where,
                    )
                )
                continue
            try:
                record = build_record(kind, values, self.options, row_number=row_number)
            except ValueTransformFailure as exc:
                result.counts.failed += 1
                result.issues.append(exc.to_issue(row=row_number, **where))
                continue
            for warning in values.warnings:
                result.issues.append(
                    Issue(
                        scope=IssueScope.ROW,
                        code="VALUE_IGNORED",
                        message=warning,
                        severity="warning",
                        row=row_number,
                        **where,
                    )
                )
            records.append(_Pending(MaterializeItem(record, {**where, "row": row_number}), kind, file_result, result))
        return records


# ---------------------------------------------------------------------------
# Status roll-up
# ---------------------------------------------------------------------------


def _has_errors(issues: Sequence[Issue]) -> bool:
    return any(issue.severity == "error" for issue in issues)


def _failed_records(counts: EntityCounts) -> int:
    return counts.contract.failed + counts.receivable.failed + counts.expense.failed


def _finalize_sheet(sheet: SheetResult) -> None:
    if sheet.status in (UnitStatus.SKIPPED, UnitStatus.FAILED):
        return
    region_issues = [issue for region in sheet.regions for issue in region.issues]
    if _has_errors(sheet.issues) or _has_errors(region_issues):
        sheet.status = UnitStatus.PARTIAL


def _finalize_file(result: FileResult) -> None:
    if result.status == UnitStatus.FAILED:
        return
    for sheet in result.sheets:
        _finalize_sheet(sheet)
    if result.sheets and all(sheet.status == UnitStatus.FAILED for sheet in result.sheets):
        result.status = UnitStatus.FAILED
    elif result.sheets and all(sheet.status == UnitStatus.SKIPPED for sheet in result.sheets):
        result.status = UnitStatus.SKIPPED
    elif (
        any(
            sheet.status in (UnitStatus.PARTIAL, UnitStatus.FAILED)
            or (sheet.status == UnitStatus.SKIPPED and _has_errors(sheet.issues))
            for sheet in result.sheets
        )
        or _has_errors(result.issues)
        or _failed_records(result.counts)
    ):
        result.status = UnitStatus.PARTIAL


def _batch_status(files: Sequence[FileResult]) -> UnitStatus:
    if not files or all(f.status == UnitStatus.FAILED for f in files):
        return UnitStatus.FAILED
    if all(f.status == UnitStatus.COMPLETED for f in files):
        return UnitStatus.COMPLETED
    return UnitStatus.PARTIAL


def _count_issues(result: BatchResult) -> int:
    total = len(result.issues)
    for f in result.files:
        total += len(f.issues)
        for sheet in f.sheets:
            total += len(sheet.issues)
            total += sum(len(region.issues) for region in sheet.regions)
    return total


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def run_batch(
    files: Sequence[SourceFile],
    *,
    options: ExtractionOptions,
    store: RecordStore,
    audit_sink: AuditSink,
    team_id: str,
    actor_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    on_conflict: ConflictPolicy = "skip",
) -> BatchResult:
    """Run one extraction batch and persist what survives validation.

    The store's transaction is left to the caller; nothing here commits.
    """
    batch_id = batch_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc)
    runner = BatchRunner(options)
    logger.info("Batch %s started: %d files, profession=%s", batch_id, len(files), options.profession.key)

    file_results = list(await asyncio.gather(*(runner.process_file(source) for source in files)))

    report = await materialize(
        [p.item for p in runner.pending], store=store, options=options, on_conflict=on_conflict
    )
    for pending, outcome in zip(runner.pending, report.outcomes):
        _tally(pending.file, pending.region, pending.kind, "extracted")
        _tally(pending.file, pending.region, pending.kind, outcome.status)
        target = pending.region.issues if pending.region is not None else pending.file.issues
        target.extend(outcome.issues)

    totals = EntityCounts()
    for result in file_results:
        _finalize_file(result)
        totals.add(result.counts)

    batch = BatchResult(
        batch_id=batch_id,
        status=_batch_status(file_results),
        profession=options.profession.key,
        started_at=started_at,
        finished_at=datetime.now(timezone.utc),
        files=file_results,
        totals=totals,
    )
    batch.issue_count = _count_issues(batch)

    emit_batch_summary(
        audit_sink,
        batch_id=batch_id,
        team_id=team_id,
        actor_id=actor_id,
        counts=totals,
        metadata={
            "status": str(batch.status),
            "files": len(file_results),
            "issue_count": batch.issue_count,
            "ai_usage": runner.usage.as_dict(),
        },
    )
    logger.info(
        "Batch %s finished with status %s: %d records created, %d issues",
        batch_id, batch.status, totals.created_total, batch.issue_count,
    )
    return batch
