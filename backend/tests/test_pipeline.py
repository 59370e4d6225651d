"""End-to-end batch scenarios against an in-memory database and a scripted AI provider."""

import asyncio
from unittest.mock import patch

import pytest
from ingest_fakes import (
    CONTRACT_HEADER,
    CONTRACT_ROWS,
    ScriptedProvider,
    analysis,
    make_options,
    mixed_sheet_rows,
    xlsx_bytes,
)

from cashflow_ingest.models.records import Contract, Expense, Receivable
from cashflow_ingest.schemas.ingest import FormatKind, UnitStatus
from cashflow_ingest.schemas.records import EntityKind
from cashflow_ingest.services.audit import MemoryAuditSink
from cashflow_ingest.services.ingest.errors import ProviderTimeout
from cashflow_ingest.services.ingest.pipeline import SourceFile, run_batch
from cashflow_ingest.services.ingest.spreadsheet_parser import header_labels
from cashflow_ingest.services.ingest.table_segmenter import segment_sheet
from cashflow_ingest.services.ingest.record_store import SqlRecordStore, StoreScope

CONTRACT_ANSWER = analysis("contract", ["client_name", "project_name", "total_value", "signed_date"])
RECEIVABLE_ANSWER = analysis("receivable", ["contract_ref", "ignore", "amount", "expected_date"])

# Column labels appear in the prompt as "index: label".
ROUTED = [("1: Parcela", RECEIVABLE_ANSWER), ("0: Cliente", CONTRACT_ANSWER)]


async def _run(db, files, provider, options=None):
    sink = MemoryAuditSink()
    with patch("cashflow_ingest.services.ai.common.router.get_provider", return_value=provider):
        result = await run_batch(
            files,
            options=options or make_options(),
            store=SqlRecordStore(db, StoreScope(team_id="team-1", user_id="user-1")),
            audit_sink=sink,
            team_id="team-1",
            actor_id="user-1",
        )
    return result, sink


def _contracts_file(rows=None, name="contratos.xlsx"):
    return SourceFile(name, xlsx_bytes({"Contratos": [CONTRACT_HEADER, *(rows or CONTRACT_ROWS)]}))


@pytest.mark.asyncio
async def test_single_contract_sheet(db):
    result, sink = await _run(db, [_contracts_file()], ScriptedProvider(default=CONTRACT_ANSWER))

    assert result.status == UnitStatus.COMPLETED
    assert result.totals.contract.extracted == 5
    assert result.totals.contract.created == 5
    assert result.issue_count == 0

    (file_result,) = result.files
    assert file_result.format == FormatKind.TABULAR
    (sheet,) = file_result.sheets
    assert (sheet.name, sheet.row_count, sheet.column_count) == ("Contratos", 6, 4)
    (region,) = sheet.regions
    assert (region.start_row, region.end_row, region.start_col, region.end_col) == (1, 6, 1, 4)
    assert region.header_row == 1
    assert region.entity_kind == EntityKind.CONTRACT
    assert region.field_mapping == {"1": "client_name", "2": "project_name", "3": "total_value", "4": "signed_date"}
    assert region.counts.created == 5

    first = db.query(Contract).filter(Contract.client_name == "Ana Lima").one()
    assert str(first.total_value) in ("3500.00", "3500")
    assert first.signed_date.isoformat() == "2020-10-23"

    (event,) = sink.events
    assert event.summary["contract"]["created"] == 5
    assert event.metadata["status"] == "completed"
    assert event.metadata["ai_usage"]["calls"] == 1


@pytest.mark.asyncio
async def test_mixed_sheet_links_receivables_to_contracts(db):
    source = SourceFile("financeiro.xlsx", xlsx_bytes({"Geral": mixed_sheet_rows()}))
    provider = ScriptedProvider(rules=ROUTED)
    result, sink = await _run(db, [source], provider)

    assert result.status == UnitStatus.COMPLETED
    sheet = result.files[0].sheets[0]
    assert [(r.start_row, r.end_row) for r in sheet.regions] == [(1, 9), (10, 40)]
    assert [r.entity_kind for r in sheet.regions] == [EntityKind.CONTRACT, EntityKind.RECEIVABLE]
    assert sheet.regions[1].header_row == 10
    assert sheet.regions[1].field_mapping == {"1": "contract_ref", "3": "amount", "4": "expected_date"}

    assert result.totals.contract.created == 5
    assert result.totals.receivable.created == 30
    assert db.query(Receivable).filter(Receivable.contract_id.is_(None)).count() == 0
    assert len(provider.prompts) == 2
    assert sink.events[0].metadata["ai_usage"]["calls"] == 2


@pytest.mark.asyncio
async def test_provider_timeout_skips_only_its_region(db):
    source = SourceFile("financeiro.xlsx", xlsx_bytes({"Geral": mixed_sheet_rows()}))
    provider = ScriptedProvider(rules=[("1: Parcela", ProviderTimeout("lento")), ("0: Cliente", CONTRACT_ANSWER)])
    result, sink = await _run(db, [source], provider, options=make_options(max_retries=1))

    assert result.status == UnitStatus.PARTIAL
    sheet = result.files[0].sheets[0]
    assert sheet.status == UnitStatus.PARTIAL
    contracts, receivables = sheet.regions
    assert contracts.counts.created == 5
    assert receivables.entity_kind == EntityKind.SKIP
    assert [i.code for i in receivables.issues] == ["PROVIDER_TIMEOUT"]
    assert receivables.issues[0].region == 2
    assert result.totals.receivable.created == 0
    assert sink.events[0].metadata["ai_usage"]["failed_calls"] == 1


@pytest.mark.asyncio
async def test_unsupported_file_does_not_stop_the_batch(db):
    files = [SourceFile("apresentacao.pptx", b"PK\x03\x04rest"), _contracts_file()]
    result, _ = await _run(db, files, ScriptedProvider(default=CONTRACT_ANSWER))

    assert result.status == UnitStatus.PARTIAL
    rejected, accepted = result.files
    assert rejected.status == UnitStatus.FAILED
    assert rejected.issues[0].code == "UNSUPPORTED_FORMAT"
    assert accepted.status == UnitStatus.COMPLETED
    assert result.totals.contract.created == 5


@pytest.mark.asyncio
async def test_batch_fails_only_when_every_file_fails(db):
    files = [SourceFile("a.pptx", b"PK\x03\x04"), SourceFile("b.csv", b""), SourceFile("c.xlsx", b"PK\x03\x04garbage")]
    result, sink = await _run(db, files, ScriptedProvider(default=CONTRACT_ANSWER))

    assert result.status == UnitStatus.FAILED
    assert [f.issues[0].code for f in result.files] == ["UNSUPPORTED_FORMAT", "UNSUPPORTED_FORMAT", "SPREADSHEET_UNREADABLE"]
    assert sink.events[0].metadata["status"] == "failed"


@pytest.mark.asyncio
async def test_oversized_file_is_rejected(db):
    result, _ = await _run(
        db, [_contracts_file()], ScriptedProvider(default=CONTRACT_ANSWER), options=make_options(max_file_bytes=100)
    )
    assert result.files[0].issues[0].code == "FILE_TOO_LARGE"
    assert result.status == UnitStatus.FAILED


@pytest.mark.asyncio
async def test_bad_rows_are_counted_and_reported(db):
    rows = [*CONTRACT_ROWS[:2], ["Fulano", "Obra sem valor", "a combinar", "01/02/2021"]]
    result, _ = await _run(db, [_contracts_file(rows)], ScriptedProvider(default=CONTRACT_ANSWER))

    assert result.totals.contract.created == 2
    assert result.totals.contract.failed == 1
    region = result.files[0].sheets[0].regions[0]
    failure = next(i for i in region.issues if i.code == "VALUE_TRANSFORM_FAILED")
    assert failure.row == 4
    assert failure.sheet == "Contratos"
    assert result.files[0].status == UnitStatus.PARTIAL
    assert result.status == UnitStatus.PARTIAL


@pytest.mark.asyncio
async def test_sheet_without_header_is_skipped(db):
    source = SourceFile("numeros.xlsx", xlsx_bytes({"Dados": [[1, 2, 3], [4, 5, 6]], "Vazia": []}))
    result, _ = await _run(db, [source], ScriptedProvider(default=CONTRACT_ANSWER))

    dados, vazia = result.files[0].sheets
    assert dados.status == UnitStatus.SKIPPED
    assert dados.issues[0].code == "HEADER_NOT_FOUND"
    assert vazia.status == UnitStatus.SKIPPED
    assert vazia.issues[0].code == "EMPTY_SHEET"
    assert result.files[0].status == UnitStatus.SKIPPED
    assert result.status == UnitStatus.PARTIAL


@pytest.mark.asyncio
async def test_non_financial_table_is_skipped_with_reason(db):
    provider = ScriptedProvider(default=analysis("skip", [], reason="Lista de telefones"))
    result, _ = await _run(db, [_contracts_file()], provider)

    region = result.files[0].sheets[0].regions[0]
    assert region.entity_kind == EntityKind.SKIP
    assert region.issues[0].code == "NOT_FINANCIAL"
    assert region.issues[0].message == "Lista de telefones"
    assert result.status == UnitStatus.COMPLETED
    assert db.query(Contract).count() == 0


@pytest.mark.asyncio
async def test_vision_document(db):
    provider = ScriptedProvider(
        default={
            "expenses": [
                {"description": "Plotagem", "vendor": "Gráfica Central", "amount": 180, "due_date": "2023-11-05"},
                {"description": "Sem valor"},
            ],
            "note": "Nota fiscal de serviços gráficos",
        }
    )
    result, _ = await _run(db, [SourceFile("nota.pdf", b"%PDF-1.7\n%fake\n")], provider)

    (file_result,) = result.files
    assert file_result.format == FormatKind.VISION
    assert file_result.note == "Nota fiscal de serviços gráficos"
    assert file_result.counts.expense.extracted == 1
    assert file_result.counts.expense.created == 1
    assert file_result.counts.expense.failed == 1
    assert file_result.status == UnitStatus.PARTIAL
    assert db.query(Expense).one().vendor == "Gráfica Central"


@pytest.mark.asyncio
async def test_reupload_skips_duplicates(db):
    provider = ScriptedProvider(default=CONTRACT_ANSWER)
    await _run(db, [_contracts_file()], provider)
    result, _ = await _run(db, [_contracts_file()], provider)

    assert result.totals.contract.created == 0
    assert result.totals.contract.skipped == 5
    assert db.query(Contract).count() == 5


@pytest.mark.asyncio
async def test_row_with_only_unmapped_content_is_reported(db):
    header = [*CONTRACT_HEADER, "Observação"]
    rows = [[*row, None] for row in CONTRACT_ROWS] + [[None, None, None, None, "ligar na segunda"]]
    source = SourceFile("contratos.xlsx", xlsx_bytes({"Contratos": [header, *rows]}))
    answer = analysis("contract", ["client_name", "project_name", "total_value", "signed_date", "ignore"])
    result, _ = await _run(db, [source], ScriptedProvider(default=answer))

    assert result.status == UnitStatus.COMPLETED
    assert result.totals.contract.created == 5
    region = result.files[0].sheets[0].regions[0]
    (issue,) = region.issues
    assert issue.code == "ROW_WITHOUT_MAPPED_VALUES"
    assert issue.severity == "info"
    assert (issue.sheet, issue.region, issue.row) == ("Contratos", 1, 7)


@pytest.mark.asyncio
async def test_unexpected_sheet_failure_stays_in_its_sheet(db):
    def segment_or_fail(grid, header_row, options):
        if grid.name == "Quebrada":
            raise RuntimeError("boom")
        return segment_sheet(grid, header_row, options)

    source = SourceFile(
        "contratos.xlsx",
        xlsx_bytes({"Contratos": [CONTRACT_HEADER, *CONTRACT_ROWS], "Quebrada": [CONTRACT_HEADER, *CONTRACT_ROWS]}),
    )
    with patch("cashflow_ingest.services.ingest.pipeline.segment_sheet", side_effect=segment_or_fail):
        result, _ = await _run(db, [source], ScriptedProvider(default=CONTRACT_ANSWER))

    good, broken = result.files[0].sheets
    assert good.status == UnitStatus.COMPLETED
    assert broken.status == UnitStatus.FAILED
    assert broken.regions == []
    assert [(i.scope, i.code, i.sheet) for i in broken.issues] == [("sheet", "INTERNAL_ERROR", "Quebrada")]
    assert result.files[0].status == UnitStatus.PARTIAL
    assert result.status == UnitStatus.PARTIAL
    assert result.totals.contract.extracted == 5
    assert db.query(Contract).count() == 5


@pytest.mark.asyncio
async def test_unexpected_region_failure_drops_only_its_records(db):
    def labels_or_fail(grid, header_row, start_col, end_col):
        # the receivables header is the tenth row of the mixed sheet
        if header_row == 9:
            raise RuntimeError("boom")
        return header_labels(grid, header_row, start_col, end_col)

    source = SourceFile("financeiro.xlsx", xlsx_bytes({"Geral": mixed_sheet_rows()}))
    with patch("cashflow_ingest.services.ingest.pipeline.header_labels", side_effect=labels_or_fail):
        result, _ = await _run(db, [source], ScriptedProvider(rules=ROUTED))

    sheet = result.files[0].sheets[0]
    assert sheet.status == UnitStatus.PARTIAL
    contracts, receivables = sheet.regions
    assert contracts.counts.created == 5
    assert [(i.code, i.region) for i in receivables.issues] == [("INTERNAL_ERROR", 2)]
    assert result.totals.receivable.extracted == 0
    assert db.query(Receivable).count() == 0
    assert db.query(Contract).count() == 5


class OverlapTrackingProvider(ScriptedProvider):
    """Holds each call until a second one is in flight, remembering the peak."""

    def __init__(self, rules=(), default=None, wait_seconds=0.5):
        super().__init__(rules=rules, default=default)
        self.wait_seconds = wait_seconds
        self.in_flight = 0
        self.peak = 0
        self.both_running = asyncio.Event()

    async def generate(self, prompt, **kwargs):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        if self.in_flight >= 2:
            self.both_running.set()
        try:
            await asyncio.wait_for(self.both_running.wait(), self.wait_seconds)
        except asyncio.TimeoutError:
            pass
        finally:
            self.in_flight -= 1
        return await super().generate(prompt, **kwargs)


@pytest.mark.asyncio
async def test_regions_of_a_sheet_are_analyzed_concurrently(db):
    source = SourceFile("financeiro.xlsx", xlsx_bytes({"Geral": mixed_sheet_rows()}))
    provider = OverlapTrackingProvider(rules=ROUTED)
    result, _ = await _run(db, [source], provider)

    assert provider.peak == 2
    assert provider.both_running.is_set()
    assert result.totals.receivable.created == 30


@pytest.mark.asyncio
async def test_max_concurrency_caps_parallel_ai_calls(db):
    source = SourceFile("financeiro.xlsx", xlsx_bytes({"Geral": mixed_sheet_rows()}))
    provider = OverlapTrackingProvider(rules=ROUTED, wait_seconds=0.05)
    result, _ = await _run(db, [source], provider, options=make_options(max_concurrency=1))

    assert provider.peak == 1
    assert not provider.both_running.is_set()
    assert len(provider.prompts) == 2
    assert result.status == UnitStatus.COMPLETED
