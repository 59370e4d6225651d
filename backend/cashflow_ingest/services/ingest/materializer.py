"""Bulk entity materializer.

Validates every extracted record, creates contracts first, resolves the
soft contract references of receivables and expenses against the contracts
known to this batch (and to the store), then inserts the dependents.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from pydantic import BaseModel, ValidationError

from cashflow_ingest.schemas.ingest import EntityCounts, Issue
from cashflow_ingest.schemas.records import (
    RECORD_TYPES,
    ContractRecord,
    EntityKind,
    canonical_record_adapter,
)
from cashflow_ingest.services.ai.professions import ProfessionProfile
from cashflow_ingest.services.audit import AuditEvent, AuditSink

from .errors import ReferenceUnresolved, RecordValidationError
from .options import ExtractionOptions
from .record_store import (
    ConflictPolicy,
    CreateOutcome,
    CreateRequest,
    RecordStore,
    normalize_key,
)

logger = logging.getLogger(__name__)

VALIDATION_CHUNK_SIZE = 200
DEPENDENT_KINDS = (EntityKind.RECEIVABLE, EntityKind.EXPENSE)


@dataclass
class MaterializeItem:
    """A record plus where it came from (file, sheet, region, row)."""

    record: Any
    location: dict[str, Any] = field(default_factory=dict)


@dataclass
class RecordOutcome:
    index: int
    kind: Optional[EntityKind]
    status: str  # created | skipped | failed
    record_id: Optional[str] = None
    contract_id: Optional[str] = None
    issues: list[Issue] = field(default_factory=list)


@dataclass
class MaterializeReport:
    outcomes: list[RecordOutcome]
    counts: EntityCounts = field(default_factory=EntityCounts)

    @property
    def issues(self) -> list[Issue]:
        return [issue for outcome in self.outcomes for issue in outcome.issues]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_record(record: Any, profession: ProfessionProfile) -> BaseModel:
    """Re-validate *record* against its schema and the profession rules.

    Returns an equal record for input that is already valid, so running it
    twice changes nothing. Raises ``RecordValidationError``.
    """
    try:
        if isinstance(record, BaseModel):
            model = RECORD_TYPES[EntityKind(record.kind)]
            validated = model.model_validate(record.model_dump())
        else:
            validated = canonical_record_adapter.validate_python(record)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ())) or "registro"
        raise RecordValidationError(f"{where}: {first.get('msg', 'inválido')}") from exc
    except (KeyError, ValueError, AttributeError) as exc:
        raise RecordValidationError(f"Registro de tipo desconhecido: {exc}") from exc

    if isinstance(validated, ContractRecord):
        if profession.contract_value_required and validated.total_value is None:
            raise RecordValidationError("Contrato sem valor total")
        if profession.signed_date_required and validated.signed_date is None:
            raise RecordValidationError("Contrato sem data de assinatura")
    return validated


def _validate_chunk(records: Sequence[Any], profession: ProfessionProfile) -> list:
    results: list = []
    for record in records:
        try:
            results.append(validate_record(record, profession))
        except RecordValidationError as exc:
            results.append(exc)
    return results


async def validate_all(records: Sequence[Any], profession: ProfessionProfile) -> list:
    """Validate records in worker threads; each slot is a record or the error."""
    chunks = [
        records[i : i + VALIDATION_CHUNK_SIZE] for i in range(0, len(records), VALIDATION_CHUNK_SIZE)
    ]
    parts = await asyncio.gather(*(asyncio.to_thread(_validate_chunk, chunk, profession) for chunk in chunks))
    return [result for part in parts for result in part]


# ---------------------------------------------------------------------------
# Contract index + reference resolution
# ---------------------------------------------------------------------------


class ContractIndex:
    """Read-only name -> contract id lookup built once after contracts exist.

    Project names always index. Client names index only when a single
    contract of the batch carries them, so an ambiguous client never links.
    """

    def __init__(self) -> None:
        self._by_project: dict[str, str] = {}
        self._by_client: dict[str, set[str]] = {}

    def add(self, record: ContractRecord, contract_id: str) -> None:
        project = normalize_key(record.project_name or record.client_name)
        if project:
            self._by_project.setdefault(project, contract_id)
        client = normalize_key(record.client_name)
        if client:
            self._by_client.setdefault(client, set()).add(contract_id)

    def get(self, ref: Optional[str]) -> Optional[str]:
        key = normalize_key(ref)
        if not key:
            return None
        if key in self._by_project:
            return self._by_project[key]
        clients = self._by_client.get(key)
        if clients and len(clients) == 1:
            return next(iter(clients))
        return None


def resolve_references(
    refs: Sequence[Optional[str]], index: ContractIndex, store: RecordStore
) -> dict[str, str]:
    """Resolve free-text refs: batch index first, then the store (name or id)."""
    resolved: dict[str, str] = {}
    missing: list[str] = []
    for ref in refs:
        if not ref or ref in resolved:
            continue
        contract_id = index.get(ref)
        if contract_id:
            resolved[ref] = contract_id
        elif ref not in missing:
            missing.append(ref)
    if missing:
        found = store.find_contract_ids(missing)
        resolved.update(found)
    return resolved


# ---------------------------------------------------------------------------
# Materialization
# ---------------------------------------------------------------------------


def _issue(exc, item: MaterializeItem, index: int) -> Issue:
    return exc.to_issue(record_index=index, **item.location)


def _apply_outcomes(
    report: MaterializeReport,
    items: Sequence[MaterializeItem],
    positions: list[int],
    kind: EntityKind,
    created: list[CreateOutcome],
) -> None:
    counts = report.counts.for_kind(kind)
    for position, outcome in zip(positions, created):
        record_outcome = report.outcomes[position]
        record_outcome.status = outcome.status
        record_outcome.record_id = outcome.record_id
        if outcome.error is not None:
            record_outcome.issues.append(_issue(outcome.error, items[position], position))
        if outcome.status == "created":
            counts.created += 1
        elif outcome.status == "skipped":
            counts.skipped += 1
        else:
            counts.failed += 1


async def materialize(
    items: Sequence[MaterializeItem],
    *,
    store: RecordStore,
    options: ExtractionOptions,
    on_conflict: ConflictPolicy = "skip",
) -> MaterializeReport:
    """Persist *items* and report one outcome per input position."""
    report = MaterializeReport(
        outcomes=[RecordOutcome(index=i, kind=None, status="failed") for i in range(len(items))]
    )
    validated = await validate_all([item.record for item in items], options.profession)
    records: list[Any] = list(validated)

    by_kind: dict[EntityKind, list[int]] = {kind: [] for kind in RECORD_TYPES}
    for position, result in enumerate(validated):
        item = items[position]
        kind = _kind_of(item.record)
        outcome = report.outcomes[position]
        outcome.kind = kind
        if kind is not None:
            report.counts.for_kind(kind).extracted += 1
        if isinstance(result, RecordValidationError):
            outcome.issues.append(_issue(result, item, position))
            if kind is not None:
                report.counts.for_kind(kind).failed += 1
            continue
        records[position] = result
        by_kind[EntityKind(result.kind)].append(position)

    # Phase 1: contracts, then the name index over what now exists.
    contract_positions = by_kind[EntityKind.CONTRACT]
    index = ContractIndex()
    if contract_positions:
        created = store.create_many(
            EntityKind.CONTRACT,
            [CreateRequest(records[p]) for p in contract_positions],
            on_conflict=on_conflict,
        )
        _apply_outcomes(report, items, contract_positions, EntityKind.CONTRACT, created)
        for position, outcome in zip(contract_positions, created):
            if outcome.record_id:
                index.add(records[position], outcome.record_id)

    # Phase 2: dependents, linked through the read-only index.
    dependents = [p for kind in DEPENDENT_KINDS for p in by_kind[kind]]
    resolved = resolve_references([records[p].contract_ref for p in dependents], index, store)

    for kind in DEPENDENT_KINDS:
        positions = by_kind[kind]
        if not positions:
            continue
        requests = []
        for position in positions:
            record = records[position]
            contract_id = resolved.get(record.contract_ref) if record.contract_ref else None
            if record.contract_ref and contract_id is None:
                warning = ReferenceUnresolved(
                    f"Contrato '{record.contract_ref}' não encontrado; registro criado sem vínculo"
                )
                report.outcomes[position].issues.append(_issue(warning, items[position], position))
            report.outcomes[position].contract_id = contract_id
            requests.append(CreateRequest(record, contract_id=contract_id))
        created = store.create_many(kind, requests, on_conflict=on_conflict)
        _apply_outcomes(report, items, positions, kind, created)

    logger.info(
        "Materialized batch: contracts %d/%d, receivables %d/%d, expenses %d/%d created",
        report.counts.contract.created, report.counts.contract.extracted,
        report.counts.receivable.created, report.counts.receivable.extracted,
        report.counts.expense.created, report.counts.expense.extracted,
    )
    return report


def _kind_of(record: Any) -> Optional[EntityKind]:
    raw = record.get("kind") if isinstance(record, dict) else getattr(record, "kind", None)
    try:
        kind = EntityKind(raw)
    except ValueError:
        return None
    return None if kind == EntityKind.SKIP else kind


def emit_batch_summary(
    sink: AuditSink,
    *,
    batch_id: str,
    team_id: str,
    actor_id: Optional[str],
    counts: EntityCounts,
    metadata: Optional[dict[str, Any]] = None,
) -> AuditEvent:
    """Emit the single summary event of a completed batch."""
    event = AuditEvent(
        batch_id=batch_id,
        team_id=team_id,
        actor_id=actor_id,
        summary=counts.model_dump(),
        metadata=metadata or {},
    )
    sink.emit(event)
    return event
