"""Persistent store collaborator: create-many per entity kind + contract lookup."""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from typing import Iterable, Literal, Optional, Protocol, Sequence

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from cashflow_ingest.models.records import Contract, Expense, Receivable
from cashflow_ingest.schemas.records import (
    ContractRecord,
    EntityKind,
    ExpenseRecord,
    ReceivableRecord,
)

from .errors import DuplicateConflict, IngestError, RecordStoreError

logger = logging.getLogger(__name__)

ConflictPolicy = Literal["skip", "abort"]


def normalize_key(text: Optional[str]) -> str:
    """Case- and whitespace-insensitive form used for name matching."""
    return " ".join((text or "").split()).casefold()


def parse_uuid(text: Optional[str]) -> Optional[uuid.UUID]:
    if not text:
        return None
    try:
        return uuid.UUID(str(text).strip())
    except ValueError:
        return None


def record_fingerprint(record: ReceivableRecord | ExpenseRecord) -> str:
    if isinstance(record, ReceivableRecord):
        parts = [
            "receivable",
            normalize_key(record.contract_ref or record.client_name),
            record.expected_date.isoformat(),
            str(record.amount),
            normalize_key(record.description),
        ]
    else:
        parts = [
            "expense",
            normalize_key(record.description),
            normalize_key(record.vendor),
            record.due_date.isoformat(),
            str(record.amount),
        ]
    return hashlib.sha256("|".join(parts).encode()).hexdigest()


@dataclass(frozen=True)
class StoreScope:
    """Tenant/user scope, opaque to extraction."""

    team_id: str
    user_id: Optional[str] = None
    batch_id: Optional[str] = None


@dataclass
class CreateOutcome:
    status: Literal["created", "skipped", "failed"]
    record_id: Optional[str] = None
    error: Optional[IngestError] = None


@dataclass
class CreateRequest:
    record: ContractRecord | ReceivableRecord | ExpenseRecord
    contract_id: Optional[str] = None


class RecordStore(Protocol):
    def create_many(
        self,
        kind: EntityKind,
        requests: Sequence[CreateRequest],
        *,
        on_conflict: ConflictPolicy = "skip",
    ) -> list[CreateOutcome]: ...

    def find_contract_ids(self, refs: Iterable[str]) -> dict[str, str]: ...


class SqlRecordStore:
    """SQLAlchemy-backed store. Never commits; the caller owns the transaction."""

    def __init__(self, db: Session, scope: StoreScope) -> None:
        self.db = db
        self.scope = scope

    # --- row builders -----------------------------------------------------

    def _common(self) -> dict:
        return {
            "team_id": self.scope.team_id,
            "created_by": self.scope.user_id,
            "source_batch_id": self.scope.batch_id,
        }

    def _build_row(self, kind: EntityKind, request: CreateRequest):
        record = request.record
        if kind == EntityKind.CONTRACT:
            project = record.project_name or record.client_name
            return Contract(
                client_name=record.client_name or project,
                project_name=project,
                project_key=normalize_key(project),
                total_value=record.total_value,
                signed_date=record.signed_date,
                status=str(record.status),
                description=record.description,
                category=record.category,
                **self._common(),
            )
        if kind == EntityKind.RECEIVABLE:
            return Receivable(
                contract_id=request.contract_id,
                contract_ref=record.contract_ref,
                client_name=record.client_name,
                expected_date=record.expected_date,
                amount=record.amount,
                status=str(record.status),
                received_date=record.received_date,
                received_amount=record.received_amount,
                description=record.description,
                category=record.category,
                fingerprint=record_fingerprint(record),
                **self._common(),
            )
        return Expense(
            contract_id=request.contract_id,
            contract_ref=record.contract_ref,
            description=record.description,
            vendor=record.vendor,
            amount=record.amount,
            due_date=record.due_date,
            category=record.category,
            status=str(record.status),
            paid_date=record.paid_date,
            paid_amount=record.paid_amount,
            fingerprint=record_fingerprint(record),
            **self._common(),
        )

    def _existing_id(self, kind: EntityKind, request: CreateRequest) -> Optional[str]:
        if kind == EntityKind.CONTRACT:
            row = (
                self.db.query(Contract.id)
                .filter(
                    Contract.team_id == self.scope.team_id,
                    Contract.project_key == normalize_key(request.record.project_name or request.record.client_name),
                )
                .first()
            )
        else:
            model = Receivable if kind == EntityKind.RECEIVABLE else Expense
            row = (
                self.db.query(model.id)
                .filter(
                    model.team_id == self.scope.team_id,
                    model.fingerprint == record_fingerprint(request.record),
                )
                .first()
            )
        return str(row[0]) if row else None

    # --- protocol -----------------------------------------------------------

    def create_many(
        self,
        kind: EntityKind,
        requests: Sequence[CreateRequest],
        *,
        on_conflict: ConflictPolicy = "skip",
    ) -> list[CreateOutcome]:
        if on_conflict == "abort":
            return self._create_all_or_nothing(kind, requests)

        outcomes: list[CreateOutcome] = []
        for request in requests:
            row = self._build_row(kind, request)
            try:
                with self.db.begin_nested():
                    self.db.add(row)
                    self.db.flush()
            except IntegrityError:
                existing = self._existing_id(kind, request)
                outcomes.append(
                    CreateOutcome(
                        "skipped",
                        record_id=existing,
                        error=DuplicateConflict(f"{kind} já existe"),
                    )
                )
                continue
            except SQLAlchemyError as exc:
                logger.exception("Insert of %s failed", kind)
                outcomes.append(CreateOutcome("failed", error=RecordStoreError(f"Falha ao gravar {kind}: {exc}")))
                continue
            outcomes.append(CreateOutcome("created", record_id=str(row.id)))
        return outcomes

    def _create_all_or_nothing(self, kind: EntityKind, requests: Sequence[CreateRequest]) -> list[CreateOutcome]:
        rows = []
        position = 0
        try:
            with self.db.begin_nested():
                for position, request in enumerate(requests):
                    row = self._build_row(kind, request)
                    self.db.add(row)
                    self.db.flush()
                    rows.append(row)
        except IntegrityError:
            outcomes = [
                CreateOutcome("failed", error=RecordStoreError(f"Lote de {kind} abortado por conflito"))
                for _ in requests
            ]
            outcomes[position] = CreateOutcome("skipped", error=DuplicateConflict(f"{kind} já existe"))
            return outcomes
        return [CreateOutcome("created", record_id=str(row.id)) for row in rows]

    def find_contract_ids(self, refs: Iterable[str]) -> dict[str, str]:
        """Map each ref (project name or contract id) to a stored contract id."""
        refs = [r for r in refs if r]
        if not refs:
            return {}
        keys = {normalize_key(r): r for r in refs}
        ids = {str(u): r for r in refs if (u := parse_uuid(r)) is not None}

        conditions = [Contract.project_key.in_(list(keys))]
        if ids:
            conditions.append(Contract.id.in_(list(ids)))
        rows = (
            self.db.query(Contract.id, Contract.project_key)
            .filter(Contract.team_id == self.scope.team_id, or_(*conditions))
            .all()
        )
        found: dict[str, str] = {}
        for contract_id, project_key in rows:
            if project_key in keys:
                found[keys[project_key]] = str(contract_id)
            if str(contract_id) in ids:
                found[ids[str(contract_id)]] = str(contract_id)
        return found
