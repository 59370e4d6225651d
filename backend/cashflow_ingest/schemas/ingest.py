from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field

from cashflow_ingest.schemas.records import EntityKind


class FormatKind(StrEnum):
    TABULAR = "tabular"
    VISION = "vision"
    UNSUPPORTED = "unsupported"


class IssueScope(StrEnum):
    BATCH = "batch"
    FILE = "file"
    SHEET = "sheet"
    REGION = "region"
    ROW = "row"
    RECORD = "record"
    CALL = "call"


class UnitStatus(StrEnum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    FAILED = "failed"


class Issue(BaseModel):
    scope: IssueScope
    code: str
    message: str
    severity: str = "error"
    file_name: Optional[str] = None
    sheet: Optional[str] = None
    region: Optional[int] = None
    row: Optional[int] = None
    record_index: Optional[int] = None


class KindCounts(BaseModel):
    extracted: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0

    def add(self, other: "KindCounts") -> None:
        self.extracted += other.extracted
        self.created += other.created
        self.skipped += other.skipped
        self.failed += other.failed


class EntityCounts(BaseModel):
    contract: KindCounts = Field(default_factory=KindCounts)
    receivable: KindCounts = Field(default_factory=KindCounts)
    expense: KindCounts = Field(default_factory=KindCounts)

    def for_kind(self, kind: EntityKind | str) -> KindCounts:
        return getattr(self, EntityKind(kind).value)

    def add(self, other: "EntityCounts") -> None:
        self.contract.add(other.contract)
        self.receivable.add(other.receivable)
        self.expense.add(other.expense)

    @property
    def created_total(self) -> int:
        return self.contract.created + self.receivable.created + self.expense.created


class RegionResult(BaseModel):
    """One table region. Row and column numbers are 1-based sheet coordinates."""

    index: int
    start_row: int
    end_row: int
    start_col: int
    end_col: int
    header_row: Optional[int] = None
    boundary_confidence: float
    entity_kind: EntityKind = EntityKind.SKIP
    classification_confidence: float = 0.0
    field_mapping: dict[str, str] = Field(default_factory=dict)
    counts: KindCounts = Field(default_factory=KindCounts)
    issues: list[Issue] = Field(default_factory=list)


class SheetResult(BaseModel):
    name: str
    status: UnitStatus = UnitStatus.COMPLETED
    row_count: int = 0
    column_count: int = 0
    regions: list[RegionResult] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)


class FileResult(BaseModel):
    name: str
    format: FormatKind
    status: UnitStatus = UnitStatus.COMPLETED
    sheets: list[SheetResult] = Field(default_factory=list)
    note: Optional[str] = None
    counts: EntityCounts = Field(default_factory=EntityCounts)
    issues: list[Issue] = Field(default_factory=list)


class BatchResult(BaseModel):
    batch_id: str
    status: UnitStatus
    profession: str
    started_at: datetime
    finished_at: datetime
    files: list[FileResult] = Field(default_factory=list)
    totals: EntityCounts = Field(default_factory=EntityCounts)
    issues: list[Issue] = Field(default_factory=list)
    issue_count: int = 0
