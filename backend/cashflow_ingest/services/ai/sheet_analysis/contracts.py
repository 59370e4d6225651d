"""Sheet analysis scope contracts: column mapping + entity kind."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from cashflow_ingest.schemas.records import EntityKind

_KIND_ALIASES = {
    "contracts": EntityKind.CONTRACT,
    "contract": EntityKind.CONTRACT,
    "receivables": EntityKind.RECEIVABLE,
    "receivable": EntityKind.RECEIVABLE,
    "expenses": EntityKind.EXPENSE,
    "expense": EntityKind.EXPENSE,
    "skip": EntityKind.SKIP,
    "none": EntityKind.SKIP,
}


class ColumnAssignment(BaseModel):
    index: int | None = None
    header: str = ""
    field: str = "ignore"


class AISheetAnalysisResult(BaseModel):
    """Structured output expected from region classification."""

    entity_kind: EntityKind
    confidence: float
    columns: list[ColumnAssignment] = Field(default_factory=list)
    reason: str = ""

    @field_validator("entity_kind", mode="before")
    @classmethod
    def kind_must_be_known(cls, v):
        key = str(v or "").strip().lower()
        if key not in _KIND_ALIASES:
            msg = f"Unknown entity kind {v!r}; valid: {sorted(_KIND_ALIASES)}"
            raise ValueError(msg)
        return _KIND_ALIASES[key]

    @field_validator("confidence")
    @classmethod
    def confidence_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            msg = f"Confidence must be 0.0–1.0, got {v}"
            raise ValueError(msg)
        return v
