"""Vision extraction scope contracts."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class AIVisionExtractResult(BaseModel):
    """Loosely-typed records returned by document extraction.

    Items stay plain dicts here; the deterministic transformer turns them
    into canonical records so both ingestion paths share the same rules.
    """

    contracts: list[dict[str, Any]] = Field(default_factory=list)
    receivables: list[dict[str, Any]] = Field(default_factory=list)
    expenses: list[dict[str, Any]] = Field(default_factory=list)
    note: str = ""

    @field_validator("contracts", "receivables", "expenses", mode="before")
    @classmethod
    def _drop_non_objects(cls, v):
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("expected a list of objects")
        return [item for item in v if isinstance(item, dict)]

    @field_validator("note", mode="before")
    @classmethod
    def _note_text(cls, v):
        return "" if v is None else str(v)
