"""Canonical financial records produced by extraction."""

from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

CENT = Decimal("0.01")


class EntityKind(StrEnum):
    CONTRACT = "contract"
    RECEIVABLE = "receivable"
    EXPENSE = "expense"
    SKIP = "skip"


class ContractStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class ReceivableStatus(StrEnum):
    PENDING = "pending"
    RECEIVED = "received"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class ExpenseStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = " ".join(str(value).split())
    return cleaned or None


class _RecordBase(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    description: Optional[str] = None

    @field_validator("description", mode="before")
    @classmethod
    def _normalize_description(cls, v):
        return _clean_text(v)

    @staticmethod
    def _money(v: Optional[Decimal]) -> Optional[Decimal]:
        if v is None:
            return None
        if not v.is_finite():
            raise ValueError("Money value must be finite")
        return quantize_money(v)


class ContractRecord(_RecordBase):
    kind: Literal["contract"] = "contract"
    client_name: Optional[str] = None
    project_name: Optional[str] = None
    total_value: Optional[Decimal] = Field(default=None, ge=0)
    signed_date: Optional[date] = None
    status: ContractStatus = ContractStatus.ACTIVE
    category: Optional[str] = None

    @field_validator("client_name", "project_name", "category", mode="before")
    @classmethod
    def _normalize_names(cls, v):
        return _clean_text(v)

    @field_validator("total_value")
    @classmethod
    def _round_total(cls, v):
        return cls._money(v)

    @model_validator(mode="after")
    def _needs_a_name(self):
        if not self.client_name and not self.project_name:
            raise ValueError("Contract needs a client name or a project name")
        return self


class ReceivableRecord(_RecordBase):
    kind: Literal["receivable"] = "receivable"
    contract_ref: Optional[str] = None
    client_name: Optional[str] = None
    expected_date: date
    amount: Decimal = Field(gt=0)
    status: ReceivableStatus = ReceivableStatus.PENDING
    received_date: Optional[date] = None
    received_amount: Optional[Decimal] = Field(default=None, ge=0)
    category: Optional[str] = None

    @field_validator("contract_ref", "client_name", "category", mode="before")
    @classmethod
    def _normalize_names(cls, v):
        return _clean_text(v)

    @field_validator("amount", "received_amount")
    @classmethod
    def _round_money(cls, v):
        return cls._money(v)


class ExpenseRecord(_RecordBase):
    kind: Literal["expense"] = "expense"
    description: str
    contract_ref: Optional[str] = None
    vendor: Optional[str] = None
    amount: Decimal = Field(gt=0)
    due_date: date
    category: str = "Outros"
    status: ExpenseStatus = ExpenseStatus.PENDING
    paid_date: Optional[date] = None
    paid_amount: Optional[Decimal] = Field(default=None, ge=0)

    @field_validator("contract_ref", "vendor", "category", mode="before")
    @classmethod
    def _normalize_names(cls, v):
        return _clean_text(v)

    @field_validator("amount", "paid_amount")
    @classmethod
    def _round_money(cls, v):
        return cls._money(v)


CanonicalRecord = Annotated[
    Union[ContractRecord, ReceivableRecord, ExpenseRecord],
    Field(discriminator="kind"),
]

canonical_record_adapter: TypeAdapter[CanonicalRecord] = TypeAdapter(CanonicalRecord)

RECORD_TYPES: dict[EntityKind, type[BaseModel]] = {
    EntityKind.CONTRACT: ContractRecord,
    EntityKind.RECEIVABLE: ReceivableRecord,
    EntityKind.EXPENSE: ExpenseRecord,
}
