import uuid

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            value = uuid.UUID(value)
        return value if dialect.name == "postgresql" else str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
MONEY = Numeric(14, 2)


class Contract(Base):
    __tablename__ = "contracts"
    __table_args__ = (
        UniqueConstraint("team_id", "project_key", name="uq_contracts_team_project"),
    )

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    team_id = Column(String(64), nullable=False, index=True)
    client_name = Column(String(255), nullable=False)
    project_name = Column(String(255), nullable=False)
    project_key = Column(String(255), nullable=False)
    total_value = Column(MONEY)
    signed_date = Column(Date)
    status = Column(String(32), nullable=False, default="active")
    description = Column(Text)
    category = Column(String(128))
    source_batch_id = Column(UUID_TYPE)
    created_by = Column(String(64))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Receivable(Base):
    __tablename__ = "receivables"
    __table_args__ = (
        UniqueConstraint("team_id", "fingerprint", name="uq_receivables_team_fingerprint"),
        Index("ix_receivables_team_expected", "team_id", "expected_date"),
    )

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    team_id = Column(String(64), nullable=False)
    contract_id = Column(UUID_TYPE, ForeignKey("contracts.id"), nullable=True)
    contract_ref = Column(String(255))
    client_name = Column(String(255))
    expected_date = Column(Date, nullable=False)
    amount = Column(MONEY, nullable=False)
    status = Column(String(32), nullable=False, default="pending")
    received_date = Column(Date)
    received_amount = Column(MONEY)
    description = Column(Text)
    category = Column(String(128))
    fingerprint = Column(String(64), nullable=False)
    source_batch_id = Column(UUID_TYPE)
    created_by = Column(String(64))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Expense(Base):
    __tablename__ = "expenses"
    __table_args__ = (
        UniqueConstraint("team_id", "fingerprint", name="uq_expenses_team_fingerprint"),
        Index("ix_expenses_team_due", "team_id", "due_date"),
    )

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    team_id = Column(String(64), nullable=False)
    contract_id = Column(UUID_TYPE, ForeignKey("contracts.id"), nullable=True)
    contract_ref = Column(String(255))
    description = Column(Text, nullable=False)
    vendor = Column(String(255))
    amount = Column(MONEY, nullable=False)
    due_date = Column(Date, nullable=False)
    category = Column(String(128), nullable=False, default="Outros")
    status = Column(String(32), nullable=False, default="pending")
    paid_date = Column(Date)
    paid_amount = Column(MONEY)
    fingerprint = Column(String(64), nullable=False)
    source_batch_id = Column(UUID_TYPE)
    created_by = Column(String(64))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("idx_audit_logs_entity", "entity_type", "entity_id"),)

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(64))
    team_id = Column(String(64))
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
