"""init ingest schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:30:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def _uuid():
    return sa.CHAR(36).with_variant(postgresql.UUID(as_uuid=True), "postgresql")


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _money():
    return sa.Numeric(14, 2)


def _provenance():
    return [
        sa.Column("source_batch_id", _uuid()),
        sa.Column("created_by", sa.String(length=64)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "contracts",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("team_id", sa.String(length=64), nullable=False),
        sa.Column("client_name", sa.String(length=255), nullable=False),
        sa.Column("project_name", sa.String(length=255), nullable=False),
        sa.Column("project_key", sa.String(length=255), nullable=False),
        sa.Column("total_value", _money()),
        sa.Column("signed_date", sa.Date()),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("category", sa.String(length=128)),
        *_provenance(),
        sa.UniqueConstraint("team_id", "project_key", name="uq_contracts_team_project"),
    )
    op.create_index("ix_contracts_team_id", "contracts", ["team_id"])

    op.create_table(
        "receivables",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("team_id", sa.String(length=64), nullable=False),
        sa.Column("contract_id", _uuid(), sa.ForeignKey("contracts.id")),
        sa.Column("contract_ref", sa.String(length=255)),
        sa.Column("client_name", sa.String(length=255)),
        sa.Column("expected_date", sa.Date(), nullable=False),
        sa.Column("amount", _money(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("received_date", sa.Date()),
        sa.Column("received_amount", _money()),
        sa.Column("description", sa.Text()),
        sa.Column("category", sa.String(length=128)),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        *_provenance(),
        sa.UniqueConstraint("team_id", "fingerprint", name="uq_receivables_team_fingerprint"),
    )
    op.create_index("ix_receivables_team_expected", "receivables", ["team_id", "expected_date"])

    op.create_table(
        "expenses",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("team_id", sa.String(length=64), nullable=False),
        sa.Column("contract_id", _uuid(), sa.ForeignKey("contracts.id")),
        sa.Column("contract_ref", sa.String(length=255)),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("vendor", sa.String(length=255)),
        sa.Column("amount", _money(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("category", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("paid_date", sa.Date()),
        sa.Column("paid_amount", _money()),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        *_provenance(),
        sa.UniqueConstraint("team_id", "fingerprint", name="uq_expenses_team_fingerprint"),
    )
    op.create_index("ix_expenses_team_due", "expenses", ["team_id", "due_date"])

    op.create_table(
        "audit_logs",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", _uuid(), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("old_value", _json()),
        sa.Column("new_value", _json()),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=64)),
        sa.Column("team_id", sa.String(length=64)),
        sa.Column("metadata", _json()),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("idx_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_expenses_team_due", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_receivables_team_expected", table_name="receivables")
    op.drop_table("receivables")
    op.drop_index("ix_contracts_team_id", table_name="contracts")
    op.drop_table("contracts")
