"""Schema revisions must build the same tables the models declare."""

import importlib.util
from pathlib import Path

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

from cashflow_ingest.models.records import Base

VERSIONS_DIR = Path(__file__).resolve().parents[1] / "cashflow_ingest" / "migrations" / "versions"


def _load_revision(name):
    spec = importlib.util.spec_from_file_location(name, VERSIONS_DIR / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _apply(conn, step):
    ctx = MigrationContext.configure(conn)
    with Operations.context(ctx):
        step()


def test_initial_revision_matches_models():
    revision = _load_revision("20261019_000001_init_ingest_schema")
    assert revision.revision == "20261019_000001"
    assert revision.down_revision is None

    engine = sa.create_engine("sqlite://")
    with engine.begin() as conn:
        _apply(conn, revision.upgrade)
        inspector = sa.inspect(conn)
        assert set(inspector.get_table_names()) == set(Base.metadata.tables)
        for name, table in Base.metadata.tables.items():
            columns = {c["name"] for c in inspector.get_columns(name)}
            assert columns == {c.name for c in table.columns}, name

        indexes = {i["name"] for i in inspector.get_indexes("receivables")}
        assert "ix_receivables_team_expected" in indexes
        uniques = {tuple(u["column_names"]) for u in inspector.get_unique_constraints("contracts")}
        assert ("team_id", "project_key") in uniques

        _apply(conn, revision.downgrade)
        assert sa.inspect(conn).get_table_names() == []
