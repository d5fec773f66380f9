"""
Tests for the Alembic migrations.

Runs the migration chain against a scratch SQLite database and checks that
the migrated schema matches the models.
"""

import os
import tempfile

import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.pool import NullPool

from alembic import command
from alembic.script import ScriptDirectory

from core.database import Base

BILLING_TABLES = {"visits", "invoices", "invoice_items", "payment_transactions"}


@pytest.fixture
def scratch_engine():
    handle = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    handle.close()
    engine = create_engine(f"sqlite:///{handle.name}", poolclass=NullPool)
    yield engine
    engine.dispose()
    os.unlink(handle.name)


def test_single_head(alembic_config):
    script = ScriptDirectory.from_config(alembic_config())

    assert len(script.get_heads()) == 1


def test_upgrade_matches_models(alembic_config, scratch_engine):
    with scratch_engine.begin() as connection:
        command.upgrade(alembic_config(connection), "head")

    inspector = inspect(scratch_engine)
    assert BILLING_TABLES <= set(inspector.get_table_names())
    for table in Base.metadata.sorted_tables:
        migrated = {c["name"] for c in inspector.get_columns(table.name)}
        assert migrated == set(table.columns.keys()), table.name


def test_invoice_version_defaults_to_one(alembic_config, scratch_engine):
    with scratch_engine.begin() as connection:
        command.upgrade(alembic_config(connection), "head")

    columns = {c["name"]: c for c in inspect(scratch_engine).get_columns("invoices")}
    assert columns["version"]["nullable"] is False
    assert "1" in str(columns["version"]["default"])


def test_downgrade_to_base(alembic_config, scratch_engine):
    with scratch_engine.begin() as connection:
        command.upgrade(alembic_config(connection), "head")
    with scratch_engine.begin() as connection:
        command.downgrade(alembic_config(connection), "base")

    assert not BILLING_TABLES & set(inspect(scratch_engine).get_table_names())
