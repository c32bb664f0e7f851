"""Tests for the item_runs Alembic migration: structure and agreement with db.py."""

from __future__ import annotations

import importlib
import inspect
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    import types

from shopscout.models.db import Base


@pytest.fixture
def migration() -> types.ModuleType:
    return importlib.import_module("migrations.versions.001_item_runs")


class TestMigrationStructure:
    def test_revision_id(self, migration: types.ModuleType) -> None:
        assert migration.revision == "001"

    def test_down_revision_is_none(self, migration: types.ModuleType) -> None:
        assert migration.down_revision is None

    def test_upgrade_and_downgrade_callable(self, migration: types.ModuleType) -> None:
        assert callable(migration.upgrade)
        assert callable(migration.downgrade)


class TestMigrationCompleteness:
    def test_all_tables_represented(self, migration: types.ModuleType) -> None:
        source = inspect.getsource(migration.upgrade)
        for table_name in Base.metadata.tables:
            assert f'"{table_name}"' in source, (
                f"Table '{table_name}' exists in db.py but is missing from migration"
            )

    def test_all_columns_represented(self, migration: types.ModuleType) -> None:
        source = inspect.getsource(migration.upgrade)
        for column in Base.metadata.tables["item_runs"].columns:
            assert f'"{column.name}"' in source

    def test_constraint_and_index(self, migration: types.ModuleType) -> None:
        source = inspect.getsource(migration.upgrade)
        assert "uq_item_runs_item_version" in source
        assert "idx_item_runs_item" in source

    def test_downgrade_drops_index_then_table(self, migration: types.ModuleType) -> None:
        source = inspect.getsource(migration.downgrade)
        assert source.index("drop_index") < source.index("drop_table")
