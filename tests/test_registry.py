"""Tests for the dataset registry and its stores."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from catalog_sync.models import (
    Column,
    DatasetKind,
    DesiredDataset,
    LocalDatabase,
    Metric,
    QueryDefinition,
    SchemaElement,
)
from catalog_sync.registry import DatasetRegistry, DuckDBRegistryStore, InMemoryRegistryStore


WAREHOUSE = LocalDatabase(
    id=1,
    name="warehouse",
    engine="postgresql",
    url="jdbc:postgresql://db.internal:5432/sales",
    username="bi",
    password="secret",
)


@pytest.fixture(params=["memory", "duckdb"])
def registry_store(request, tmp_path: Path):
    """Both store implementations, seeded with one local database."""
    if request.param == "memory":
        return InMemoryRegistryStore([WAREHOUSE])
    store = DuckDBRegistryStore(tmp_path / "registry.duckdb")
    store.initialize()
    store.save_database(WAREHOUSE)
    return store


@pytest.fixture
def registry(registry_store) -> DatasetRegistry:
    return DatasetRegistry(registry_store, registry_store)


def query(sql: str = "SELECT region, SUM(amount) FROM orders GROUP BY region", **kwargs) -> QueryDefinition:
    values = {"sql": sql, "local_database_id": 1, "dimensions": [SchemaElement(name="region")]}
    values.update(kwargs)
    return QueryDefinition(**values)


class TestDatasetRegistry:
    """Tests for DatasetRegistry.register."""

    def test_blank_sql(self, registry) -> None:
        assert registry.register(QueryDefinition(sql="  ")) is None
        assert registry.register(None) is None

    def test_new_record_is_pending(self, registry, registry_store) -> None:
        record = registry.register(query(created_by="alice"))
        assert record.id is not None
        assert record.kind is DatasetKind.VIRTUAL
        assert record.schema_name == "public"
        assert record.created_by == "alice"
        assert record.synced_at is None
        assert record.needs_sync()
        assert [pending.id for pending in registry_store.list_pending()] == [record.id]

    def test_same_sql_is_idempotent(self, registry, registry_store) -> None:
        """Equivalent SQL maps onto the existing record unchanged."""
        first = registry.register(query())
        second = registry.register(query(sql="select region, sum(amount)\nfrom orders group by region;"))
        assert second.id == first.id
        assert len(registry_store.list_for_sync()) == 1

    def test_unchanged_registration_keeps_sync_state(self, registry, registry_store) -> None:
        record = registry.register(query())
        synced_at = datetime.now(timezone.utc) + timedelta(seconds=1)
        registry_store.update_sync_info(record.id, 42, synced_at)

        again = registry.register(query())
        assert again.remote_id == 42
        assert not again.needs_sync()

    def test_changed_registration_marks_stale(self, registry, registry_store) -> None:
        """A changed definition clears the sync timestamp and keeps the binding."""
        record = registry.register(query())
        registry_store.update_sync_info(record.id, 42, datetime.now(timezone.utc) + timedelta(seconds=1))

        changed = registry.register(query(metrics=[SchemaElement(name="amount")]))
        assert changed.id == record.id
        assert changed.remote_id == 42
        assert changed.synced_at is None
        assert changed.needs_sync()
        assert changed.updated_at >= record.updated_at
        assert [column.name for column in changed.columns] == ["region", "amount"]

    def test_physical_table_reused(self, registry, registry_store) -> None:
        """A second plain read of a registered table returns the existing record."""
        first = registry.register(query(sql="SELECT * FROM orders", dimensions=[]))
        assert first.kind is DatasetKind.PHYSICAL
        second = registry.register(query(sql="SELECT id, amount FROM orders", dimensions=[]))
        assert second.id == first.id
        assert len(registry_store.list_for_sync()) == 1


class TestRegistryStore:
    """Contract tests shared by the in-memory and DuckDB stores."""

    def record(self, **kwargs) -> DesiredDataset:
        values = {
            "sql_hash": "a" * 32,
            "sql_text": "SELECT * FROM orders",
            "normalized_sql": "SELECT * FROM orders",
            "name": "orders",
            "tags": ["catalog-sync", "physical"],
            "kind": DatasetKind.PHYSICAL,
            "local_database_id": 1,
            "schema_name": "public",
            "table_name": "orders",
            "columns": [Column(name="id", type="NUMBER", groupable=True)],
            "metrics": [Metric(name="amount", expression="SUM(amount)")],
            "created_at": datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc),
            "updated_at": datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc),
        }
        values.update(kwargs)
        return DesiredDataset(**values)

    def test_save_and_get(self, registry_store) -> None:
        saved = registry_store.save(self.record())
        loaded = registry_store.get_by_id(saved.id)
        assert loaded == saved
        assert loaded.updated_at.tzinfo is not None
        assert registry_store.get_by_sql_hash("a" * 32).id == saved.id
        assert registry_store.get_by_sql_hash("b" * 32) is None
        assert registry_store.get_by_sql_hash("") is None

    def test_ids_are_distinct(self, registry_store) -> None:
        first = registry_store.save(self.record())
        second = registry_store.save(self.record(sql_hash="b" * 32))
        assert first.id != second.id
        assert [record.id for record in registry_store.list_for_sync([second.id])] == [second.id]
        assert len(registry_store.list_for_sync()) == 2

    def test_get_by_physical_table(self, registry_store) -> None:
        saved = registry_store.save(self.record())
        assert registry_store.get_by_physical_table(1, "public", "orders").id == saved.id
        assert registry_store.get_by_physical_table(1, None, "orders").id == saved.id
        assert registry_store.get_by_physical_table(1, "other", "orders") is None
        assert registry_store.get_by_physical_table(2, "public", "orders") is None

    def test_pending_follows_staleness_clock(self, registry_store) -> None:
        """Unbound, never-synced and changed-since-sync records are pending."""
        saved = registry_store.save(self.record())
        assert [record.id for record in registry_store.list_pending()] == [saved.id]

        registry_store.update_sync_info(saved.id, 7, datetime(2026, 1, 1, 13, 0, tzinfo=timezone.utc))
        assert registry_store.list_pending() == []

        loaded = registry_store.get_by_id(saved.id)
        assert loaded.remote_id == 7
        loaded.updated_at = datetime(2026, 1, 1, 14, 0, tzinfo=timezone.utc)
        registry_store.update(loaded)
        assert [record.id for record in registry_store.list_pending()] == [saved.id]

        registry_store.update_sync_info(saved.id, 7, None)
        assert registry_store.get_by_id(saved.id).synced_at is None

    def test_delete(self, registry_store) -> None:
        saved = registry_store.save(self.record())
        assert registry_store.delete(saved.id)
        assert registry_store.get_by_id(saved.id) is None
        assert not registry_store.delete(saved.id)

    def test_databases(self, registry_store) -> None:
        assert [database.id for database in registry_store.list_databases()] == [1]
        assert registry_store.get_database(1).engine == "postgresql"
        assert registry_store.get_database(99) is None

        registry_store.save_database(WAREHOUSE.model_copy(update={"name": "renamed"}))
        assert registry_store.get_database(1).name == "renamed"
        assert len(registry_store.list_databases()) == 1


def test_duckdb_store_survives_reopen(tmp_path: Path) -> None:
    """Records persist in the DuckDB file across store instances."""
    path = tmp_path / "nested" / "registry.duckdb"
    store = DuckDBRegistryStore(path)
    store.initialize()
    saved = DatasetRegistry(store, store).register(query())

    reopened = DuckDBRegistryStore(path)
    reopened.initialize()
    loaded = reopened.get_by_id(saved.id)
    assert loaded.sql_hash == saved.sql_hash
    assert loaded.columns == saved.columns
    assert loaded.tags == saved.tags
