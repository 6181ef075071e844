"""Shared fixtures for catalog-sync tests."""

from pathlib import Path
from typing import Callable

import pytest
import structlog

from catalog_sync.config import Settings, SyncSettings
from catalog_sync.errors import CatalogAPIError, DuplicateResourceError
from catalog_sync.models import LocalDatabase, RemoteDatabase, RemoteDataset
from catalog_sync.registry import InMemoryRegistryStore
from catalog_sync.sync import SyncOrchestrator


BASE_URL = "http://bi"


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the YAML config file at an empty temp location."""
    config_file = tmp_path / ".catalog-sync" / "config.yaml"
    monkeypatch.setattr("catalog_sync.config.CONFIG_FILE", config_file)
    for name in ("BASE_URL", "API_KEY", "USERNAME", "PASSWORD", "AUTH_ENABLED", "ENABLED"):
        monkeypatch.delenv(f"CATALOG_SYNC_{name}", raising=False)
    return config_file


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop logging configuration a CLI invocation may have installed."""
    yield
    structlog.reset_defaults()


def make_settings(**overrides) -> Settings:
    """Settings pointing at the test catalog, with background retries off."""
    sync = overrides.pop("sync", None) or SyncSettings(max_retries=0, retry_interval_ms=0)
    values = {"base_url": BASE_URL, "sync": sync}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def warehouse() -> LocalDatabase:
    return LocalDatabase(
        id=1,
        name="warehouse",
        engine="postgresql",
        url="jdbc:postgresql://db.internal:5432/sales",
        username="bi",
        password="secret",
    )


@pytest.fixture
def store(warehouse: LocalDatabase) -> InMemoryRegistryStore:
    return InMemoryRegistryStore([warehouse])


class FakeCatalog:
    """
    In-memory stand-in for CatalogClient.

    Stores remote databases and datasets, records every call and can be
    told to fail specific operations.
    """

    def __init__(self):
        self.databases: dict[int, RemoteDatabase] = {}
        self.datasets: dict[int, RemoteDataset] = {}
        self.calls: list[tuple] = []
        self.failures: dict[str, Exception] = {}
        self.duplicates: set[str] = set()
        self.hooks: dict[str, Callable[[], None]] = {}
        self._next_id = 100

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def calls_to(self, operation: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == operation]

    def _call(self, operation: str, *args) -> None:
        self.calls.append((operation, *args))
        hook = self.hooks.get(operation)
        if hook is not None:
            hook()
        if operation in self.failures:
            raise self.failures[operation]

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def close(self) -> None:
        pass

    # Databases

    def list_databases(self) -> list[RemoteDatabase]:
        self._call("list_databases")
        return [RemoteDatabase(remote_id=db.remote_id, name=db.name) for db in self.databases.values()]

    def fetch_database(self, remote_id: int | None) -> RemoteDatabase | None:
        self._call("fetch_database", remote_id)
        database = self.databases.get(remote_id)
        return database.model_copy() if database else None

    def create_database(self, database: RemoteDatabase) -> int | None:
        self._call("create_database", database.model_copy())
        if "create_database" in self.duplicates:
            raise DuplicateResourceError(422, "Database already exists", '{"message": "already exists"}')
        stored = database.model_copy()
        stored.remote_id = self._new_id()
        self.databases[stored.remote_id] = stored
        return stored.remote_id

    def update_database(self, remote_id: int, database: RemoteDatabase) -> None:
        self._call("update_database", remote_id, database.model_copy())
        stored = database.model_copy()
        stored.remote_id = remote_id
        self.databases[remote_id] = stored

    # Datasets

    def list_datasets(self) -> list[RemoteDataset]:
        self._call("list_datasets")
        return [
            RemoteDataset(
                remote_id=dataset.remote_id,
                database_remote_id=dataset.database_remote_id,
                schema_name=dataset.schema_name,
                table_name=dataset.table_name,
                sql=dataset.sql,
            )
            for dataset in self.datasets.values()
        ]

    def fetch_dataset(self, remote_id: int | None) -> RemoteDataset | None:
        self._call("fetch_dataset", remote_id)
        dataset = self.datasets.get(remote_id)
        return dataset.model_copy(deep=True) if dataset else None

    def create_dataset(self, dataset: RemoteDataset) -> int | None:
        self._call("create_dataset", dataset.model_copy(deep=True))
        if "create_dataset" in self.duplicates:
            raise DuplicateResourceError(422, "Dataset already exists", '{"message": "already exists"}')
        remote_id = self._new_id()
        self.datasets[remote_id] = RemoteDataset(
            remote_id=remote_id,
            database_remote_id=dataset.database_remote_id,
            schema_name=dataset.schema_name,
            table_name=dataset.table_name,
            sql=dataset.sql,
        )
        return remote_id

    def update_dataset(self, remote_id: int, dataset: RemoteDataset) -> None:
        self._call("update_dataset", remote_id, dataset.model_copy(deep=True))
        stored = dataset.model_copy(deep=True)
        stored.remote_id = remote_id
        for item in [*stored.columns, *stored.metrics]:
            if item.remote_id is None:
                item.remote_id = self._new_id()
        self.datasets[remote_id] = stored

    def delete_dataset(self, remote_id: int | None) -> None:
        self._call("delete_dataset", remote_id)
        self.datasets.pop(remote_id, None)

    def delete_column(self, dataset_id: int | None, column_id: int | None) -> None:
        self._call("delete_column", dataset_id, column_id)
        dataset = self.datasets[dataset_id]
        dataset.columns = [column for column in dataset.columns if column.remote_id != column_id]

    def delete_metric(self, dataset_id: int | None, metric_id: int | None) -> None:
        self._call("delete_metric", dataset_id, metric_id)
        dataset = self.datasets[dataset_id]
        dataset.metrics = [metric for metric in dataset.metrics if metric.remote_id != metric_id]


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def orchestrator(settings, catalog, store):
    orchestrator = SyncOrchestrator(
        settings=settings,
        client=catalog,
        registry_store=store,
        database_catalog=store,
    )
    yield orchestrator
    orchestrator.close()


def api_error(status_code: int = 500, message: str = "Internal error") -> CatalogAPIError:
    return CatalogAPIError(status_code, message, f'{{"message": "{message}"}}')
