"""Registry store contracts and the in-memory implementation."""

import threading
from datetime import datetime
from typing import Iterable, Protocol

import structlog

from ..models import DatasetKind, DesiredDataset, LocalDatabase

logger = structlog.get_logger(__name__)


class RegistryStore(Protocol):
    """Persistence of desired dataset records."""

    def get_by_id(self, record_id: int) -> DesiredDataset | None: ...

    def get_by_sql_hash(self, sql_hash: str) -> DesiredDataset | None: ...

    def get_by_physical_table(
        self, database_id: int, schema_name: str | None, table_name: str
    ) -> DesiredDataset | None: ...

    def list_for_sync(self, ids: Iterable[int] | None = None) -> list[DesiredDataset]: ...

    def list_pending(self) -> list[DesiredDataset]: ...

    def save(self, record: DesiredDataset) -> DesiredDataset: ...

    def update(self, record: DesiredDataset) -> DesiredDataset: ...

    def update_sync_info(self, record_id: int, remote_id: int | None, synced_at: datetime | None) -> None: ...

    def delete(self, record_id: int) -> bool: ...


class DatabaseCatalog(Protocol):
    """Source of locally configured database connections."""

    def list_databases(self) -> list[LocalDatabase]: ...

    def get_database(self, database_id: int) -> LocalDatabase | None: ...


class InMemoryRegistryStore:
    """
    Registry store and database catalog kept in process memory.

    Records are copied on the way in and out, so callers never share state
    with the store.
    """

    def __init__(self, databases: Iterable[LocalDatabase] = ()):
        self._records: dict[int, DesiredDataset] = {}
        self._databases: dict[int, LocalDatabase] = {db.id: db.model_copy() for db in databases}
        self._next_id = 1
        self._lock = threading.Lock()

    # ========================================
    # Dataset records
    # ========================================

    def get_by_id(self, record_id: int) -> DesiredDataset | None:
        with self._lock:
            record = self._records.get(record_id)
            return record.model_copy(deep=True) if record else None

    def get_by_sql_hash(self, sql_hash: str) -> DesiredDataset | None:
        if not sql_hash:
            return None
        with self._lock:
            for record in self._records.values():
                if record.sql_hash == sql_hash:
                    return record.model_copy(deep=True)
        return None

    def get_by_physical_table(
        self, database_id: int, schema_name: str | None, table_name: str
    ) -> DesiredDataset | None:
        if database_id is None or not table_name:
            return None
        with self._lock:
            for record in self._records.values():
                if record.kind is not DatasetKind.PHYSICAL:
                    continue
                if record.local_database_id != database_id or record.table_name != table_name:
                    continue
                if schema_name and record.schema_name != schema_name:
                    continue
                return record.model_copy(deep=True)
        return None

    def list_for_sync(self, ids: Iterable[int] | None = None) -> list[DesiredDataset]:
        wanted = set(ids) if ids else None
        with self._lock:
            return [
                record.model_copy(deep=True)
                for record_id, record in sorted(self._records.items())
                if wanted is None or record_id in wanted
            ]

    def list_pending(self) -> list[DesiredDataset]:
        return [record for record in self.list_for_sync() if record.needs_sync()]

    def save(self, record: DesiredDataset) -> DesiredDataset:
        with self._lock:
            stored = record.model_copy(deep=True)
            stored.id = self._next_id
            self._next_id += 1
            self._records[stored.id] = stored
            logger.debug("registry_record_saved", record_id=stored.id, sql_hash=stored.sql_hash)
            return stored.model_copy(deep=True)

    def update(self, record: DesiredDataset) -> DesiredDataset:
        with self._lock:
            if record.id not in self._records:
                raise KeyError(f"Registry record {record.id} not found")
            self._records[record.id] = record.model_copy(deep=True)
            return record.model_copy(deep=True)

    def update_sync_info(self, record_id: int, remote_id: int | None, synced_at: datetime | None) -> None:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return
            record.remote_id = remote_id
            record.synced_at = synced_at

    def delete(self, record_id: int) -> bool:
        with self._lock:
            return self._records.pop(record_id, None) is not None

    # ========================================
    # Local databases
    # ========================================

    def list_databases(self) -> list[LocalDatabase]:
        with self._lock:
            return [db.model_copy() for _, db in sorted(self._databases.items())]

    def get_database(self, database_id: int) -> LocalDatabase | None:
        with self._lock:
            database = self._databases.get(database_id)
            return database.model_copy() if database else None

    def save_database(self, database: LocalDatabase) -> LocalDatabase:
        with self._lock:
            self._databases[database.id] = database.model_copy()
            return database.model_copy()
