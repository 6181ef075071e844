"""DuckDB-backed registry store.

A single metadata file holds the desired dataset records and the local
database connections the sync engine reconciles. Columns, metrics and tags
are stored as JSON. Timestamps are stored as UTC.
"""

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Iterable

import duckdb
import structlog

from ..models import Column, DatasetKind, DesiredDataset, LocalDatabase, Metric

logger = structlog.get_logger(__name__)


REGISTRY_SCHEMA = """
-- Desired dataset records
CREATE SEQUENCE IF NOT EXISTS dataset_registry_seq;

CREATE TABLE IF NOT EXISTS dataset_registry (
    id BIGINT PRIMARY KEY DEFAULT nextval('dataset_registry_seq'),
    sql_hash VARCHAR(32) NOT NULL,
    sql_text VARCHAR,
    normalized_sql VARCHAR,
    name VARCHAR(250),
    description VARCHAR,
    tags JSON,
    kind VARCHAR(20) NOT NULL DEFAULT 'VIRTUAL',
    source_dataset_id BIGINT,
    local_database_id BIGINT,
    schema_name VARCHAR,
    table_name VARCHAR(250),
    time_column VARCHAR,
    columns JSON,
    metrics JSON,
    remote_id BIGINT,
    created_at TIMESTAMP,
    created_by VARCHAR,
    updated_at TIMESTAMP,
    updated_by VARCHAR,
    synced_at TIMESTAMP
);

-- Local database connections
CREATE TABLE IF NOT EXISTS local_databases (
    id BIGINT PRIMARY KEY,
    name VARCHAR,
    engine VARCHAR(50),
    url VARCHAR,
    database_name VARCHAR,
    schema_name VARCHAR,
    username VARCHAR,
    password VARCHAR
);
"""

DATASET_COLUMNS = (
    "id, sql_hash, sql_text, normalized_sql, name, description, tags, kind, "
    "source_dataset_id, local_database_id, schema_name, table_name, time_column, "
    "columns, metrics, remote_id, created_at, created_by, updated_at, updated_by, synced_at"
)

DATABASE_COLUMNS = "id, name, engine, url, database_name, schema_name, username, password"


class DuckDBRegistryStore:
    """
    Registry store and database catalog in a DuckDB file.

    Every operation opens its own connection; writes are serialized by a
    process-wide lock because a DuckDB file accepts a single writer.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._write_lock = threading.Lock()

    def initialize(self) -> None:
        """Create the database file and schema."""
        with self._write_lock:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = duckdb.connect(str(self.db_path))
            try:
                conn.execute(REGISTRY_SCHEMA)
                conn.commit()
                logger.info("registry_schema_created", path=str(self.db_path))
            finally:
                conn.close()

    @contextmanager
    def connection(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        Get a connection to the registry database.

        Usage:
            with store.connection() as conn:
                conn.execute("SELECT * FROM dataset_registry")
        """
        conn = duckdb.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def execute(self, query: str, params: list | None = None) -> list[tuple]:
        """Execute a read query and return results."""
        with self.connection() as conn:
            if params:
                return conn.execute(query, params).fetchall()
            return conn.execute(query).fetchall()

    def execute_one(self, query: str, params: list | None = None) -> tuple | None:
        """Execute a query and return single result."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_write(self, query: str, params: list | None = None) -> list[tuple]:
        """Execute a write query (INSERT, UPDATE, DELETE)."""
        with self._write_lock, self.connection() as conn:
            result = conn.execute(query, params) if params else conn.execute(query)
            rows = result.fetchall() if result.description else []
            conn.commit()
            return rows

    # ========================================
    # Dataset records
    # ========================================

    def get_by_id(self, record_id: int) -> DesiredDataset | None:
        row = self.execute_one(f"SELECT {DATASET_COLUMNS} FROM dataset_registry WHERE id = ?", [record_id])
        return _row_to_dataset(row)

    def get_by_sql_hash(self, sql_hash: str) -> DesiredDataset | None:
        if not sql_hash:
            return None
        row = self.execute_one(
            f"SELECT {DATASET_COLUMNS} FROM dataset_registry WHERE sql_hash = ? ORDER BY id LIMIT 1",
            [sql_hash],
        )
        return _row_to_dataset(row)

    def get_by_physical_table(
        self, database_id: int, schema_name: str | None, table_name: str
    ) -> DesiredDataset | None:
        if database_id is None or not table_name:
            return None
        query = f"""
            SELECT {DATASET_COLUMNS} FROM dataset_registry
            WHERE local_database_id = ? AND kind = ? AND table_name = ?
        """
        params: list[Any] = [database_id, DatasetKind.PHYSICAL.value, table_name]
        if schema_name:
            query += " AND schema_name = ?"
            params.append(schema_name)
        query += " ORDER BY id LIMIT 1"
        return _row_to_dataset(self.execute_one(query, params))

    def list_for_sync(self, ids: Iterable[int] | None = None) -> list[DesiredDataset]:
        wanted = sorted(set(ids)) if ids else []
        if wanted:
            placeholders = ", ".join("?" for _ in wanted)
            rows = self.execute(
                f"SELECT {DATASET_COLUMNS} FROM dataset_registry WHERE id IN ({placeholders}) ORDER BY id",
                wanted,
            )
        else:
            rows = self.execute(f"SELECT {DATASET_COLUMNS} FROM dataset_registry ORDER BY id")
        return [_row_to_dataset(row) for row in rows]

    def list_pending(self) -> list[DesiredDataset]:
        rows = self.execute(
            f"""
            SELECT {DATASET_COLUMNS} FROM dataset_registry
            WHERE remote_id IS NULL
               OR synced_at IS NULL
               OR (updated_at IS NOT NULL AND updated_at > synced_at)
            ORDER BY id
            """
        )
        return [_row_to_dataset(row) for row in rows]

    def save(self, record: DesiredDataset) -> DesiredDataset:
        """Insert a new record and return it with its assigned id."""
        rows = self.execute_write(
            """
            INSERT INTO dataset_registry (
                sql_hash, sql_text, normalized_sql, name, description, tags, kind,
                source_dataset_id, local_database_id, schema_name, table_name, time_column,
                columns, metrics, remote_id, created_at, created_by, updated_at, updated_by, synced_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            _dataset_params(record),
        )
        saved = record.model_copy(deep=True)
        saved.id = rows[0][0]
        logger.info("registry_record_saved", record_id=saved.id, sql_hash=saved.sql_hash)
        return saved

    def update(self, record: DesiredDataset) -> DesiredDataset:
        if record.id is None:
            raise KeyError("Registry record has no id")
        self.execute_write(
            """
            UPDATE dataset_registry SET
                sql_hash = ?, sql_text = ?, normalized_sql = ?, name = ?, description = ?,
                tags = ?, kind = ?, source_dataset_id = ?, local_database_id = ?,
                schema_name = ?, table_name = ?, time_column = ?, columns = ?, metrics = ?,
                remote_id = ?, created_at = ?, created_by = ?, updated_at = ?, updated_by = ?,
                synced_at = ?
            WHERE id = ?
            """,
            _dataset_params(record) + [record.id],
        )
        logger.debug("registry_record_updated", record_id=record.id)
        return record.model_copy(deep=True)

    def update_sync_info(self, record_id: int, remote_id: int | None, synced_at: datetime | None) -> None:
        if record_id is None:
            return
        self.execute_write(
            "UPDATE dataset_registry SET remote_id = ?, synced_at = ? WHERE id = ?",
            [remote_id, _to_db_time(synced_at), record_id],
        )

    def delete(self, record_id: int) -> bool:
        if self.get_by_id(record_id) is None:
            return False
        self.execute_write("DELETE FROM dataset_registry WHERE id = ?", [record_id])
        logger.info("registry_record_deleted", record_id=record_id)
        return True

    # ========================================
    # Local databases
    # ========================================

    def list_databases(self) -> list[LocalDatabase]:
        rows = self.execute(f"SELECT {DATABASE_COLUMNS} FROM local_databases ORDER BY id")
        return [_row_to_database(row) for row in rows]

    def get_database(self, database_id: int) -> LocalDatabase | None:
        row = self.execute_one(f"SELECT {DATABASE_COLUMNS} FROM local_databases WHERE id = ?", [database_id])
        return _row_to_database(row) if row else None

    def save_database(self, database: LocalDatabase) -> LocalDatabase:
        """Insert or replace a local database connection."""
        self.execute_write(
            f"INSERT OR REPLACE INTO local_databases ({DATABASE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                database.id,
                database.name,
                database.engine,
                database.url,
                database.database,
                database.schema_name,
                database.username,
                database.password,
            ],
        )
        logger.info("local_database_saved", database_id=database.id, engine=database.engine)
        return database


def _dataset_params(record: DesiredDataset) -> list[Any]:
    return [
        record.sql_hash,
        record.sql_text,
        record.normalized_sql,
        record.name,
        record.description,
        json.dumps(record.tags),
        record.kind.value,
        record.source_dataset_id,
        record.local_database_id,
        record.schema_name,
        record.table_name,
        record.time_column,
        json.dumps([column.model_dump(exclude_none=True) for column in record.columns]),
        json.dumps([metric.model_dump(exclude_none=True) for metric in record.metrics]),
        record.remote_id,
        _to_db_time(record.created_at),
        record.created_by,
        _to_db_time(record.updated_at),
        record.updated_by,
        _to_db_time(record.synced_at),
    ]


def _row_to_dataset(row: tuple | None) -> DesiredDataset | None:
    """Convert database row to a dataset record."""
    if row is None:
        return None
    return DesiredDataset(
        id=row[0],
        sql_hash=row[1],
        sql_text=row[2],
        normalized_sql=row[3],
        name=row[4],
        description=row[5],
        tags=_load_json_list(row[6]),
        kind=DatasetKind(row[7]),
        source_dataset_id=row[8],
        local_database_id=row[9],
        schema_name=row[10],
        table_name=row[11],
        time_column=row[12],
        columns=[Column.model_validate(item) for item in _load_json_list(row[13])],
        metrics=[Metric.model_validate(item) for item in _load_json_list(row[14])],
        remote_id=row[15],
        created_at=_from_db_time(row[16]),
        created_by=row[17],
        updated_at=_from_db_time(row[18]),
        updated_by=row[19],
        synced_at=_from_db_time(row[20]),
    )


def _row_to_database(row: tuple) -> LocalDatabase:
    return LocalDatabase(
        id=row[0],
        name=row[1],
        engine=row[2],
        url=row[3],
        database=row[4],
        schema_name=row[5],
        username=row[6],
        password=row[7],
    )


def _load_json_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning("registry_json_parse_failed")
            return []
    return value if isinstance(value, list) else []


def _to_db_time(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)
