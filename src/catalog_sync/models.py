"""Data models for local definitions, remote catalog resources and sync results."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class DatasetKind(str, Enum):
    """Physical datasets point at a table, virtual datasets wrap a SQL query."""

    PHYSICAL = "PHYSICAL"
    VIRTUAL = "VIRTUAL"


class SyncType(str, Enum):
    DATABASE = "database"
    DATASET = "dataset"


class SyncTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    EVENT = "event"
    ON_DEMAND = "on_demand"


# ============================================
# Dataset schema
# ============================================


class Column(BaseModel):
    """Dataset column, local or remote."""

    name: str | None = Field(default=None, description="Column name")
    expression: str | None = Field(default=None, description="SQL expression for derived columns")
    type: str | None = Field(default=None, description="Column type, e.g. STRING, DATE, NUMBER")
    is_time_column: bool | None = Field(default=None, description="Whether this is a temporal column")
    filterable: bool | None = None
    groupable: bool | None = None
    is_active: bool | None = None
    verbose_name: str | None = None
    description: str | None = None
    python_date_format: str | None = None
    remote_id: int | None = Field(default=None, description="Remote column id once bound")

    def to_payload(self) -> dict[str, Any]:
        """Build the remote column payload, omitting unset fields."""
        payload: dict[str, Any] = {}
        if self.remote_id is not None:
            payload["id"] = self.remote_id
        _put_text(payload, "column_name", self.name)
        _put_text(payload, "expression", self.expression)
        _put_text(payload, "type", self.type)
        _put_flag(payload, "is_dttm", self.is_time_column)
        _put_flag(payload, "filterable", self.filterable)
        _put_flag(payload, "groupby", self.groupable)
        _put_flag(payload, "is_active", self.is_active)
        _put_text(payload, "verbose_name", self.verbose_name)
        _put_text(payload, "description", self.description)
        _put_text(payload, "python_date_format", self.python_date_format)
        return payload

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Column":
        """Parse a remote column payload."""
        return cls(
            name=_as_text(data.get("column_name")),
            expression=_as_text(data.get("expression")),
            type=_as_text(data.get("type")),
            is_time_column=_as_bool(data.get("is_dttm")),
            filterable=_as_bool(data.get("filterable")),
            groupable=_as_bool(data.get("groupby")),
            is_active=_as_bool(data.get("is_active")),
            verbose_name=_as_text(data.get("verbose_name")),
            description=_as_text(data.get("description")),
            python_date_format=_as_text(data.get("python_date_format")),
            remote_id=as_int(data.get("id")),
        )


class Metric(BaseModel):
    """Dataset metric, local or remote."""

    name: str | None = Field(default=None, description="Metric name")
    expression: str | None = Field(default=None, description="SQL aggregate expression")
    metric_type: str | None = None
    verbose_name: str | None = None
    description: str | None = None
    remote_id: int | None = Field(default=None, description="Remote metric id once bound")

    def to_payload(self) -> dict[str, Any]:
        """Build the remote metric payload, omitting unset fields."""
        payload: dict[str, Any] = {}
        if self.remote_id is not None:
            payload["id"] = self.remote_id
        _put_text(payload, "metric_name", self.name)
        _put_text(payload, "expression", self.expression)
        _put_text(payload, "metric_type", self.metric_type)
        _put_text(payload, "verbose_name", self.verbose_name)
        _put_text(payload, "description", self.description)
        return payload

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Metric":
        """Parse a remote metric payload."""
        return cls(
            name=_as_text(data.get("metric_name")),
            expression=_as_text(data.get("expression")),
            metric_type=_as_text(data.get("metric_type")),
            verbose_name=_as_text(data.get("verbose_name")),
            description=_as_text(data.get("description")),
            remote_id=as_int(data.get("id")),
        )


# ============================================
# Local definitions
# ============================================


class SchemaElement(BaseModel):
    """Dimension or metric produced by the query pipeline."""

    name: str | None = None
    biz_name: str | None = None
    description: str | None = None
    is_partition_time: bool = False


class QueryDefinition(BaseModel):
    """Output of an answered conversational query, input of registration."""

    sql: str | None = Field(default=None, description="SQL that answered the query")
    local_database_id: int | None = Field(default=None, description="Local database the SQL runs on")
    source_dataset_id: int | None = Field(default=None, description="Semantic dataset queried")
    dimensions: list[SchemaElement] = Field(default_factory=list)
    metrics: list[SchemaElement] = Field(default_factory=list)
    filter_count: int = 0
    created_by: str | None = None


class LocalDatabase(BaseModel):
    """Locally configured database connection."""

    id: int
    name: str | None = None
    engine: str | None = Field(default=None, description="Engine type: postgresql, mysql, clickhouse")
    url: str | None = Field(default=None, description="JDBC-style or plain connection URL")
    database: str | None = None
    schema_name: str | None = None
    username: str | None = None
    password: str | None = None


class DesiredDataset(BaseModel):
    """Local record describing a dataset that should exist remotely."""

    id: int | None = None
    sql_hash: str | None = None
    sql_text: str | None = None
    normalized_sql: str | None = None
    name: str | None = None
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    kind: DatasetKind = DatasetKind.VIRTUAL
    source_dataset_id: int | None = None
    local_database_id: int | None = None
    schema_name: str | None = None
    table_name: str | None = None
    time_column: str | None = None
    columns: list[Column] = Field(default_factory=list)
    metrics: list[Metric] = Field(default_factory=list)
    remote_id: int | None = None
    created_at: datetime | None = None
    created_by: str | None = None
    updated_at: datetime | None = None
    updated_by: str | None = None
    synced_at: datetime | None = None

    def needs_sync(self) -> bool:
        """Staleness clock: unbound, never synced, or changed since the last sync."""
        if self.remote_id is None:
            return True
        if self.synced_at is None:
            return True
        if self.updated_at is None:
            return False
        return self.updated_at > self.synced_at


# ============================================
# Remote catalog resources
# ============================================


class RemoteDatabase(BaseModel):
    """Database connection as seen by the remote catalog."""

    remote_id: int | None = None
    name: str | None = None
    connection_uri: str | None = None
    schema_name: str | None = None


class RemoteDataset(BaseModel):
    """Dataset as seen by (or sent to) the remote catalog."""

    remote_id: int | None = None
    database_remote_id: int | None = None
    schema_name: str | None = None
    table_name: str | None = None
    sql: str | None = None
    time_column: str | None = None
    columns: list[Column] = Field(default_factory=list)
    metrics: list[Metric] = Field(default_factory=list)


# ============================================
# Sync results
# ============================================


class SyncStats(BaseModel):
    """Per-pass counters."""

    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


class SyncResult(BaseModel):
    """Outcome of one reconciliation pass."""

    success: bool
    message: str
    duration_ms: int = 0
    stats: SyncStats = Field(default_factory=SyncStats)

    @classmethod
    def ok(cls, message: str, duration_ms: int, stats: SyncStats | None = None) -> "SyncResult":
        return cls(success=True, message=message, duration_ms=duration_ms, stats=stats or SyncStats())

    @classmethod
    def failure(cls, message: str, duration_ms: int, stats: SyncStats | None = None) -> "SyncResult":
        return cls(success=False, message=message, duration_ms=duration_ms, stats=stats or SyncStats())


# ============================================
# Payload helpers
# ============================================


def as_int(value: Any) -> int | None:
    """Coerce a remote id to int, None when missing or malformed."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _as_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _put_text(payload: dict[str, Any], key: str, value: str | None) -> None:
    if value is not None and value.strip():
        payload[key] = value


def _put_flag(payload: dict[str, Any], key: str, value: bool | None) -> None:
    if value is not None:
        payload[key] = value
