"""Registration of query definitions as desired dataset records."""

from datetime import datetime, timezone

import structlog

from ..identity import ResolvedIdentity, resolve_identity
from ..models import DatasetKind, DesiredDataset, QueryDefinition
from .store import DatabaseCatalog, RegistryStore

logger = structlog.get_logger(__name__)

DEFAULT_USER = "system"

# Fields that define a record; a change in any of them makes it stale
TRACKED_FIELDS = (
    "name",
    "description",
    "tags",
    "normalized_sql",
    "sql_text",
    "sql_hash",
    "kind",
    "local_database_id",
    "schema_name",
    "table_name",
    "time_column",
    "source_dataset_id",
    "columns",
    "metrics",
)


class DatasetRegistry:
    """
    Upserts desired dataset records keyed by SQL fingerprint.

    Registering the same SQL twice returns the existing record. A physical
    dataset already registered for the same table is reused rather than
    duplicated. When a registration changes an existing record, the record
    is marked stale so the next dataset pass pushes it.
    """

    def __init__(self, store: RegistryStore, databases: DatabaseCatalog | None = None):
        self.store = store
        self.databases = databases

    def register(self, definition: QueryDefinition | None) -> DesiredDataset | None:
        """
        Register a query definition.

        Returns:
            The stored record, or None when the SQL is blank.
        """
        if definition is None or definition.sql is None or not definition.sql.strip():
            return None

        database = None
        if definition.local_database_id is not None and self.databases is not None:
            database = self.databases.get_database(definition.local_database_id)

        identity = resolve_identity(definition, database)
        if identity is None:
            return None

        existing = self.store.get_by_sql_hash(identity.sql_hash)
        if (
            existing is None
            and identity.kind is DatasetKind.PHYSICAL
            and definition.local_database_id is not None
        ):
            physical = self.store.get_by_physical_table(
                definition.local_database_id, identity.schema_name, identity.table_name
            )
            if physical is not None:
                logger.debug("registry_physical_table_reused", record_id=physical.id, table=identity.table_name)
                return physical

        candidate = build_record(definition, identity)
        user = definition.created_by or DEFAULT_USER
        now = datetime.now(timezone.utc)

        if existing is None:
            candidate.created_at = now
            candidate.created_by = user
            candidate.updated_at = now
            candidate.updated_by = user
            candidate.synced_at = None
            record = self.store.save(candidate)
            logger.info("dataset_registered", record_id=record.id, sql_hash=record.sql_hash, kind=record.kind.value)
            return record

        if not apply_changes(existing, candidate):
            return existing

        existing.updated_at = now
        existing.updated_by = user
        existing.synced_at = None
        record = self.store.update(existing)
        logger.info("dataset_registration_changed", record_id=record.id, sql_hash=record.sql_hash)
        return record

    def get(self, record_id: int) -> DesiredDataset | None:
        return self.store.get_by_id(record_id)


def build_record(definition: QueryDefinition, identity: ResolvedIdentity) -> DesiredDataset:
    return DesiredDataset(
        sql_hash=identity.sql_hash,
        sql_text=definition.sql,
        normalized_sql=identity.normalized_sql,
        name=identity.name,
        description=identity.description,
        tags=identity.tags,
        kind=identity.kind,
        source_dataset_id=definition.source_dataset_id,
        local_database_id=definition.local_database_id,
        schema_name=identity.schema_name,
        table_name=identity.table_name,
        time_column=identity.time_column,
        columns=identity.columns,
        metrics=identity.metrics,
    )


def apply_changes(record: DesiredDataset, candidate: DesiredDataset) -> bool:
    """Copy tracked fields from candidate into record, returning whether any differed."""
    changed = False
    for field_name in TRACKED_FIELDS:
        value = getattr(candidate, field_name)
        if getattr(record, field_name) != value:
            setattr(record, field_name, value)
            changed = True
    return changed
