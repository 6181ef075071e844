"""Reconciliation of local desired state with the remote catalog.

Two passes exist, one per resource class. The database pass mirrors local
database connections; the dataset pass mirrors registered datasets and
reconciles the databases they reference on the way. Each pass:

1. loads the desired set and the remote inventory once,
2. matches every desired item against the inventory,
3. creates what is missing, updates what drifted, skips the rest.

A failing item is counted and the pass moves on. Passes of the same class
never overlap: a pass that finds another one running returns immediately.
"""

import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable

import httpx
import structlog

from .. import metrics
from ..client import CatalogClient
from ..config import Settings
from ..connection import build_connection_uri, mask_uri, remote_database_name, resolve_schema
from ..errors import CatalogError, DuplicateResourceError
from ..models import (
    DatasetKind,
    DesiredDataset,
    LocalDatabase,
    QueryDefinition,
    RemoteDatabase,
    RemoteDataset,
    SyncResult,
    SyncStats,
    SyncTrigger,
    SyncType,
)
from ..registry.service import DatasetRegistry
from ..registry.store import DatabaseCatalog, RegistryStore
from ..sql import strip_trailing_semicolon
from .diff import database_matches, dataset_matches, merge_dataset
from .retry import RetryScheduler

logger = structlog.get_logger(__name__)

ITEM_ERRORS = (CatalogError, httpx.HTTPError)


class Outcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


class SyncOrchestrator:
    """
    Public entry points for every sync trigger.

    Each entry point runs its pass synchronously and returns the result.
    A failed pass is handed to the retry scheduler, which re-runs it in the
    background; callers never wait for retries.
    """

    def __init__(
        self,
        settings: Settings,
        client: CatalogClient,
        registry_store: RegistryStore,
        database_catalog: DatabaseCatalog,
        registry: DatasetRegistry | None = None,
        scheduler: RetryScheduler | None = None,
    ):
        self.settings = settings
        self.client = client
        self.registry_store = registry_store
        self.database_catalog = database_catalog
        self.registry = registry or DatasetRegistry(registry_store, database_catalog)
        self.scheduler = scheduler or RetryScheduler(settings.sync)
        self._database_lock = threading.Lock()
        self._dataset_lock = threading.Lock()

    def close(self) -> None:
        self.scheduler.shutdown(wait=False)

    # ========================================
    # Entry points
    # ========================================

    def sync_databases(
        self,
        ids: Iterable[int] | None = None,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
    ) -> SyncResult:
        """Reconcile local database connections, optionally only ``ids``."""
        wanted = set(ids) if ids else None
        return self._run_with_retry(SyncType.DATABASE, lambda: self._sync_databases(wanted, trigger))

    def sync_datasets(
        self,
        ids: Iterable[int] | None = None,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
    ) -> SyncResult:
        """Reconcile registered datasets, optionally only registry ``ids``."""
        wanted = set(ids) if ids else None
        return self._run_with_retry(SyncType.DATASET, lambda: self._sync_datasets(wanted, trigger))

    def sync_all(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> tuple[SyncResult, SyncResult]:
        """Run the database pass, then the dataset pass."""
        database_result = self.sync_databases(trigger=trigger)
        logger.info(
            "database_sync_finished",
            trigger=trigger.value,
            success=database_result.success,
            message=database_result.message,
            **database_result.stats.model_dump(),
        )
        dataset_result = self.sync_datasets(trigger=trigger)
        logger.info(
            "dataset_sync_finished",
            trigger=trigger.value,
            success=dataset_result.success,
            message=dataset_result.message,
            **dataset_result.stats.model_dump(),
        )
        return database_result, dataset_result

    def register_and_sync(self, definition: QueryDefinition | None) -> RemoteDataset | None:
        """
        Register a query definition and push it to the remote catalog.

        Returns the dataset as known remotely, enriched with the remote
        columns, metrics and time column, or None when nothing was
        registered or the dataset is not bound remotely.
        """
        if definition is None or definition.sql is None or not definition.sql.strip():
            return None
        if self._configuration_problem() is not None:
            return None

        record = self.registry.register(definition)
        if record is None:
            return None

        result = self.sync_datasets([record.id], SyncTrigger.ON_DEMAND)
        if not result.success:
            logger.warning("on_demand_dataset_sync_failed", record_id=record.id, message=result.message)

        refreshed = self.registry_store.get_by_id(record.id)
        if refreshed is None or refreshed.remote_id is None:
            return None

        try:
            mapping = self._map_databases({refreshed.local_database_id})
        except ITEM_ERRORS as e:
            logger.warning("database_mapping_failed", record_id=refreshed.id, error=str(e))
            return None
        dataset = build_expected_dataset(refreshed, mapping.get(refreshed.local_database_id))
        if dataset is None:
            return None
        dataset.remote_id = refreshed.remote_id

        remote = None
        try:
            remote = self.client.fetch_dataset(refreshed.remote_id)
        except ITEM_ERRORS as e:
            logger.warning("dataset_fetch_after_sync_failed", remote_id=refreshed.remote_id, error=str(e))
        enrich_from_remote(dataset, remote)
        return dataset

    # ========================================
    # Pass plumbing
    # ========================================

    def _run_with_retry(self, sync_type: SyncType, action: Callable[[], SyncResult]) -> SyncResult:
        result = action()
        if not result.success:
            self.scheduler.schedule(sync_type, action)
        return result

    def _configuration_problem(self) -> str | None:
        if not self.settings.enabled:
            return "disabled"
        if not self.settings.sync.enabled:
            return "sync_disabled"
        if not self.settings.normalized_base_url:
            return "base_url_missing"
        return None

    def _guard(self, sync_type: SyncType, start: float) -> SyncResult | None:
        """Guard clauses shared by both passes, in order."""
        problem = self._configuration_problem()
        label = sync_type.value.capitalize()
        if problem == "disabled":
            return SyncResult.ok("Catalog sync is disabled, skipping", _elapsed_ms(start))
        if problem == "sync_disabled":
            return SyncResult.ok(f"{label} sync is turned off, skipping", _elapsed_ms(start))
        if problem == "base_url_missing":
            logger.warning("sync_base_url_missing", sync_type=sync_type.value)
            return SyncResult.failure("Catalog base URL is not configured", _elapsed_ms(start))
        return None

    def _run_pass(
        self,
        sync_type: SyncType,
        lock: threading.Lock,
        trigger: SyncTrigger,
        body: Callable[[SyncStats], None],
    ) -> SyncResult:
        start = time.monotonic()
        guarded = self._guard(sync_type, start)
        if guarded is not None:
            return guarded

        label = sync_type.value.capitalize()
        if not lock.acquire(blocking=False):
            logger.info("sync_already_running", sync_type=sync_type.value, trigger=trigger.value)
            return SyncResult.ok(f"{label} sync is already running", _elapsed_ms(start))

        stats = SyncStats()
        try:
            logger.info("sync_started", sync_type=sync_type.value, trigger=trigger.value)
            body(stats)
            if stats.failed == 0:
                result = SyncResult.ok(f"{label} sync completed", _elapsed_ms(start), stats)
            else:
                result = SyncResult.failure(f"{label} sync finished with failures", _elapsed_ms(start), stats)
        except Exception as e:
            logger.error(
                "sync_pass_failed",
                sync_type=sync_type.value,
                trigger=trigger.value,
                error=str(e),
                exc_info=True,
            )
            result = SyncResult.failure(f"{label} sync aborted: {e}", _elapsed_ms(start), stats)
        finally:
            lock.release()

        metrics.record_pass(sync_type.value, result.success, result.duration_ms / 1000.0, result.stats)
        logger.info(
            "sync_completed",
            sync_type=sync_type.value,
            success=result.success,
            duration_ms=result.duration_ms,
            **result.stats.model_dump(),
        )
        return result

    # ========================================
    # Database pass
    # ========================================

    def _sync_databases(self, ids: set[int] | None, trigger: SyncTrigger) -> SyncResult:
        return self._run_pass(
            SyncType.DATABASE,
            self._database_lock,
            trigger,
            lambda stats: self._reconcile_databases(ids, stats),
        )

    def _reconcile_databases(self, ids: set[int] | None, stats: SyncStats) -> None:
        databases = self._local_databases(ids)
        remote_by_name = self._remote_databases_by_name()

        for database in databases:
            stats.total += 1
            expected = build_expected_database(database, self.settings.database_name_prefix)
            if expected is None:
                logger.warning("database_skipped_unsupported", database_id=database.id, engine=database.engine)
                stats.skipped += 1
                continue
            try:
                outcome, _ = self._reconcile_database(expected, remote_by_name.get(expected.name))
            except ITEM_ERRORS as e:
                logger.warning("database_sync_item_failed", database_id=database.id, name=expected.name, error=str(e))
                outcome = Outcome.FAILED
            _count(stats, outcome)

    def _reconcile_database(
        self, expected: RemoteDatabase, existing: RemoteDatabase | None
    ) -> tuple[Outcome, int | None]:
        """Create or update one database; returns the outcome and the remote id."""
        if existing is None:
            logger.debug("database_create_required", name=expected.name, uri=mask_uri(expected.connection_uri))
            try:
                remote_id = self.client.create_database(expected)
            except DuplicateResourceError as e:
                logger.warning("database_create_duplicate_ignored", name=expected.name, status_code=e.status_code)
                return Outcome.SKIPPED, None
            if remote_id is None:
                logger.warning("database_create_returned_no_id", name=expected.name)
                return Outcome.FAILED, None
            logger.info("database_created", name=expected.name, remote_id=remote_id)
            return Outcome.CREATED, remote_id

        current = self.client.fetch_database(existing.remote_id)
        if database_matches(current, expected):
            return Outcome.SKIPPED, existing.remote_id
        self.client.update_database(existing.remote_id, expected)
        logger.info("database_updated", name=expected.name, remote_id=existing.remote_id)
        return Outcome.UPDATED, existing.remote_id

    def _map_databases(self, local_ids: set[int | None]) -> dict[int, int]:
        """Reconcile the given local databases and map them to remote ids.

        Failures leave a database unmapped; nothing is counted.
        """
        wanted = {db_id for db_id in local_ids if db_id is not None}
        if not wanted:
            return {}
        databases = self._local_databases(wanted)
        remote_by_name = self._remote_databases_by_name()

        mapping: dict[int, int] = {}
        for database in databases:
            expected = build_expected_database(database, self.settings.database_name_prefix)
            if expected is None:
                continue
            try:
                _, remote_id = self._reconcile_database(expected, remote_by_name.get(expected.name))
            except ITEM_ERRORS as e:
                logger.warning("database_mapping_item_failed", database_id=database.id, error=str(e))
                continue
            if remote_id is not None:
                mapping[database.id] = remote_id
        logger.debug("database_mapping_built", mapping=mapping)
        return mapping

    def _local_databases(self, ids: set[int] | None) -> list[LocalDatabase]:
        databases = self.database_catalog.list_databases()
        if ids:
            databases = [database for database in databases if database.id in ids]
        return databases

    def _remote_databases_by_name(self) -> dict[str, RemoteDatabase]:
        indexed: dict[str, RemoteDatabase] = {}
        for database in self.client.list_databases():
            if database.name and database.name.strip():
                indexed.setdefault(database.name, database)
        return indexed

    # ========================================
    # Dataset pass
    # ========================================

    def _sync_datasets(self, ids: set[int] | None, trigger: SyncTrigger) -> SyncResult:
        return self._run_pass(
            SyncType.DATASET,
            self._dataset_lock,
            trigger,
            lambda stats: self._reconcile_datasets(ids, stats),
        )

    def _reconcile_datasets(self, ids: set[int] | None, stats: SyncStats) -> None:
        records = self.registry_store.list_for_sync(ids)
        if not records:
            return

        mapping = self._map_databases({record.local_database_id for record in records})
        remote_by_id: dict[int, RemoteDataset] = {}
        remote_by_key: dict[str, RemoteDataset] = {}
        for dataset in self.client.list_datasets():
            if dataset.remote_id is not None:
                remote_by_id.setdefault(dataset.remote_id, dataset)
            if dataset.table_name and dataset.table_name.strip():
                remote_by_key.setdefault(dataset_key(dataset), dataset)

        for record in records:
            stats.total += 1
            if not record.needs_sync():
                stats.skipped += 1
                continue

            database_remote_id = mapping.get(record.local_database_id)
            if database_remote_id is None:
                logger.warning(
                    "dataset_database_unmapped",
                    record_id=record.id,
                    local_database_id=record.local_database_id,
                )
                stats.failed += 1
                continue

            expected = build_expected_dataset(record, database_remote_id)
            if expected is None:
                logger.warning("dataset_skipped_incomplete", record_id=record.id, name=record.name)
                stats.skipped += 1
                continue

            existing = remote_by_id.get(record.remote_id) if record.remote_id is not None else None
            if existing is None:
                existing = remote_by_key.get(dataset_key(expected))

            try:
                outcome = self._reconcile_dataset(record, expected, existing)
            except ITEM_ERRORS as e:
                logger.warning(
                    "dataset_sync_item_failed",
                    record_id=record.id,
                    table_name=expected.table_name,
                    error=str(e),
                )
                outcome = Outcome.FAILED
            _count(stats, outcome)

    def _reconcile_dataset(
        self, record: DesiredDataset, expected: RemoteDataset, existing: RemoteDataset | None
    ) -> Outcome:
        rebuild = self.settings.sync.rebuild

        if existing is None:
            try:
                remote_id = self.client.create_dataset(expected)
            except DuplicateResourceError as e:
                logger.warning(
                    "dataset_create_duplicate_ignored",
                    record_id=record.id,
                    table_name=expected.table_name,
                    status_code=e.status_code,
                )
                return Outcome.SKIPPED
            if remote_id is None:
                logger.warning("dataset_create_returned_no_id", record_id=record.id)
                return Outcome.FAILED

            expected.remote_id = remote_id
            synced_at = _now()
            if needs_enrichment(expected):
                try:
                    current = self.client.fetch_dataset(remote_id)
                    if current is None:
                        logger.warning("dataset_fetch_after_create_empty", remote_id=remote_id)
                    else:
                        self.client.update_dataset(remote_id, self._merge(expected, current, rebuild))
                except ITEM_ERRORS as e:
                    # Bound but not synced: the next pass finishes the update
                    logger.warning("dataset_enrich_after_create_failed", remote_id=remote_id, error=str(e))
                    synced_at = None
            self.registry_store.update_sync_info(record.id, remote_id, synced_at)
            logger.info("dataset_created", record_id=record.id, remote_id=remote_id, kind=record.kind.value)
            return Outcome.CREATED

        remote_id = existing.remote_id
        current = self.client.fetch_dataset(remote_id)
        merged = self._merge(expected, current, rebuild)
        merged.remote_id = remote_id
        if current is not None and dataset_matches(current, merged, rebuild):
            outcome = Outcome.SKIPPED
        else:
            self.client.update_dataset(remote_id, merged)
            logger.info("dataset_updated", record_id=record.id, remote_id=remote_id)
            outcome = Outcome.UPDATED
        self.registry_store.update_sync_info(record.id, remote_id, _now())
        return outcome

    def _merge(self, expected: RemoteDataset, current: RemoteDataset | None, rebuild: bool) -> RemoteDataset:
        """Merge expected with remote state, deleting orphans when rebuilding."""
        result = merge_dataset(expected, current, rebuild)
        if rebuild and current is not None and current.remote_id is not None:
            for column in result.orphan_columns:
                if column.remote_id is not None:
                    self.client.delete_column(current.remote_id, column.remote_id)
                    logger.info("dataset_orphan_column_deleted", remote_id=current.remote_id, column=column.name)
            for metric in result.orphan_metrics:
                if metric.remote_id is not None:
                    self.client.delete_metric(current.remote_id, metric.remote_id)
                    logger.info("dataset_orphan_metric_deleted", remote_id=current.remote_id, metric=metric.name)
        return result.dataset


# ============================================
# Expected state
# ============================================


def build_expected_database(database: LocalDatabase, prefix: str) -> RemoteDatabase | None:
    """Expected remote database for a local one, None when no URI can be built."""
    uri = build_connection_uri(database)
    if not uri:
        return None
    return RemoteDatabase(
        name=remote_database_name(database, prefix),
        connection_uri=uri,
        schema_name=resolve_schema(database),
    )


def build_expected_dataset(record: DesiredDataset | None, database_remote_id: int | None) -> RemoteDataset | None:
    """
    Expected remote dataset for a registry record.

    A physical record without a table name degrades to virtual, using the
    record name as table name and its SQL as body. Returns None when the
    record cannot describe a dataset (no database, no SQL for a virtual
    dataset, no table for a physical one).
    """
    if record is None or database_remote_id is None:
        return None

    sql_text = _clean(record.sql_text) or _clean(record.normalized_sql)
    if sql_text:
        sql_text = strip_trailing_semicolon(sql_text)
    table_name = _clean(record.table_name)
    virtual = record.kind is DatasetKind.VIRTUAL
    if table_name is None and sql_text:
        virtual = True

    if virtual:
        table_name = table_name or _clean(record.name)
        if not sql_text or not table_name:
            return None
        sql = sql_text
    else:
        if table_name is None:
            return None
        sql = None

    return RemoteDataset(
        remote_id=record.remote_id,
        database_remote_id=database_remote_id,
        schema_name=_clean(record.schema_name),
        table_name=table_name,
        sql=sql,
        time_column=_clean(record.time_column),
        columns=[column.model_copy() for column in record.columns],
        metrics=[metric.model_copy() for metric in record.metrics],
    )


def dataset_key(dataset: RemoteDataset) -> str:
    """Composite match key: remote database id and table name."""
    return f"{dataset.database_remote_id}:{dataset.table_name or ''}"


def needs_enrichment(dataset: RemoteDataset) -> bool:
    """A freshly created dataset needs a follow-up update to carry its schema."""
    return bool(dataset.columns or dataset.metrics or _clean(dataset.time_column))


def enrich_from_remote(target: RemoteDataset, source: RemoteDataset | None) -> None:
    """Fill gaps in ``target`` from the remote view of the same dataset."""
    if source is None:
        return
    if target.database_remote_id is None and source.database_remote_id is not None:
        target.database_remote_id = source.database_remote_id
    if not _clean(target.schema_name) and _clean(source.schema_name):
        target.schema_name = source.schema_name
    if not _clean(target.time_column) and _clean(source.time_column):
        target.time_column = source.time_column
    if source.columns:
        target.columns = source.columns
    if source.metrics:
        target.metrics = source.metrics


def _count(stats: SyncStats, outcome: Outcome) -> None:
    setattr(stats, outcome.value, getattr(stats, outcome.value) + 1)


def _clean(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
