"""Identity resolution for query definitions.

Turns a SQL string plus the dimensions and metrics that produced it into
the identity of a local dataset record: normalized SQL and its fingerprint,
physical or virtual kind, table and schema names, a display name,
description, tags and the column and metric lists.

Resolution is fail-open: SQL that cannot be parsed still registers, as a
virtual dataset named after itself.
"""

from dataclasses import dataclass, field

import structlog

from .connection import resolve_schema
from .models import Column, DatasetKind, LocalDatabase, Metric, QueryDefinition, SchemaElement
from .sql import TableRef, is_plain_table_read, normalize_sql, resolve_primary_table, sql_fingerprint

logger = structlog.get_logger(__name__)

NAME_LIMIT = 250
DEFAULT_DATASET_NAME = "Chat query dataset"


@dataclass
class ResolvedIdentity:
    """Identity and schema derived from a query definition."""

    normalized_sql: str
    sql_hash: str
    kind: DatasetKind
    name: str
    description: str
    tags: list[str]
    table_name: str
    schema_name: str | None
    time_column: str | None
    columns: list[Column] = field(default_factory=list)
    metrics: list[Metric] = field(default_factory=list)


def resolve_identity(
    definition: QueryDefinition,
    database: LocalDatabase | None = None,
) -> ResolvedIdentity | None:
    """
    Resolve the identity of a query definition.

    Args:
        definition: Query output to register.
        database: Local database the SQL runs on, used for the default schema.

    Returns:
        The resolved identity, or None when the SQL is blank.
    """
    if definition.sql is None or not definition.sql.strip():
        return None
    normalized = normalize_sql(definition.sql)
    if not normalized:
        return None

    sql_hash = sql_fingerprint(normalized)
    name = build_dataset_name(definition, sql_hash)

    table = resolve_primary_table(normalized)
    kind = classify_kind(normalized, table)
    table_name = table.name if kind is DatasetKind.PHYSICAL and table else name
    schema_name = (table.schema if table else None) or resolve_schema(database)

    columns = build_columns(definition)
    tags = build_tags(definition, kind, sql_hash)
    return ResolvedIdentity(
        normalized_sql=normalized,
        sql_hash=sql_hash,
        kind=kind,
        name=name,
        description=build_description(definition, sql_hash),
        tags=tags,
        table_name=table_name,
        schema_name=schema_name,
        time_column=resolve_time_column(columns),
        columns=columns,
        metrics=build_metrics(definition),
    )


def classify_kind(normalized_sql: str, table: TableRef | None) -> DatasetKind:
    """PHYSICAL only for a plain read of one unambiguous table."""
    if table is None:
        logger.debug("dataset_kind_virtual", reason="table_unresolved")
        return DatasetKind.VIRTUAL
    if not is_plain_table_read(normalized_sql):
        return DatasetKind.VIRTUAL
    return DatasetKind.PHYSICAL


def build_columns(definition: QueryDefinition) -> list[Column]:
    """Columns for dimensions then metrics, de-duplicated by name (case-insensitive)."""
    columns: list[Column] = []
    seen: set[str] = set()

    for element in definition.dimensions:
        name = element_column_name(element)
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        columns.append(Column(
            name=name,
            groupable=True,
            filterable=True,
            is_time_column=element.is_partition_time,
            type="DATE" if element.is_partition_time else "STRING",
        ))

    for element in definition.metrics:
        name = element_column_name(element)
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        columns.append(Column(name=name, groupable=False, filterable=False, type="NUMBER"))

    return columns


def build_metrics(definition: QueryDefinition) -> list[Metric]:
    metrics: list[Metric] = []
    seen: set[str] = set()
    for element in definition.metrics:
        name = element_column_name(element)
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        metrics.append(Metric(
            name=name,
            expression=name,
            metric_type="SQL",
            verbose_name=element.name,
            description=element.description,
        ))
    return metrics


def resolve_time_column(columns: list[Column]) -> str | None:
    for column in columns:
        if column.is_time_column and column.name:
            return column.name
    return None


def element_column_name(element: SchemaElement) -> str | None:
    """Column name of a schema element: display name, else business name."""
    if element.name and element.name.strip():
        return element.name
    if element.biz_name and element.biz_name.strip():
        return element.biz_name
    return None


def element_label(element: SchemaElement) -> str | None:
    """Label used in names and descriptions: business name, else display name."""
    if element.biz_name and element.biz_name.strip():
        return element.biz_name
    if element.name and element.name.strip():
        return element.name
    return None


def build_dataset_name(definition: QueryDefinition, sql_hash: str) -> str:
    metric_part = join_labels(definition.metrics, 3)
    dimension_part = join_labels(definition.dimensions, 3)
    parts = []
    if metric_part:
        parts.append(f"Metrics {metric_part}")
    if dimension_part:
        parts.append(f"Dimensions {dimension_part}")
    if not parts:
        parts.append(DEFAULT_DATASET_NAME)
    if sql_hash:
        parts.append(sql_hash[:6])
    return truncate_name(" · ".join(parts))


def build_description(definition: QueryDefinition, sql_hash: str) -> str:
    metric_part = join_labels(definition.metrics, 5)
    dimension_part = join_labels(definition.dimensions, 5)
    parts = ["Dataset generated from a chat query"]
    if sql_hash:
        parts.append(f"SQL hash: {sql_hash}")
    if metric_part:
        parts.append(f"metrics: {metric_part}")
    if dimension_part:
        parts.append(f"dimensions: {dimension_part}")
    if definition.filter_count > 0:
        parts.append(f"filters: {definition.filter_count}")
    return ", ".join(parts)


def build_tags(definition: QueryDefinition, kind: DatasetKind, sql_hash: str) -> list[str]:
    tags = ["catalog-sync", "chat"]
    if definition.source_dataset_id is not None:
        tags.append(f"datasetId:{definition.source_dataset_id}")
    tags.append(kind.value.lower())
    if sql_hash:
        tags.append(f"sqlHash:{sql_hash[:8]}")
    return tags


def join_labels(elements: list[SchemaElement], limit: int) -> str:
    names: list[str] = []
    for element in elements:
        label = element_label(element)
        if label and label not in names:
            names.append(label)
    return ", ".join(names[:limit])


def truncate_name(name: str) -> str:
    return name[:NAME_LIMIT]
