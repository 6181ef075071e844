"""Merge and equality rules between expected and remote catalog state.

Equality is semantic, not textual: connection URIs compare without
credentials, SQL compares after normalization, strings compare
case-insensitively and expressions ignore surrounding whitespace and a
trailing semicolon. A remote field is only compared when the expected
field is set, so a partially populated expectation never reports drift.
"""

from dataclasses import dataclass, field

from ..connection import strip_credentials
from ..models import Column, Metric, RemoteDatabase, RemoteDataset
from ..sql import collapse_whitespace, normalize_sql


@dataclass
class MergeResult:
    """Merged expected dataset plus the remote sub-resources it has no entry for."""

    dataset: RemoteDataset
    orphan_columns: list[Column] = field(default_factory=list)
    orphan_metrics: list[Metric] = field(default_factory=list)


def normalize_name(name: str | None) -> str:
    return (name or "").strip().lower()


def normalize_expression(expression: str | None) -> str:
    if expression is None or not expression.strip():
        return ""
    normalized = expression.strip()
    if normalized.endswith(";"):
        normalized = normalized[:-1]
    return collapse_whitespace(normalized)


def merge_dataset(expected: RemoteDataset, current: RemoteDataset | None, rebuild: bool) -> MergeResult:
    """
    Merge the expected dataset with the remote one.

    Remote ids of columns and metrics are carried over to expected entries
    with the same (case-insensitive) name. When the expected list is empty
    the remote list is kept as is. Remote entries without an expected
    counterpart are orphans: appended to the merged payload by default, left
    out when ``rebuild`` is set so the caller can delete them.

    The expected dataset is not modified.
    """
    merged = expected.model_copy(deep=True)
    if current is None:
        return MergeResult(dataset=merged)
    merged.remote_id = current.remote_id

    merged.columns, orphan_columns = _merge_items(merged.columns, current.columns, rebuild)
    merged.metrics, orphan_metrics = _merge_items(merged.metrics, current.metrics, rebuild)
    return MergeResult(dataset=merged, orphan_columns=orphan_columns, orphan_metrics=orphan_metrics)


def _merge_items(expected_items: list, current_items: list, rebuild: bool) -> tuple[list, list]:
    if not expected_items:
        return [item.model_copy() for item in current_items], []

    current_by_name = _index_by_name(current_items)
    expected_keys = set()
    merged = []
    for item in expected_items:
        key = normalize_name(item.name)
        expected_keys.add(key)
        existing = current_by_name.get(key)
        if existing is not None:
            item.remote_id = existing.remote_id
        merged.append(item)

    orphans = [item for item in current_items if normalize_name(item.name) not in expected_keys]
    if not rebuild:
        merged.extend(item.model_copy() for item in orphans)
    return merged, orphans


def _index_by_name(items: list) -> dict:
    indexed = {}
    for item in items:
        if item.name and item.name.strip():
            indexed[normalize_name(item.name)] = item
    return indexed


# ============================================
# Equality
# ============================================


def database_matches(current: RemoteDatabase | None, expected: RemoteDatabase | None) -> bool:
    """Databases match when their URIs agree once credentials are stripped."""
    if current is None or expected is None:
        return False
    return _equals_ignore_case(
        strip_credentials(current.connection_uri),
        strip_credentials(expected.connection_uri),
    )


def dataset_matches(current: RemoteDataset | None, expected: RemoteDataset | None, rebuild: bool) -> bool:
    if current is None or expected is None:
        return False
    if current.database_remote_id != expected.database_remote_id:
        return False
    if not _equals_ignore_case(current.schema_name, expected.schema_name):
        return False
    if not _equals_ignore_case(normalize_sql(current.sql), normalize_sql(expected.sql)):
        return False
    if _is_set(expected.time_column) and not _equals_ignore_case(current.time_column, expected.time_column):
        return False
    if not columns_match(current.columns, expected.columns, rebuild):
        return False
    return metrics_match(current.metrics, expected.metrics, rebuild)


def columns_match(current: list[Column], expected: list[Column], rebuild: bool) -> bool:
    return _items_match(current, expected, rebuild, column_matches)


def metrics_match(current: list[Metric], expected: list[Metric], rebuild: bool) -> bool:
    return _items_match(current, expected, rebuild, metric_matches)


def _items_match(current: list, expected: list, rebuild: bool, item_matches) -> bool:
    """
    Every expected entry must match the remote entry of the same name.

    With ``rebuild`` the remote side must also have no extra entries.
    """
    if not expected:
        return True
    current_by_name = _index_by_name(current)
    expected_keys = set()
    for item in expected:
        key = normalize_name(item.name)
        expected_keys.add(key)
        if not item_matches(current_by_name.get(key), item):
            return False
    if rebuild:
        return all(key in expected_keys for key in current_by_name)
    return True


def column_matches(current: Column | None, expected: Column | None) -> bool:
    if current is None or expected is None:
        return False
    if _is_set(expected.expression) and not _equals_ignore_case(
        normalize_expression(current.expression), normalize_expression(expected.expression)
    ):
        return False
    for attr in ("type", "verbose_name", "description", "python_date_format"):
        expected_value = getattr(expected, attr)
        if _is_set(expected_value) and not _equals_ignore_case(getattr(current, attr), expected_value):
            return False
    for attr in ("is_time_column", "filterable", "groupable", "is_active"):
        expected_flag = getattr(expected, attr)
        if expected_flag is not None and expected_flag != getattr(current, attr):
            return False
    return True


def metric_matches(current: Metric | None, expected: Metric | None) -> bool:
    if current is None or expected is None:
        return False
    if _is_set(expected.expression) and not _equals_ignore_case(
        normalize_expression(current.expression), normalize_expression(expected.expression)
    ):
        return False
    for attr in ("metric_type", "verbose_name", "description"):
        expected_value = getattr(expected, attr)
        if _is_set(expected_value) and not _equals_ignore_case(getattr(current, attr), expected_value):
            return False
    return True


def _is_set(value: str | None) -> bool:
    return value is not None and bool(value.strip())


def _equals_ignore_case(left: str | None, right: str | None) -> bool:
    return (left or "").lower() == (right or "").lower()
