"""Prometheus metrics definitions for catalog sync.

This module defines the metrics exported by the sync engine:
- Reconciliation pass metrics (count, duration, per-item outcomes)
- Retry scheduling
- Remote catalog HTTP requests and authentication events
"""

from prometheus_client import Counter, Histogram

# =============================================================================
# Reconciliation Metrics
# =============================================================================

SYNC_PASSES = Counter(
    "catalog_sync_passes_total",
    "Total number of reconciliation passes",
    ["sync_type", "status"]
)

SYNC_ITEMS = Counter(
    "catalog_sync_items_total",
    "Reconciled items by outcome (created, updated, skipped, failed)",
    ["sync_type", "outcome"]
)

SYNC_PASS_DURATION = Histogram(
    "catalog_sync_pass_duration_seconds",
    "Reconciliation pass duration in seconds",
    ["sync_type"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

RETRIES_SCHEDULED = Counter(
    "catalog_sync_retries_scheduled_total",
    "Total number of background retry attempts scheduled",
    ["sync_type"]
)

# =============================================================================
# Remote Catalog Metrics
# =============================================================================

CATALOG_REQUESTS = Counter(
    "catalog_sync_requests_total",
    "Total number of requests sent to the remote catalog",
    ["method", "status"]
)

AUTH_EVENTS = Counter(
    "catalog_sync_auth_events_total",
    "Authentication events (login, refresh, csrf, fallback)",
    ["event", "status"]
)


def record_pass(sync_type: str, success: bool, duration_seconds: float, stats) -> None:
    """Record the outcome of one reconciliation pass."""
    SYNC_PASSES.labels(sync_type=sync_type, status="success" if success else "failure").inc()
    SYNC_PASS_DURATION.labels(sync_type=sync_type).observe(duration_seconds)
    for outcome in ("created", "updated", "skipped", "failed"):
        count = getattr(stats, outcome)
        if count:
            SYNC_ITEMS.labels(sync_type=sync_type, outcome=outcome).inc(count)
