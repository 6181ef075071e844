"""Reconciliation passes, retries and triggers."""

from .orchestrator import SyncOrchestrator
from .retry import RetryScheduler
from .triggers import PeriodicSyncRunner, SyncEvent, SyncEventDispatcher

__all__ = [
    "PeriodicSyncRunner",
    "RetryScheduler",
    "SyncEvent",
    "SyncEventDispatcher",
    "SyncOrchestrator",
]
