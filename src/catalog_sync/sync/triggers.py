"""Scheduled and event-driven triggers.

Both call the same orchestrator entry points as manual syncs.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field

import structlog

from ..models import SyncResult, SyncTrigger, SyncType
from .orchestrator import SyncOrchestrator

logger = structlog.get_logger(__name__)


class PeriodicSyncRunner:
    """
    Runs a full sync every ``interval_ms`` on a background thread.

    The first run happens one interval after :meth:`start`; :meth:`run_once`
    runs immediately on the calling thread.
    """

    def __init__(self, orchestrator: SyncOrchestrator, interval_ms: int | None = None):
        self.orchestrator = orchestrator
        self.interval_ms = interval_ms if interval_ms is not None else orchestrator.settings.sync.interval_ms
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="catalog-sync-periodic", daemon=True)
        self._thread.start()
        logger.info("periodic_sync_started", interval_ms=self.interval_ms)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("periodic_sync_stopped")

    def run_once(self) -> tuple[SyncResult, SyncResult] | None:
        settings = self.orchestrator.settings
        if not settings.enabled or not settings.sync.enabled:
            logger.debug("periodic_sync_skipped_disabled")
            return None
        return self.orchestrator.sync_all(SyncTrigger.SCHEDULED)

    def _loop(self) -> None:
        interval = max(0.001, self.interval_ms / 1000.0)
        while not self._stop.wait(interval):
            try:
                self.run_once()
            except Exception as e:
                logger.error("periodic_sync_failed", error=str(e), exc_info=True)


@dataclass
class SyncEvent:
    """Request to reconcile one resource class, optionally for a subset of ids."""

    sync_type: SyncType
    resource_ids: set[int] = field(default_factory=set)


class SyncEventDispatcher:
    """Dispatches sync events to the orchestrator on a worker pool."""

    def __init__(self, orchestrator: SyncOrchestrator, workers: int = 1):
        self.orchestrator = orchestrator
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="catalog-sync-event")

    def publish(self, event: SyncEvent) -> Future:
        """Submit an event; the returned future resolves to the pass result."""
        logger.debug("sync_event_published", sync_type=event.sync_type.value, ids=sorted(event.resource_ids))
        return self._executor.submit(self.handle, event)

    def handle(self, event: SyncEvent) -> SyncResult:
        if event.sync_type is SyncType.DATABASE:
            return self.orchestrator.sync_databases(event.resource_ids, SyncTrigger.EVENT)
        return self.orchestrator.sync_datasets(event.resource_ids, SyncTrigger.EVENT)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
