"""Background retry scheduling for failed reconciliation passes."""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

import structlog

from .. import metrics
from ..config import SyncSettings
from ..models import SyncResult, SyncType

logger = structlog.get_logger(__name__)

RETRY_WORKERS = 2


class RetryScheduler:
    """
    Re-runs failed passes off the caller's path.

    Each retry waits ``retry_interval_ms`` and runs the pass again, up to
    ``max_retries`` attempts, stopping at the first success. Retries run on
    a small fixed pool; the caller only ever sees the first attempt.
    """

    def __init__(self, sync_settings: SyncSettings, workers: int = RETRY_WORKERS):
        self.sync_settings = sync_settings
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="catalog-sync-retry")
        self._stopped = threading.Event()
        self._pending = 0
        self._idle = threading.Condition()

    @property
    def pending(self) -> int:
        with self._idle:
            return self._pending

    def schedule(self, sync_type: SyncType, action: Callable[[], SyncResult], attempt: int = 1) -> bool:
        """
        Schedule retry ``attempt`` of a failed pass.

        Returns:
            True if the attempt was scheduled, False when retries are
            disabled, exhausted or the scheduler is shut down.
        """
        if self._stopped.is_set():
            return False
        if not self.sync_settings.enabled or attempt > self.sync_settings.max_retries:
            return False

        delay_ms = max(0, self.sync_settings.retry_interval_ms)
        with self._idle:
            self._pending += 1
        try:
            self._executor.submit(self._run, sync_type, action, attempt, delay_ms)
        except RuntimeError:
            self._done()
            return False

        metrics.RETRIES_SCHEDULED.labels(sync_type=sync_type.value).inc()
        logger.warning("sync_retry_scheduled", sync_type=sync_type.value, attempt=attempt, delay_ms=delay_ms)
        return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no retry is pending. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Stop scheduling and cancel delayed attempts."""
        self._stopped.set()
        self._executor.shutdown(wait=wait, cancel_futures=True)
        if wait:
            with self._idle:
                self._pending = 0
                self._idle.notify_all()

    def _run(self, sync_type: SyncType, action: Callable[[], SyncResult], attempt: int, delay_ms: int) -> None:
        try:
            if self._stopped.wait(delay_ms / 1000.0):
                return
            result = action()
            if result.success:
                logger.info("sync_retry_succeeded", sync_type=sync_type.value, attempt=attempt)
            else:
                logger.warning(
                    "sync_retry_failed",
                    sync_type=sync_type.value,
                    attempt=attempt,
                    message=result.message,
                )
                self.schedule(sync_type, action, attempt + 1)
        except Exception as e:
            logger.error("sync_retry_crashed", sync_type=sync_type.value, attempt=attempt, error=str(e))
        finally:
            self._done()

    def _done(self) -> None:
        with self._idle:
            self._pending = max(0, self._pending - 1)
            self._idle.notify_all()
