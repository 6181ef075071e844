"""Tests for scheduled and event-driven triggers."""

import threading

from catalog_sync.config import SyncSettings
from catalog_sync.models import SyncResult, SyncTrigger, SyncType
from catalog_sync.sync import PeriodicSyncRunner, SyncEvent, SyncEventDispatcher

from conftest import make_settings


class StubOrchestrator:
    """Orchestrator stand-in recording entry-point calls."""

    def __init__(self, settings=None):
        self.settings = settings or make_settings()
        self.calls = []
        self.ran = threading.Event()

    def sync_all(self, trigger):
        self.calls.append(("all", None, trigger))
        self.ran.set()
        ok = SyncResult.ok("done", 0)
        return ok, ok

    def sync_databases(self, ids=None, trigger=SyncTrigger.MANUAL):
        self.calls.append(("databases", ids, trigger))
        return SyncResult.ok("Database sync completed", 0)

    def sync_datasets(self, ids=None, trigger=SyncTrigger.MANUAL):
        self.calls.append(("datasets", ids, trigger))
        return SyncResult.ok("Dataset sync completed", 0)


class TestPeriodicSyncRunner:
    """Tests for PeriodicSyncRunner."""

    def test_run_once(self) -> None:
        orchestrator = StubOrchestrator()
        results = PeriodicSyncRunner(orchestrator).run_once()
        assert results is not None
        assert orchestrator.calls == [("all", None, SyncTrigger.SCHEDULED)]

    def test_run_once_disabled(self) -> None:
        """A disabled engine is not polled."""
        orchestrator = StubOrchestrator(make_settings(sync=SyncSettings(enabled=False)))
        assert PeriodicSyncRunner(orchestrator).run_once() is None
        assert orchestrator.calls == []

    def test_interval_from_settings(self) -> None:
        orchestrator = StubOrchestrator(make_settings(sync=SyncSettings(interval_ms=1234)))
        assert PeriodicSyncRunner(orchestrator).interval_ms == 1234
        assert PeriodicSyncRunner(orchestrator, interval_ms=10).interval_ms == 10

    def test_background_loop(self) -> None:
        """The loop runs a scheduled sync every interval until stopped."""
        orchestrator = StubOrchestrator()
        runner = PeriodicSyncRunner(orchestrator, interval_ms=10)
        runner.start()
        try:
            assert orchestrator.ran.wait(5)
            assert runner.running
        finally:
            runner.stop(timeout=5)
        assert not runner.running
        assert all(call[2] is SyncTrigger.SCHEDULED for call in orchestrator.calls)


class TestSyncEventDispatcher:
    """Tests for SyncEventDispatcher."""

    def test_dispatch_by_type(self) -> None:
        """Events reach the matching entry point with the event trigger."""
        orchestrator = StubOrchestrator()
        dispatcher = SyncEventDispatcher(orchestrator)
        try:
            database_result = dispatcher.publish(SyncEvent(SyncType.DATABASE, {3})).result(5)
            dataset_result = dispatcher.publish(SyncEvent(SyncType.DATASET)).result(5)
        finally:
            dispatcher.shutdown()
        assert database_result.message == "Database sync completed"
        assert dataset_result.message == "Dataset sync completed"
        assert orchestrator.calls == [
            ("databases", {3}, SyncTrigger.EVENT),
            ("datasets", set(), SyncTrigger.EVENT),
        ]
