"""Sync commands: run reconciliation passes against the remote catalog."""

import time
from typing import Optional

import typer

from ..context import get_orchestrator
from ..models import SyncResult
from ..output import print_json, print_sync_result, print_info
from ..sync import PeriodicSyncRunner
from ..main import state


app = typer.Typer(
    name="sync",
    help="Reconcile local state with the remote catalog",
    no_args_is_help=True,
)


def _report(results: list[tuple[str, SyncResult]]) -> None:
    if state.json_output:
        print_json({key: result.model_dump(mode="json") for key, result in results})
    else:
        for key, result in results:
            print_sync_result(result, key.capitalize())
    if not all(result.success for _, result in results):
        raise typer.Exit(1)


@app.command("databases")
def sync_databases(
    ids: Optional[list[int]] = typer.Option(None, "--id", help="Local database ID (repeatable)"),
) -> None:
    """Mirror local database connections to the remote catalog."""
    orchestrator = get_orchestrator()
    try:
        result = orchestrator.sync_databases(ids)
    finally:
        orchestrator.close()
        orchestrator.client.close()
    _report([("databases", result)])


@app.command("datasets")
def sync_datasets(
    ids: Optional[list[int]] = typer.Option(None, "--id", help="Registry record ID (repeatable)"),
) -> None:
    """Mirror registered datasets to the remote catalog."""
    orchestrator = get_orchestrator()
    try:
        result = orchestrator.sync_datasets(ids)
    finally:
        orchestrator.close()
        orchestrator.client.close()
    _report([("datasets", result)])


@app.command("all")
def sync_all() -> None:
    """Run the database pass, then the dataset pass."""
    orchestrator = get_orchestrator()
    try:
        database_result, dataset_result = orchestrator.sync_all()
    finally:
        orchestrator.close()
        orchestrator.client.close()
    _report([("databases", database_result), ("datasets", dataset_result)])


@app.command("watch")
def watch(
    interval_ms: Optional[int] = typer.Option(None, "--interval-ms", help="Override sync.interval_ms"),
) -> None:
    """Run a full sync periodically until interrupted."""
    orchestrator = get_orchestrator()
    runner = PeriodicSyncRunner(orchestrator, interval_ms)
    print_info(f"Syncing every {runner.interval_ms} ms, press Ctrl+C to stop")
    runner.start()
    try:
        while runner.running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        runner.stop(timeout=5)
        orchestrator.close()
        orchestrator.client.close()
