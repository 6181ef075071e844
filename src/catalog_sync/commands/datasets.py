"""Dataset registry commands."""

from typing import Optional

import httpx
import typer

from ..client import get_client
from ..config import get_settings
from ..context import get_orchestrator, get_registry, get_store
from ..errors import CatalogError
from ..models import DesiredDataset, QueryDefinition, SchemaElement
from ..output import print_table, print_json, print_success, print_error, print_warning
from ..main import state


app = typer.Typer(
    name="datasets",
    help="Manage registered datasets",
    no_args_is_help=True,
)


def _row(record: DesiredDataset) -> dict:
    return {
        "ID": record.id,
        "Name": record.name,
        "Kind": record.kind.value,
        "Table": record.table_name,
        "Database": record.local_database_id,
        "Remote ID": record.remote_id,
        "Pending": record.needs_sync(),
        "Synced": record.synced_at.isoformat()[:19] if record.synced_at else "",
    }


def _print_records(records: list[DesiredDataset], title: str, empty_message: str) -> None:
    if state.json_output:
        print_json({
            "datasets": [record.model_dump(mode="json") for record in records],
            "total": len(records),
        })
        return
    if not records:
        print(empty_message)
        return
    print_table(
        [_row(record) for record in records],
        columns=["ID", "Name", "Kind", "Table", "Database", "Remote ID", "Pending", "Synced"],
        title=f"{title} (Total: {len(records)})",
    )


@app.command("register")
def register_dataset(
    sql: str = typer.Option(..., "--sql", "-s", help="SQL that defines the dataset"),
    database_id: Optional[int] = typer.Option(None, "--database-id", "-d", help="Local database the SQL runs on"),
    source_dataset_id: Optional[int] = typer.Option(None, "--source-dataset-id", help="Semantic dataset queried"),
    dimensions: list[str] = typer.Option([], "--dimension", help="Dimension column (repeatable)"),
    time_dimension: Optional[str] = typer.Option(None, "--time-dimension", help="Partition time column"),
    metrics: list[str] = typer.Option([], "--metric", help="Metric column (repeatable)"),
    filter_count: int = typer.Option(0, "--filters", help="Number of filters applied"),
    created_by: Optional[str] = typer.Option(None, "--user", help="Registering user"),
    sync_now: bool = typer.Option(False, "--sync", help="Push to the remote catalog right away"),
) -> None:
    """Register a SQL query as a dataset.

    Registering the same SQL twice returns the existing record.
    """
    elements = [SchemaElement(name=name) for name in dimensions]
    if time_dimension:
        elements.append(SchemaElement(name=time_dimension, is_partition_time=True))
    definition = QueryDefinition(
        sql=sql,
        local_database_id=database_id,
        source_dataset_id=source_dataset_id,
        dimensions=elements,
        metrics=[SchemaElement(name=name) for name in metrics],
        filter_count=filter_count,
        created_by=created_by,
    )

    remote = None
    if sync_now:
        orchestrator = get_orchestrator()
        try:
            record = orchestrator.registry.register(definition)
            if record is not None:
                remote = orchestrator.register_and_sync(definition)
                record = orchestrator.registry_store.get_by_id(record.id)
        finally:
            orchestrator.close()
            orchestrator.client.close()
    else:
        record = get_registry().register(definition)

    if record is None:
        print_error("Nothing registered: SQL is blank")
        raise typer.Exit(1)

    if state.json_output:
        data = {"dataset": record.model_dump(mode="json")}
        if sync_now:
            data["remote"] = remote.model_dump(mode="json") if remote else None
        print_json(data)
        return

    print_success(f"Dataset registered (ID: {record.id}, kind: {record.kind.value})")
    print_success(f"Name: {record.name}")
    if sync_now:
        if remote is not None:
            print_success(f"Synced to remote dataset {remote.remote_id}")
        else:
            print_warning("Dataset is not synced yet; a background retry or the next sync will pick it up")


@app.command("list")
def list_datasets() -> None:
    """List all registered datasets."""
    records = get_store().list_for_sync()
    _print_records(records, "Datasets", "No datasets registered")


@app.command("pending")
def list_pending() -> None:
    """List datasets waiting to be synced."""
    records = get_store().list_pending()
    _print_records(records, "Pending datasets", "No datasets pending")


@app.command("delete")
def delete_dataset(
    record_id: int = typer.Argument(..., help="Registry record ID"),
    remote: bool = typer.Option(False, "--remote", help="Also delete the remote dataset"),
) -> None:
    """Delete a registered dataset."""
    store = get_store()
    record = store.get_by_id(record_id)
    if record is None:
        print_error(f"Dataset {record_id} not found")
        raise typer.Exit(1)

    if remote and record.remote_id is not None:
        settings = get_settings()
        problems = settings.validate_settings()
        if problems:
            print_error(problems[0])
            raise typer.Exit(1)
        with get_client(settings) as client:
            try:
                client.delete_dataset(record.remote_id)
            except (CatalogError, httpx.HTTPError) as e:
                print_error(str(e))
                raise typer.Exit(1)

    store.delete(record_id)
    if state.json_output:
        print_json({"success": True, "id": record_id, "remote_deleted": bool(remote and record.remote_id)})
    else:
        print_success(f"Dataset {record_id} deleted")
