"""Local database connection commands."""

from typing import Optional

import typer

from ..connection import build_connection_uri, mask_uri, remote_database_name
from ..config import get_settings
from ..context import get_store
from ..models import LocalDatabase
from ..output import print_table, print_json, print_success
from ..main import state


app = typer.Typer(
    name="databases",
    help="Manage local database connections",
    no_args_is_help=True,
)


@app.command("add")
def add_database(
    database_id: int = typer.Argument(..., help="Local database ID"),
    name: str = typer.Option(..., "--name", "-n", help="Database name"),
    engine: str = typer.Option(..., "--engine", "-e", help="Engine: postgresql, mysql, clickhouse"),
    url: str = typer.Option(..., "--url", "-u", help="JDBC-style or plain connection URL"),
    database: Optional[str] = typer.Option(None, "--database", help="Database name on the server"),
    schema: Optional[str] = typer.Option(None, "--schema", help="Default schema"),
    username: Optional[str] = typer.Option(None, "--username", help="Connection user"),
    password: Optional[str] = typer.Option(None, "--password", help="Connection password"),
) -> None:
    """Add or replace a local database connection."""
    store = get_store()
    record = store.save_database(LocalDatabase(
        id=database_id,
        name=name,
        engine=engine,
        url=url,
        database=database,
        schema_name=schema,
        username=username,
        password=password,
    ))

    if state.json_output:
        print_json(record.model_dump(mode="json", exclude={"password"}))
    else:
        print_success(f"Database '{record.name}' saved (ID: {record.id})")


@app.command("list")
def list_databases() -> None:
    """List local database connections and their remote names."""
    settings = get_settings()
    databases = get_store(settings).list_databases()

    rows = []
    for database in databases:
        uri = build_connection_uri(database)
        rows.append({
            "ID": database.id,
            "Name": database.name,
            "Engine": database.engine,
            "Remote Name": remote_database_name(database, settings.database_name_prefix),
            "URI": mask_uri(uri) if uri else "(unsupported)",
        })

    if state.json_output:
        print_json({"databases": rows, "total": len(rows)})
        return
    if not rows:
        print("No databases found")
        return
    print_table(rows, columns=["ID", "Name", "Engine", "Remote Name", "URI"], title=f"Databases (Total: {len(rows)})")
