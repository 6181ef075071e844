"""Main CLI entry point for catalog-sync."""

import logging
import sys
from typing import Optional

import structlog
import typer

from . import __version__
from .config import get_settings


def setup_logging(debug: bool = False, level: int | None = None) -> None:
    """Configure structured logging to stderr."""
    if level is None:
        level = logging.DEBUG if debug else logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


# Create main app
app = typer.Typer(
    name="catalog-sync",
    help="Mirror registered SQL datasets into a remote BI catalog",
    no_args_is_help=True,
)

# Global state
class GlobalState:
    json_output: bool = False
    verbose: bool = False

state = GlobalState()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        print(f"catalog-sync version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    json_output: bool = typer.Option(
        False, "--json", "-j",
        help="Output as JSON instead of tables"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Show debug logs on stderr"
    ),
    version: Optional[bool] = typer.Option(
        None, "--version", "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
) -> None:
    """catalog-sync - reconcile local dataset definitions with a remote BI catalog."""
    state.json_output = json_output
    state.verbose = verbose
    debug = verbose or get_settings().debug
    setup_logging(debug=debug, level=logging.DEBUG if debug else logging.WARNING)


# Import and register command groups
from .commands import config_cmd, databases, datasets, sync

app.add_typer(config_cmd.app, name="config")
app.add_typer(databases.app, name="databases")
app.add_typer(datasets.app, name="datasets")
app.add_typer(sync.app, name="sync")


if __name__ == "__main__":
    app()
