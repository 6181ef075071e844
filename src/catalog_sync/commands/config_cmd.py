"""Configuration management commands."""

import typer
from pydantic import ValidationError

from .. import config
from ..config import get_settings, mask_secret, set_config_value, SECRET_KEYS
from ..output import print_dict, print_success, print_error, print_json, print_warning
from ..main import state


app = typer.Typer(help="Configuration management", no_args_is_help=True)


@app.command("set")
def set_config(
    key: str = typer.Argument(..., help="Configuration key (base_url, api_key, sync.max_retries, ...)"),
    value: str = typer.Argument(..., help="Configuration value"),
) -> None:
    """Set a configuration value.

    Common keys:
    - base_url: Remote catalog URL
    - auth_enabled, auth_strategy, api_key, username, password
    - sync.enabled, sync.interval_ms, sync.retry_interval_ms, sync.max_retries, sync.rebuild

    Configuration is saved to ~/.catalog-sync/config.yaml
    """
    try:
        path = set_config_value(key, value)
    except (ValueError, ValidationError) as e:
        print_error(str(e))
        raise typer.Exit(1)

    if state.json_output:
        print_json({"success": True, "key": key, "file": str(path)})
        return

    display_value = value
    if key.lower().replace("-", "_") in SECRET_KEYS:
        display_value = mask_secret(value) if value else ""
    print_success(f"Configuration updated: {key} = {display_value}")
    print_success(f"Saved to: {path}")


@app.command("show")
def show_config() -> None:
    """Show current configuration.

    Displays configuration from all sources:
    1. Environment variables (highest priority)
    2. .env file
    3. Config file (~/.catalog-sync/config.yaml)
    4. Defaults

    Secrets are masked.
    """
    settings = get_settings()
    data = settings.to_display_dict()

    if state.json_output:
        print_json(data)
        return

    sync_settings = data.pop("sync", {})
    print_dict(data, title="Current Configuration")
    print_dict(sync_settings, title="Sync")

    for problem in settings.validate_settings():
        print_warning(problem)

    if config.CONFIG_FILE.exists():
        print_success(f"\nConfig file: {config.CONFIG_FILE}")
    else:
        print_warning(f"Config file not found: {config.CONFIG_FILE}")
