"""Configuration using pydantic-settings."""

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)


CONFIG_DIR = Path.home() / ".catalog-sync"
CONFIG_FILE = CONFIG_DIR / "config.yaml"

SECRET_KEYS = ("api_key", "password")


class AuthStrategy(str, Enum):
    """Order in which the two authentication strategies are tried."""

    TOKEN_FIRST = "TOKEN_FIRST"
    KEY_FIRST = "KEY_FIRST"


class SyncSettings(BaseModel):
    """Reconciliation and retry settings."""

    enabled: bool = True
    interval_ms: int = 60 * 60 * 1000
    retry_interval_ms: int = 60 * 1000
    max_retries: int = 3
    rebuild: bool = False


class Settings(BaseSettings):
    """
    Settings for the catalog sync engine.

    All settings can be configured via:
    1. Init arguments (highest priority)
    2. Environment variables (e.g., CATALOG_SYNC_BASE_URL=http://bi:8088)
    3. .env file in the working directory
    4. YAML config file (~/.catalog-sync/config.yaml)

    Nested sync settings use a double underscore, e.g.
    CATALOG_SYNC_SYNC__MAX_RETRIES=5.
    """

    model_config = SettingsConfigDict(
        env_prefix="CATALOG_SYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Feature switch
    enabled: bool = True

    # Remote catalog
    base_url: str | None = None
    timeout_seconds: int = 30
    page_size: int = 500

    # Authentication
    auth_enabled: bool = False
    auth_strategy: AuthStrategy = AuthStrategy.TOKEN_FIRST
    api_key: str | None = None
    username: str | None = None
    password: str | None = None
    provider: str = "db"

    # Naming of remote database connections
    database_name_prefix: str = "catalog_sync_db"

    # Local registry
    registry_db_path: Path = Path("./data/registry.duckdb")

    debug: bool = False

    sync: SyncSettings = SyncSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # CONFIG_FILE is resolved at call time so tests can point it elsewhere
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=CONFIG_FILE),
            file_secret_settings,
        )

    @property
    def normalized_base_url(self) -> str:
        """Base URL without a trailing slash, empty when unset."""
        if not self.base_url or not self.base_url.strip():
            return ""
        return self.base_url.strip().rstrip("/")

    def validate_settings(self) -> list[str]:
        """Validate configuration and return list of problems."""
        errors = []
        if not self.normalized_base_url:
            errors.append("Base URL not configured. Use: catalog-sync config set base_url <url>")
        if self.auth_enabled and not self.api_key and not (self.username and self.password):
            errors.append(
                "Authentication enabled but neither api_key nor username/password is set"
            )
        if self.sync.max_retries < 0:
            errors.append("sync.max_retries must not be negative")
        return errors

    def to_display_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display, with secrets masked."""
        data = self.model_dump(mode="json")
        for key in SECRET_KEYS:
            if data.get(key):
                data[key] = mask_secret(data[key])
        return data


def mask_secret(value: str) -> str:
    """Mask a secret for display."""
    if len(value) <= 8:
        return "*" * len(value)
    return value[:4] + "*" * (len(value) - 8) + value[-4:]


def get_settings(**overrides: Any) -> Settings:
    """Load settings from all sources."""
    return Settings(**overrides)


def set_config_value(key: str, value: str) -> Path:
    """Persist a single setting to the YAML config file.

    Dotted keys address nested sync settings, e.g. ``sync.max_retries``.
    """
    key_normalized = key.lower().replace("-", "_")
    parts = key_normalized.split(".")

    if len(parts) == 1 and parts[0] not in Settings.model_fields:
        raise ValueError(f"Unknown config key: {key}")
    if len(parts) == 2 and (parts[0] != "sync" or parts[1] not in SyncSettings.model_fields):
        raise ValueError(f"Unknown config key: {key}")
    if len(parts) > 2:
        raise ValueError(f"Unknown config key: {key}")

    data: dict[str, Any] = {}
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE) as f:
            data = yaml.safe_load(f) or {}

    if len(parts) == 1:
        data[parts[0]] = value
    else:
        data.setdefault("sync", {})[parts[1]] = value

    Settings.model_validate(data)

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    with open(CONFIG_FILE, "w") as f:
        yaml.dump(data, f, default_flow_style=False)
    return CONFIG_FILE
