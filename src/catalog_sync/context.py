"""Wiring of settings, registry store, client and orchestrator."""

from .client import get_client
from .config import Settings, get_settings
from .registry import DatasetRegistry, DuckDBRegistryStore
from .sync import SyncOrchestrator


def get_store(settings: Settings | None = None) -> DuckDBRegistryStore:
    """Open the registry store, creating its schema on first use."""
    settings = settings or get_settings()
    store = DuckDBRegistryStore(settings.registry_db_path)
    store.initialize()
    return store


def get_registry(settings: Settings | None = None) -> DatasetRegistry:
    store = get_store(settings)
    return DatasetRegistry(store, store)


def get_orchestrator(settings: Settings | None = None) -> SyncOrchestrator:
    """Build an orchestrator over the DuckDB registry and the configured catalog."""
    settings = settings or get_settings()
    store = get_store(settings)
    return SyncOrchestrator(
        settings=settings,
        client=get_client(settings),
        registry_store=store,
        database_catalog=store,
    )
