"""Local registry of desired datasets and database connections."""

from .duckdb_store import DuckDBRegistryStore
from .service import DatasetRegistry
from .store import DatabaseCatalog, InMemoryRegistryStore, RegistryStore

__all__ = [
    "DatabaseCatalog",
    "DatasetRegistry",
    "DuckDBRegistryStore",
    "InMemoryRegistryStore",
    "RegistryStore",
]
