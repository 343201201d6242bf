"""Memory package."""

from script_orchestrator.memory.catalog_store import CatalogStore, InMemoryCatalogStore, PersistenceError

__all__ = [
    "CatalogStore",
    "InMemoryCatalogStore",
    "PersistenceError",
]
