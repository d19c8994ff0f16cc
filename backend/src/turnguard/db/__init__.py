"""Storage backends."""

from turnguard.config import Settings
from turnguard.db.base import Store, StoreSession
from turnguard.db.memory import MemoryStore
from turnguard.db.postgres import PostgresStore


def create_store(settings: Settings) -> Store:
    """Build the backend selected by settings.storage_backend."""
    if settings.storage_backend == "memory":
        return MemoryStore()
    return PostgresStore(settings)


__all__ = ["Store", "StoreSession", "MemoryStore", "PostgresStore", "create_store"]
