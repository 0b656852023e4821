from config import Settings
from storage.db import Database, PostgresStore
from storage.memory import MemoryStore


def open_store(settings: Settings):
    """build the storage handle the settings ask for. caller calls connect()."""
    if settings.storage_backend == "memory":
        return MemoryStore()
    return PostgresStore(Database(settings.database_url, settings.connect_timeout))


__all__ = ["Database", "MemoryStore", "PostgresStore", "open_store"]
