"""Storage backend implementations."""

from controlroom.storage.backends.memory import MemoryStorageBackend
from controlroom.storage.backends.sqlite import SQLiteStorageBackend

__all__ = ["MemoryStorageBackend", "SQLiteStorageBackend"]
