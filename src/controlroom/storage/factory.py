"""Storage backend selection from settings."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from controlroom.storage.backends.memory import MemoryStorageBackend
from controlroom.storage.backends.sqlite import SQLiteStorageBackend

if TYPE_CHECKING:
    from controlroom.config import Settings
    from controlroom.storage.base import StorageBackend

logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = ("sqlite", "memory")


async def create_storage_backend(settings: Settings) -> StorageBackend:
    """
    Create and initialize the backend named by ``STORAGE_BACKEND``.

    Raises:
        ValueError: If the backend type is unsupported
    """
    backend_type = settings.STORAGE_BACKEND.lower()

    backend: StorageBackend
    if backend_type == "sqlite":
        backend = SQLiteStorageBackend(db_path=settings.STORAGE_DB_PATH)
    elif backend_type == "memory":
        backend = MemoryStorageBackend()
    else:
        raise ValueError(
            f"Unsupported storage backend: {backend_type}. "
            f"Supported backends: {', '.join(SUPPORTED_BACKENDS)}"
        )

    await backend.initialize()
    logger.debug("Initialized %s storage backend", backend_type)
    return backend
