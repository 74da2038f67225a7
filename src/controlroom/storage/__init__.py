"""Persistence for runbook executions, script runs and definitions."""

from controlroom.storage.base import StorageBackend, StorageCapabilities
from controlroom.storage.factory import create_storage_backend

__all__ = [
    "StorageBackend",
    "StorageCapabilities",
    "create_storage_backend",
]
