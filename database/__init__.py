"""
Database layer — durable state for the dedup engine.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for single-instance deployments)

Quick start:
  from database import create_stores, make_tag
  stores = create_stores({"store_backend": "memory"})
  stores.reservations.try_reserve(make_tag("p1", MessageType.END_OF_DAY, day), "p1", now)
"""
from database.store_base import (
    BaseLifecycleStore, BaseReservationStore, BaseSendHistory, PersistenceError,
)
from database.store_memory import (
    InMemoryLifecycleStore, InMemoryReservationStore, InMemorySendHistory,
)
from database.store_file import (
    FileLifecycleStore, FileReservationStore, FileSendHistory, backup_data_dir,
)
from database.store_factory import Stores, create_stores
from database.tags import make_tag

__all__ = [
    # Store interfaces
    "BaseReservationStore", "BaseLifecycleStore", "BaseSendHistory", "PersistenceError",
    # Store backends
    "InMemoryReservationStore", "InMemoryLifecycleStore", "InMemorySendHistory",
    "FileReservationStore", "FileLifecycleStore", "FileSendHistory", "backup_data_dir",
    # Factory
    "Stores", "create_stores",
    # Tags
    "make_tag",
]
