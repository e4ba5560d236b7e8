"""
Store Factory — Create the right store backends from configuration.

Configuration in settings.yaml:
    database:
      # Where the dedup ledger, patient records and send history live
      #   "memory"   — In-memory dicts (development, testing)
      #   "file"     — JSON files on disk (production, single instance)
      store_backend: "file"

      # For file backend: directory path
      store_file_dir: "./data"

      # How long processed patients, confirmed tags and history are kept
      retention_days: 7

Usage:
    from database.store_factory import create_stores
    stores = create_stores(settings.database)
    coordinator = DispatchCoordinator(stores=stores, ...)

No module-level singleton: the caller owns the instances and passes them on.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

import structlog

from database.store_base import BaseLifecycleStore, BaseReservationStore, BaseSendHistory

logger = structlog.get_logger()


@dataclass
class Stores:
    """The three durable collections the dispatch coordinator works against."""
    reservations: BaseReservationStore
    lifecycle: BaseLifecycleStore
    history: BaseSendHistory


def create_stores(config: Union[dict[str, Any], Any] = None) -> Stores:
    """
    Factory: create the store backends.

    Args:
        config: DatabaseConfig or dict with keys:
            store_backend: "memory" | "file"  (default: "memory")
            store_file_dir: str (for file backend, default: "./data")
    """
    if config is None:
        config = {}
    elif not isinstance(config, dict):
        config = vars(config)

    backend = config.get("store_backend", "memory")

    if backend == "file":
        from database.store_file import FileLifecycleStore, FileReservationStore, FileSendHistory
        data_dir = config.get("store_file_dir", "./data")
        stores = Stores(
            reservations=FileReservationStore(data_dir=data_dir),
            lifecycle=FileLifecycleStore(data_dir=data_dir),
            history=FileSendHistory(data_dir=data_dir),
        )
        logger.info("stores_created", backend="file", data_dir=data_dir)

    else:  # "memory" or default
        if backend != "memory":
            logger.warning("unknown_store_backend", backend=backend, fallback="memory")
        from database.store_memory import (
            InMemoryLifecycleStore, InMemoryReservationStore, InMemorySendHistory,
        )
        stores = Stores(
            reservations=InMemoryReservationStore(),
            lifecycle=InMemoryLifecycleStore(),
            history=InMemorySendHistory(),
        )
        logger.info("stores_created", backend="memory")

    return stores
