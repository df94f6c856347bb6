"""
Store Factory — Create the right message store backend from configuration.

Configuration in settings.yaml:
    database:
      # Message store backend
      #   "memory"   — In-memory dicts (development, testing)
      #   "file"     — JSON file on disk (small deployments, demos)
      store_backend: "memory"

      # For file backend: directory path
      store_file_dir: "./data"

Usage:
    from database.store_factory import create_store, get_store
    store = create_store(config)     # Create from config dict
    store = get_store()              # Get singleton instance
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseMessageStore

logger = structlog.get_logger()

_instance: Optional[BaseMessageStore] = None


def create_store(config: dict = None) -> BaseMessageStore:
    """
    Factory: create the appropriate message store backend.

    Args:
        config: dict with keys:
            store_backend: "memory" | "file"  (default: "memory")
            store_file_dir: str (for file backend, default: "./data")
    """
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    backend = config.get("store_backend", "memory")

    if backend == "file":
        from database.store_file import FileMessageStore
        data_dir = config.get("store_file_dir", "./data")
        _instance = FileMessageStore(data_dir=data_dir)
        logger.info("store_created", backend="file", data_dir=data_dir)

    else:  # "memory" or default
        from database.store_memory import InMemoryMessageStore
        _instance = InMemoryMessageStore()
        logger.info("store_created", backend="memory")

    return _instance


def get_store() -> BaseMessageStore:
    """Return the singleton store instance, creating a memory store if none exists."""
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
