"""
Database layer — Message store backends.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (JSON on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  due = await store.find_due(now)
"""
from database.store_base import BaseMessageStore
from database.store_memory import InMemoryMessageStore
from database.store_file import FileMessageStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # Store interface
    "BaseMessageStore",
    # Store backends
    "InMemoryMessageStore", "FileMessageStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
