"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  message = await store.get_message("...")

The SQL backend is imported lazily by the factory so the memory and file
backends work without a database driver installed.
"""
from database.store_base import (
    BaseStore, BaseCredentialStore, BaseMessageStore, BaseChannelStore,
    StoreUnavailableError,
)
from database.store_memory import InMemoryStore
from database.store_file import FileStore
from database.store_factory import create_store, open_store

__all__ = [
    # Store interfaces
    "BaseStore", "BaseCredentialStore", "BaseMessageStore", "BaseChannelStore",
    "StoreUnavailableError",
    # Store backends
    "InMemoryStore", "FileStore",
    # Factory
    "create_store", "open_store",
]
