"""
Database layer — staging store, field-id cache and partition locks.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  async with store.locked("loc:wf") as tx:
      last = await tx.last_run_at("loc:wf")
"""
from database.models import Base, WorkItemRow, FieldIdCacheRow
from database.session import (
    get_engine, get_session, init_db, close_db, configure_database, list_tables, safe_url,
)
from database.locks import LocalPartitionLock, advisory_xact_lock
from database.store_base import BaseStagingStore, StagingTransaction
from database.store import SqlStagingStore
from database.store_memory import InMemoryStagingStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "WorkItemRow", "FieldIdCacheRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "configure_database",
    "list_tables", "safe_url",
    # Locks
    "LocalPartitionLock", "advisory_xact_lock",
    # Store interface
    "BaseStagingStore", "StagingTransaction",
    # Store backends
    "SqlStagingStore", "InMemoryStagingStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
