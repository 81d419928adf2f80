"""
Abstract Staging Store — Interface for all storage backends.

Implementations:
  - SqlStagingStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryStagingStore (dict-based, single-process, no persistence)

The store holds two record sets: staged work items waiting for their
run_at, and the field-id cache keyed by partition key.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Optional

from models.schemas import FieldIdCacheEntry, WorkItem


class StagingTransaction(ABC):
    """Reads and writes made while a partition lock is held."""

    @abstractmethod
    async def last_run_at(self, partition_key: str) -> Optional[datetime]:
        """Latest run_at staged for the key, or None."""
        ...

    @abstractmethod
    async def insert(self, item: WorkItem) -> WorkItem:
        """Insert and return the item with its assigned id."""
        ...


class BaseStagingStore(ABC):
    """Interface that all staging store backends must implement."""

    # ── Scheduling ────────────────────────────────────────────

    @abstractmethod
    def locked(self, partition_key: str) -> AbstractAsyncContextManager[StagingTransaction]:
        """
        One atomic unit of work holding the partition lock. Commits on clean
        exit, rolls back on exception, releases the lock after either.
        """
        ...

    # ── Promotion ─────────────────────────────────────────────

    @abstractmethod
    async def due_items(self, now: datetime, limit: int = 50) -> list[WorkItem]:
        """Items with run_at <= now, run_at ascending (ties by id)."""
        ...

    @abstractmethod
    async def delete_item(self, item_id: int) -> bool:
        ...

    # ── Worker cleanup / discovery ────────────────────────────

    @abstractmethod
    async def delete_for_entity(
        self, entity_id: str, partition_key: str, up_to: Optional[datetime] = None,
    ) -> int:
        """
        Drop staged rows for an entity in a partition, optionally only those
        due at or before up_to. Returns rows removed.
        """
        ...

    @abstractmethod
    async def recent_partition_keys(self, limit: int = 500) -> list[str]:
        ...

    @abstractmethod
    async def list_partition(self, partition_key: str) -> list[WorkItem]:
        ...

    @abstractmethod
    async def count_items(self) -> int:
        ...

    # ── Field-id cache ────────────────────────────────────────

    @abstractmethod
    async def get_field_id(self, partition_key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def put_field_id(self, entry: FieldIdCacheEntry) -> str:
        """Insert if absent; returns whichever field id is stored."""
        ...

    @abstractmethod
    async def list_field_ids(self, limit: int = 50) -> list[FieldIdCacheEntry]:
        ...

    # ── Health ────────────────────────────────────────────────

    async def ping(self) -> bool:
        return True
