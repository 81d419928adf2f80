"""
InMemoryStagingStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlStagingStore
  - Units of work buffer their inserts and apply them on clean exit
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import itertools
import structlog
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from database.locks import LocalPartitionLock
from database.store_base import BaseStagingStore, StagingTransaction
from models.schemas import FieldIdCacheEntry, WorkItem

logger = structlog.get_logger()


class _MemoryTransaction(StagingTransaction):

    def __init__(self, store: InMemoryStagingStore):
        self._store = store
        self.pending: list[WorkItem] = []

    async def last_run_at(self, partition_key: str) -> Optional[datetime]:
        run_ats = [
            item.run_at for item in itertools.chain(self._store._items.values(), self.pending)
            if item.partition_key == partition_key
        ]
        return max(run_ats) if run_ats else None

    async def insert(self, item: WorkItem) -> WorkItem:
        staged = item.model_copy(update={"id": next(self._store._ids)})
        self.pending.append(staged)
        return staged


class InMemoryStagingStore(BaseStagingStore):
    """In-memory store with the same interface as SqlStagingStore."""

    def __init__(self, lock: LocalPartitionLock = None):
        self.lock = lock or LocalPartitionLock()
        self._items: dict[int, WorkItem] = {}                  # id → item
        self._field_ids: dict[str, FieldIdCacheEntry] = {}     # partition_key → entry
        self._ids = itertools.count(1)
        logger.info("inmemory_staging_store_initialized")

    # ── Scheduling ────────────────────────────────────────

    @asynccontextmanager
    async def locked(self, partition_key: str) -> AsyncIterator[StagingTransaction]:
        async with self.lock.hold(partition_key):
            tx = _MemoryTransaction(self)
            yield tx
            for item in tx.pending:
                self._items[item.id] = item

    # ── Promotion ─────────────────────────────────────────

    async def due_items(self, now: datetime, limit: int = 50) -> list[WorkItem]:
        due = [item for item in self._items.values() if item.run_at <= now]
        due.sort(key=lambda item: (item.run_at, item.id))
        return due[:limit]

    async def delete_item(self, item_id: int) -> bool:
        return self._items.pop(item_id, None) is not None

    # ── Worker cleanup / discovery ────────────────────────

    async def delete_for_entity(
        self, entity_id: str, partition_key: str, up_to: Optional[datetime] = None,
    ) -> int:
        doomed = [
            item_id for item_id, item in self._items.items()
            if item.entity_id == entity_id and item.partition_key == partition_key
            and (up_to is None or item.run_at <= up_to)
        ]
        for item_id in doomed:
            del self._items[item_id]
        return len(doomed)

    async def recent_partition_keys(self, limit: int = 500) -> list[str]:
        latest: dict[str, datetime] = {}
        for item in self._items.values():
            if item.partition_key not in latest or item.created_at > latest[item.partition_key]:
                latest[item.partition_key] = item.created_at
        keys = sorted(latest, key=latest.get, reverse=True)
        return keys[:limit]

    async def list_partition(self, partition_key: str) -> list[WorkItem]:
        items = [item for item in self._items.values() if item.partition_key == partition_key]
        items.sort(key=lambda item: (item.run_at, item.id))
        return items

    async def count_items(self) -> int:
        return len(self._items)

    # ── Field-id cache ────────────────────────────────────

    async def get_field_id(self, partition_key: str) -> Optional[str]:
        entry = self._field_ids.get(partition_key)
        return entry.field_id if entry else None

    async def put_field_id(self, entry: FieldIdCacheEntry) -> str:
        stored = self._field_ids.setdefault(entry.partition_key, entry)
        return stored.field_id

    async def list_field_ids(self, limit: int = 50) -> list[FieldIdCacheEntry]:
        entries = sorted(self._field_ids.values(), key=lambda e: e.cached_at, reverse=True)
        return entries[:limit]
