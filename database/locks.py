"""
Partition locks — serialize run_at computation per partition key.

Two layers, used together by the SQL store:
  - LocalPartitionLock:  in-process, re-entrant per asyncio task. Keeps
                         concurrent requests in one process from racing and
                         is the only lock the in-memory store needs.
  - advisory_xact_lock:  PostgreSQL pg_advisory_xact_lock, scoped to the
                         current transaction and released on commit/rollback.
                         Serializes writers across processes.

The lock guards the read-max-run_at / insert critical section only. Never
hold it across a broker or downstream call.
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from models.schemas import lock_id

logger = structlog.get_logger()


class _KeyLock:
    __slots__ = ("lock", "owner", "depth", "waiters")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.owner: Optional[asyncio.Task] = None
        self.depth = 0
        self.waiters = 0


class LocalPartitionLock:
    """Named, re-entrant mutex keyed by string; entries vanish when unused."""

    def __init__(self):
        self._locks: dict[str, _KeyLock] = {}

    def locked(self, key: str) -> bool:
        entry = self._locks.get(key)
        return bool(entry and entry.lock.locked())

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        task = asyncio.current_task()
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()

        if entry.owner is task and task is not None:
            entry.depth += 1
            try:
                yield
            finally:
                entry.depth -= 1
            return

        entry.waiters += 1
        try:
            await entry.lock.acquire()
        finally:
            entry.waiters -= 1
        entry.owner = task
        entry.depth = 1
        try:
            yield
        finally:
            entry.owner = None
            entry.depth = 0
            entry.lock.release()
            if entry.waiters == 0 and self._locks.get(key) is entry:
                del self._locks[key]


async def advisory_xact_lock(session: AsyncSession, key: str) -> None:
    """Take a transaction-scoped advisory lock; no-op off PostgreSQL."""
    if session.bind.dialect.name != "postgresql":
        return
    await session.execute(text("SELECT pg_advisory_xact_lock(:lock_id)"), {"lock_id": lock_id(key)})
    logger.debug("advisory_lock_acquired", partition_key=key)
