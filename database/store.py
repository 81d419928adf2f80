"""
SqlStagingStore — Portable SQL queries for PostgreSQL and SQLite.

Locking:
  - PostgreSQL: pg_advisory_xact_lock inside the unit of work, plus the
    in-process lock so one process does not queue up connections on it.
  - SQLite: the in-process lock alone (single writer process in dev/tests).
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from sqlalchemy import select, delete, func, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from database.locks import LocalPartitionLock, advisory_xact_lock
from database.models import FieldIdCacheRow, WorkItemRow, as_utc
from database.session import get_session
from database.store_base import BaseStagingStore, StagingTransaction
from models.schemas import FieldIdCacheEntry, WorkItem

logger = structlog.get_logger()


class SqlStagingTransaction(StagingTransaction):

    def __init__(self, db: AsyncSession):
        self.db = db

    async def last_run_at(self, partition_key: str) -> Optional[datetime]:
        stmt = select(func.max(WorkItemRow.run_at)).where(
            WorkItemRow.partition_key == partition_key
        )
        result = await self.db.execute(stmt)
        value = result.scalar_one_or_none()
        return as_utc(value) if value is not None else None

    async def insert(self, item: WorkItem) -> WorkItem:
        row = WorkItemRow(
            entity_id=item.entity_id,
            location_id=item.location_id,
            workflow_id=item.workflow_id,
            partition_key=item.partition_key,
            field_id=item.field_id,
            delay_seconds=item.delay_seconds,
            run_at=item.run_at,
            created_at=item.created_at,
        )
        self.db.add(row)
        await self.db.flush()
        return item.model_copy(update={"id": row.id})


class SqlStagingStore(BaseStagingStore):
    """
    Durable staging store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite.
    """

    def __init__(self, lock: LocalPartitionLock = None):
        self.lock = lock or LocalPartitionLock()

    # ── Scheduling ─────────────────────────────────────────

    @asynccontextmanager
    async def locked(self, partition_key: str) -> AsyncIterator[StagingTransaction]:
        # Local lock wraps the session so release happens after commit
        async with self.lock.hold(partition_key):
            async with get_session() as db:
                await advisory_xact_lock(db, partition_key)
                yield SqlStagingTransaction(db)

    # ── Promotion ──────────────────────────────────────────

    async def due_items(self, now: datetime, limit: int = 50) -> list[WorkItem]:
        async with get_session() as db:
            stmt = (
                select(WorkItemRow)
                .where(WorkItemRow.run_at <= now)
                .order_by(WorkItemRow.run_at.asc(), WorkItemRow.id.asc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [WorkItem(**row.to_dict()) for row in result.scalars()]

    async def delete_item(self, item_id: int) -> bool:
        async with get_session() as db:
            result = await db.execute(delete(WorkItemRow).where(WorkItemRow.id == item_id))
            return result.rowcount > 0

    # ── Worker cleanup / discovery ─────────────────────────

    async def delete_for_entity(
        self, entity_id: str, partition_key: str, up_to: Optional[datetime] = None,
    ) -> int:
        conditions = [
            WorkItemRow.entity_id == entity_id,
            WorkItemRow.partition_key == partition_key,
        ]
        if up_to is not None:
            conditions.append(WorkItemRow.run_at <= up_to)
        async with get_session() as db:
            result = await db.execute(delete(WorkItemRow).where(*conditions))
            return result.rowcount or 0

    async def recent_partition_keys(self, limit: int = 500) -> list[str]:
        async with get_session() as db:
            stmt = (
                select(WorkItemRow.partition_key)
                .group_by(WorkItemRow.partition_key)
                .order_by(func.max(WorkItemRow.created_at).desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return list(result.scalars())

    async def list_partition(self, partition_key: str) -> list[WorkItem]:
        async with get_session() as db:
            stmt = (
                select(WorkItemRow)
                .where(WorkItemRow.partition_key == partition_key)
                .order_by(WorkItemRow.run_at.asc(), WorkItemRow.id.asc())
            )
            result = await db.execute(stmt)
            return [WorkItem(**row.to_dict()) for row in result.scalars()]

    async def count_items(self) -> int:
        async with get_session() as db:
            result = await db.execute(select(func.count()).select_from(WorkItemRow))
            return int(result.scalar_one())

    # ── Field-id cache ─────────────────────────────────────

    async def get_field_id(self, partition_key: str) -> Optional[str]:
        async with get_session() as db:
            row = await db.get(FieldIdCacheRow, partition_key)
            return row.field_id if row else None

    async def put_field_id(self, entry: FieldIdCacheEntry) -> str:
        async with get_session() as db:
            dialect = db.bind.dialect.name
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(FieldIdCacheRow).values(
                partition_key=entry.partition_key,
                location_id=entry.location_id,
                field_id=entry.field_id,
                cached_at=entry.cached_at,
            ).on_conflict_do_nothing(index_elements=["partition_key"])
            await db.execute(stmt)
            row = await db.get(FieldIdCacheRow, entry.partition_key, populate_existing=True)
            return row.field_id if row else entry.field_id

    async def list_field_ids(self, limit: int = 50) -> list[FieldIdCacheEntry]:
        async with get_session() as db:
            stmt = select(FieldIdCacheRow).order_by(FieldIdCacheRow.cached_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [FieldIdCacheEntry(**row.to_dict()) for row in result.scalars()]

    # ── Health ─────────────────────────────────────────────

    async def ping(self) -> bool:
        try:
            async with get_session() as db:
                await db.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("staging_store_ping_failed", error=str(e))
            return False
