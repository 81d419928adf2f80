"""
SQLAlchemy ORM models — staging queue and field-id cache.

Supports: PostgreSQL (production, advisory locks), SQLite (dev, tests).

Key design decisions:
  - Auto-increment integer id on the staging table; ties on run_at are
    broken by id so promotion order matches insertion order.
  - The raw partition key string is stored and indexed. Only the lock
    hashes it (see models.schemas.lock_id).
  - Timestamps are timezone-aware UTC.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import String, Integer, DateTime, Index
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ──────────────────────────────────────────────────────────────
#  Staging queue
# ──────────────────────────────────────────────────────────────

class WorkItemRow(Base):
    __tablename__ = "sequential_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    location_id: Mapped[str] = mapped_column(String(128), nullable=False)
    workflow_id: Mapped[str] = mapped_column(String(128), nullable=False, default="noworkflow")
    partition_key: Mapped[str] = mapped_column(String(300), nullable=False)
    field_id: Mapped[str] = mapped_column(String(128), nullable=False)
    delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_sequential_queue_partition_run_at", "partition_key", "run_at"),
        Index("ix_sequential_queue_run_at", "run_at"),
        Index("ix_sequential_queue_entity", "entity_id", "partition_key"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "entity_id": self.entity_id,
            "location_id": self.location_id, "workflow_id": self.workflow_id,
            "partition_key": self.partition_key, "field_id": self.field_id,
            "delay_seconds": self.delay_seconds,
            "run_at": as_utc(self.run_at),
            "created_at": as_utc(self.created_at),
        }


# ──────────────────────────────────────────────────────────────
#  Field-id cache
# ──────────────────────────────────────────────────────────────

class FieldIdCacheRow(Base):
    __tablename__ = "location_custom_fields"

    partition_key: Mapped[str] = mapped_column(String(300), primary_key=True)
    location_id: Mapped[str] = mapped_column(String(128), nullable=False)
    field_id: Mapped[str] = mapped_column(String(128), nullable=False)
    cached_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "partition_key": self.partition_key,
            "location_id": self.location_id,
            "field_id": self.field_id,
            "cached_at": as_utc(self.cached_at),
        }
