"""
Promotion Scheduler — moves due timers from staging into their streams.

Each pass:
    staging (run_at <= now, oldest first, bounded batch)
    → publish to timer:stream:{partition_key}
    → delete the staging row only after the broker returned a message id

A crash between publish and delete promotes the item twice; that is
tolerated (workers are idempotent). Deleting first could lose it, so the
order is never reversed.

Runs as a background task; sleeps promote_interval after a clean pass and
promote_error_backoff after a failed one. stop() interrupts the sleep.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Callable, Optional

from database.store_base import BaseStagingStore
from job_queue.message_queue import StreamBroker, StreamMessage, stream_name
from models.schemas import utcnow

logger = structlog.get_logger()


class PromotionScheduler:
    """
    Usage:
        scheduler = PromotionScheduler(store, broker)
        await scheduler.start()      # background task
        await scheduler.stop()
    """

    def __init__(
        self,
        store: BaseStagingStore,
        broker: StreamBroker,
        stream_prefix: str = "timer:stream:",
        batch_size: int = 50,
        interval_seconds: float = 1.0,
        error_backoff_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.broker = broker
        self.stream_prefix = stream_prefix
        self.batch_size = batch_size
        self.interval = interval_seconds
        self.error_backoff = error_backoff_seconds
        self.clock = clock
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> asyncio.Task:
        """Start the promotion loop as a background task."""
        self._stop.clear()
        self._task = asyncio.create_task(self.run(), name="promotion_scheduler")
        return self._task

    async def stop(self) -> None:
        """Ask the loop to finish its current pass, then wait for it."""
        self._stop.set()
        if self._task and not self._task.done():
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("promotion_scheduler_stopped")

    async def run(self) -> None:
        logger.info("promotion_scheduler_started",
                    interval=self.interval,
                    batch_size=self.batch_size)
        while not self._stop.is_set():
            delay = self.interval
            try:
                await self.promote_due()
            except Exception as e:
                logger.error("promotion_pass_failed", error=str(e), exc_info=True)
                delay = self.error_backoff
            await self._sleep(delay)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def promote_due(self) -> int:
        """
        Single pass. Returns the number of items published.

        A partition whose item fails is skipped for the rest of the pass so
        its later items cannot overtake the failed one.
        """
        items = await self.store.due_items(self.clock(), limit=self.batch_size)
        if not items:
            return 0

        promoted = 0
        blocked: set[str] = set()
        for item in items:
            if item.partition_key in blocked:
                continue
            stream = stream_name(self.stream_prefix, item.partition_key)

            try:
                message_id = await self.broker.publish(stream, StreamMessage.from_work_item(item))
            except Exception as e:
                blocked.add(item.partition_key)
                logger.error("promotion_publish_failed",
                             work_item_id=item.id,
                             partition_key=item.partition_key,
                             error=str(e))
                continue
            promoted += 1

            try:
                await self.store.delete_item(item.id)
            except Exception as e:
                # Stays staged and will be published again: duplicate, not loss
                blocked.add(item.partition_key)
                logger.error("promotion_delete_failed",
                             work_item_id=item.id,
                             message_id=message_id,
                             error=str(e))
                continue

            logger.debug("work_item_promoted",
                         work_item_id=item.id,
                         stream=stream,
                         message_id=message_id)

        logger.info("due_items_promoted", count=promoted, selected=len(items))
        return promoted
