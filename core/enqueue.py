"""
Enqueue Service — schedules one timer per request, in partition order.

Flow:
  1. Validate the delay range (InvalidRange) and identifiers (MissingField,
     InvalidIdentifier); derive the partition key from location + workflow
  2. Resolve the downstream field id through the cache (network on miss,
     outside the lock); no field → DownstreamFieldNotFound, nothing staged
  3. Under the partition lock, in one transaction:
       last   = max staged run_at for the key, or now
       last   = max(last, now)
       delay  = uniform integer draw in [min, max]
       run_at = last + delay
       insert the work item
  4. Commit releases the lock

Chaining off the last staged run_at (not now) is what keeps a partition's
timers ordered: a later commit never lands before an earlier one.
"""
from __future__ import annotations

import random
import structlog
from datetime import datetime, timedelta
from typing import Callable, Optional

from core.field_cache import FieldIdCache
from database.store_base import BaseStagingStore
from models.errors import InternalError, InvalidRange, MissingField, TimerDripError
from models.schemas import (
    DEFAULT_WORKFLOW, EnqueueResult, TimerRequest, WorkItem,
    delay_bounds, partition_key, utcnow,
)

logger = structlog.get_logger()


class EnqueueService:

    def __init__(
        self,
        store: BaseStagingStore,
        field_cache: FieldIdCache,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.field_cache = field_cache
        self.clock = clock
        self.rng = rng or random.SystemRandom()

    async def enqueue_request(self, request: TimerRequest) -> EnqueueResult:
        return await self.enqueue(
            entity_id=request.entity_id,
            location_id=request.location_id,
            workflow_id=request.workflow_id,
            min_delay=request.min_delay,
            max_delay=request.max_delay,
        )

    async def enqueue(
        self,
        entity_id: str,
        location_id: str,
        workflow_id: str,
        min_delay: float,
        max_delay: float,
    ) -> EnqueueResult:
        low, high = delay_bounds(min_delay, max_delay)
        if not entity_id:
            raise MissingField("entity_id is required")
        if not location_id:
            raise MissingField("location_id is required")
        workflow_id = workflow_id or DEFAULT_WORKFLOW
        key = partition_key(location_id, workflow_id)

        try:
            field_id = await self.field_cache.resolve(key, location_id)

            async with self.store.locked(key) as tx:
                now = self.clock()
                last_run_at = await tx.last_run_at(key) or now
                if last_run_at < now:
                    last_run_at = now

                delay_seconds = self.rng.randint(low, high)
                try:
                    run_at = last_run_at + timedelta(seconds=delay_seconds)
                except OverflowError:
                    raise InvalidRange(f"Partition {key} is scheduled too far ahead") from None

                item = await tx.insert(WorkItem(
                    entity_id=entity_id,
                    location_id=location_id,
                    workflow_id=workflow_id,
                    partition_key=key,
                    field_id=field_id,
                    delay_seconds=delay_seconds,
                    run_at=run_at,
                    created_at=now,
                ))
        except TimerDripError:
            raise
        except Exception as e:
            logger.error("enqueue_failed",
                         entity_id=entity_id,
                         partition_key=key,
                         error=str(e),
                         exc_info=True)
            raise InternalError("Internal server error") from e

        logger.info("timer_enqueued",
                    work_item_id=item.id,
                    entity_id=entity_id,
                    partition_key=key,
                    delay_seconds=delay_seconds,
                    run_at=run_at.isoformat())
        return EnqueueResult(
            work_item_id=item.id,
            partition_key=key,
            delay_seconds=delay_seconds,
            run_at=run_at,
        )
