"""
Worker Pool — consumes partition streams and fires the downstream update.

Runs as async tasks inside the worker process. For horizontal scaling,
deploy multiple processes with the same consumer_group; every process
discovers every partition, and a per-partition lease decides which of them
may read from a stream at any moment.

Topology:
  ┌──────────────┐  discover   ┌──────────────────────┐
  │  WorkerPool  │────────────▶│ PartitionConsumer ×N │  one task per partition
  └──────────────┘             └──────────┬───────────┘
                                          │ lease → read 1 / reclaim stale → release
                                          ▼
                         ┌────────────────────────────────┐
                         │ timer:stream:{loc}:{workflow}  │
                         └───────────────┬────────────────┘
                                         │ update_field → ack → XDEL → staging cleanup
                                         ▼
                         ┌────────────────────────────────┐
                         │ timer:dlq  (after max tries)   │
                         └────────────────────────────────┘

Per partition: Idle → Joined → Reading → (Processing → Reading)* → Idle.
Reading happens only while holding the partition lease, and only when no
entry of the stream is pending (in flight, failed, or owned by a dead
worker); a pending entry is retried once it has idled past claim_timeout_ms.
The lease closes the gap between "nothing pending" and the blocking read,
so one message is in flight per partition across all workers and retries
never let later timers overtake earlier ones.
"""
from __future__ import annotations

import asyncio
import os
import socket
import time
import structlog
from enum import Enum
from typing import Optional

from backend.connector import DownstreamConnector
from config.settings import QueueConfig, WorkerConfig
from database.store_base import BaseStagingStore
from job_queue.message_queue import (
    Delivery, StreamBroker,
    message_id_key, partition_from_stream, stream_name,
)

logger = structlog.get_logger()


def default_consumer_name() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


class PartitionState(str, Enum):
    IDLE = "idle"
    JOINED = "joined"
    READING = "reading"
    PROCESSING = "processing"


class PartitionConsumer:
    """Processing loop for one partition stream, one message at a time."""

    def __init__(
        self,
        partition_key: str,
        broker: StreamBroker,
        store: BaseStagingStore,
        downstream: DownstreamConnector,
        consumer_name: str,
        queue_config: QueueConfig = None,
        worker_config: WorkerConfig = None,
        field_value: str = "YES",
        stop_event: asyncio.Event = None,
    ):
        queue_config = queue_config or QueueConfig()
        worker_config = worker_config or WorkerConfig()
        self.partition_key = partition_key
        self.broker = broker
        self.store = store
        self.downstream = downstream
        self.consumer_name = consumer_name
        self.group = queue_config.consumer_group
        self.stream = stream_name(queue_config.stream_prefix, partition_key)
        self.lease_key = f"{queue_config.lease_prefix}{partition_key}"
        self.dead_letter_stream = queue_config.dead_letter_stream
        self.read_block_ms = worker_config.read_block_ms
        self.claim_timeout_ms = worker_config.claim_timeout_ms
        # The lease must outlive one blocking read
        self.lease_ttl_ms = max(worker_config.lease_ttl_ms, 2 * self.read_block_ms)
        self.max_deliveries = worker_config.max_deliveries
        self.idle_seconds = worker_config.partition_idle_seconds
        self.error_backoff = worker_config.error_backoff
        self.field_value = field_value
        self._stop = stop_event or asyncio.Event()
        self.state = PartitionState.IDLE
        self.processed = 0
        self.errors: dict[str, str] = {}      # message id → last update error seen here

    async def run(self) -> None:
        await self.broker.ensure_group(self.stream, self.group)
        self.state = PartitionState.JOINED
        logger.info("partition_consumer_joined",
                    stream=self.stream,
                    group=self.group,
                    consumer=self.consumer_name)

        last_activity = time.monotonic()
        try:
            while not self._stop.is_set():
                try:
                    self.state = PartitionState.READING
                    delivery = await self.next_delivery()
                    if delivery is None:
                        if (time.monotonic() - last_activity >= self.idle_seconds
                                and await self.broker.pending_count(self.stream, self.group) == 0):
                            logger.info("partition_inactive", stream=self.stream)
                            await self.retire()
                            break
                        continue

                    last_activity = time.monotonic()
                    self.state = PartitionState.PROCESSING
                    await self.handle(delivery)

                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("partition_consumer_error",
                                 stream=self.stream,
                                 error=str(e))
                    await self._sleep(self.error_backoff)
        finally:
            self.state = PartitionState.IDLE
            logger.info("partition_consumer_stopped",
                        stream=self.stream,
                        processed=self.processed)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def next_delivery(self) -> Optional[Delivery]:
        """
        Under the partition lease: a new message if the stream has nothing
        pending, otherwise the oldest pending entry once it is stale. Returns
        None (after a short wait) while another worker holds the lease or the
        pending entry is still fresh.
        """
        wait_ms = self.read_block_ms
        if await self.broker.acquire_lease(self.lease_key, self.consumer_name, self.lease_ttl_ms):
            try:
                entry = await self.broker.oldest_pending(self.stream, self.group)
                if entry is None:
                    return await self.broker.read_new(
                        self.stream, self.group, self.consumer_name, block_ms=self.read_block_ms,
                    )
                if entry.idle_ms >= self.claim_timeout_ms:
                    return await self.broker.reclaim_stale(
                        self.stream, self.group, self.consumer_name, self.claim_timeout_ms,
                    )
                wait_ms = min(self.read_block_ms, self.claim_timeout_ms - entry.idle_ms)
            finally:
                await self.broker.release_lease(self.lease_key, self.consumer_name)
        await self._sleep(max(wait_ms, 1) / 1000)
        return None

    async def retire(self) -> bool:
        """Drop the stream of an inactive partition if it is empty."""
        if not await self.broker.acquire_lease(self.lease_key, self.consumer_name, self.lease_ttl_ms):
            return False
        try:
            return await self.broker.drop_if_empty(self.stream)
        finally:
            await self.broker.release_lease(self.lease_key, self.consumer_name)

    def _forget_errors(self, message_id: str) -> None:
        done = message_id_key(message_id)
        for mid in [m for m in self.errors if message_id_key(m) <= done]:
            del self.errors[mid]

    async def _finish(self, delivery: Delivery) -> None:
        await self.broker.ack(self.stream, self.group, delivery.message_id)
        self._forget_errors(delivery.message_id)
        try:
            await self.broker.delete(self.stream, delivery.message_id)
        except Exception as e:
            logger.error("stream_entry_delete_failed",
                         stream=self.stream,
                         message_id=delivery.message_id,
                         error=str(e))

    async def handle(self, delivery: Delivery) -> bool:
        """
        Process one delivery. Returns True when acked after a successful
        update. A failed update stays pending and is retried by reclaim.
        """
        message = delivery.message

        if self.max_deliveries and delivery.delivery_count > self.max_deliveries:
            last_error = self.errors.get(delivery.message_id, "no error recorded by this worker")
            await self.broker.publish_dead_letter(
                self.dead_letter_stream, delivery, self.stream,
                reason=f"Exceeded {self.max_deliveries} deliveries: {last_error}",
            )
            await self._finish(delivery)
            return False

        logger.info("processing_message",
                    stream=self.stream,
                    message_id=delivery.message_id,
                    entity_id=message.entity_id,
                    run_at=message.run_at,
                    delivery_count=delivery.delivery_count,
                    reclaimed=delivery.reclaimed)

        try:
            await self.downstream.update_field(
                message.entity_id, message.location_id, message.field_id, self.field_value,
            )
        except Exception as e:
            self.errors[delivery.message_id] = str(e)
            logger.warning("downstream_update_failed",
                           stream=self.stream,
                           message_id=delivery.message_id,
                           entity_id=message.entity_id,
                           delivery_count=delivery.delivery_count,
                           error=str(e))
            return False

        await self._finish(delivery)
        self.processed += 1

        try:
            removed = await self.store.delete_for_entity(
                message.entity_id, message.partition_key, up_to=message.run_at_dt,
            )
            if removed:
                logger.info("staging_rows_cleaned", entity_id=message.entity_id, removed=removed)
        except Exception as e:
            logger.error("staging_cleanup_failed", entity_id=message.entity_id, error=str(e))

        logger.info("message_acked",
                    stream=self.stream,
                    message_id=delivery.message_id,
                    entity_id=message.entity_id)
        return True


class WorkerPool:
    """
    Discovers active partitions and keeps one PartitionConsumer task per
    partition owned by this process.

    Usage:
        pool = WorkerPool(broker, store, downstream, queue_config, worker_config)
        await pool.start()                 # blocks until stop()
        await pool.start_background()      # returns immediately, runs as task
        await pool.stop()
    """

    def __init__(
        self,
        broker: StreamBroker,
        store: BaseStagingStore,
        downstream: DownstreamConnector,
        queue_config: QueueConfig = None,
        worker_config: WorkerConfig = None,
        field_value: str = "YES",
        recent_partitions_limit: int = 500,
    ):
        self.broker = broker
        self.store = store
        self.downstream = downstream
        self.queue_config = queue_config or QueueConfig()
        self.worker_config = worker_config or WorkerConfig()
        self.field_value = field_value
        self.recent_partitions_limit = recent_partitions_limit
        self.consumer_name = self.worker_config.consumer_name or default_consumer_name()
        self.consumers: dict[str, PartitionConsumer] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._stop = asyncio.Event()
        self._main: Optional[asyncio.Task] = None

    @property
    def owned_partitions(self) -> list[str]:
        return sorted(self._tasks)

    async def start(self) -> None:
        """Run discovery until stop() is called."""
        self._stop.clear()
        logger.info("worker_pool_starting",
                    consumer=self.consumer_name,
                    group=self.queue_config.consumer_group,
                    discovery_interval=self.worker_config.discovery_interval)
        while not self._stop.is_set():
            try:
                await self.discover()
            except Exception as e:
                logger.error("partition_discovery_failed", error=str(e))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.worker_config.discovery_interval)
            except asyncio.TimeoutError:
                pass

    async def start_background(self) -> asyncio.Task:
        self._main = asyncio.create_task(self.start(), name="worker_pool")
        return self._main

    async def stop(self) -> None:
        """Let every partition loop finish its in-flight message, then exit."""
        self._stop.set()
        tasks = list(self._tasks.values())
        if self._main:
            tasks.append(self._main)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self.consumers.clear()
        logger.info("worker_pool_stopped", consumer=self.consumer_name)

    async def discover(self) -> list[str]:
        """
        Start loops for partitions with work: a stream holding entries (new or
        pending), or staged rows. Empty leftover streams are skipped.
        """
        prefix = self.queue_config.stream_prefix
        group = self.queue_config.consumer_group
        candidates = set()
        for stream in await self.broker.list_streams(prefix):
            key = partition_from_stream(prefix, stream)
            if key in self._tasks:
                continue
            if (await self.broker.stream_length(stream)
                    or await self.broker.pending_count(stream, group)):
                candidates.add(key)
        candidates.update(await self.store.recent_partition_keys(self.recent_partitions_limit))

        started = []
        for key in sorted(candidates):
            if key in self._tasks or self._stop.is_set():
                continue
            self._spawn(key)
            started.append(key)

        if started:
            logger.info("partitions_discovered", started=len(started), owned=len(self._tasks))
        return started

    def _spawn(self, partition_key: str) -> None:
        consumer = PartitionConsumer(
            partition_key, self.broker, self.store, self.downstream,
            consumer_name=self.consumer_name,
            queue_config=self.queue_config,
            worker_config=self.worker_config,
            field_value=self.field_value,
            stop_event=self._stop,
        )
        task = asyncio.create_task(consumer.run(), name=f"partition:{partition_key}")
        self.consumers[partition_key] = consumer
        self._tasks[partition_key] = task
        task.add_done_callback(lambda t, key=partition_key: self._on_done(key, t))

    def _on_done(self, partition_key: str, task: asyncio.Task) -> None:
        if self._tasks.get(partition_key) is task:
            del self._tasks[partition_key]
            self.consumers.pop(partition_key, None)
        if not task.cancelled() and task.exception():
            logger.error("partition_consumer_crashed",
                         partition_key=partition_key,
                         error=str(task.exception()))
