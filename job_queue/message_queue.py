"""
Stream Broker — Abstract interface with Redis Streams and in-memory backends.

Stream Topology:
  timer:stream:{location}:{workflow}   — one stream per partition key
  timer:dlq                            — dead-letter stream for exhausted messages
  timer:lease:{location}:{workflow}    — expiring lease; only its holder reads the stream

All worker instances share one consumer group; each message is delivered to
one consumer and stays in the group's pending-entries list until acked.
Acked entries are deleted, and a stream left empty by an idle partition is
dropped, so streams only hold undelivered or in-flight timers.

Message Schema (flat string map on the wire):
  {
      "entity_id":     contact to update,
      "partition_key": "{location_id}:{workflow_id}",
      "location_id":   downstream location header,
      "field_id":      downstream custom field id,
      "run_at":        ISO timestamp the timer was scheduled for,
      "enqueued_at":   ISO timestamp of promotion,
      "work_item_id":  staging row id (may be empty),
  }

Pending entries and claim results are always returned as PendingEntry /
Delivery, whatever the backend.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Callable, Optional

from models.schemas import WorkItem, utcnow

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Message Model
# ──────────────────────────────────────────────────────────────

@dataclass
class StreamMessage:
    """A due timer, as published to its partition's stream."""
    entity_id: str
    partition_key: str
    location_id: str
    field_id: str
    run_at: str
    enqueued_at: str = ""
    work_item_id: str = ""
    message_id: str = ""

    def __post_init__(self):
        if not self.enqueued_at:
            self.enqueued_at = utcnow().isoformat()

    def to_fields(self) -> dict[str, str]:
        d = asdict(self)
        d.pop("message_id")
        return {k: str(v) for k, v in d.items()}

    @classmethod
    def from_fields(cls, message_id: str, fields: dict[str, Any]) -> StreamMessage:
        data = {k: v for k, v in fields.items() if k in cls.__dataclass_fields__}
        data["message_id"] = message_id
        return cls(**data)

    @classmethod
    def from_work_item(cls, item: WorkItem) -> StreamMessage:
        return cls(
            entity_id=item.entity_id,
            partition_key=item.partition_key,
            location_id=item.location_id,
            field_id=item.field_id,
            run_at=item.run_at.isoformat(),
            work_item_id=str(item.id or ""),
        )

    @property
    def run_at_dt(self) -> datetime:
        return datetime.fromisoformat(self.run_at)


@dataclass
class Delivery:
    """A message handed to one consumer, new or reclaimed."""
    message: StreamMessage
    delivery_count: int = 1
    reclaimed: bool = False

    @property
    def message_id(self) -> str:
        return self.message.message_id


@dataclass
class PendingEntry:
    """One claimed-but-unacknowledged message in a consumer group."""
    message_id: str
    consumer: str
    idle_ms: int
    delivery_count: int


def stream_name(prefix: str, partition_key: str) -> str:
    return f"{prefix}{partition_key}"


def partition_from_stream(prefix: str, stream: str) -> str:
    return stream[len(prefix):] if stream.startswith(prefix) else stream


def message_id_key(message_id: str) -> tuple[int, int]:
    """Sort key for "<ms>-<seq>" stream ids."""
    ms, _, seq = message_id.partition("-")
    return int(ms), int(seq or 0)


# ──────────────────────────────────────────────────────────────
#  Atomic scripts
# ──────────────────────────────────────────────────────────────

ACQUIRE_LEASE_LUA = r"""
-- KEYS[1] = lease key, ARGV[1] = owner, ARGV[2] = ttl_ms
local holder = redis.call("GET", KEYS[1])
if not holder then
  redis.call("SET", KEYS[1], ARGV[1], "PX", ARGV[2])
  return 1
end
if holder == ARGV[1] then
  redis.call("PEXPIRE", KEYS[1], ARGV[2])
  return 1
end
return 0
"""

RELEASE_LEASE_LUA = r"""
-- KEYS[1] = lease key, ARGV[1] = owner
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
end
return 0
"""

DROP_EMPTY_STREAM_LUA = r"""
-- KEYS[1] = stream; removes it (and its groups) only when no entry is left
if redis.call("EXISTS", KEYS[1]) == 1 and redis.call("XLEN", KEYS[1]) == 0 then
  return redis.call("DEL", KEYS[1])
end
return 0
"""


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class StreamBroker(ABC):
    """Abstract stream broker interface."""

    @abstractmethod
    async def connect(self):
        """Establish connection to the broker backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    async def ping(self) -> bool:
        return True

    @abstractmethod
    async def publish(self, stream: str, message: StreamMessage) -> str:
        """Append a message; returns the broker-assigned message id."""
        ...

    @abstractmethod
    async def ensure_group(self, stream: str, group: str):
        """Create the consumer group (and stream) if absent."""
        ...

    @abstractmethod
    async def read_new(
        self, stream: str, group: str, consumer: str, block_ms: int = 2000,
    ) -> Optional[Delivery]:
        """Deliver at most one never-delivered message to this consumer."""
        ...

    @abstractmethod
    async def oldest_pending(self, stream: str, group: str) -> Optional[PendingEntry]:
        ...

    @abstractmethod
    async def claim(
        self, stream: str, group: str, consumer: str,
        entry: PendingEntry, min_idle_ms: int,
    ) -> Optional[Delivery]:
        """Take ownership of a pending entry if it is still idle enough."""
        ...

    @abstractmethod
    async def ack(self, stream: str, group: str, message_id: str) -> int:
        ...

    @abstractmethod
    async def delete(self, stream: str, message_id: str) -> int:
        """Remove an acknowledged entry from the stream."""
        ...

    @abstractmethod
    async def drop_if_empty(self, stream: str) -> bool:
        """Remove the stream and its groups, only if it holds no entries."""
        ...

    @abstractmethod
    async def pending_count(self, stream: str, group: str) -> int:
        ...

    @abstractmethod
    async def stream_length(self, stream: str) -> int:
        ...

    @abstractmethod
    async def list_streams(self, prefix: str) -> list[str]:
        ...

    # ─── Partition leases ───

    @abstractmethod
    async def acquire_lease(self, key: str, owner: str, ttl_ms: int) -> bool:
        """Take (or extend) an expiring exclusive lease; False if another owner holds it."""
        ...

    @abstractmethod
    async def release_lease(self, key: str, owner: str) -> bool:
        """Drop the lease if this owner still holds it."""
        ...

    async def reclaim_stale(
        self, stream: str, group: str, consumer: str, min_idle_ms: int,
    ) -> Optional[Delivery]:
        """Claim the oldest pending entry once it has idled past min_idle_ms."""
        entry = await self.oldest_pending(stream, group)
        if entry is None or entry.idle_ms < min_idle_ms:
            return None
        delivery = await self.claim(stream, group, consumer, entry, min_idle_ms)
        if delivery:
            logger.info("message_reclaimed",
                        stream=stream,
                        message_id=entry.message_id,
                        previous_consumer=entry.consumer,
                        idle_ms=entry.idle_ms,
                        delivery_count=delivery.delivery_count)
        return delivery

    async def publish_dead_letter(
        self, stream: str, delivery: Delivery, source_stream: str, reason: str,
    ) -> str:
        """Copy an exhausted message to the dead-letter stream."""
        fields = {
            **delivery.message.to_fields(),
            "source_stream": source_stream,
            "source_message_id": delivery.message_id,
            "delivery_count": str(delivery.delivery_count),
            "reason": reason,
            "dead_lettered_at": utcnow().isoformat(),
        }
        message_id = await self._append(stream, fields)
        logger.warning("message_dead_lettered",
                       source_stream=source_stream,
                       message_id=delivery.message_id,
                       delivery_count=delivery.delivery_count,
                       reason=reason)
        return message_id

    @abstractmethod
    async def _append(self, stream: str, fields: dict[str, str]) -> str:
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisStreamBroker(StreamBroker):
    """
    Production broker backed by Redis Streams consumer groups.

    - XREADGROUP ">" for new messages, one at a time
    - XPENDING (extended form) + XCLAIM for reclaim of stale entries
    - SCAN TYPE stream for partition discovery
    - XDEL after ack; Lua scripts for leases and empty-stream removal
    """

    def __init__(self, redis_url: str = "redis://localhost:6379"):
        self._redis_url = redis_url
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_broker_connected", url=self._redis_url.split("@")[-1])

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("redis_broker_closed")

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception as e:
            logger.error("redis_ping_failed", error=str(e))
            return False

    async def publish(self, stream: str, message: StreamMessage) -> str:
        message_id = await self._append(stream, message.to_fields())
        logger.info("message_published",
                     stream=stream,
                     message_id=message_id,
                     entity_id=message.entity_id,
                     run_at=message.run_at)
        return message_id

    async def _append(self, stream: str, fields: dict[str, str]) -> str:
        return await self._redis.xadd(stream, fields)

    async def ensure_group(self, stream: str, group: str):
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(stream, group, id="0", mkstream=True)
            logger.info("consumer_group_created", stream=stream, group=group)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def read_new(
        self, stream: str, group: str, consumer: str, block_ms: int = 2000,
    ) -> Optional[Delivery]:
        from redis.exceptions import ResponseError
        try:
            result = await self._redis.xreadgroup(
                groupname=group,
                consumername=consumer,
                streams={stream: ">"},
                count=1,
                block=block_ms,
            )
        except ResponseError as e:
            if "NOGROUP" not in str(e):
                raise
            await self.ensure_group(stream, group)
            return None

        if not result:
            return None
        _, messages = result[0]
        if not messages:
            return None
        message_id, fields = messages[0]
        return Delivery(message=StreamMessage.from_fields(message_id, fields))

    async def oldest_pending(self, stream: str, group: str) -> Optional[PendingEntry]:
        entries = await self._redis.xpending_range(stream, group, min="-", max="+", count=1)
        if not entries:
            return None
        e = entries[0]
        return PendingEntry(
            message_id=e["message_id"],
            consumer=e["consumer"],
            idle_ms=int(e["time_since_delivered"]),
            delivery_count=int(e["times_delivered"]),
        )

    async def claim(
        self, stream: str, group: str, consumer: str,
        entry: PendingEntry, min_idle_ms: int,
    ) -> Optional[Delivery]:
        claimed = await self._redis.xclaim(
            stream, group, consumer,
            min_idle_time=min_idle_ms,
            message_ids=[entry.message_id],
        )
        if not claimed:
            return None  # another consumer got there first
        message_id, fields = claimed[0]
        if not fields:
            # Entry outlived its stream record (trimmed); nothing to replay
            await self.ack(stream, group, message_id)
            logger.warning("pending_entry_without_message", stream=stream, message_id=message_id)
            return None
        return Delivery(
            message=StreamMessage.from_fields(message_id, fields),
            delivery_count=entry.delivery_count + 1,
            reclaimed=True,
        )

    async def ack(self, stream: str, group: str, message_id: str) -> int:
        return await self._redis.xack(stream, group, message_id)

    async def delete(self, stream: str, message_id: str) -> int:
        return await self._redis.xdel(stream, message_id)

    async def drop_if_empty(self, stream: str) -> bool:
        dropped = bool(await self._redis.eval(DROP_EMPTY_STREAM_LUA, 1, stream))
        if dropped:
            logger.info("stream_dropped", stream=stream)
        return dropped

    async def acquire_lease(self, key: str, owner: str, ttl_ms: int) -> bool:
        return bool(await self._redis.eval(ACQUIRE_LEASE_LUA, 1, key, owner, int(ttl_ms)))

    async def release_lease(self, key: str, owner: str) -> bool:
        return bool(await self._redis.eval(RELEASE_LEASE_LUA, 1, key, owner))

    async def pending_count(self, stream: str, group: str) -> int:
        from redis.exceptions import ResponseError
        try:
            summary = await self._redis.xpending(stream, group)
        except ResponseError:
            return 0
        return int(summary.get("pending", 0))

    async def stream_length(self, stream: str) -> int:
        return await self._redis.xlen(stream)

    async def list_streams(self, prefix: str) -> list[str]:
        streams = []
        async for key in self._redis.scan_iter(match=f"{prefix}*", count=200, _type="STREAM"):
            streams.append(key)
        return streams


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

@dataclass
class _PendingState:
    consumer: str
    delivered_at: float
    delivery_count: int


@dataclass
class _GroupState:
    last_delivered: tuple[int, int] = (0, 0)                 # id of the last entry handed out
    pending: dict[str, _PendingState] = field(default_factory=dict)


class InMemoryStreamBroker(StreamBroker):
    """
    Development/test broker with Redis-like consumer group semantics:
    per-group cursor, pending-entries list with owner, idle time and
    delivery count, plus expiring leases. Single-process only, no persistence.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._streams: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self._groups: dict[tuple[str, str], _GroupState] = {}
        self._leases: dict[str, tuple[str, float]] = {}          # key → (owner, expires_at_ms)
        self._last_id = (0, 0)
        self._changed: Optional[asyncio.Condition] = None
        self.connected = False

    def _condition(self) -> asyncio.Condition:
        if self._changed is None:
            self._changed = asyncio.Condition()
        return self._changed

    def _next_id(self) -> str:
        ms = int(time.time() * 1000)
        last_ms, last_seq = self._last_id
        self._last_id = (ms, 0) if ms > last_ms else (last_ms, last_seq + 1)
        return f"{self._last_id[0]}-{self._last_id[1]}"

    def _now_ms(self) -> float:
        return self._clock() * 1000

    async def connect(self):
        self.connected = True
        logger.info("inmemory_broker_connected")

    async def close(self):
        self.connected = False

    async def publish(self, stream: str, message: StreamMessage) -> str:
        message_id = await self._append(stream, message.to_fields())
        logger.info("message_published",
                     stream=stream,
                     message_id=message_id,
                     entity_id=message.entity_id,
                     run_at=message.run_at)
        return message_id

    async def _append(self, stream: str, fields: dict[str, str]) -> str:
        message_id = self._next_id()
        self._streams.setdefault(stream, []).append((message_id, dict(fields)))
        cond = self._condition()
        async with cond:
            cond.notify_all()
        return message_id

    async def ensure_group(self, stream: str, group: str):
        self._streams.setdefault(stream, [])
        self._groups.setdefault((stream, group), _GroupState())

    def _first_new(self, stream: str, group: str) -> Optional[tuple[str, dict[str, str]]]:
        state = self._groups.get((stream, group))
        if state is None:
            return None
        for message_id, fields in self._streams.get(stream, []):
            if message_id_key(message_id) > state.last_delivered:
                return message_id, fields
        return None

    def _take_new(self, stream: str, group: str, consumer: str) -> Optional[Delivery]:
        entry = self._first_new(stream, group)
        if entry is None:
            return None
        message_id, fields = entry
        state = self._groups[(stream, group)]
        state.last_delivered = message_id_key(message_id)
        state.pending[message_id] = _PendingState(consumer, self._now_ms(), 1)
        return Delivery(message=StreamMessage.from_fields(message_id, fields))

    async def read_new(
        self, stream: str, group: str, consumer: str, block_ms: int = 2000,
    ) -> Optional[Delivery]:
        if (stream, group) not in self._groups:
            await self.ensure_group(stream, group)
            return None
        delivery = self._take_new(stream, group, consumer)
        if delivery or block_ms <= 0:
            return delivery
        cond = self._condition()
        try:
            async with cond:
                await asyncio.wait_for(
                    cond.wait_for(lambda: self._first_new(stream, group) is not None),
                    timeout=block_ms / 1000,
                )
        except asyncio.TimeoutError:
            return None
        return self._take_new(stream, group, consumer)

    async def oldest_pending(self, stream: str, group: str) -> Optional[PendingEntry]:
        state = self._groups.get((stream, group))
        if not state or not state.pending:
            return None
        message_id = min(state.pending, key=message_id_key)
        p = state.pending[message_id]
        return PendingEntry(
            message_id=message_id,
            consumer=p.consumer,
            idle_ms=int(self._now_ms() - p.delivered_at),
            delivery_count=p.delivery_count,
        )

    async def claim(
        self, stream: str, group: str, consumer: str,
        entry: PendingEntry, min_idle_ms: int,
    ) -> Optional[Delivery]:
        state = self._groups.get((stream, group))
        p = state.pending.get(entry.message_id) if state else None
        if p is None or self._now_ms() - p.delivered_at < min_idle_ms:
            return None
        fields = next((f for mid, f in self._streams.get(stream, []) if mid == entry.message_id), None)
        if fields is None:
            del state.pending[entry.message_id]
            return None
        p.consumer = consumer
        p.delivered_at = self._now_ms()
        p.delivery_count += 1
        return Delivery(
            message=StreamMessage.from_fields(entry.message_id, fields),
            delivery_count=p.delivery_count,
            reclaimed=True,
        )

    async def ack(self, stream: str, group: str, message_id: str) -> int:
        state = self._groups.get((stream, group))
        if state and state.pending.pop(message_id, None):
            return 1
        return 0

    async def delete(self, stream: str, message_id: str) -> int:
        log = self._streams.get(stream, [])
        kept = [(mid, f) for mid, f in log if mid != message_id]
        removed = len(log) - len(kept)
        if removed:
            self._streams[stream] = kept
        return removed

    async def drop_if_empty(self, stream: str) -> bool:
        if stream not in self._streams or self._streams[stream]:
            return False
        del self._streams[stream]
        for key in [k for k in self._groups if k[0] == stream]:
            del self._groups[key]
        logger.info("stream_dropped", stream=stream)
        return True

    async def acquire_lease(self, key: str, owner: str, ttl_ms: int) -> bool:
        now = self._now_ms()
        holder = self._leases.get(key)
        if holder and holder[0] != owner and holder[1] > now:
            return False
        self._leases[key] = (owner, now + ttl_ms)
        return True

    async def release_lease(self, key: str, owner: str) -> bool:
        holder = self._leases.get(key)
        if holder and holder[0] == owner:
            del self._leases[key]
            return True
        return False

    async def pending_count(self, stream: str, group: str) -> int:
        state = self._groups.get((stream, group))
        return len(state.pending) if state else 0

    async def stream_length(self, stream: str) -> int:
        return len(self._streams.get(stream, []))

    async def list_streams(self, prefix: str) -> list[str]:
        return [name for name in self._streams if name.startswith(prefix)]

    def messages(self, stream: str) -> list[StreamMessage]:
        """Entries currently in a stream (test helper)."""
        return [StreamMessage.from_fields(mid, f) for mid, f in self._streams.get(stream, [])]

    def dead_letters(self, stream: str) -> list[dict[str, str]]:
        return [dict(f) for _, f in self._streams.get(stream, [])]


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[StreamBroker] = None


def create_stream_broker(queue_config: dict[str, Any] = None) -> StreamBroker:
    """Factory: create the appropriate broker backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        _instance = RedisStreamBroker(redis_url=url)
    else:
        _instance = InMemoryStreamBroker()

    return _instance


def get_stream_broker() -> StreamBroker:
    """Return the singleton broker instance."""
    global _instance
    if _instance is None:
        _instance = create_stream_broker()
    return _instance


def reset_stream_broker() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
