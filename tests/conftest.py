"""Shared test fixtures for the timer drip scheduler."""
import random
import pytest
from datetime import datetime, timedelta, timezone

from backend.connector import MockDownstreamConnector
from config.settings import QueueConfig, WorkerConfig
from core.enqueue import EnqueueService
from core.field_cache import FieldIdCache
from database.store_memory import InMemoryStagingStore
from job_queue.message_queue import InMemoryStreamBroker
from models.schemas import DEFAULT_WORKFLOW, WorkItem


T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock for the enqueue path and the promoter."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Monotonic clock for broker idle times."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: int):
        self.now += ms / 1000


@pytest.fixture(autouse=True)
def _reset_singletons():
    from config.settings import reset_settings
    from database.store_factory import reset_store
    from job_queue.message_queue import reset_stream_broker
    yield
    reset_store()
    reset_stream_broker()
    reset_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def store() -> InMemoryStagingStore:
    return InMemoryStagingStore()


@pytest.fixture
def broker(monotonic) -> InMemoryStreamBroker:
    return InMemoryStreamBroker(clock=monotonic)


@pytest.fixture
def downstream() -> MockDownstreamConnector:
    return MockDownstreamConnector()


@pytest.fixture
def enqueue_service(store, downstream, clock) -> EnqueueService:
    return EnqueueService(
        store,
        FieldIdCache(store, downstream),
        clock=clock,
        rng=random.Random(42),
    )


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig()


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(
        consumer_name="w1",
        discovery_interval=0.01,
        read_block_ms=10,
        claim_timeout_ms=1000,
        max_deliveries=3,
        partition_idle_seconds=300.0,
        error_backoff=0.01,
    )


async def stage(store, entity_id: str, key: str, run_at: datetime, field_id: str = "fld_timerdone") -> WorkItem:
    """Insert one work item directly, bypassing the delay draw."""
    location_id, _, workflow_id = key.partition(":")
    async with store.locked(key) as tx:
        return await tx.insert(WorkItem(
            entity_id=entity_id,
            location_id=location_id,
            workflow_id=workflow_id or DEFAULT_WORKFLOW,
            partition_key=key,
            field_id=field_id,
            delay_seconds=0,
            run_at=run_at,
            created_at=run_at,
        ))
