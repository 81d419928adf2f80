"""
Tests for the enqueue path.

Covers:
  - run_at chaining off the last staged timer of the partition
  - ordering under concurrent requests
  - never scheduling before now
  - validation and rollback on errors
  - field-id cache population
"""
import asyncio
import random
from datetime import datetime, timedelta, timezone

import pytest

from core.enqueue import EnqueueService
from core.field_cache import FieldIdCache
from backend.connector import MockDownstreamConnector
from database.store_memory import InMemoryStagingStore
from models.errors import (
    DownstreamFieldNotFound, InternalError, InvalidIdentifier, InvalidRange, MissingField,
)
from models.schemas import TimerRequest

KEY = "loc1:wf1"


class TestChaining:
    @pytest.mark.asyncio
    async def test_first_timer_starts_from_now(self, enqueue_service, clock):
        result = await enqueue_service.enqueue("c1", "loc1", "wf1", 60, 300)
        assert 60 <= result.delay_seconds <= 300
        assert result.run_at == clock.now + timedelta(seconds=result.delay_seconds)
        assert result.partition_key == KEY

    @pytest.mark.asyncio
    async def test_each_timer_chains_off_the_previous(self, enqueue_service, store):
        results = [await enqueue_service.enqueue(f"c{i}", "loc1", "wf1", 60, 300) for i in range(3)]

        assert results[1].run_at == results[0].run_at + timedelta(seconds=results[1].delay_seconds)
        assert results[2].run_at == results[1].run_at + timedelta(seconds=results[2].delay_seconds)

        staged = await store.list_partition(KEY)
        assert [i.entity_id for i in staged] == ["c0", "c1", "c2"]

    @pytest.mark.asyncio
    async def test_stale_chain_restarts_from_now(self, enqueue_service, clock):
        first = await enqueue_service.enqueue("c1", "loc1", "wf1", 10, 10)
        clock.advance(3600)

        second = await enqueue_service.enqueue("c2", "loc1", "wf1", 10, 10)
        assert second.run_at == clock.now + timedelta(seconds=10)
        assert second.run_at > first.run_at

    @pytest.mark.asyncio
    async def test_fixed_delay(self, enqueue_service, clock):
        result = await enqueue_service.enqueue("c1", "loc1", "wf1", 5, 5)
        assert result.delay_seconds == 5
        assert result.run_at == clock.now + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_zero_delay_is_due_now(self, enqueue_service, clock):
        result = await enqueue_service.enqueue("c1", "loc1", "wf1", 0, 0)
        assert result.run_at == clock.now

    @pytest.mark.asyncio
    async def test_partitions_are_independent(self, enqueue_service, clock):
        await enqueue_service.enqueue("c1", "loc1", "wf1", 100, 100)
        other = await enqueue_service.enqueue("c2", "loc2", "wf1", 100, 100)
        assert other.run_at == clock.now + timedelta(seconds=100)

    @pytest.mark.asyncio
    async def test_same_location_different_workflows_are_independent(self, enqueue_service, clock):
        await enqueue_service.enqueue("c1", "loc1", "wfA", 50, 50)
        b = await enqueue_service.enqueue("c1", "loc1", "wfB", 50, 50)
        assert b.run_at == clock.now + timedelta(seconds=50)

    @pytest.mark.asyncio
    async def test_drip_scenario(self, enqueue_service, clock):
        """Three contacts dripped 60-300s apart from the same instant."""
        results = [
            await enqueue_service.enqueue_request(TimerRequest(
                entity_id=f"contact_{i}", location_id="loc1", workflow_id="wf1",
                min_delay=60, max_delay=300,
            ))
            for i in range(3)
        ]
        previous = clock.now
        for r in results:
            gap = (r.run_at - previous).total_seconds()
            assert 60 <= gap <= 300
            assert gap == r.delay_seconds
            previous = r.run_at


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_requests_never_collide(self, enqueue_service, store):
        results = await asyncio.gather(*[
            enqueue_service.enqueue(f"c{i}", "loc1", "wf1", 1, 5) for i in range(25)
        ])

        run_ats = [r.run_at for r in results]
        assert len(set(run_ats)) == 25

        # Insertion order (id) is lock order; each item chains off the one before
        staged = sorted(await store.list_partition(KEY), key=lambda i: i.id)
        for prev, cur in zip(staged, staged[1:]):
            assert cur.run_at == prev.run_at + timedelta(seconds=cur.delay_seconds)

    @pytest.mark.asyncio
    async def test_concurrent_partitions_do_not_block_each_other(self, enqueue_service, store):
        await asyncio.gather(*[
            enqueue_service.enqueue(f"c{i}", f"loc{i % 3}", "wf", 1, 1) for i in range(9)
        ])
        for n in range(3):
            items = await store.list_partition(f"loc{n}:wf")
            assert len(items) == 3


class TestValidation:
    @pytest.mark.asyncio
    async def test_invalid_range_stages_nothing(self, enqueue_service, store, downstream):
        with pytest.raises(InvalidRange):
            await enqueue_service.enqueue("c1", "loc1", "wf1", 300, 60)
        assert await store.count_items() == 0
        assert downstream.lookups == []

    @pytest.mark.asyncio
    async def test_fractional_range_without_whole_second(self, enqueue_service):
        with pytest.raises(InvalidRange):
            await enqueue_service.enqueue("c1", "loc1", "wf1", 1.2, 1.8)

    @pytest.mark.asyncio
    async def test_missing_entity(self, enqueue_service):
        with pytest.raises(MissingField):
            await enqueue_service.enqueue("", "loc1", "wf1", 1, 2)

    @pytest.mark.asyncio
    async def test_missing_location(self, enqueue_service):
        with pytest.raises(MissingField):
            await enqueue_service.enqueue("c1", "", "wf1", 1, 2)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bounds", [
        (float("nan"), 5), (1, float("nan")), (1, float("inf")), (float("-inf"), 5),
    ])
    async def test_non_finite_delays(self, enqueue_service, store, bounds):
        with pytest.raises(InvalidRange):
            await enqueue_service.enqueue("c1", "loc1", "wf1", *bounds)
        assert await store.count_items() == 0

    @pytest.mark.asyncio
    async def test_delay_beyond_limit(self, enqueue_service, store):
        with pytest.raises(InvalidRange):
            await enqueue_service.enqueue("c1", "loc1", "wf1", 1, 1e12)
        assert await store.count_items() == 0

    @pytest.mark.asyncio
    async def test_run_at_overflow_is_invalid_range(self, enqueue_service, store, clock):
        clock.now = datetime.max.replace(tzinfo=timezone.utc) - timedelta(seconds=30)
        with pytest.raises(InvalidRange):
            await enqueue_service.enqueue("c1", "loc1", "wf1", 60, 60)
        assert await store.count_items() == 0


class TestPartitionIdentity:
    @pytest.mark.asyncio
    async def test_separator_in_location_rejected(self, enqueue_service, store, downstream):
        with pytest.raises(InvalidIdentifier):
            await enqueue_service.enqueue("c1", "a:b", "c", 1, 2)
        assert await store.count_items() == 0
        assert downstream.lookups == []

    @pytest.mark.asyncio
    async def test_colon_in_workflow_keeps_location(self, enqueue_service, store, downstream):
        result = await enqueue_service.enqueue("c1", "a", "b:c", 1, 2)
        assert result.partition_key == "a:b:c"

        item = (await store.list_partition("a:b:c"))[0]
        assert (item.location_id, item.workflow_id) == ("a", "b:c")
        assert downstream.lookups == ["a"]

    @pytest.mark.asyncio
    async def test_missing_workflow_uses_default(self, enqueue_service):
        result = await enqueue_service.enqueue("c1", "loc1", "", 1, 2)
        assert result.partition_key == "loc1:noworkflow"


class TestFieldId:
    @pytest.mark.asyncio
    async def test_field_not_found_rolls_back(self, store, clock):
        directory = MockDownstreamConnector(fields={})
        service = EnqueueService(store, FieldIdCache(store, directory), clock=clock)

        with pytest.raises(DownstreamFieldNotFound) as exc:
            await service.enqueue("c1", "loc1", "wf1", 1, 2)
        assert exc.value.http_status == 502
        assert await store.count_items() == 0
        assert await store.get_field_id(KEY) is None

    @pytest.mark.asyncio
    async def test_field_id_looked_up_once_per_partition(self, enqueue_service, store, downstream):
        await enqueue_service.enqueue("c1", "loc1", "wf1", 1, 2)
        await enqueue_service.enqueue("c2", "loc1", "wf1", 1, 2)
        assert downstream.lookups == ["loc1"]
        assert await store.get_field_id(KEY) == "fld_timerdone"

    @pytest.mark.asyncio
    async def test_field_id_stored_on_work_item(self, store, clock):
        directory = MockDownstreamConnector(fields={"loc1": "fld_abc"})
        service = EnqueueService(store, FieldIdCache(store, directory), clock=clock)
        await service.enqueue("c1", "loc1", "wf1", 1, 2)
        items = await store.list_partition(KEY)
        assert items[0].field_id == "fld_abc"

    @pytest.mark.asyncio
    async def test_cached_entry_wins(self, store, downstream, clock):
        from models.schemas import FieldIdCacheEntry
        await store.put_field_id(FieldIdCacheEntry(partition_key=KEY, location_id="loc1", field_id="fld_old"))
        service = EnqueueService(store, FieldIdCache(store, downstream), clock=clock)

        await service.enqueue("c1", "loc1", "wf1", 1, 2)
        assert downstream.lookups == []
        assert (await store.list_partition(KEY))[0].field_id == "fld_old"


class _BrokenStore(InMemoryStagingStore):
    def locked(self, partition_key):
        raise RuntimeError("connection refused")


class TestInternalErrors:
    @pytest.mark.asyncio
    async def test_store_failure_becomes_internal_error(self, downstream, clock):
        store = _BrokenStore()
        service = EnqueueService(store, FieldIdCache(store, downstream), clock=clock, rng=random.Random(1))

        with pytest.raises(InternalError) as exc:
            await service.enqueue("c1", "loc1", "wf1", 1, 2)
        assert exc.value.http_status == 500
        assert "connection refused" not in exc.value.message
