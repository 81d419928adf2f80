"""
Tests for all staging store backends.

Covers:
  - InMemoryStagingStore
  - SqlStagingStore (via SQLite for test portability)
  - Local partition lock
  - Store factory
  - Database URL mapping
"""
import asyncio
import os
import shutil
import tempfile
from datetime import timedelta

import pytest
import pytest_asyncio

from conftest import T0, stage
from models.schemas import FieldIdCacheEntry, WorkItem

KEY = "loc1:wf1"


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def any_store(request):
    if request.param == "memory":
        from database.store_memory import InMemoryStagingStore
        yield InMemoryStagingStore()
        return

    from database.session import close_db, configure_database, init_db
    from database.store import SqlStagingStore
    tmpdir = tempfile.mkdtemp()
    configure_database(f"sqlite:///{os.path.join(tmpdir, 'staging.db')}")
    await init_db()
    try:
        yield SqlStagingStore()
    finally:
        await close_db()
        configure_database(None)
        shutil.rmtree(tmpdir, ignore_errors=True)


# ──────────────────────────────────────────────────────────────
#  Shared behaviour
# ──────────────────────────────────────────────────────────────

class TestStagingStore:
    @pytest.mark.asyncio
    async def test_insert_assigns_increasing_ids(self, any_store):
        a = await stage(any_store, "c1", KEY, T0)
        b = await stage(any_store, "c2", KEY, T0)
        assert a.id and b.id
        assert b.id > a.id

    @pytest.mark.asyncio
    async def test_last_run_at(self, any_store):
        await stage(any_store, "c1", KEY, T0 + timedelta(seconds=30))
        await stage(any_store, "c2", KEY, T0 + timedelta(seconds=90))
        await stage(any_store, "c3", "loc2:wf1", T0 + timedelta(seconds=500))

        async with any_store.locked(KEY) as tx:
            assert await tx.last_run_at(KEY) == T0 + timedelta(seconds=90)
            assert await tx.last_run_at("empty:wf") is None

    @pytest.mark.asyncio
    async def test_rollback_on_exception(self, any_store):
        with pytest.raises(RuntimeError):
            async with any_store.locked(KEY) as tx:
                await tx.insert(WorkItem(
                    entity_id="c1", location_id="loc1", workflow_id="wf1",
                    partition_key=KEY, field_id="f", delay_seconds=1, run_at=T0,
                ))
                raise RuntimeError("boom")
        assert await any_store.count_items() == 0

    @pytest.mark.asyncio
    async def test_due_items_ordered(self, any_store):
        await stage(any_store, "late", KEY, T0 + timedelta(seconds=20))
        await stage(any_store, "early", "loc2:wf1", T0 + timedelta(seconds=10))
        await stage(any_store, "tie_a", KEY, T0 + timedelta(seconds=15))
        await stage(any_store, "tie_b", "loc3:wf1", T0 + timedelta(seconds=15))
        await stage(any_store, "future", KEY, T0 + timedelta(seconds=999))

        due = await any_store.due_items(T0 + timedelta(seconds=60))
        assert [i.entity_id for i in due] == ["early", "tie_a", "tie_b", "late"]

    @pytest.mark.asyncio
    async def test_due_items_limit(self, any_store):
        for i in range(5):
            await stage(any_store, f"c{i}", KEY, T0 + timedelta(seconds=i))
        due = await any_store.due_items(T0 + timedelta(seconds=60), limit=2)
        assert [i.entity_id for i in due] == ["c0", "c1"]

    @pytest.mark.asyncio
    async def test_due_items_timezone_aware(self, any_store):
        await stage(any_store, "c1", KEY, T0)
        due = await any_store.due_items(T0)
        assert due[0].run_at == T0
        assert due[0].run_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_delete_item(self, any_store):
        item = await stage(any_store, "c1", KEY, T0)
        assert await any_store.delete_item(item.id) is True
        assert await any_store.delete_item(item.id) is False
        assert await any_store.count_items() == 0

    @pytest.mark.asyncio
    async def test_delete_for_entity_up_to(self, any_store):
        await stage(any_store, "c1", KEY, T0)
        await stage(any_store, "c1", KEY, T0 + timedelta(seconds=600))
        await stage(any_store, "c2", KEY, T0)
        await stage(any_store, "c1", "loc2:wf1", T0)

        removed = await any_store.delete_for_entity("c1", KEY, up_to=T0)
        assert removed == 1
        remaining = [(i.entity_id, i.partition_key) for i in await any_store.list_partition(KEY)]
        assert remaining == [("c2", KEY), ("c1", KEY)]

        assert await any_store.delete_for_entity("c1", KEY) == 1
        assert await any_store.count_items() == 2

    @pytest.mark.asyncio
    async def test_recent_partition_keys(self, any_store):
        await stage(any_store, "c1", "old:wf", T0)
        await stage(any_store, "c2", "new:wf", T0 + timedelta(seconds=10))
        assert await any_store.recent_partition_keys() == ["new:wf", "old:wf"]
        assert await any_store.recent_partition_keys(limit=1) == ["new:wf"]

    @pytest.mark.asyncio
    async def test_field_id_insert_if_absent(self, any_store):
        assert await any_store.get_field_id(KEY) is None

        first = await any_store.put_field_id(FieldIdCacheEntry(partition_key=KEY, location_id="loc1", field_id="f1"))
        second = await any_store.put_field_id(FieldIdCacheEntry(partition_key=KEY, location_id="loc1", field_id="f2"))

        assert first == "f1"
        assert second == "f1"
        assert await any_store.get_field_id(KEY) == "f1"
        entries = await any_store.list_field_ids()
        assert [e.field_id for e in entries] == ["f1"]

    @pytest.mark.asyncio
    async def test_concurrent_units_serialize(self, any_store):
        order = []

        async def unit(name):
            async with any_store.locked(KEY) as tx:
                order.append(f"{name}:in")
                await tx.last_run_at(KEY)
                await asyncio.sleep(0.01)
                order.append(f"{name}:out")

        await asyncio.gather(unit("a"), unit("b"))
        assert order in (["a:in", "a:out", "b:in", "b:out"], ["b:in", "b:out", "a:in", "a:out"])

    @pytest.mark.asyncio
    async def test_ping(self, any_store):
        assert await any_store.ping() is True


# ──────────────────────────────────────────────────────────────
#  Local partition lock
# ──────────────────────────────────────────────────────────────

class TestLocalPartitionLock:
    @pytest.mark.asyncio
    async def test_reentrant_within_task(self):
        from database.locks import LocalPartitionLock
        lock = LocalPartitionLock()
        async with lock.hold(KEY):
            async with lock.hold(KEY):
                assert lock.locked(KEY)
            assert lock.locked(KEY)
        assert not lock.locked(KEY)

    @pytest.mark.asyncio
    async def test_entries_cleaned_up(self):
        from database.locks import LocalPartitionLock
        lock = LocalPartitionLock()
        async with lock.hold("a"):
            pass
        assert lock._locks == {}

    @pytest.mark.asyncio
    async def test_other_keys_not_blocked(self):
        from database.locks import LocalPartitionLock
        lock = LocalPartitionLock()
        async with lock.hold("a"):
            await asyncio.wait_for(_acquire(lock, "b"), timeout=0.5)


async def _acquire(lock, key):
    async with lock.hold(key):
        return True


# ──────────────────────────────────────────────────────────────
#  Factory / URL mapping
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def test_default_is_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryStagingStore
        assert isinstance(create_store(), InMemoryStagingStore)

    def test_sql_backend(self):
        from database.store_factory import create_store
        from database.store import SqlStagingStore
        assert isinstance(create_store({"store_backend": "sql"}), SqlStagingStore)

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        s1 = create_store({"store_backend": "memory"})
        assert get_store() is s1

    def test_reset(self):
        from database.store_factory import create_store, reset_store
        s1 = create_store({"store_backend": "memory"})
        reset_store()
        assert create_store({"store_backend": "memory"}) is not s1

    def test_unknown_backend(self):
        from database.store_factory import create_store
        with pytest.raises(ValueError):
            create_store({"store_backend": "file"})


class TestDatabaseUrl:
    def test_postgresql_url(self):
        from database.session import _to_async_url
        assert _to_async_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"

    def test_postgres_url(self):
        from database.session import _to_async_url
        assert _to_async_url("postgres://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"

    def test_sqlite_url(self):
        from database.session import _to_async_url
        assert _to_async_url("sqlite:///./test.db") == "sqlite+aiosqlite:///./test.db"

    def test_async_url_unchanged(self):
        from database.session import _to_async_url
        assert _to_async_url("postgresql+asyncpg://h/db") == "postgresql+asyncpg://h/db"

    def test_credentials_hidden(self):
        from database.session import safe_url
        assert safe_url("postgresql+asyncpg://u:secret@db:5432/drip") == "postgresql+asyncpg://db:5432/drip"
        assert safe_url("sqlite+aiosqlite:///./t.db") == "sqlite+aiosqlite:///./t.db"


class TestSchema:
    @pytest.mark.asyncio
    async def test_init_db_creates_tables(self):
        from database.session import close_db, configure_database, get_engine, init_db, list_tables
        tmpdir = tempfile.mkdtemp()
        configure_database(f"sqlite:///{os.path.join(tmpdir, 'schema.db')}")
        try:
            await init_db()
            async with get_engine().connect() as conn:
                tables = await list_tables(conn)
            assert tables == ["location_custom_fields", "sequential_queue"]
        finally:
            await close_db()
            configure_database(None)
            shutil.rmtree(tmpdir, ignore_errors=True)
