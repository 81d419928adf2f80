"""
Runtime — process-wide dependencies and the service lifecycle.

One Runtime per process: it owns the staging store, the stream broker and
the downstream connector, opens them once at startup and closes them once at
shutdown. Components receive them through their constructors.

    runtime = Runtime()
    await runtime.start()
    scheduler = runtime.promotion_scheduler()
    ...
    await runtime.shutdown()

serve() wraps a long-running component for a script entry point:
SIGINT/SIGTERM → component.stop() → connections closed → exit 0; startup
failure or a loop dying on its own → exit 1.
"""
from __future__ import annotations

import asyncio
import signal
import structlog
from typing import Any, Awaitable, Callable, Optional

from backend.connector import DownstreamConnector, create_downstream_connector
from config.settings import Settings, get_settings
from core.enqueue import EnqueueService
from core.field_cache import FieldIdCache
from core.promoter import PromotionScheduler
from database.session import close_db, init_db
from database.store import SqlStagingStore
from database.store_base import BaseStagingStore
from database.store_factory import create_store
from job_queue.consumer import WorkerPool
from job_queue.message_queue import StreamBroker, create_stream_broker

logger = structlog.get_logger()

STOP_GRACE_SECONDS = 30.0


class Runtime:

    def __init__(
        self,
        settings: Settings = None,
        store: BaseStagingStore = None,
        broker: StreamBroker = None,
        downstream: DownstreamConnector = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or create_store({"store_backend": self.settings.database.store_backend})
        self.broker = broker or create_stream_broker({
            "backend": self.settings.queue.backend,
            "redis_url": self.settings.queue.redis_url,
        })
        self.downstream = downstream or create_downstream_connector(self.settings.downstream)
        self.started = False

    async def start(self) -> None:
        if isinstance(self.store, SqlStagingStore):
            await init_db()
        await self.broker.connect()
        self.started = True
        logger.info("runtime_started",
                    store=type(self.store).__name__,
                    broker=type(self.broker).__name__,
                    downstream=type(self.downstream).__name__)

    async def shutdown(self) -> None:
        for name, closer in (
            ("broker", self.broker.close),
            ("downstream", self.downstream.close),
            ("database", close_db),
        ):
            try:
                await closer()
            except Exception as e:
                logger.error("runtime_close_failed", component=name, error=str(e))
        self.started = False
        logger.info("runtime_stopped")

    # ── Component builders ─────────────────────────────────

    def enqueue_service(self) -> EnqueueService:
        cache = FieldIdCache(self.store, self.downstream, field_name=self.settings.downstream.field_name)
        return EnqueueService(self.store, cache)

    def promotion_scheduler(self) -> PromotionScheduler:
        q = self.settings.queue
        return PromotionScheduler(
            self.store, self.broker,
            stream_prefix=q.stream_prefix,
            batch_size=q.promote_batch_size,
            interval_seconds=q.promote_interval,
            error_backoff_seconds=q.promote_error_backoff,
        )

    def worker_pool(self) -> WorkerPool:
        return WorkerPool(
            self.broker, self.store, self.downstream,
            queue_config=self.settings.queue,
            worker_config=self.settings.worker,
            field_value=self.settings.downstream.field_value,
            recent_partitions_limit=self.settings.database.recent_partitions_limit,
        )

    async def health(self) -> dict[str, Any]:
        store_ok = await self.store.ping()
        broker_ok = await self.broker.ping()
        return {
            "status": "healthy" if store_ok and broker_ok else "degraded",
            "store": store_ok,
            "broker": broker_ok,
        }


async def serve(
    name: str,
    runtime: Runtime,
    run: Callable[[], Awaitable[None]],
    stop: Callable[[], Awaitable[None]],
) -> int:
    """Run a component until a termination signal; returns the exit code."""
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    task = asyncio.create_task(run(), name=name)
    waiter = asyncio.create_task(shutdown.wait())
    done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)

    exit_code = 0
    if task in done:
        exc = task.exception()
        logger.error("service_exited_unexpectedly", service=name, error=str(exc) if exc else None)
        exit_code = 1
    else:
        logger.info("shutdown_signal_received", service=name)
        await stop()
        try:
            # The loop sees the stop flag after its current unit of work
            await asyncio.wait_for(task, timeout=STOP_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("service_stop_timed_out", service=name)
        except asyncio.CancelledError:
            pass
    waiter.cancel()
    await runtime.shutdown()
    return exit_code


async def _run(name: str, build: Callable[[Runtime], Any], settings: Optional[Settings]) -> int:
    runtime = Runtime(settings)
    try:
        await runtime.start()
    except Exception as e:
        logger.error("startup_failed", service=name, error=str(e), exc_info=True)
        await runtime.shutdown()
        return 1

    component = build(runtime)
    if isinstance(component, WorkerPool):
        return await serve(name, runtime, component.start, component.stop)
    return await serve(name, runtime, component.run, component.stop)


def run_promotion_scheduler(settings: Settings = None) -> int:
    return asyncio.run(_run("promotion_scheduler", Runtime.promotion_scheduler, settings))


def run_worker_pool(settings: Settings = None) -> int:
    return asyncio.run(_run("worker_pool", Runtime.worker_pool, settings))
