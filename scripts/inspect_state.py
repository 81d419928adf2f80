#!/usr/bin/env python3
"""
State Inspector — what is staged, what is streamed, what is stuck.

Prints:
  - staged work items (total and the next ones due)
  - cached field ids
  - partition streams with length and pending count
  - dead-letter stream length

Usage:
    python scripts/inspect_state.py
    python scripts/inspect_state.py --partition loc_123:wf_456
    python scripts/inspect_state.py --limit 20
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def inspect(partition: str = None, limit: int = 10) -> int:
    from config.settings import load_settings
    settings = load_settings()

    from core.runtime import Runtime
    from job_queue.message_queue import partition_from_stream, stream_name
    from models.schemas import utcnow

    runtime = Runtime(settings)
    try:
        await runtime.start()
    except Exception as e:
        print(f"Startup failed: {e}")
        await runtime.shutdown()
        return 1

    store, broker, q = runtime.store, runtime.broker, settings.queue
    try:
        print(f"{'═' * 60}")
        print(f"  {settings.app_name} state")
        print(f"{'═' * 60}")

        total = await store.count_items()
        print(f"\nStaged work items: {total}")

        if partition:
            items = (await store.list_partition(partition))[:limit]
            print(f"Partition {partition}:")
        else:
            items = await store.due_items(utcnow(), limit=limit)
            print(f"Due now (up to {limit}):")
        for item in items:
            print(f"  #{item.id:<8} {item.run_at.isoformat()}  {item.entity_id:<24} "
                  f"{item.partition_key}  (+{item.delay_seconds}s)")
        if not items:
            print("  (none)")

        entries = await store.list_field_ids(limit=limit)
        print(f"\nCached field ids ({len(entries)} shown):")
        for entry in entries:
            print(f"  {entry.partition_key:<40} {entry.field_id}")

        if partition:
            streams = [stream_name(q.stream_prefix, partition)]
        else:
            streams = sorted(await broker.list_streams(q.stream_prefix))
        print(f"\nStreams ({len(streams)}):")
        for stream in streams:
            length = await broker.stream_length(stream)
            pending = await broker.pending_count(stream, q.consumer_group)
            flag = "  ⚠ pending" if pending else ""
            print(f"  {partition_from_stream(q.stream_prefix, stream):<40} "
                  f"length={length:<6} pending={pending}{flag}")

        dlq = await broker.stream_length(q.dead_letter_stream)
        print(f"\nDead letters ({q.dead_letter_stream}): {dlq}")
        return 0
    finally:
        await runtime.shutdown()


def main():
    parser = argparse.ArgumentParser(description="Inspect staging and stream state")
    parser.add_argument("--partition", help="Only show one partition key")
    parser.add_argument("--limit", type=int, default=10, help="Rows to show per section")
    args = parser.parse_args()

    sys.exit(asyncio.run(inspect(partition=args.partition, limit=args.limit)))


if __name__ == "__main__":
    main()
