#!/usr/bin/env python3
"""
Database Migration — create or verify the staging tables.

Tables: sequential_queue (staged timers), location_custom_fields (field-id cache).

Usage:
    python scripts/migrate_db.py            # create missing tables
    python scripts/migrate_db.py --check    # report only; exit 1 if any are missing
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run_migration(check_only: bool = False) -> int:
    from config.settings import load_settings
    load_settings()

    from database.models import Base
    from database.session import close_db, get_engine, init_db, list_tables, safe_url

    engine = get_engine()
    wanted = sorted(Base.metadata.tables)
    print(f"Database: {engine.dialect.name} ({safe_url(engine.url)})")

    try:
        if not check_only:
            await init_db()

        async with engine.connect() as conn:
            existing = await list_tables(conn)
    except Exception as e:
        print(f"Database unreachable: {e}")
        return 1
    finally:
        await close_db()

    missing = [t for t in wanted if t not in existing]
    for table in wanted:
        print(f"  {'✓' if table in existing else '✗'} {table}")

    if missing:
        print(f"Missing: {', '.join(missing)}. Run without --check to create them.")
        return 1
    print("Schema up to date. ✓" if check_only else "Migration complete. ✓")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Create or verify the staging tables")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check)))


if __name__ == "__main__":
    main()
