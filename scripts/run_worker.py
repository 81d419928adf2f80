#!/usr/bin/env python3
"""
Worker — consumes partition streams and marks timers done downstream.

Run as many copies as needed; they share one consumer group and reclaim
each other's stale messages.

Usage:
    python scripts/run_worker.py

Exits 0 on SIGINT/SIGTERM, 1 if startup fails.
"""
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def main():
    from config.settings import load_settings
    from core.runtime import run_worker_pool

    sys.exit(run_worker_pool(load_settings()))


if __name__ == "__main__":
    main()
