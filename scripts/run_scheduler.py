#!/usr/bin/env python3
"""
Promotion Scheduler — moves due timers from staging into partition streams.

Usage:
    python scripts/run_scheduler.py
    TIMER_DRIP_CONFIG=/etc/timer-drip.yaml python scripts/run_scheduler.py

Exits 0 on SIGINT/SIGTERM, 1 if startup fails.
"""
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def main():
    from config.settings import load_settings
    from core.runtime import run_promotion_scheduler

    sys.exit(run_promotion_scheduler(load_settings()))


if __name__ == "__main__":
    main()
