#!/usr/bin/env python3
"""
Timer API — serves the inbound enqueue endpoints with uvicorn.

Usage:
    python scripts/run_api.py
"""
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def main():
    import uvicorn
    from config.settings import load_settings

    settings = load_settings()
    uvicorn.run("api.main:app", host=settings.api.host, port=settings.api.port)


if __name__ == "__main__":
    main()
