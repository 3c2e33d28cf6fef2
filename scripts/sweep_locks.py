#!/usr/bin/env python3
"""Inspect and sweep named optimizer locks.

Usage:
    # Delete every expired lock once (suitable for cron):
    python scripts/sweep_locks.py sweep

    # Show the holder of a lock:
    python scripts/sweep_locks.py status recluster:<skill_id>

    # Force-release a lock on behalf of its holder:
    python scripts/sweep_locks.py release recluster:<skill_id> --locked-by py_123_...

Environment Variables:
    STORE_BACKEND: postgres (default) or postgrest
    LOCK_BACKEND: store (default) or redis
    DATABASE_URL / POSTGREST_URL / REDIS_URL: connection settings for the backend
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run(command: str, lock_name: str | None = None, locked_by: str | None = None) -> dict:
    # Import here to avoid loading config before env vars are set
    from skillopt.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if command == "sweep":
            deleted = await runtime.locks.cleanup_expired()
            return {"command": command, "deleted": deleted}
        if command == "status":
            status = await runtime.locks.check_status(lock_name)
            return {"command": command, "lock_name": lock_name, **status.to_dict()}
        released = await runtime.locks.release(lock_name, locked_by)
        return {"command": command, "lock_name": lock_name, "released": released}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Inspect and sweep named optimizer locks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("sweep", help="Delete expired locks")
    status_parser = subparsers.add_parser("status", help="Show the current holder of a lock")
    status_parser.add_argument("lock_name")
    release_parser = subparsers.add_parser("release", help="Release a lock held by --locked-by")
    release_parser.add_argument("lock_name")
    release_parser.add_argument("--locked-by", required=True, help="Identity of the current holder")

    args = parser.parse_args()

    try:
        result = asyncio.run(
            run(args.command, getattr(args, "lock_name", None), getattr(args, "locked_by", None))
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))
    if args.command == "release" and not result["released"]:
        sys.exit(2)


if __name__ == "__main__":
    main()
