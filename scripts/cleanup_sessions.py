#!/usr/bin/env python3
"""Run one session cleanup pass from cron or an operator shell.

Usage:
    python scripts/cleanup_sessions.py
    python scripts/cleanup_sessions.py --stats

Uses the same settings as the API (DATABASE_URL, SESSION_RETENTION_DAYS, ...).
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys


async def run_cleanup(show_stats: bool = False) -> dict:
    from dancestudio.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        report = await runtime.lifecycle.cleanup()
        result = {
            "expiredSessions": report.expired,
            "deletedSessions": report.deleted,
            "orphanedSessions": report.orphaned,
        }
        if show_stats:
            stats = await runtime.store.session_stats(runtime.clock())
            result["stats"] = {
                "total": stats.total,
                "active": stats.active,
                "expired": stats.expired,
                "recentlyCreated": stats.recently_created,
                "byRole": {rc.role.value: rc.count for rc in stats.by_role},
            }
        return result
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Deactivate expired sessions and purge stale ones",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--stats", action="store_true", help="Also print session statistics"
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(run_cleanup(args.stats))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
