#!/usr/bin/env python3
"""Long-running process that syncs every active CRM integration periodically.

Usage:
    uv run python scripts/run_scheduler.py
    uv run python scripts/run_scheduler.py --interval-minutes 15 --run-now

Connects directly to the database using DATABASE_URL from environment or .env file.
Runs until interrupted (Ctrl+C / SIGTERM).
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.givesync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def serve(interval_minutes: int | None, run_now: bool) -> None:
    """Start the scheduler and block until cancelled."""
    from src.givesync.config import get_settings
    from src.givesync.core.database import close_db, get_session
    from src.givesync.core.logging import configure_structlog
    from src.givesync.core.monitoring import init_sentry
    from src.givesync.crm.manager import build_integration_manager
    from src.givesync.crm.scheduler import SyncScheduler

    settings = get_settings()
    configure_structlog()
    if settings.SENTRY_DSN:
        init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT.value)

    manager = build_integration_manager(settings, get_session)
    scheduler = SyncScheduler(manager, interval_minutes or settings.SYNC_INTERVAL_MINUTES)
    if not scheduler.start():
        print("Scheduler failed to start", file=sys.stderr)
        await close_db()
        return

    try:
        if run_now:
            await scheduler.run_once()
        await asyncio.Event().wait()
    finally:
        scheduler.stop()
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run periodic CRM syncs")
    parser.add_argument(
        "--interval-minutes",
        type=int,
        default=None,
        help="Minutes between runs (default: SYNC_INTERVAL_MINUTES)",
    )
    parser.add_argument("--run-now", action="store_true", help="Sync once immediately on start")
    args = parser.parse_args()

    try:
        asyncio.run(serve(args.interval_minutes, args.run_now))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
