#!/usr/bin/env python3
"""CLI script to run an on-demand CRM sync for one organization.

Usage:
    uv run python scripts/sync_organization.py --organization org_123 --provider salesforce
    uv run python scripts/sync_organization.py --organization org_123 --provider salesforce --combined

Connects directly to the database using DATABASE_URL from environment or .env file.
Refreshes the stored access token if needed, runs the sync and prints the
aggregated result as JSON. Exits non-zero if the sync fails.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path so we can import src.givesync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run_sync(organization_id: str, provider: str, combined: bool | None) -> int:
    """Run one sync and print its result. Returns the process exit code."""
    from src.givesync.config import get_settings
    from src.givesync.core.database import close_db, get_session
    from src.givesync.core.logging import configure_structlog
    from src.givesync.core.monitoring import init_sentry
    from src.givesync.crm.exceptions import CRMSyncError
    from src.givesync.crm.manager import build_integration_manager

    settings = get_settings()
    configure_structlog()
    if settings.SENTRY_DSN:
        init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT.value)

    manager = build_integration_manager(settings, get_session)

    print(f"Syncing organization={organization_id} provider={provider}", file=sys.stderr)
    try:
        result = await manager.sync_data(organization_id, provider, combined_mode=combined)
    except CRMSyncError as exc:
        print(f"Sync failed: {exc}", file=sys.stderr)
        return 1
    finally:
        await close_db()

    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a CRM sync for one organization")
    parser.add_argument("--organization", required=True, help="Organization id")
    parser.add_argument("--provider", required=True, help="CRM provider (blackbaud, salesforce)")
    parser.add_argument(
        "--combined",
        action="store_true",
        default=None,
        help="Fetch donors together with their gifts (providers that support it)",
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(run_sync(args.organization, args.provider, args.combined)))


if __name__ == "__main__":
    main()
