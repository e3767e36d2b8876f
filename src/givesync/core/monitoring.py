"""Prometheus metrics and Sentry integration for CRM sync runs.

Provides:
- track_sync_run(): Async context manager recording run count and duration
- record_outcomes(): Per-record outcome counters folded in after each page
- init_sentry(): Initialize Sentry SDK when a DSN is configured
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import sentry_sdk
from prometheus_client import Counter, Histogram

# ── Sync Metrics ─────────────────────────────────────────────────────────────

crm_sync_runs_total = Counter(
    "crm_sync_runs_total",
    "Total CRM sync runs by final status",
    ["provider", "status"],
)

crm_sync_run_duration_seconds = Histogram(
    "crm_sync_run_duration_seconds",
    "CRM sync run duration in seconds",
    ["provider"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0),
)

crm_sync_records_total = Counter(
    "crm_sync_records_total",
    "CRM records processed by entity type and upsert outcome",
    ["provider", "entity", "outcome"],
)


@asynccontextmanager
async def track_sync_run(provider: str) -> AsyncGenerator[None, None]:
    """Context manager that tracks a sync run's status and duration.

    Usage:
        async with track_sync_run("salesforce"):
            await engine.run(...)

    Records status "success" when the body completes, "rejected" for a
    single-flight rejection and "error" for any other exception.
    """
    from src.givesync.crm.exceptions import SyncAlreadyRunningError

    start_time = time.perf_counter()
    status = "success"

    try:
        yield
    except SyncAlreadyRunningError:
        status = "rejected"
        raise
    except BaseException:
        status = "error"
        raise
    finally:
        crm_sync_runs_total.labels(provider=provider, status=status).inc()
        crm_sync_run_duration_seconds.labels(provider=provider).observe(
            time.perf_counter() - start_time
        )


def record_outcomes(
    provider: str,
    entity: str,
    created: int = 0,
    updated: int = 0,
    unchanged: int = 0,
    failed: int = 0,
) -> None:
    """Increment the per-outcome record counters for one entity type."""
    counts = {
        "created": created,
        "updated": updated,
        "unchanged": unchanged,
        "failed": failed,
    }
    for outcome, count in counts.items():
        if count:
            crm_sync_records_total.labels(
                provider=provider, entity=entity, outcome=outcome
            ).inc(count)


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
    )
