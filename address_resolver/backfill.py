"""Resolve addresses for stored properties that have none yet.

Pages through unresolved rows by ascending id and runs each page through a
``WorkerPool``; every result is written back as soon as it arrives.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from address_resolver.core.config import get_settings
from address_resolver.core.errors import ValidationError
from address_resolver.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from address_resolver.jobs.pool import PoolJob, Resolver, ResultMessage, WorkerPool
from address_resolver.pipeline.resolver import build_pipeline
from address_resolver.pipeline.types import PostalHint
from address_resolver.services.repository import BatchStore, PropertyRecord, get_repository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BackfillSummary:
    pages: int = 0
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    last_id: int = 0


def property_to_job(record: PropertyRecord) -> PoolJob:
    try:
        hint = PostalHint.from_parts(record.outward, record.inward)
    except ValidationError as exc:
        logger.warning("ignoring postal hint property_id=%s: %s", record.id, exc)
        hint = None
    return PoolJob(identifier=record.listing_id, postal_hint=hint, key=record.id)


async def run_backfill(
    store: BatchStore,
    resolver_factory: Callable[[], Resolver],
    *,
    worker_count: int,
    page_size: int,
    limit: int | None = None,
    start_after: int = 0,
) -> BackfillSummary:
    summary = BackfillSummary(last_id=start_after)

    async def write_back(message: ResultMessage) -> None:
        await store.record_property_resolution(message.job.key, message.result)

    pool = WorkerPool(resolver_factory, worker_count=worker_count, on_result=write_back)

    while limit is None or summary.total < limit:
        page_limit = page_size if limit is None else min(page_size, limit - summary.total)
        rows = await store.fetch_unresolved_properties(after_id=summary.last_id, limit=page_limit)
        if not rows:
            break

        page = await pool.run([property_to_job(row) for row in rows])
        summary.pages += 1
        summary.total += page.total
        summary.succeeded += page.succeeded
        summary.failed += page.failed
        summary.last_id = rows[-1].id
        logger.info(
            "backfill page done page=%s rows=%s succeeded=%s last_id=%s avg_response_ms=%.1f",
            summary.pages,
            page.total,
            page.succeeded,
            summary.last_id,
            page.average_response_time_ms,
        )

    return summary


async def _main(args: argparse.Namespace) -> BackfillSummary:
    settings = get_settings()
    telemetry_runtime = setup_telemetry(settings, service_suffix="backfill")
    repository = get_repository()
    try:
        return await run_backfill(
            repository,
            lambda: build_pipeline(settings),
            worker_count=args.workers or settings.pool_worker_count,
            page_size=args.page_size or settings.backfill_page_size,
            limit=args.limit,
            start_after=args.start_after,
        )
    finally:
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    parser = argparse.ArgumentParser(description="Resolve addresses for stored properties that have none yet.")
    parser.add_argument("--workers", type=int, default=None, help="Parallel resolution workers")
    parser.add_argument("--page-size", type=int, default=None, help="Rows fetched per page")
    parser.add_argument("--limit", type=int, default=None, help="Stop after this many rows")
    parser.add_argument("--start-after", type=int, default=0, help="Only rows with a larger id")
    args = parser.parse_args()

    configure_logging()
    summary = asyncio.run(_main(args))
    print(
        f"pages={summary.pages} total={summary.total} succeeded={summary.succeeded} "
        f"failed={summary.failed} last_id={summary.last_id}"
    )


if __name__ == "__main__":
    main()
