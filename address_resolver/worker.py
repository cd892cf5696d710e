from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from address_resolver.core.config import Settings, get_settings
from address_resolver.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from address_resolver.jobs.consumer import process_chunk
from address_resolver.jobs.lease_reaper import run_maintenance
from address_resolver.jobs.progress import ChunkJob
from address_resolver.pipeline.resolver import ResolutionPipeline, build_pipeline
from address_resolver.services.repository import (
    BatchStore,
    RepositoryConflictError,
    RepositoryNotFoundError,
    get_repository,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def process_claimed_chunks(
    store: BatchStore,
    pipeline: ResolutionPipeline,
    chunks: list[ChunkJob],
    settings: Settings,
) -> int:
    """Process claimed chunks side by side so each one keeps its own lease alive; returns completions."""

    async def run_one(chunk: ChunkJob) -> bool:
        try:
            await process_chunk(
                store,
                pipeline,
                chunk,
                concurrency=settings.chunk_concurrency,
                lease_seconds=settings.chunk_lease_seconds,
                heartbeat_seconds=settings.chunk_heartbeat_seconds,
                max_attempts=settings.chunk_max_attempts,
            )
        except (RepositoryConflictError, RepositoryNotFoundError) as exc:
            # lease lapsed and the chunk was requeued or its batch expired
            logger.warning("chunk completion rejected id=%s job_id=%s: %s", chunk.id, chunk.job_id, exc)
            return False
        return True

    completed = await asyncio.gather(*(run_one(chunk) for chunk in chunks))
    return sum(1 for ok in completed if ok)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, service_suffix="worker")
    repository = get_repository()
    pipeline = build_pipeline(settings)

    backoff = settings.poll_interval_seconds
    last_maintenance_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_maintenance_at >= settings.lease_reaper_interval_seconds:
                        await run_maintenance(repository, reap_limit=settings.lease_reaper_batch_size)
                        last_maintenance_at = now

                    chunks = await repository.claim_chunks(settings.claim_batch_size, settings.chunk_lease_seconds)
                    if not chunks:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    await process_claimed_chunks(repository, pipeline, chunks, settings)
                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - worker robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
