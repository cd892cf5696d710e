from __future__ import annotations

import asyncio
import logging

from opentelemetry import trace

from address_resolver.jobs.progress import BatchProgress, ChunkJob, ResultRecord
from address_resolver.pipeline.resolver import ResolutionPipeline
from address_resolver.pipeline.types import SourceTag
from address_resolver.services.repository import BatchStore, RepositoryError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def resolve_chunk(pipeline: ResolutionPipeline, chunk: ChunkJob, *, concurrency: int = 3) -> list[ResultRecord]:
    """Resolve a chunk's identifiers with at most ``concurrency`` in flight, keeping chunk order."""
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def resolve_one(identifier: str) -> ResultRecord:
        async with semaphore:
            result = await pipeline.resolve(identifier)
        return ResultRecord.from_result(identifier, result)

    return list(await asyncio.gather(*(resolve_one(identifier) for identifier in chunk.identifiers)))


def abandoned_results(chunk: ChunkJob) -> list[ResultRecord]:
    message = f"chunk abandoned after {chunk.attempt - 1} attempts"
    return [
        ResultRecord(
            identifier=identifier,
            success=False,
            source_tag=SourceTag.ERROR.value,
            confidence=0.0,
            error=message,
        )
        for identifier in chunk.identifiers
    ]


async def keep_lease(
    store: BatchStore,
    chunk: ChunkJob,
    claim_token: str,
    *,
    lease_seconds: int,
    interval_seconds: float,
) -> None:
    """Extend the chunk's lease every ``interval_seconds`` until cancelled or the claim is lost."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            extended = await store.extend_lease(chunk.id, claim_token, lease_seconds)
        except RepositoryError as exc:
            logger.warning("lease heartbeat failed id=%s job_id=%s: %s", chunk.id, chunk.job_id, exc)
            continue
        if not extended:
            logger.warning("lease lost id=%s job_id=%s attempt=%s", chunk.id, chunk.job_id, chunk.attempt)
            return


async def process_chunk(
    store: BatchStore,
    pipeline: ResolutionPipeline,
    chunk: ChunkJob,
    *,
    concurrency: int = 3,
    lease_seconds: int | None = None,
    heartbeat_seconds: float | None = None,
    max_attempts: int | None = None,
) -> BatchProgress:
    if chunk.claim_token is None:
        raise ValueError(f"chunk {chunk.id} has no claim token")

    with tracer.start_as_current_span("worker.process_chunk") as span:
        span.set_attribute("batch.job_id", chunk.job_id)
        span.set_attribute("batch.chunk_index", chunk.chunk_index)
        span.set_attribute("batch.attempt", chunk.attempt)

        if max_attempts is not None and chunk.attempt > max_attempts:
            logger.warning(
                "chunk exceeded max attempts id=%s job_id=%s attempt=%s max_attempts=%s",
                chunk.id,
                chunk.job_id,
                chunk.attempt,
                max_attempts,
            )
            results = abandoned_results(chunk)
        elif lease_seconds and heartbeat_seconds:
            heartbeat = asyncio.create_task(
                keep_lease(
                    store,
                    chunk,
                    chunk.claim_token,
                    lease_seconds=lease_seconds,
                    interval_seconds=heartbeat_seconds,
                )
            )
            try:
                results = await resolve_chunk(pipeline, chunk, concurrency=concurrency)
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)
        else:
            results = await resolve_chunk(pipeline, chunk, concurrency=concurrency)

        progress = await store.complete_chunk(chunk.id, chunk.claim_token, results)

    logger.info(
        "chunk completed job_id=%s chunk=%s/%s processed=%s/%s status=%s",
        chunk.job_id,
        chunk.chunk_index + 1,
        chunk.total_chunks,
        progress.processed,
        progress.total,
        progress.status,
    )
    return progress
