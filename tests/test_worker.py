from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from address_resolver.core.config import Settings
from address_resolver.jobs.batch import BatchQueueProcessor
from address_resolver.jobs.consumer import process_chunk
from address_resolver.jobs.progress import BatchProgress, ResultRecord
from address_resolver.pipeline.types import PostalHint, ResolutionResult, SourceTag
from address_resolver.services.repository import RepositoryConflictError
from address_resolver.services.store import InMemoryStore
from address_resolver.worker import process_claimed_chunks


class MutableClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class SlowPipeline:
    """Each resolution outlasts the chunk lease, then runs a reaper pass before returning."""

    def __init__(self, store: InMemoryStore, clock: MutableClock, *, lease_seconds: int) -> None:
        self.store = store
        self.clock = clock
        self.lease_seconds = lease_seconds
        self.requeued: list[int] = []

    async def resolve(self, identifier: str, postal_hint: PostalHint | None = None) -> ResolutionResult:
        self.clock.advance(self.lease_seconds + 1)
        await asyncio.sleep(0.1)
        self.requeued.append(await self.store.requeue_expired_chunks(10))
        return ResolutionResult(
            success=True,
            address=f"{identifier} Test Street",
            confidence=0.9,
            source_tag=SourceTag.REGISTRY,
            response_time_ms=1,
        )


def _settings(**overrides) -> Settings:
    values = {
        "chunk_lease_seconds": 900,
        "chunk_heartbeat_seconds": 0.01,
        "chunk_max_attempts": 5,
        "chunk_concurrency": 3,
    }
    values.update(overrides)
    return Settings(**values)


def test_claimed_chunks_keep_their_leases_while_resolving() -> None:
    clock = MutableClock()
    store = InMemoryStore(clock=clock)
    pipeline = SlowPipeline(store, clock, lease_seconds=900)

    async def run() -> tuple[int, BatchProgress | None, dict[str, int]]:
        batch = await BatchQueueProcessor(store, stagger_seconds=0).enqueue(["1", "2"], chunk_size=1)
        chunks = await store.claim_chunks(2, lease_seconds=900)
        assert len(chunks) == 2
        completed = await process_claimed_chunks(store, pipeline, chunks, _settings())
        return completed, await store.get_batch_progress(batch.job_id), await store.queue_stats()

    completed, progress, stats = asyncio.run(run())

    assert completed == 2
    assert pipeline.requeued == [0, 0]
    assert progress is not None
    assert progress.status == "completed"
    assert progress.processed == 2
    assert stats == {"queued": 0, "claimed": 0, "done": 2}


def test_chunk_without_heartbeat_loses_its_lease() -> None:
    clock = MutableClock()
    store = InMemoryStore(clock=clock)
    pipeline = SlowPipeline(store, clock, lease_seconds=900)

    async def run() -> dict[str, int]:
        await BatchQueueProcessor(store, stagger_seconds=0).enqueue(["1"], chunk_size=1)
        (chunk,) = await store.claim_chunks(1, lease_seconds=900)
        with pytest.raises(RepositoryConflictError):
            await process_chunk(store, pipeline, chunk)
        return await store.queue_stats()

    stats = asyncio.run(run())

    assert pipeline.requeued == [1]
    assert stats == {"queued": 1, "claimed": 0, "done": 0}


def test_chunk_past_max_attempts_completes_as_failed() -> None:
    clock = MutableClock()
    store = InMemoryStore(clock=clock)
    pipeline = SlowPipeline(store, clock, lease_seconds=30)

    async def run() -> tuple[BatchProgress, list[ResultRecord]]:
        batch = await BatchQueueProcessor(store, stagger_seconds=0).enqueue(["1", "2", "3"], chunk_size=3)
        for _ in range(2):
            await store.claim_chunks(1, lease_seconds=30)
            clock.advance(31)
            assert await store.requeue_expired_chunks(10) == 1
        (chunk,) = await store.claim_chunks(1, lease_seconds=30)
        assert chunk.attempt == 3

        progress = await process_chunk(store, pipeline, chunk, max_attempts=2)
        return progress, await store.list_batch_results(batch.job_id) or []

    progress, results = asyncio.run(run())

    assert pipeline.requeued == []
    assert progress.status == "completed"
    assert (progress.processed, progress.succeeded, progress.failed) == (3, 0, 3)
    assert [record.error for record in results] == ["chunk abandoned after 2 attempts"] * 3
    assert {record.source_tag for record in results} == {"error"}
