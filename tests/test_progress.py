from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from address_resolver.jobs.progress import (
    BatchProgress,
    ChunkJob,
    ProgressOvershootError,
    ResultRecord,
    advance_progress,
    chunk_identifiers,
)
from address_resolver.services.repository import RepositoryConflictError
from address_resolver.services.store import InMemoryStore

STARTED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _records(identifiers: list[str], *, ok_every: int = 2) -> list[ResultRecord]:
    return [
        ResultRecord(
            identifier=identifier,
            success=index % ok_every == 0,
            source_tag="registry" if index % ok_every == 0 else "error",
            confidence=0.9 if index % ok_every == 0 else 0.0,
        )
        for index, identifier in enumerate(identifiers)
    ]


def test_chunk_identifiers_splits_in_order() -> None:
    identifiers = [str(number) for number in range(237)]

    chunks = chunk_identifiers(identifiers, 50)

    assert [len(chunk) for chunk in chunks] == [50, 50, 50, 50, 37]
    assert [identifier for chunk in chunks for identifier in chunk] == identifiers
    with pytest.raises(ValueError):
        chunk_identifiers(identifiers, 0)


def test_advance_progress_transitions_and_eta() -> None:
    progress = BatchProgress(job_id="job-1", total=100, started_at=STARTED_AT)
    assert progress.estimated_remaining_ms is None

    first = advance_progress(progress, processed=25, succeeded=20, now=STARTED_AT + timedelta(seconds=10))
    assert first.status == "processing"
    assert (first.processed, first.succeeded, first.failed) == (25, 20, 5)
    assert first.estimated_remaining_ms == 30000
    assert first.completed_at is None
    assert progress.processed == 0

    done_at = STARTED_AT + timedelta(seconds=40)
    final = advance_progress(first, processed=75, succeeded=70, now=done_at)
    assert final.status == "completed"
    assert final.processed == final.succeeded + final.failed == 100
    assert final.completed_at == done_at
    assert final.estimated_remaining_ms == 0
    assert final.percentage == 100.0


def test_advance_progress_clamps_elapsed_time() -> None:
    progress = BatchProgress(job_id="job-1", total=4, started_at=STARTED_AT)

    updated = advance_progress(progress, processed=1, succeeded=1, now=STARTED_AT)

    assert updated.estimated_remaining_ms == 3


def test_advance_progress_rejects_overshoot_and_bad_deltas() -> None:
    progress = BatchProgress(job_id="job-1", total=10, processed=8, succeeded=8, started_at=STARTED_AT)

    with pytest.raises(ProgressOvershootError):
        advance_progress(progress, processed=3, succeeded=3)
    with pytest.raises(ValueError):
        advance_progress(progress, processed=1, succeeded=2)


class YieldingStore(InMemoryStore):
    """Yields to the event loop between reading progress and writing it back."""

    async def _read_progress(self, entry):
        progress = await super()._read_progress(entry)
        await asyncio.sleep(0)
        return progress


def test_concurrent_chunk_completions_never_lose_updates() -> None:
    identifiers = [str(number) for number in range(1, 238)]
    groups = chunk_identifiers(identifiers, 50)
    chunks = [
        ChunkJob(id=f"chunk-{index}", job_id="job-1", chunk_index=index, total_chunks=len(groups), identifiers=group)
        for index, group in enumerate(groups)
    ]

    async def run() -> tuple[BatchProgress | None, list[ResultRecord] | None]:
        store = YieldingStore()
        await store.create_batch(BatchProgress(job_id="job-1", total=237), chunks, stagger_seconds=0)
        claimed = await store.claim_chunks(10, lease_seconds=60)
        assert len(claimed) == 5
        snapshots = await asyncio.gather(
            *(store.complete_chunk(chunk.id, chunk.claim_token, _records(chunk.identifiers)) for chunk in claimed)
        )
        processed = sorted(snapshot.processed for snapshot in snapshots)
        assert processed == [50, 100, 150, 200, 237]
        return await store.get_batch_progress("job-1"), await store.list_batch_results("job-1")

    progress, results = asyncio.run(run())

    assert progress is not None
    assert progress.status == "completed"
    assert progress.processed == 237
    assert progress.succeeded + progress.failed == 237
    assert progress.succeeded == sum(len(range(0, len(group), 2)) for group in groups)
    assert results is not None
    assert sorted(record.identifier for record in results) == sorted(identifiers)


def test_stale_claim_cannot_complete_chunk() -> None:
    clock = MutableClock()
    chunk = ChunkJob(id="chunk-0", job_id="job-1", chunk_index=0, total_chunks=1, identifiers=["1", "2"])

    async def run() -> BatchProgress:
        store = InMemoryStore(clock=clock)
        await store.create_batch(BatchProgress(job_id="job-1", total=2), [chunk], stagger_seconds=0)
        (stale,) = await store.claim_chunks(1, lease_seconds=30)
        clock.advance(31)
        assert await store.requeue_expired_chunks(10) == 1
        (fresh,) = await store.claim_chunks(1, lease_seconds=30)
        assert fresh.attempt == 2

        with pytest.raises(RepositoryConflictError):
            await store.complete_chunk(stale.id, stale.claim_token, _records(stale.identifiers))
        progress = await store.complete_chunk(fresh.id, fresh.claim_token, _records(fresh.identifiers))
        with pytest.raises(RepositoryConflictError):
            await store.complete_chunk(fresh.id, fresh.claim_token, _records(fresh.identifiers))
        return progress

    progress = asyncio.run(run())

    assert progress.processed == 2
    assert progress.status == "completed"


def test_expired_batches_disappear_and_are_purged() -> None:
    clock = MutableClock()
    chunk = ChunkJob(id="chunk-0", job_id="job-1", chunk_index=0, total_chunks=1, identifiers=["1"])

    async def run() -> None:
        store = InMemoryStore(progress_ttl_seconds=600, results_ttl_seconds=60, clock=clock)
        await store.create_batch(BatchProgress(job_id="job-1", total=1), [chunk], stagger_seconds=0)
        (claimed,) = await store.claim_chunks(1, lease_seconds=30)
        await store.complete_chunk(claimed.id, claimed.claim_token, _records(claimed.identifiers))
        assert len(await store.list_batch_results("job-1") or []) == 1

        clock.advance(61)
        assert await store.list_batch_results("job-1") is None
        assert await store.get_batch_progress("job-1") is not None
        assert await store.purge_expired() == 1

        clock.advance(600)
        assert await store.get_batch_progress("job-1") is None
        assert await store.purge_expired() == 1
        assert await store.queue_stats() == {"queued": 0, "claimed": 0, "done": 0}

    asyncio.run(run())


class MutableClock:
    def __init__(self) -> None:
        self.now = STARTED_AT

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
