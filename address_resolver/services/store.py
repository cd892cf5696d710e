from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from address_resolver.jobs.progress import (
    BatchProgress,
    ChunkJob,
    ProgressOvershootError,
    ResultRecord,
    advance_progress,
)
from address_resolver.pipeline.types import ResolutionResult
from address_resolver.services.repository import (
    PropertyRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class _ChunkEntry:
    chunk: ChunkJob
    status: str = "queued"
    next_run_at: datetime = field(default_factory=_utcnow)
    lease_expires_at: datetime | None = None


@dataclass(slots=True)
class _ProgressEntry:
    progress: BatchProgress
    expires_at: datetime
    results: list[tuple[ResultRecord, datetime]] = field(default_factory=list)


@dataclass(slots=True)
class PropertyResolution:
    address: str | None
    confidence: float
    source_tag: str
    strategy: str | None
    error: str | None
    attempted_at: datetime


class InMemoryStore:
    """Process-local store for local runs and tests.

    Mirrors the Postgres repository: per-job read-modify-write is serialised with an
    ``asyncio.Lock`` the way the repository serialises it with a row lock.
    """

    def __init__(
        self,
        *,
        progress_ttl_seconds: int = 86400,
        results_ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.progress_ttl_seconds = progress_ttl_seconds
        self.results_ttl_seconds = results_ttl_seconds
        self.clock = clock
        self._batches: dict[str, _ProgressEntry] = {}
        self._chunks: dict[str, _ChunkEntry] = {}
        self._job_locks: dict[str, asyncio.Lock] = {}
        self._queue_lock = asyncio.Lock()
        self.properties: dict[int, PropertyRecord] = {}
        self.resolutions: dict[int, PropertyResolution] = {}

    async def close(self) -> None:
        return None

    async def create_batch(self, progress: BatchProgress, chunks: list[ChunkJob], *, stagger_seconds: float) -> None:
        if progress.job_id in self._batches:
            raise RepositoryConflictError("batch already exists")
        now = self.clock()
        self._batches[progress.job_id] = _ProgressEntry(
            progress=replace(progress),
            expires_at=now + timedelta(seconds=self.progress_ttl_seconds),
        )
        self._job_locks[progress.job_id] = asyncio.Lock()
        for chunk in chunks:
            self._chunks[chunk.id] = _ChunkEntry(
                chunk=replace(chunk, identifiers=list(chunk.identifiers)),
                next_run_at=now + timedelta(seconds=stagger_seconds * chunk.chunk_index),
            )

    async def get_batch_progress(self, job_id: str) -> BatchProgress | None:
        entry = self._live_batch(job_id)
        if entry is None:
            return None
        return replace(entry.progress)

    async def list_batch_results(self, job_id: str) -> list[ResultRecord] | None:
        entry = self._live_batch(job_id)
        if entry is None:
            return None
        now = self.clock()
        records = [replace(record) for record, expires_at in entry.results if expires_at > now]
        if not records and entry.progress.processed > 0:
            return None
        return records

    async def claim_chunks(self, limit: int, lease_seconds: int) -> list[ChunkJob]:
        async with self._queue_lock:
            now = self.clock()
            due = sorted(
                (entry for entry in self._chunks.values() if entry.status == "queued" and entry.next_run_at <= now),
                key=lambda entry: (-entry.chunk.priority, entry.next_run_at, entry.chunk.chunk_index),
            )[: max(1, limit)]
            claimed: list[ChunkJob] = []
            for entry in due:
                entry.status = "claimed"
                entry.lease_expires_at = now + timedelta(seconds=lease_seconds)
                entry.chunk.claim_token = str(uuid4())
                entry.chunk.attempt += 1
                claimed.append(replace(entry.chunk, identifiers=list(entry.chunk.identifiers)))
            return claimed

    async def extend_lease(self, chunk_id: str, claim_token: str, lease_seconds: int) -> bool:
        async with self._queue_lock:
            entry = self._chunks.get(chunk_id)
            if entry is None or entry.status != "claimed" or entry.chunk.claim_token != claim_token:
                return False
            entry.lease_expires_at = self.clock() + timedelta(seconds=lease_seconds)
            return True

    async def complete_chunk(self, chunk_id: str, claim_token: str, results: list[ResultRecord]) -> BatchProgress:
        entry = self._chunks.get(chunk_id)
        if entry is None:
            raise RepositoryNotFoundError("chunk not found")
        lock = self._job_locks.get(entry.chunk.job_id)
        if lock is None:
            raise RepositoryNotFoundError("batch progress not found")

        async with lock:
            if entry.status != "claimed":
                raise RepositoryConflictError("chunk is not in claimed state")
            if entry.chunk.claim_token != claim_token:
                raise RepositoryConflictError("chunk claimed by another consumer")
            batch = self._batches.get(entry.chunk.job_id)
            if batch is None:
                raise RepositoryNotFoundError("batch progress not found")

            current = await self._read_progress(batch)
            now = self.clock()
            try:
                updated = advance_progress(
                    current,
                    processed=len(results),
                    succeeded=sum(1 for record in results if record.success),
                    now=now,
                )
            except ProgressOvershootError as exc:
                raise RepositoryConflictError(str(exc)) from exc

            expires_at = now + timedelta(seconds=self.results_ttl_seconds)
            batch.results.extend((replace(record), expires_at) for record in results)
            batch.progress = updated
            entry.status = "done"
            entry.lease_expires_at = None
            return replace(updated)

    async def requeue_expired_chunks(self, limit: int) -> int:
        async with self._queue_lock:
            now = self.clock()
            expired = sorted(
                (
                    entry
                    for entry in self._chunks.values()
                    if entry.status == "claimed"
                    and entry.lease_expires_at is not None
                    and entry.lease_expires_at <= now
                ),
                key=lambda entry: entry.lease_expires_at or now,
            )[: max(1, min(limit, 1000))]
            for entry in expired:
                entry.status = "queued"
                entry.chunk.claim_token = None
                entry.lease_expires_at = None
                entry.next_run_at = now
            return len(expired)

    async def purge_expired(self) -> int:
        now = self.clock()
        purged = 0
        for job_id, entry in list(self._batches.items()):
            if entry.expires_at <= now:
                purged += 1 + len(entry.results)
                del self._batches[job_id]
                self._job_locks.pop(job_id, None)
                for chunk_id in [key for key, chunk in self._chunks.items() if chunk.chunk.job_id == job_id]:
                    del self._chunks[chunk_id]
                continue
            live = [(record, expires_at) for record, expires_at in entry.results if expires_at > now]
            purged += len(entry.results) - len(live)
            entry.results = live
        return purged

    async def queue_stats(self) -> dict[str, int]:
        stats = {"queued": 0, "claimed": 0, "done": 0}
        for entry in self._chunks.values():
            stats[entry.status] += 1
        return stats

    def add_property(self, listing_id: str, *, outward: str | None = None, inward: str | None = None) -> int:
        property_id = max(self.properties, default=0) + 1
        self.properties[property_id] = PropertyRecord(
            id=property_id,
            listing_id=listing_id,
            outward=outward,
            inward=inward,
        )
        return property_id

    async def fetch_unresolved_properties(self, *, after_id: int, limit: int) -> list[PropertyRecord]:
        rows = [
            record
            for property_id, record in sorted(self.properties.items())
            if property_id > after_id and property_id not in self.resolutions
        ]
        return rows[: max(1, limit)]

    async def record_property_resolution(self, property_id: int, result: ResolutionResult) -> None:
        if property_id not in self.properties:
            raise RepositoryNotFoundError("property not found")
        self.resolutions[property_id] = PropertyResolution(
            address=result.address if result.success else None,
            confidence=result.confidence,
            source_tag=result.source_tag.value,
            strategy=result.strategy.value if result.strategy else None,
            error=result.error,
            attempted_at=self.clock(),
        )

    def _live_batch(self, job_id: str) -> _ProgressEntry | None:
        entry = self._batches.get(job_id)
        if entry is None or entry.expires_at <= self.clock():
            return None
        return entry

    async def _read_progress(self, entry: _ProgressEntry) -> BatchProgress:
        return replace(entry.progress)
