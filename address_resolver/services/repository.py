from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from address_resolver.core.config import get_settings
from address_resolver.jobs.progress import (
    BatchProgress,
    ChunkJob,
    ProgressOvershootError,
    ResultRecord,
    advance_progress,
)
from address_resolver.pipeline.types import ResolutionResult


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


@dataclass(slots=True)
class PropertyRecord:
    id: int
    listing_id: str
    outward: str | None = None
    inward: str | None = None


class BatchStore(Protocol):
    """Operations shared by the Postgres repository and the in-memory store."""

    async def create_batch(self, progress: BatchProgress, chunks: list[ChunkJob], *, stagger_seconds: float) -> None: ...

    async def get_batch_progress(self, job_id: str) -> BatchProgress | None: ...

    async def list_batch_results(self, job_id: str) -> list[ResultRecord] | None: ...

    async def claim_chunks(self, limit: int, lease_seconds: int) -> list[ChunkJob]: ...

    async def extend_lease(self, chunk_id: str, claim_token: str, lease_seconds: int) -> bool: ...

    async def complete_chunk(self, chunk_id: str, claim_token: str, results: list[ResultRecord]) -> BatchProgress: ...

    async def requeue_expired_chunks(self, limit: int) -> int: ...

    async def purge_expired(self) -> int: ...

    async def queue_stats(self) -> dict[str, int]: ...

    async def fetch_unresolved_properties(self, *, after_id: int, limit: int) -> list[PropertyRecord]: ...

    async def record_property_resolution(self, property_id: int, result: ResolutionResult) -> None: ...

    async def close(self) -> None: ...


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        progress_ttl_seconds: int,
        results_ttl_seconds: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.progress_ttl_seconds = max(1, progress_ttl_seconds)
        self.results_ttl_seconds = max(1, results_ttl_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_batch(self, progress: BatchProgress, chunks: list[ChunkJob], *, stagger_seconds: float) -> None:
        pool = await self._get_pool()
        expires_at = progress.started_at + timedelta(seconds=self.progress_ttl_seconds)

        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    insert into batch_progress (
                      job_id,
                      total,
                      processed,
                      succeeded,
                      failed,
                      status,
                      started_at,
                      expires_at
                    )
                    values ($1::uuid, $2, 0, 0, 0, 'pending', $3, $4)
                    """,
                    progress.job_id,
                    progress.total,
                    progress.started_at,
                    expires_at,
                )
                await conn.executemany(
                    """
                    insert into batch_chunks (
                      id,
                      job_id,
                      chunk_index,
                      total_chunks,
                      identifiers,
                      priority,
                      status,
                      next_run_at
                    )
                    values (
                      $1::uuid, $2::uuid, $3, $4, $5::jsonb, $6, 'queued',
                      now() + ($7::float8 * interval '1 second')
                    )
                    """,
                    [
                        (
                            chunk.id,
                            chunk.job_id,
                            chunk.chunk_index,
                            chunk.total_chunks,
                            json.dumps(chunk.identifiers),
                            chunk.priority,
                            stagger_seconds * chunk.chunk_index,
                        )
                        for chunk in chunks
                    ],
                )

    async def get_batch_progress(self, job_id: str) -> BatchProgress | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  job_id::text as job_id,
                  total,
                  processed,
                  succeeded,
                  failed,
                  status,
                  started_at,
                  completed_at,
                  estimated_remaining_ms
                from batch_progress
                where job_id = $1::uuid and expires_at > now()
                """,
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        if not row:
            return None
        return self._progress_row_to_model(row)

    async def list_batch_results(self, job_id: str) -> list[ResultRecord] | None:
        progress = await self.get_batch_progress(job_id)
        if progress is None:
            return None

        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select identifier, success, source_tag, confidence, address, strategy, error
            from batch_results
            where job_id = $1::uuid and expires_at > now()
            order by id asc
            """,
            job_id,
        )
        if not rows and progress.processed > 0:
            return None
        return [self._result_row_to_model(row) for row in rows]

    async def claim_chunks(self, limit: int, lease_seconds: int) -> list[ChunkJob]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 100))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with due as (
                      select id
                      from batch_chunks
                      where status = 'queued' and next_run_at <= now()
                      order by priority desc, next_run_at asc, chunk_index asc
                      limit $1
                      for update skip locked
                    )
                    update batch_chunks c
                    set
                      status = 'claimed',
                      claim_token = gen_random_uuid(),
                      claimed_at = now(),
                      lease_expires_at = now() + ($2::int * interval '1 second'),
                      attempt = c.attempt + 1
                    from due d
                    where c.id = d.id
                    returning
                      c.id::text as id,
                      c.job_id::text as job_id,
                      c.chunk_index,
                      c.total_chunks,
                      c.identifiers,
                      c.claim_token::text as claim_token,
                      c.attempt,
                      c.priority
                    """,
                    bounded_limit,
                    lease_seconds,
                )
        chunks = [self._chunk_row_to_model(row) for row in rows]
        return sorted(chunks, key=lambda chunk: (chunk.job_id, chunk.chunk_index))

    async def extend_lease(self, chunk_id: str, claim_token: str, lease_seconds: int) -> bool:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                update batch_chunks
                set lease_expires_at = now() + ($3::int * interval '1 second')
                where id = $1::uuid
                  and claim_token = $2::uuid
                  and status = 'claimed'
                returning id
                """,
                chunk_id,
                claim_token,
                lease_seconds,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return False
        return row is not None

    async def complete_chunk(self, chunk_id: str, claim_token: str, results: list[ResultRecord]) -> BatchProgress:
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    chunk = await conn.fetchrow(
                        """
                        select
                          id::text as id,
                          job_id::text as job_id,
                          status,
                          claim_token::text as claim_token
                        from batch_chunks
                        where id = $1::uuid
                        for update
                        """,
                        chunk_id,
                    )
                    if not chunk:
                        raise RepositoryNotFoundError("chunk not found")
                    if chunk["status"] != "claimed":
                        raise RepositoryConflictError("chunk is not in claimed state")
                    if chunk["claim_token"] != claim_token:
                        raise RepositoryConflictError("chunk claimed by another consumer")

                    row = await conn.fetchrow(
                        """
                        select
                          job_id::text as job_id,
                          total,
                          processed,
                          succeeded,
                          failed,
                          status,
                          started_at,
                          completed_at,
                          estimated_remaining_ms
                        from batch_progress
                        where job_id = $1::uuid
                        for update
                        """,
                        chunk["job_id"],
                    )
                    if not row:
                        raise RepositoryNotFoundError("batch progress not found")

                    succeeded = sum(1 for record in results if record.success)
                    try:
                        updated = advance_progress(
                            self._progress_row_to_model(row),
                            processed=len(results),
                            succeeded=succeeded,
                        )
                    except ProgressOvershootError as exc:
                        raise RepositoryConflictError(str(exc)) from exc

                    await conn.execute(
                        """
                        update batch_progress
                        set
                          processed = $2,
                          succeeded = $3,
                          failed = $4,
                          status = $5,
                          completed_at = $6,
                          estimated_remaining_ms = $7
                        where job_id = $1::uuid
                        """,
                        updated.job_id,
                        updated.processed,
                        updated.succeeded,
                        updated.failed,
                        updated.status,
                        updated.completed_at,
                        updated.estimated_remaining_ms,
                    )
                    await conn.executemany(
                        """
                        insert into batch_results (
                          job_id,
                          identifier,
                          success,
                          source_tag,
                          confidence,
                          address,
                          strategy,
                          error,
                          expires_at
                        )
                        values ($1::uuid, $2, $3, $4, $5, $6, $7, $8, now() + ($9::int * interval '1 second'))
                        """,
                        [
                            (
                                updated.job_id,
                                record.identifier,
                                record.success,
                                record.source_tag,
                                record.confidence,
                                record.address,
                                record.strategy,
                                record.error,
                                self.results_ttl_seconds,
                            )
                            for record in results
                        ],
                    )
                    await conn.execute(
                        """
                        update batch_chunks
                        set
                          status = 'done',
                          completed_at = now(),
                          lease_expires_at = null
                        where id = $1::uuid
                        """,
                        chunk_id,
                    )
                    return updated
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("chunk not found") from exc

    async def requeue_expired_chunks(self, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from batch_chunks
                      where status = 'claimed'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update batch_chunks c
                    set
                      status = 'queued',
                      claim_token = null,
                      claimed_at = null,
                      lease_expires_at = null,
                      next_run_at = now()
                    from expired e
                    where c.id = e.id
                    returning c.id::text as id
                    """,
                    bounded_limit,
                )
                return len(rows)

    async def purge_expired(self) -> int:
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                results_deleted = await conn.fetchval(
                    """
                    with deleted as (
                      delete from batch_results where expires_at <= now() returning 1
                    )
                    select count(*) from deleted
                    """
                )
                # chunks and remaining results cascade with their progress row
                progress_deleted = await conn.fetchval(
                    """
                    with deleted as (
                      delete from batch_progress where expires_at <= now() returning 1
                    )
                    select count(*) from deleted
                    """
                )
        return int(results_deleted or 0) + int(progress_deleted or 0)

    async def queue_stats(self) -> dict[str, int]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select status, count(*)::int as count
            from batch_chunks
            group by status
            """
        )
        stats = {"queued": 0, "claimed": 0, "done": 0}
        for row in rows:
            stats[row["status"]] = int(row["count"])
        return stats

    async def fetch_unresolved_properties(self, *, after_id: int, limit: int) -> list[PropertyRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, listing_id, outward, inward
            from properties
            where id > $1
              and address is null
              and resolution_attempted_at is null
            order by id asc
            limit $2
            """,
            after_id,
            max(1, limit),
        )
        return [
            PropertyRecord(
                id=int(row["id"]),
                listing_id=row["listing_id"],
                outward=row["outward"],
                inward=row["inward"],
            )
            for row in rows
        ]

    async def record_property_resolution(self, property_id: int, result: ResolutionResult) -> None:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update properties
            set
              address = coalesce($2, address),
              address_confidence = $3,
              address_source = $4,
              address_strategy = $5,
              resolution_error = $6,
              resolution_metadata = $7::jsonb,
              resolution_attempted_at = now()
            where id = $1
            """,
            property_id,
            result.address if result.success else None,
            result.confidence,
            result.source_tag.value,
            result.strategy.value if result.strategy else None,
            result.error,
            json.dumps(result.metadata, default=str),
        )
        if status.endswith(" 0"):
            raise RepositoryNotFoundError("property not found")

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("AR_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _progress_row_to_model(row: asyncpg.Record) -> BatchProgress:
        return BatchProgress(
            job_id=row["job_id"],
            total=int(row["total"]),
            processed=int(row["processed"]),
            succeeded=int(row["succeeded"]),
            failed=int(row["failed"]),
            status=row["status"],
            started_at=_as_utc(row["started_at"]),
            completed_at=_as_utc(row["completed_at"]) if row["completed_at"] else None,
            estimated_remaining_ms=row["estimated_remaining_ms"],
        )

    @staticmethod
    def _result_row_to_model(row: asyncpg.Record) -> ResultRecord:
        return ResultRecord(
            identifier=row["identifier"],
            success=bool(row["success"]),
            source_tag=row["source_tag"],
            confidence=float(row["confidence"]),
            address=row["address"],
            strategy=row["strategy"],
            error=row["error"],
        )

    @staticmethod
    def _chunk_row_to_model(row: asyncpg.Record) -> ChunkJob:
        identifiers: Any = row["identifiers"]
        if isinstance(identifiers, str):
            try:
                identifiers = json.loads(identifiers)
            except json.JSONDecodeError:
                identifiers = []
        return ChunkJob(
            id=row["id"],
            job_id=row["job_id"],
            chunk_index=int(row["chunk_index"]),
            total_chunks=int(row["total_chunks"]),
            identifiers=[str(item) for item in identifiers or []],
            claim_token=row["claim_token"],
            attempt=int(row["attempt"]),
            priority=int(row["priority"]),
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@lru_cache
def get_repository() -> BatchStore:
    settings = get_settings()
    if settings.store_backend == "memory":
        from address_resolver.services.store import InMemoryStore

        return InMemoryStore(
            progress_ttl_seconds=settings.progress_ttl_seconds,
            results_ttl_seconds=settings.results_ttl_seconds,
        )
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        progress_ttl_seconds=settings.progress_ttl_seconds,
        results_ttl_seconds=settings.results_ttl_seconds,
    )
