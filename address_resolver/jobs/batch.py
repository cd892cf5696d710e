from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from uuid import uuid4

from address_resolver.core.errors import ValidationError
from address_resolver.jobs.progress import BatchProgress, ChunkJob, ResultRecord, chunk_identifiers
from address_resolver.pipeline.types import normalize_identifier
from address_resolver.services.repository import BatchStore

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 50


@dataclass(slots=True)
class EnqueuedBatch:
    job_id: str
    total: int
    chunks: int


class BatchQueueProcessor:
    """Splits identifier batches into staggered chunks on the durable queue."""

    def __init__(
        self,
        store: BatchStore,
        *,
        max_identifiers: int = 10000,
        stagger_seconds: float = 1.0,
        default_chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.store = store
        self.max_identifiers = max_identifiers
        self.stagger_seconds = stagger_seconds
        self.default_chunk_size = default_chunk_size

    async def enqueue(
        self,
        identifiers: Sequence[str | int],
        chunk_size: int | None = None,
        *,
        priority: int = 0,
    ) -> EnqueuedBatch:
        size = chunk_size if chunk_size is not None else self.default_chunk_size
        normalized = self.validate(identifiers, size)

        job_id = str(uuid4())
        groups = chunk_identifiers(normalized, size)
        chunks = [
            ChunkJob(
                id=str(uuid4()),
                job_id=job_id,
                chunk_index=index,
                total_chunks=len(groups),
                identifiers=group,
                priority=priority,
            )
            for index, group in enumerate(groups)
        ]
        await self.store.create_batch(
            BatchProgress(job_id=job_id, total=len(normalized)),
            chunks,
            stagger_seconds=self.stagger_seconds,
        )
        logger.info(
            "batch enqueued job_id=%s total=%s chunks=%s priority=%s",
            job_id,
            len(normalized),
            len(chunks),
            priority,
        )
        return EnqueuedBatch(job_id=job_id, total=len(normalized), chunks=len(chunks))

    def validate(self, identifiers: Sequence[str | int], chunk_size: int) -> list[str]:
        if isinstance(identifiers, (str, bytes)) or not identifiers:
            raise ValidationError("identifiers must be a non-empty list", field="identifiers")
        if len(identifiers) > self.max_identifiers:
            raise ValidationError(
                f"batch of {len(identifiers)} exceeds the limit of {self.max_identifiers} identifiers",
                field="identifiers",
            )
        if chunk_size < 1:
            raise ValidationError("chunk_size must be a positive integer", field="chunk_size")

        normalized: list[str] = []
        for position, identifier in enumerate(identifiers):
            try:
                normalized.append(normalize_identifier(identifier))
            except ValidationError as exc:
                raise ValidationError(f"identifiers[{position}]: {exc}", field="identifiers") from exc
        return normalized

    async def get_progress(self, job_id: str) -> BatchProgress | None:
        return await self.store.get_batch_progress(job_id)

    async def get_results(self, job_id: str) -> list[ResultRecord] | None:
        return await self.store.list_batch_results(job_id)
