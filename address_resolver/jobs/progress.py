from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from address_resolver.pipeline.types import ResolutionResult

PROGRESS_STATUSES = ("pending", "processing", "completed")
CHUNK_STATUSES = ("queued", "claimed", "done")


class ProgressOvershootError(ValueError):
    """Applying a delta would push ``processed`` past ``total``."""


@dataclass(slots=True)
class BatchProgress:
    job_id: str
    total: int
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    status: str = "pending"
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    estimated_remaining_ms: int | None = None

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 100.0
        return round(self.processed * 100.0 / self.total, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "status": self.status,
            "percentage": self.percentage,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "estimated_remaining_ms": self.estimated_remaining_ms,
        }


@dataclass(slots=True)
class ResultRecord:
    identifier: str
    success: bool
    source_tag: str
    confidence: float
    address: str | None = None
    strategy: str | None = None
    error: str | None = None

    @classmethod
    def from_result(cls, identifier: str, result: ResolutionResult) -> ResultRecord:
        return cls(
            identifier=identifier,
            success=result.success,
            source_tag=result.source_tag.value,
            confidence=result.confidence,
            address=result.address,
            strategy=result.strategy.value if result.strategy else None,
            error=result.error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "success": self.success,
            "source_tag": self.source_tag,
            "confidence": self.confidence,
            "address": self.address,
            "strategy": self.strategy,
            "error": self.error,
        }


@dataclass(slots=True)
class ChunkJob:
    id: str
    job_id: str
    chunk_index: int
    total_chunks: int
    identifiers: list[str]
    claim_token: str | None = None
    attempt: int = 0
    priority: int = 0


def chunk_identifiers(identifiers: list[str], chunk_size: int) -> list[list[str]]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    return [identifiers[start : start + chunk_size] for start in range(0, len(identifiers), chunk_size)]


def advance_progress(
    progress: BatchProgress,
    *,
    processed: int,
    succeeded: int,
    now: datetime | None = None,
) -> BatchProgress:
    """Return ``progress`` with one chunk's outcome applied.

    Callers must hold the per-job lock; this function only computes the next state.
    """
    if processed < 0 or succeeded < 0 or succeeded > processed:
        raise ValueError("invalid progress delta")
    next_processed = progress.processed + processed
    if next_processed > progress.total:
        raise ProgressOvershootError(
            f"progress for {progress.job_id} would reach {next_processed} of {progress.total}"
        )

    now = now or datetime.now(timezone.utc)
    updated = replace(
        progress,
        processed=next_processed,
        succeeded=progress.succeeded + succeeded,
        failed=progress.failed + (processed - succeeded),
    )

    if updated.processed >= updated.total:
        updated.status = "completed"
        updated.completed_at = now
        updated.estimated_remaining_ms = 0
        return updated

    if updated.status == "pending":
        updated.status = "processing"
    updated.estimated_remaining_ms = estimate_remaining_ms(updated, now)
    return updated


def estimate_remaining_ms(progress: BatchProgress, now: datetime) -> int | None:
    if progress.processed <= 0:
        return None
    if progress.processed >= progress.total:
        return 0
    elapsed_ms = max((now - progress.started_at).total_seconds() * 1000.0, 1.0)
    rate = progress.processed / elapsed_ms
    return int(round((progress.total - progress.processed) / rate))
