from datetime import datetime

from pydantic import BaseModel, Field


class BatchRequest(BaseModel):
    identifiers: list[str | int]
    chunk_size: int | None = Field(default=None, ge=1, le=1000)
    priority: int = Field(default=0, ge=0, le=10)


class BatchAccepted(BaseModel):
    job_id: str
    total: int
    chunks: int
    progress_url: str
    results_url: str


class BatchProgressOut(BaseModel):
    job_id: str
    total: int
    processed: int
    succeeded: int
    failed: int
    status: str
    percentage: float
    started_at: datetime
    completed_at: datetime | None = None
    estimated_remaining_ms: int | None = None


class BatchResultOut(BaseModel):
    identifier: str
    success: bool
    source_tag: str
    confidence: float
    address: str | None = None
    strategy: str | None = None
    error: str | None = None


class BatchResultsOut(BaseModel):
    job_id: str
    count: int
    results: list[BatchResultOut]


class QueueStatsOut(BaseModel):
    queued: int
    claimed: int
    done: int
