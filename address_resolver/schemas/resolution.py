from typing import Any

from pydantic import BaseModel, Field


class ResolveRequest(BaseModel):
    identifier: str | int
    outward: str | None = Field(default=None, max_length=8)
    inward: str | None = Field(default=None, max_length=8)


class ResolutionOut(BaseModel):
    success: bool
    address: str | None = None
    confidence: float
    source_tag: str
    strategy: str | None = None
    response_time_ms: int
    errors: list[str] = Field(default_factory=list)
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ResolveBatchItem(BaseModel):
    identifier: str | int
    outward: str | None = Field(default=None, max_length=8)
    inward: str | None = Field(default=None, max_length=8)


class ResolveBatchRequest(BaseModel):
    items: list[ResolveBatchItem] = Field(min_length=1)


class ResolveBatchItemOut(ResolutionOut):
    identifier: str


class ResolveBatchSummaryOut(BaseModel):
    total: int
    succeeded: int
    failed: int
    elapsed_ms: int
    average_response_time_ms: float


class ResolveBatchOut(BaseModel):
    results: list[ResolveBatchItemOut]
    summary: ResolveBatchSummaryOut
