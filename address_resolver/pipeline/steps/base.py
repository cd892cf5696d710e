from __future__ import annotations

from typing import Protocol

from address_resolver.pipeline.types import ResolutionJob, SourceTag, StepResult


class ResolutionStep(Protocol):
    """One ranked source of addresses.

    ``confidence`` and ``source_tag`` are fixed per step and copied onto a successful
    result by the pipeline. ``timeout_seconds`` bounds a single run of the step; ``None``
    leaves only the pipeline-wide ceiling.
    """

    name: str
    source_tag: SourceTag
    confidence: float
    timeout_seconds: float | None

    async def run(self, job: ResolutionJob) -> StepResult: ...
