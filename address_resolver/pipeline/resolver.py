from __future__ import annotations

import asyncio
import logging
import time
from functools import lru_cache
from typing import Any

from opentelemetry import trace

from address_resolver.core.config import Settings, get_settings
from address_resolver.core.errors import ValidationError
from address_resolver.core.telemetry import annotate_resolution
from address_resolver.pipeline.matcher import RegistryMatcher
from address_resolver.pipeline.steps.base import ResolutionStep
from address_resolver.pipeline.steps.partner import PartnerLookupStep
from address_resolver.pipeline.steps.registry import ListingRegistryStep
from address_resolver.pipeline.types import (
    PostalHint,
    ResolutionJob,
    ResolutionResult,
    SourceTag,
    normalize_identifier,
)
from address_resolver.services.listing_extractor import HttpListingExtractor
from address_resolver.services.partner_client import PartnerLookupClient
from address_resolver.services.registry_client import RegistryClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0


class ResolutionPipeline:
    """Runs ranked steps in order until one yields an address.

    A step failure of any kind is recorded and the next step runs. ``resolve`` never
    raises: an exhausted step list or the overall timeout both come back as a failed
    ``ResolutionResult`` tagged ``error``.
    """

    def __init__(self, steps: list[ResolutionStep], *, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._steps = list(steps)
        self.timeout_seconds = timeout_seconds

    def append_step(self, step: ResolutionStep) -> None:
        self._steps.append(step)

    def insert_step(self, step: ResolutionStep, position: int) -> None:
        if position < 0 or position > len(self._steps):
            raise IndexError(f"step position {position} out of range 0..{len(self._steps)}")
        self._steps.insert(position, step)

    def steps(self) -> list[tuple[int, str]]:
        return [(index + 1, step.name) for index, step in enumerate(self._steps)]

    async def resolve(self, identifier: str | int, postal_hint: PostalHint | None = None) -> ResolutionResult:
        started_at = time.perf_counter()
        with tracer.start_as_current_span("pipeline.resolve") as span:
            span.set_attribute("listing.identifier", str(identifier))
            try:
                job = ResolutionJob(identifier=normalize_identifier(identifier), postal_hint=postal_hint)
            except ValidationError as exc:
                logger.info("resolution rejected identifier=%r error=%s", identifier, exc)
                return _failure([str(exc)], started_at, reason="invalid_input")

            errors: list[str] = []
            try:
                result = await asyncio.wait_for(self._run_steps(job, errors, started_at), self.timeout_seconds)
            except asyncio.TimeoutError:
                message = f"pipeline timed out after {self.timeout_seconds}s"
                logger.warning("resolution timed out identifier=%s steps_failed=%s", job.identifier, len(errors))
                result = _failure([*errors, message], started_at, reason="timeout")

            annotate_resolution(span, result)
            logger.info(
                "resolution finished identifier=%s success=%s source=%s duration_ms=%s",
                job.identifier,
                result.success,
                result.source_tag.value,
                result.response_time_ms,
            )
            return result

    async def _run_steps(self, job: ResolutionJob, errors: list[str], started_at: float) -> ResolutionResult:
        for position, step in enumerate(self._steps, start=1):
            try:
                if step.timeout_seconds is not None:
                    step_result = await asyncio.wait_for(step.run(job), step.timeout_seconds)
                else:
                    step_result = await step.run(job)
            except asyncio.TimeoutError:
                errors.append(f"{step.name}: step timed out after {step.timeout_seconds}s")
                continue
            except Exception as exc:
                logger.exception("step raised identifier=%s step=%s", job.identifier, step.name)
                errors.append(f"{step.name}: unexpected error: {exc}")
                continue

            address = step_result.address.strip() if step_result.address else ""
            if step_result.success and address:
                metadata: dict[str, Any] = {
                    "step": step.name,
                    "step_position": position,
                    **step_result.metadata,
                }
                return ResolutionResult(
                    success=True,
                    address=address,
                    confidence=step.confidence,
                    source_tag=step.source_tag,
                    strategy=step_result.strategy,
                    response_time_ms=_elapsed_ms(started_at),
                    errors=list(errors),
                    metadata=metadata,
                )

            message = step_result.error or "step reported success without an address"
            errors.append(f"{step.name}: {message}")
            logger.info("step failed identifier=%s step=%s error=%s", job.identifier, step.name, message)

        return _failure(errors, started_at, reason=f"all {len(self._steps)} steps failed")


def _failure(errors: list[str], started_at: float, *, reason: str) -> ResolutionResult:
    return ResolutionResult(
        success=False,
        confidence=0.0,
        source_tag=SourceTag.ERROR,
        response_time_ms=_elapsed_ms(started_at),
        errors=list(errors),
        metadata={"fallback_reason": reason},
    )


def _elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)


def build_pipeline(settings: Settings) -> ResolutionPipeline:
    partner = PartnerLookupClient(
        settings.partner_base_url,
        settings.partner_user_email,
        timeout_seconds=settings.http_timeout_seconds,
    )
    extractor = HttpListingExtractor(
        settings.listing_base_url,
        timeout_seconds=settings.listing_timeout_seconds,
        user_agent=settings.user_agent,
    )
    registry = RegistryClient(
        settings.registry_endpoint,
        timeout_seconds=settings.registry_timeout_seconds,
        user_agent=settings.user_agent,
    )
    return ResolutionPipeline(
        [PartnerLookupStep(partner), ListingRegistryStep(extractor, RegistryMatcher(registry))],
        timeout_seconds=settings.pipeline_timeout_seconds,
    )


@lru_cache
def get_pipeline() -> ResolutionPipeline:
    return build_pipeline(get_settings())
