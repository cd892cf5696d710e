from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any, Protocol

from address_resolver.pipeline.types import PARTNER_CONFIDENCE, ResolutionJob, SourceTag, StepResult
from address_resolver.services.partner_client import PartnerResponse

logger = logging.getLogger(__name__)

_STREET_WORD_RE = re.compile(
    r"\b(street|road|avenue|lane|crescent|drive|close|court|way|place|square|gardens|park|hill|manor|house|flat|apartment)\b",
    re.IGNORECASE,
)
_LEADING_NUMBER_RE = re.compile(r"^\d+\s+[A-Za-z]")
_DIGIT_RE = re.compile(r"\d")
MIN_ADDRESS_LENGTH = 5


def _field(name: str) -> Callable[[dict[str, Any]], Any]:
    def accessor(data: dict[str, Any]) -> Any:
        return data.get(name)

    return accessor


ADDRESS_ACCESSORS: tuple[tuple[str, Callable[[dict[str, Any]], Any]], ...] = (
    ("fullAddress", _field("fullAddress")),
    ("displayAddress", _field("displayAddress")),
    ("title", _field("title")),
)


def looks_like_address(text: str) -> bool:
    trimmed = text.strip()
    if len(trimmed) < MIN_ADDRESS_LENGTH:
        return False
    return bool(
        _DIGIT_RE.search(trimmed) or _STREET_WORD_RE.search(trimmed) or _LEADING_NUMBER_RE.match(trimmed)
    )


def extract_partner_address(data: dict[str, Any]) -> tuple[str, str] | None:
    """Return ``(field_name, address)`` for the first accessor yielding a plausible address."""
    for name, accessor in ADDRESS_ACCESSORS:
        value = accessor(data)
        if isinstance(value, str) and value.strip() and looks_like_address(value):
            return name, value.strip()
    return None


class PartnerLookup(Protocol):
    async def fetch(self, identifier: str) -> PartnerResponse: ...


class PartnerLookupStep:
    name = "partner lookup"
    source_tag = SourceTag.PARTNER
    confidence = PARTNER_CONFIDENCE

    def __init__(self, lookup: PartnerLookup, *, timeout_seconds: float | None = None) -> None:
        self.lookup = lookup
        self.timeout_seconds = timeout_seconds

    async def run(self, job: ResolutionJob) -> StepResult:
        response = await self.lookup.fetch(job.identifier)
        if not response.success or response.data is None:
            return StepResult.failed(str(response.error or "partner lookup failed"), raw_response=response.raw)

        extracted = extract_partner_address(response.data)
        if extracted is None:
            return StepResult.failed(
                "no valid address found in partner response",
                available_fields=sorted(response.data.keys()),
                raw_response=response.raw,
            )

        field_name, address = extracted
        logger.info("partner lookup matched identifier=%s field=%s", job.identifier, field_name)
        return StepResult(
            success=True,
            address=address,
            metadata={
                "address_field": field_name,
                "listing_id": response.data.get("id"),
                "weeks_on_market": response.data.get("Weeks_OTM"),
                "raw_response": response.raw,
            },
        )
