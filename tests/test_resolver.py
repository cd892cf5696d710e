from __future__ import annotations

import asyncio
from typing import Any

import pytest

from address_resolver.pipeline.matcher import RegistryMatcher
from address_resolver.pipeline.resolver import ResolutionPipeline
from address_resolver.pipeline.steps.partner import PartnerLookupStep
from address_resolver.pipeline.steps.registry import ListingRegistryStep
from address_resolver.pipeline.types import (
    MatchStrategy,
    PostalHint,
    ResolutionJob,
    ResolutionResult,
    SaleRecord,
    SourceTag,
    StepResult,
)
from address_resolver.services.listing_extractor import ListingExtraction
from address_resolver.services.partner_client import PartnerResponse
from address_resolver.services.registry_client import RegistryResponse

REGISTRY_ROW = {
    "transx": {"value": "http://landregistry.data.gov.uk/data/ppi/transaction/TX-9"},
    "pricePaid": {"value": "450000"},
    "date": {"value": "2019-06-14"},
    "paon": {"value": "10"},
    "street": {"value": "DOWNING STREET"},
    "postcode": {"value": "SW1A 2AA"},
}


class FakeLookup:
    def __init__(self, response: PartnerResponse) -> None:
        self.response = response
        self.calls = 0

    async def fetch(self, identifier: str) -> PartnerResponse:
        self.calls += 1
        return self.response


class FakeExtractor:
    def __init__(self, extraction: ListingExtraction) -> None:
        self.extraction = extraction
        self.calls = 0

    async def extract(self, identifier: str) -> ListingExtraction:
        self.calls += 1
        return self.extraction


class FakeRegistry:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self.rows = rows

    async def query(self, query_text: str) -> RegistryResponse:
        return RegistryResponse(success=True, rows=list(self.rows))


class FakeStep:
    source_tag = SourceTag.PARTNER

    def __init__(
        self,
        name: str,
        result: StepResult | None = None,
        *,
        confidence: float = 0.5,
        timeout_seconds: float | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.name = name
        self.result = result or StepResult.failed(f"{name} found nothing")
        self.confidence = confidence
        self.timeout_seconds = timeout_seconds
        self.delay = delay
        self.error = error
        self.jobs: list[ResolutionJob] = []

    async def run(self, job: ResolutionJob) -> StepResult:
        self.jobs.append(job)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def _pipeline(
    partner: PartnerResponse,
    extraction: ListingExtraction,
    rows: list[dict[str, Any]],
) -> tuple[ResolutionPipeline, FakeLookup, FakeExtractor]:
    lookup = FakeLookup(partner)
    extractor = FakeExtractor(extraction)
    pipeline = ResolutionPipeline(
        [PartnerLookupStep(lookup), ListingRegistryStep(extractor, RegistryMatcher(FakeRegistry(rows)))]
    )
    return pipeline, lookup, extractor


def _stable(result: ResolutionResult) -> dict[str, Any]:
    payload = result.to_dict()
    payload.pop("response_time_ms")
    return payload


def test_partner_success_short_circuits_registry() -> None:
    data = {"id": 1, "fullAddress": "10 Downing Street, London SW1A 2AA"}
    pipeline, _, extractor = _pipeline(
        PartnerResponse(success=True, data=data, raw={"success": True, "data": data}),
        ListingExtraction(success=True, sales=[SaleRecord(2019, 450000)]),
        [REGISTRY_ROW],
    )

    result = asyncio.run(pipeline.resolve("1"))

    assert result.success is True
    assert result.address == "10 Downing Street, London SW1A 2AA"
    assert result.confidence == 1.0
    assert result.source_tag is SourceTag.PARTNER
    assert result.metadata["step"] == "partner lookup"
    assert result.metadata["step_position"] == 1
    assert result.errors == []
    assert extractor.calls == 0


def test_registry_verification_after_partner_failure() -> None:
    pipeline, lookup, _ = _pipeline(
        PartnerResponse(success=True, data={"id": 2, "title": "Charming townhouse"}, raw={}),
        ListingExtraction(success=True, sales=[SaleRecord(2019, 450000)]),
        [REGISTRY_ROW],
    )

    result = asyncio.run(pipeline.resolve("listing-2", PostalHint("SW1A", "2AA")))

    assert lookup.calls == 1
    assert result.success is True
    assert result.address == "10, Downing Street, London, SW1A 2AA"
    assert result.confidence == 0.9
    assert result.source_tag is SourceTag.REGISTRY
    assert result.strategy is MatchStrategy.POSTCODE_YEAR_PRICE
    assert result.metadata["step_position"] == 2
    assert result.metadata["postal_filter"] == "SW1A 2AA"
    assert result.metadata["verified"]["transaction_id"] == "TX-9"
    assert result.errors == ["partner lookup: no valid address found in partner response"]


def test_all_steps_failing_returns_error_result() -> None:
    pipeline, _, _ = _pipeline(
        PartnerResponse(success=False, raw=None),
        ListingExtraction(success=True, sales=[]),
        [],
    )

    result = asyncio.run(pipeline.resolve("3", PostalHint("SW1A", "2AA")))

    assert result.success is False
    assert result.address is None
    assert result.confidence == 0.0
    assert result.source_tag is SourceTag.ERROR
    assert result.errors == [
        "partner lookup: partner lookup failed",
        "listing + registry verification: no sale history found on listing",
    ]
    assert result.error == "; ".join(result.errors)


def test_resolution_is_idempotent_for_deterministic_collaborators() -> None:
    pipeline, _, _ = _pipeline(
        PartnerResponse(success=False),
        ListingExtraction(success=True, sales=[SaleRecord(2019, 450000)]),
        [REGISTRY_ROW],
    )

    first = asyncio.run(pipeline.resolve("4", PostalHint("SW1A", "2AA")))
    second = asyncio.run(pipeline.resolve("4", PostalHint("SW1A", "2AA")))

    assert _stable(first) == _stable(second)


@pytest.mark.parametrize(
    "steps",
    [
        [FakeStep("a", StepResult(success=True, address="1 Elm Road"), confidence=0.7)],
        [FakeStep("a"), FakeStep("b", StepResult(success=True, address="2 Elm Road"), confidence=0.3)],
        [FakeStep("a"), FakeStep("b")],
    ],
)
def test_confidence_is_positive_exactly_when_resolved(steps: list[FakeStep]) -> None:
    result = asyncio.run(ResolutionPipeline(steps).resolve("5"))

    assert (result.confidence > 0) == result.success
    assert bool(result.address) == result.success


def test_success_without_address_counts_as_failure() -> None:
    empty = FakeStep("empty", StepResult(success=True, address="   "))
    fallback = FakeStep("fallback", StepResult(success=True, address="9 Pier Road"))

    result = asyncio.run(ResolutionPipeline([empty, fallback]).resolve("6"))

    assert result.address == "9 Pier Road"
    assert result.errors == ["empty: step reported success without an address"]


def test_step_exceptions_are_recorded_and_next_step_runs() -> None:
    broken = FakeStep("broken", error=RuntimeError("boom"))
    fallback = FakeStep("fallback", StepResult(success=True, address="9 Pier Road"))

    result = asyncio.run(ResolutionPipeline([broken, fallback]).resolve("7"))

    assert result.success is True
    assert result.errors == ["broken: unexpected error: boom"]


def test_step_timeout_moves_on_to_next_step() -> None:
    slow = FakeStep("slow", StepResult(success=True, address="never"), timeout_seconds=0.01, delay=1.0)
    fallback = FakeStep("fallback", StepResult(success=True, address="9 Pier Road"))

    result = asyncio.run(ResolutionPipeline([slow, fallback]).resolve("8"))

    assert result.address == "9 Pier Road"
    assert result.errors == ["slow: step timed out after 0.01s"]


def test_pipeline_timeout_keeps_partial_errors() -> None:
    first = FakeStep("first")
    hanging = FakeStep("hanging", StepResult(success=True, address="never"), delay=5.0)

    result = asyncio.run(ResolutionPipeline([first, hanging], timeout_seconds=0.05).resolve("9"))

    assert result.success is False
    assert result.source_tag is SourceTag.ERROR
    assert result.errors == ["first: first found nothing", "pipeline timed out after 0.05s"]
    assert result.metadata["fallback_reason"] == "timeout"
    assert result.response_time_ms < 5000


def test_invalid_identifier_runs_no_steps() -> None:
    step = FakeStep("a", StepResult(success=True, address="1 Elm Road"))

    result = asyncio.run(ResolutionPipeline([step]).resolve("no-digits"))

    assert result.success is False
    assert result.errors == ["identifier must contain at least one digit"]
    assert step.jobs == []


def test_identifier_is_normalised_before_steps_run() -> None:
    step = FakeStep("a", StepResult(success=True, address="1 Elm Road"))

    asyncio.run(ResolutionPipeline([step]).resolve(" property-12345 ", PostalHint("E1")))

    assert step.jobs == [ResolutionJob(identifier="12345", postal_hint=PostalHint("E1"))]


def test_insert_and_append_steps_change_rank() -> None:
    pipeline = ResolutionPipeline([FakeStep("b")])
    pipeline.insert_step(FakeStep("a", StepResult(success=True, address="1 Elm Road")), 0)
    pipeline.append_step(FakeStep("c"))

    assert pipeline.steps() == [(1, "a"), (2, "b"), (3, "c")]

    result = asyncio.run(pipeline.resolve("10"))
    assert result.metadata["step"] == "a"

    with pytest.raises(IndexError):
        pipeline.insert_step(FakeStep("z"), 7)


def test_partner_full_address_resolves_without_postal_hint() -> None:
    data = {"fullAddress": "12 Blenheim Crescent, London"}
    pipeline, _, extractor = _pipeline(
        PartnerResponse(success=True, data=data, raw={"success": True, "data": data}),
        ListingExtraction(success=True, sales=[]),
        [],
    )

    result = asyncio.run(pipeline.resolve("163926191"))

    assert result.success is True
    assert result.address == "12 Blenheim Crescent, London"
    assert result.confidence == 1.0
    assert result.source_tag is SourceTag.PARTNER
    assert extractor.calls == 0


def test_registry_match_formats_london_address() -> None:
    row = {
        "paon": {"value": "6"},
        "street": {"value": "whistler square"},
        "postcode": {"value": "SW1W 8BT"},
    }
    pipeline, _, _ = _pipeline(
        PartnerResponse(success=False),
        ListingExtraction(success=True, sales=[SaleRecord(2022, 45000000)]),
        [row],
    )

    result = asyncio.run(pipeline.resolve("98765", PostalHint("SW1W", "8BT")))

    assert result.success is True
    assert result.address == "6, Whistler Square, London, SW1W 8BT"
    assert result.confidence == 0.9
    assert result.source_tag is SourceTag.REGISTRY
    assert result.strategy is MatchStrategy.POSTCODE_YEAR_PRICE


@pytest.mark.parametrize(
    ("partner", "extraction", "rows", "hint"),
    [
        (
            PartnerResponse(success=True, data={"fullAddress": "1 Mill Lane, Leeds"}),
            ListingExtraction(success=True, sales=[]),
            [],
            None,
        ),
        (
            PartnerResponse(success=True, data={"title": "Flat 3"}),
            ListingExtraction(success=True, sales=[]),
            [],
            PostalHint("LS1"),
        ),
        (
            PartnerResponse(success=False),
            ListingExtraction(success=True, sales=[SaleRecord(2019, 450000)]),
            [REGISTRY_ROW],
            PostalHint("SW1A", "2AA"),
        ),
        (
            PartnerResponse(success=True, data={"title": "Charming townhouse"}),
            ListingExtraction(success=True, sales=[SaleRecord(2019, 450000), SaleRecord(2012, 300000)]),
            [REGISTRY_ROW],
            PostalHint("SW1A"),
        ),
    ],
)
def test_resolved_confidence_is_partner_or_registry(
    partner: PartnerResponse,
    extraction: ListingExtraction,
    rows: list[dict[str, Any]],
    hint: PostalHint | None,
) -> None:
    pipeline, _, _ = _pipeline(partner, extraction, rows)

    result = asyncio.run(pipeline.resolve("11", hint))

    assert result.success is True
    assert result.confidence in {1.0, 0.9}
    expected = 1.0 if result.source_tag is SourceTag.PARTNER else 0.9
    assert result.confidence == expected
