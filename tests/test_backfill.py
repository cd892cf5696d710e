from __future__ import annotations

import asyncio

from address_resolver.backfill import property_to_job, run_backfill
from address_resolver.pipeline.types import PostalHint, ResolutionResult, SourceTag
from address_resolver.services.repository import PropertyRecord
from address_resolver.services.store import InMemoryStore


class HintEchoResolver:
    """Resolves only when a full postcode is known."""

    def __init__(self, calls: list[tuple[str, PostalHint | None]]) -> None:
        self.calls = calls

    async def resolve(self, identifier: str, postal_hint: PostalHint | None = None) -> ResolutionResult:
        self.calls.append((identifier, postal_hint))
        if postal_hint is not None and postal_hint.full_postcode:
            return ResolutionResult(
                success=True,
                address=f"{identifier} Station Road, {postal_hint.full_postcode}",
                confidence=0.9,
                source_tag=SourceTag.REGISTRY,
                response_time_ms=3,
            )
        return ResolutionResult(
            success=False,
            confidence=0.0,
            source_tag=SourceTag.ERROR,
            response_time_ms=3,
            errors=["listing + registry verification: no postal hint available for registry verification"],
        )


def test_property_to_job_drops_malformed_hints() -> None:
    good = property_to_job(PropertyRecord(id=1, listing_id="100", outward="ls1", inward="4ap"))
    bad = property_to_job(PropertyRecord(id=2, listing_id="200", outward="L$1"))

    assert good.postal_hint == PostalHint("LS1", "4AP")
    assert good.key == 1
    assert bad.postal_hint is None
    assert bad.identifier == "200"


def test_backfill_pages_by_id_and_writes_results_back() -> None:
    store = InMemoryStore()
    for number in range(1, 6):
        store.add_property(str(1000 + number), outward="SW1A", inward="2AA" if number % 2 else None)
    calls: list[tuple[str, PostalHint | None]] = []

    summary = asyncio.run(run_backfill(store, lambda: HintEchoResolver(calls), worker_count=2, page_size=2))

    assert (summary.pages, summary.total, summary.succeeded, summary.failed) == (3, 5, 3, 2)
    assert summary.last_id == 5
    assert sorted(identifier for identifier, _ in calls) == ["1001", "1002", "1003", "1004", "1005"]
    assert store.resolutions[1].address == "1001 Station Road, SW1A 2AA"
    assert store.resolutions[2].address is None
    assert store.resolutions[2].source_tag == "error"

    rerun = asyncio.run(run_backfill(store, lambda: HintEchoResolver(calls), worker_count=2, page_size=2))
    assert rerun.total == 0


def test_backfill_respects_limit() -> None:
    store = InMemoryStore()
    for number in range(1, 6):
        store.add_property(str(number), outward="E1", inward="6AN")

    summary = asyncio.run(run_backfill(store, lambda: HintEchoResolver([]), worker_count=3, page_size=2, limit=3))

    assert summary.total == 3
    assert summary.last_id == 3
    assert sorted(store.resolutions) == [1, 2, 3]
