from __future__ import annotations

import logging

from address_resolver.pipeline.matcher import RegistryMatcher
from address_resolver.pipeline.types import REGISTRY_CONFIDENCE, ResolutionJob, SourceTag, StepResult, normalize_sales
from address_resolver.services.listing_extractor import ListingExtractor

logger = logging.getLogger(__name__)


class ListingRegistryStep:
    """Verify the listing's sale history against registry transactions."""

    name = "listing + registry verification"
    source_tag = SourceTag.REGISTRY
    confidence = REGISTRY_CONFIDENCE

    def __init__(
        self,
        extractor: ListingExtractor,
        matcher: RegistryMatcher,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self.extractor = extractor
        self.matcher = matcher
        self.timeout_seconds = timeout_seconds

    async def run(self, job: ResolutionJob) -> StepResult:
        extraction = await self.extractor.extract(job.identifier)
        if not extraction.success:
            return StepResult.failed(f"listing extraction failed: {extraction.error}")

        sales = normalize_sales(extraction.sales)
        if not sales:
            return StepResult.failed("no sale history found on listing", sales_count=0)

        outcome = await self.matcher.match(job.postal_hint, sales)
        if not outcome.success:
            return StepResult.failed(
                outcome.error or "registry verification failed",
                sales_count=len(sales),
                strategies_attempted=[strategy.value for strategy in outcome.attempts],
                query_errors=outcome.query_errors,
            )

        logger.info(
            "registry verified identifier=%s strategy=%s",
            job.identifier,
            outcome.strategy.value if outcome.strategy else None,
        )
        return StepResult(
            success=True,
            address=outcome.address,
            strategy=outcome.strategy,
            metadata={
                "postal_filter": outcome.postal_filter,
                "verified": outcome.verified,
                "matched_sale": {
                    "year": outcome.sale.year,
                    "raw_price": outcome.sale.raw_price,
                    "display_price": outcome.sale.display_price,
                }
                if outcome.sale
                else None,
                "sales_count": len(sales),
                "strategies_attempted": [strategy.value for strategy in outcome.attempts],
            },
        )
