"""Registry verification of a listing's address from its sale history.

Strategies run per sale record, newest sale first, from the most to the least
restrictive. The first row of the first query returning rows is the match; several
matching rows are not disambiguated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from address_resolver.pipeline.sparql import build_query
from address_resolver.pipeline.types import MatchStrategy, PostalHint, SaleRecord
from address_resolver.services.registry_client import RegistryResponse

logger = logging.getLogger(__name__)

LONDON_OUTWARD_PREFIXES = ("SW", "W", "E", "N", "S", "NW", "SE")

FULL_POSTCODE_STRATEGIES = (
    MatchStrategy.POSTCODE_YEAR_PRICE,
    MatchStrategy.POSTCODE_YEAR,
    MatchStrategy.OUTCODE_YEAR_PRICE,
    MatchStrategy.OUTCODE_YEAR,
    MatchStrategy.DATE_RANGE,
)
OUTCODE_ONLY_STRATEGIES = (
    MatchStrategy.OUTCODE_YEAR_PRICE,
    MatchStrategy.OUTCODE_YEAR,
)


class RegistryQuerier(Protocol):
    async def query(self, query_text: str) -> RegistryResponse: ...


@dataclass(slots=True)
class MatchOutcome:
    success: bool
    address: str | None = None
    strategy: MatchStrategy | None = None
    postal_filter: str | None = None
    sale: SaleRecord | None = None
    verified: dict[str, Any] = field(default_factory=dict)
    attempts: list[MatchStrategy] = field(default_factory=list)
    query_errors: list[str] = field(default_factory=list)
    error: str | None = None


def plan_strategies(hint: PostalHint | None) -> list[tuple[MatchStrategy, str | None]]:
    if hint is None:
        return []
    full = hint.full_postcode
    if full is None:
        return [(strategy, hint.outward) for strategy in OUTCODE_ONLY_STRATEGIES]
    outward = full.split(" ")[0]
    filters = {
        MatchStrategy.POSTCODE_YEAR_PRICE: full,
        MatchStrategy.POSTCODE_YEAR: full,
        MatchStrategy.OUTCODE_YEAR_PRICE: outward,
        MatchStrategy.OUTCODE_YEAR: outward,
        MatchStrategy.DATE_RANGE: None,
    }
    return [(strategy, filters[strategy]) for strategy in FULL_POSTCODE_STRATEGIES]


class RegistryMatcher:
    def __init__(self, client: RegistryQuerier) -> None:
        self.client = client

    async def match(self, hint: PostalHint | None, sales: list[SaleRecord]) -> MatchOutcome:
        plan = plan_strategies(hint)
        if not plan:
            return MatchOutcome(success=False, error="no postal hint available for registry verification")
        if not sales:
            return MatchOutcome(success=False, error="no sale records to verify against the registry")

        attempts: list[MatchStrategy] = []
        query_errors: list[str] = []
        for sale in sales:
            for strategy, postal_filter in plan:
                attempts.append(strategy)
                response = await self.client.query(build_query(strategy, sale, postal_filter))
                if not response.success:
                    query_errors.append(f"{strategy.value}: {response.error}")
                    logger.info(
                        "registry query failed strategy=%s year=%s error=%s",
                        strategy.value,
                        sale.year,
                        response.error,
                    )
                    continue
                if not response.rows:
                    continue

                verified = extract_row_details(response.rows[0])
                logger.info(
                    "registry match strategy=%s year=%s candidates=%s",
                    strategy.value,
                    sale.year,
                    len(response.rows),
                )
                return MatchOutcome(
                    success=True,
                    address=verified["full_address"],
                    strategy=strategy,
                    postal_filter=postal_filter,
                    sale=sale,
                    verified=verified,
                    attempts=attempts,
                    query_errors=query_errors,
                )

        return MatchOutcome(
            success=False,
            attempts=attempts,
            query_errors=query_errors,
            error=f"no registry matches found after {len(attempts)} queries",
        )


def format_address(paon: str | None, street: str | None, postcode: str | None) -> str:
    parts: list[str] = []
    if paon:
        parts.append(paon)
    if street:
        parts.append(title_case_street(street))
    if postcode and is_london_postcode(postcode):
        parts.append("London")
    if postcode:
        parts.append(postcode)
    return ", ".join(part.strip() for part in parts if part and part.strip())


def title_case_street(street: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in street.lower().split(" "))


def is_london_postcode(postcode: str) -> bool:
    outward = postcode.strip().upper().split(" ")[0]
    return outward.startswith(LONDON_OUTWARD_PREFIXES)


def extract_row_details(row: dict[str, Any]) -> dict[str, Any]:
    paon = _binding_value(row, "paon")
    street = _binding_value(row, "street")
    postcode = _binding_value(row, "postcode")
    price_paid = _as_int(_binding_value(row, "pricePaid"))
    transaction = _binding_value(row, "transx")

    return {
        "transaction_id": transaction.rsplit("/", 1)[-1] if transaction else "unknown",
        "full_address": format_address(paon, street, postcode),
        "paon": paon,
        "street": street,
        "postcode": postcode,
        "price_paid": price_paid,
        "formatted_price": f"£{price_paid:,}",
        "date": _binding_value(row, "date"),
        "property_type": _uri_tail(_binding_value(row, "propType")) or "unknown",
        "estate_type": _uri_tail(_binding_value(row, "estateType")) or "unknown",
        "new_build": _binding_value(row, "newBuild") == "true",
    }


def _binding_value(row: dict[str, Any], key: str) -> str | None:
    value = row.get(key)
    if isinstance(value, dict):
        value = value.get("value")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _uri_tail(value: str | None) -> str | None:
    if not value:
        return None
    if "#" in value:
        return value.rsplit("#", 1)[-1]
    if "/" in value:
        return value.rsplit("/", 1)[-1]
    return value


def _as_int(value: str | None) -> int:
    if value is None:
        return 0
    try:
        return int(float(value))
    except ValueError:
        return 0
