"""Sale-history extraction from listing pages.

The extractor only has to honour the ``extract(identifier)`` contract; the HTTP
implementation below reads the server-rendered page and parses the "Property sale
history" block out of its text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Protocol

import httpx
from bs4 import BeautifulSoup

from address_resolver.core.errors import APIError, ParseError, ResolverError, ResolverTimeoutError
from address_resolver.pipeline.types import SaleRecord, normalize_sales

COLLABORATOR = "listing"

SALE_HISTORY_MARKER = "Property sale history"
SALE_HISTORY_END_MARKER = "Source acknowledgement"
SALE_HISTORY_WINDOW = 2000
SALE_HISTORY_MAX_LINES = 50
MIN_SPLIT_LINE_PRICE = 50_000
MIN_SAME_LINE_PRICE = 100_000

_YEAR_LINE_RE = re.compile(r"^(19[0-9]{2}|20[0-3][0-9])$")
_PRICE_LINE_RE = re.compile(r"^£([\d,]+)$")
_SAME_LINE_RE = re.compile(r"(19[0-9]{2}|20[0-3][0-9])\s+£([\d,]+)")
_TABLE_START_HINTS = ("Year sold", "Sold price", "Listing:", "Guide Price")


@dataclass(slots=True)
class ListingExtraction:
    success: bool
    sales: list[SaleRecord] = field(default_factory=list)
    error: ResolverError | None = None


class ListingExtractor(Protocol):
    async def extract(self, identifier: str) -> ListingExtraction: ...


class HttpListingExtractor:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 60.0,
        user_agent: str = "address-resolver/1.0",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.headers = {"User-Agent": user_agent, "Accept": "text/html"}
        self._client = client

    def listing_url(self, identifier: str) -> str:
        return f"{self.base_url}/properties/{identifier}"

    async def extract(self, identifier: str) -> ListingExtraction:
        url = self.listing_url(identifier)
        params = {"channel": "RES_BUY"}
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, headers=self.headers, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as client:
                    response = await client.get(url, params=params, headers=self.headers)
        except httpx.TimeoutException:
            return ListingExtraction(
                success=False,
                error=ResolverTimeoutError(
                    f"listing page timed out after {self.timeout_seconds}s",
                    timeout_seconds=self.timeout_seconds,
                    step=COLLABORATOR,
                ),
            )
        except httpx.HTTPError as exc:
            return ListingExtraction(
                success=False,
                error=APIError(f"listing request failed: {exc}", collaborator=COLLABORATOR),
            )

        if response.status_code >= 400:
            return ListingExtraction(
                success=False,
                error=APIError(
                    f"listing page returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    collaborator=COLLABORATOR,
                ),
            )

        text = html_to_text(response.text)
        if not text.strip():
            return ListingExtraction(
                success=False,
                error=ParseError("listing page body is empty", collaborator=COLLABORATOR),
            )
        return ListingExtraction(success=True, sales=parse_sale_history(text))


def html_to_text(markup: str) -> str:
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return soup.get_text("\n")


def parse_sale_history(text: str) -> list[SaleRecord]:
    start = text.find(SALE_HISTORY_MARKER)
    if start < 0:
        return []

    window = text[start : start + SALE_HISTORY_WINDOW]
    lines = [line.strip() for line in window.split("\n")]
    sales: list[SaleRecord] = []
    in_table = False

    for index, line in enumerate(lines[:SALE_HISTORY_MAX_LINES]):
        if in_table and SALE_HISTORY_END_MARKER in line:
            break
        if not in_table:
            if line == "" or any(hint in line for hint in _TABLE_START_HINTS) or _YEAR_LINE_RE.match(line):
                in_table = True
            if not _YEAR_LINE_RE.match(line):
                continue

        year_match = _YEAR_LINE_RE.match(line)
        if year_match and index + 1 < len(lines):
            price_match = _PRICE_LINE_RE.match(lines[index + 1])
            if price_match:
                price = _parse_price(price_match.group(1))
                if price is not None and price >= MIN_SPLIT_LINE_PRICE:
                    sales.append(SaleRecord(int(year_match.group(1)), price, f"£{price_match.group(1)}"))
            continue

        same_line = _SAME_LINE_RE.search(line)
        if same_line:
            price = _parse_price(same_line.group(2))
            if price is not None and price >= MIN_SAME_LINE_PRICE:
                sales.append(SaleRecord(int(same_line.group(1)), price, f"£{same_line.group(2)}"))

    return normalize_sales(sales)


def _parse_price(raw: str) -> int | None:
    digits = raw.replace(",", "")
    if not digits.isdigit():
        return None
    return int(digits)
