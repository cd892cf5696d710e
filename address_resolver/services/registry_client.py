from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from address_resolver.core.errors import APIError, ParseError, ResolverError, ResolverTimeoutError


COLLABORATOR = "registry"
DEFAULT_ENDPOINT = "https://landregistry.data.gov.uk/landregistry/query"


@dataclass(slots=True)
class RegistryResponse:
    success: bool
    rows: list[dict[str, Any]] = field(default_factory=list)
    error: ResolverError | None = None


class RegistryClient:
    """Posts structured queries to the price-paid registry endpoint."""

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        *,
        timeout_seconds: float = 45.0,
        user_agent: str = "address-resolver/1.0",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.headers = {
            "Content-Type": "application/sparql-query",
            "Accept": "application/json",
            "User-Agent": user_agent,
        }
        self._client = client

    async def query(self, query_text: str) -> RegistryResponse:
        try:
            if self._client is not None:
                response = await self._post(self._client, query_text)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await self._post(client, query_text)
        except httpx.TimeoutException:
            return RegistryResponse(
                success=False,
                error=ResolverTimeoutError(
                    f"registry query timed out after {self.timeout_seconds}s",
                    timeout_seconds=self.timeout_seconds,
                    step=COLLABORATOR,
                ),
            )
        except httpx.HTTPError as exc:
            return RegistryResponse(
                success=False,
                error=APIError(f"registry request failed: {exc}", collaborator=COLLABORATOR),
            )

        if response.status_code >= 400:
            return RegistryResponse(
                success=False,
                error=APIError(
                    f"registry returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    collaborator=COLLABORATOR,
                ),
            )

        try:
            payload = response.json()
        except ValueError:
            return RegistryResponse(
                success=False,
                error=ParseError("registry returned a non-JSON body", collaborator=COLLABORATOR),
            )

        bindings = _extract_bindings(payload)
        if bindings is None:
            return RegistryResponse(
                success=False,
                error=ParseError("registry response has no results.bindings", collaborator=COLLABORATOR),
            )
        return RegistryResponse(success=True, rows=bindings)

    async def _post(self, client: httpx.AsyncClient, query_text: str) -> httpx.Response:
        return await client.post(
            self.endpoint,
            content=query_text.encode("utf-8"),
            headers=self.headers,
            timeout=self.timeout_seconds,
        )


def _extract_bindings(payload: Any) -> list[dict[str, Any]] | None:
    if not isinstance(payload, dict):
        return None
    results = payload.get("results")
    if not isinstance(results, dict):
        return None
    bindings = results.get("bindings")
    if not isinstance(bindings, list):
        return None
    return [row for row in bindings if isinstance(row, dict)]
