from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from address_resolver.core.errors import APIError, ParseError, ResolverError, ResolverTimeoutError

COLLABORATOR = "partner"


@dataclass(slots=True)
class PartnerResponse:
    success: bool
    data: dict[str, Any] | None = None
    error: ResolverError | None = None
    raw: dict[str, Any] | None = None


class PartnerLookupClient:
    def __init__(
        self,
        base_url: str | None,
        user_email: str | None,
        *,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.user_email = user_email or ""
        self.timeout_seconds = timeout_seconds
        self._client = client

    def build_request(self, identifier: str) -> tuple[str, dict[str, str]]:
        if not self.base_url:
            raise APIError("partner lookup base URL is not configured", collaborator=COLLABORATOR)
        url = f"{self.base_url}/api/property/{identifier}"
        params = {"user": self.user_email, "spectatorFilter": self.user_email}
        return url, params

    async def fetch(self, identifier: str) -> PartnerResponse:
        try:
            url, params = self.build_request(identifier)
        except APIError as exc:
            return PartnerResponse(success=False, error=exc)

        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(url, params=params)
        except httpx.TimeoutException:
            return PartnerResponse(
                success=False,
                error=ResolverTimeoutError(
                    f"partner lookup timed out after {self.timeout_seconds}s",
                    timeout_seconds=self.timeout_seconds,
                    step=COLLABORATOR,
                ),
            )
        except httpx.HTTPError as exc:
            return PartnerResponse(
                success=False,
                error=APIError(f"partner lookup request failed: {exc}", collaborator=COLLABORATOR),
            )

        if response.status_code >= 400:
            return PartnerResponse(
                success=False,
                error=APIError(
                    f"partner lookup returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    collaborator=COLLABORATOR,
                ),
            )

        try:
            payload = response.json()
        except ValueError:
            return PartnerResponse(
                success=False,
                error=ParseError("partner lookup returned a non-JSON body", collaborator=COLLABORATOR),
            )
        if not isinstance(payload, dict):
            return PartnerResponse(
                success=False,
                error=ParseError("partner lookup returned a non-object body", collaborator=COLLABORATOR),
            )

        if not payload.get("success"):
            message = payload.get("error") if isinstance(payload.get("error"), str) else None
            return PartnerResponse(
                success=False,
                error=APIError(message or "partner lookup returned success=false", collaborator=COLLABORATOR),
                raw=payload,
            )

        data = payload.get("data")
        if not isinstance(data, dict):
            return PartnerResponse(
                success=False,
                error=ParseError("no data in partner lookup response", collaborator=COLLABORATOR),
                raw=payload,
            )
        return PartnerResponse(success=True, data=data, raw=payload)
