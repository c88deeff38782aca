"""Google Places (New) place details lookup."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from tenantcron import settings
from tenantcron.utils.httpx_client import make_async_client

# Only request the fields we store; Places bills by field mask.
PLACE_DETAILS_FIELD_MASK = ",".join(
    [
        "id",
        "displayName",
        "formattedAddress",
        "nationalPhoneNumber",
        "websiteUri",
        "regularOpeningHours",
        "rating",
        "userRatingCount",
        "businessStatus",
    ]
)


class PlacesApiError(Exception):
    """Raised when a place details lookup fails (`permanent` for 4xx other than 429)."""

    def __init__(self, message: str, *, permanent: bool, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.permanent = permanent
        self.status_code = status_code


class PlacesClient:
    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url or settings.GOOGLE_PLACES_BASE_URL
        self._transport = transport

    def _build_headers(self) -> Dict[str, str]:
        return {
            "X-Goog-Api-Key": self.api_key,
            "X-Goog-FieldMask": PLACE_DETAILS_FIELD_MASK,
        }

    async def get_place_details(self, place_id: str) -> Dict[str, Any]:
        async with make_async_client(
            base_url=self.base_url,
            headers=self._build_headers(),
            transport=self._transport,
        ) as client:
            try:
                resp = await client.get(f"/places/{place_id}")
            except httpx.HTTPError as exc:
                raise PlacesApiError(
                    f"places endpoint unreachable: {type(exc).__name__}", permanent=False
                ) from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise PlacesApiError(
                f"places endpoint returned {resp.status_code}",
                permanent=False,
                status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            raise PlacesApiError(
                f"place details rejected ({resp.status_code})",
                permanent=True,
                status_code=resp.status_code,
            )
        return resp.json()


def get_places_client() -> Optional[PlacesClient]:
    """None when GOOGLE_PLACES_API_KEY is not configured."""
    if not settings.GOOGLE_PLACES_API_KEY:
        return None
    return PlacesClient(api_key=settings.GOOGLE_PLACES_API_KEY)
