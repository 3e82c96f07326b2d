"""Forward and reverse geocoding over a Nominatim-style HTTP API.

Failures degrade to None; callers pick their own fallback.
"""

import logging
from typing import Any, Optional

import httpx

from ekotaka import metrics
from ekotaka.config import settings
from ekotaka.errors import ExternalServiceDegraded

logger = logging.getLogger(__name__)


class Geocoder:
    """Thin async client for /search and /reverse."""

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = (base_url or settings.geocoding_base_url).rstrip("/")
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=settings.geocoding_timeout_seconds,
                headers={"User-Agent": settings.geocoding_user_agent},
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}{path}", params=params)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            metrics.record_external_failure("geocoder", e)
            raise ExternalServiceDegraded(f"Geocoding {path} failed: {e}") from e

    async def forward(self, query: str) -> Optional[dict[str, Any]]:
        """
        Resolve an address to ``{"coordinates": [lng, lat], "address": str}``.

        Returns None when nothing matches or the service is unavailable.
        """
        if not query or not query.strip():
            return None
        try:
            results = await self._get_json(
                "/search", {"q": query.strip(), "format": "json", "limit": 1}
            )
        except ExternalServiceDegraded as e:
            logger.warning(str(e))
            return None

        if not results:
            logger.info(f"No geocoding match for '{query[:80]}'")
            return None
        top = results[0]
        try:
            return {
                "coordinates": [float(top["lon"]), float(top["lat"])],
                "address": top.get("display_name") or query.strip(),
            }
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unexpected geocoding payload: {e}")
            return None

    async def reverse(self, lat: float, lng: float) -> Optional[dict[str, Any]]:
        """Resolve coordinates to an address, or None."""
        try:
            result = await self._get_json(
                "/reverse", {"lat": lat, "lon": lng, "format": "json"}
            )
        except ExternalServiceDegraded as e:
            logger.warning(str(e))
            return None

        if not isinstance(result, dict) or not result.get("display_name"):
            return None
        return {"coordinates": [lng, lat], "address": result["display_name"]}


# Global geocoder instance
geocoder = Geocoder()
