"""Keepa client for the marketplace deals feed.

Keepa conventions:
- Prices are integer cents; -1 means "no data"
- `current`/`avg` are indexed by Keepa csv type:
  0=AMAZON, 1=NEW, 2=USED, 3=SALES (rank), 4=LIST_PRICE, 16=RATING (0-50), 17=COUNT_REVIEWS
- `avg[range][type]` / `deltaPercent[range][type]`: range 0=day, 1=week, 2=month, 3=90 days
- `deltaPercent` is negative for price drops

The /deal endpoint takes a JSON `selection`; domainId must be inside it.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from dealcast.settings import get_settings

logger = logging.getLogger("uvicorn.error")


class SourceUnavailableError(RuntimeError):
    """The marketplace source could not be reached or returned an error."""


@dataclass
class DealQuery:
    """Filters for one poll of the deals feed."""

    category_ids: list[int] = field(default_factory=list)
    min_discount: int = 5
    max_discount: int = 100
    min_reviews: int = 0
    min_rating: float = 0.0  # stars, 0-5
    has_reviews: bool = True
    max_pages: int = 3

    @classmethod
    def from_settings(cls) -> "DealQuery":
        settings = get_settings()
        return cls(
            category_ids=list(settings.poll_category_ids),
            min_discount=settings.poll_min_discount,
            max_discount=settings.poll_max_discount,
            min_reviews=settings.poll_min_reviews,
            min_rating=settings.poll_min_rating,
            has_reviews=settings.poll_min_reviews > 0 or settings.poll_min_rating > 0,
            max_pages=settings.poll_max_pages,
        )


class KeepaClient:
    """Client for the Keepa /deal endpoint."""

    def __init__(self, api_key: str | None = None, base_url: str | None = None, domain_id: int | None = None):
        settings = get_settings()
        self.api_key = api_key or settings.keepa_api_key
        self.base_url = (base_url or settings.keepa_base_url).rstrip("/")
        self.domain_id = domain_id if domain_id is not None else settings.keepa_domain_id
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def build_selection(self, query: DealQuery, page: int) -> dict[str, Any]:
        selection: dict[str, Any] = {
            "page": page,
            "domainId": self.domain_id,
            "priceTypes": [0],  # Amazon price; Keepa accepts exactly one type
            "hasReviews": bool(query.has_reviews),
            "isRangeEnabled": True,
            "deltaPercentRange": [max(0, query.min_discount), min(100, query.max_discount)],
        }
        if query.category_ids:
            selection["includeCategories"] = list(query.category_ids)
        if query.min_rating > 0:
            # Keepa ratings are on a 0-50 scale.
            selection["minRating"] = int(query.min_rating * 10)
        return selection

    async def fetch_page(self, query: DealQuery, page: int) -> list[dict[str, Any]]:
        """Fetch one page of raw deal records.

        Args:
            query: Deal filters.
            page: Zero-based page index.

        Returns:
            Raw Keepa deal objects (`deals.dr`).

        Raises:
            SourceUnavailableError: transport failure or non-2xx response.
        """
        if not self.api_key:
            logger.warning("Keepa API key not configured, returning empty results")
            return []

        params = {"key": self.api_key, "selection": json.dumps(self.build_selection(query, page))}
        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}/deal", params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code if e.response is not None else 0
            raise SourceUnavailableError(f"Keepa /deal returned HTTP {status}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise SourceUnavailableError(f"Keepa /deal request failed: {e}") from e

        if isinstance(data, dict) and data.get("tokensLeft") is not None:
            logger.info(f"Keepa page={page} tokensLeft={data.get('tokensLeft')}")
        deals = (data.get("deals") or {}).get("dr") if isinstance(data, dict) else None
        return [d for d in (deals or []) if isinstance(d, dict)]


# Singleton client instance
_client: KeepaClient | None = None


def get_keepa_client() -> KeepaClient:
    """Get Keepa client singleton."""
    global _client
    if _client is None:
        _client = KeepaClient()
    return _client
