from __future__ import annotations

import logging
import os
from typing import Optional

import httpx

from src.app.domain.errors import InvalidPayloadError, TransientError
from src.app.infra.search.base import SearchProvider, SearchResult

logger = logging.getLogger(__name__)

BRAVE_ENDPOINT = "https://api.search.brave.com/res/v1/web/search"
MAX_RESULTS = 20


class BraveSearchProvider(SearchProvider):
    name = "brave"

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: str = BRAVE_ENDPOINT,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key or os.getenv("BRAVE_SEARCH_API_KEY")
        if not self.api_key:
            raise InvalidPayloadError("Missing Brave Search API key", code="PROVIDER_DISABLED")
        self.endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def search(self, query: str, limit: int = 5) -> list[SearchResult]:
        if not query or not query.strip():
            raise InvalidPayloadError("Search query cannot be empty", code="INVALID_QUERY")

        try:
            response = await self._client.get(
                self.endpoint,
                params={"q": query.strip(), "count": max(1, min(limit, MAX_RESULTS))},
                headers={"Accept": "application/json", "X-Subscription-Token": self.api_key},
            )
        except httpx.HTTPError as error:
            raise TransientError(f"Brave search request failed: {error}") from error

        if response.status_code == 429:
            logger.warning("search.rate_limited provider=brave")
            raise TransientError("Brave search rate limit reached", code="RATE_LIMITED")
        if response.status_code >= 500:
            raise TransientError(f"Brave search returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise TransientError(f"Brave search rejected the request: HTTP {response.status_code}", retryable=False)

        results = (response.json().get("web") or {}).get("results") or []
        candidates = [
            SearchResult(url=item["url"], title=item.get("title"), snippet=item.get("description"))
            for item in results
            if isinstance(item, dict) and item.get("url")
        ]
        logger.info("search.ok provider=brave query=%r results=%d", query, len(candidates))
        return candidates[:limit]
