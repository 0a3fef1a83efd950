# src/app/infra/search/base.py
"""
Abstract interface for web search, used by query-mode ingest to turn a
free-text query into candidate recipe URLs.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class SearchResult:
    url: str
    title: Optional[str] = None
    snippet: Optional[str] = None


class SearchProvider(ABC):
    """
    Implementations:
    - BraveSearchProvider: Brave Search web API
    """

    name: str = "search"

    @abstractmethod
    async def search(self, query: str, limit: int = 5) -> list[SearchResult]:
        """
        Args:
            query: Free-text query
            limit: Max candidates

        Returns:
            Candidates in ranking order, possibly empty

        Raises:
            TransientError: rate limits, timeouts and server failures
        """
        pass

    async def aclose(self) -> None:
        """Release network resources; the provider is unusable afterwards."""
        pass
