from __future__ import annotations

import asyncio
import math
from typing import Any

import httpx
from loguru import logger

from deepresearch.config import Settings
from deepresearch.models.research import SearchHit

GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
RESULTS_PER_PAGE = 10  # Custom Search API maximum per request


def page_starts(total: int, page_size: int = RESULTS_PER_PAGE) -> list[int]:
    """1-based start indexes for each page needed to cover `total` results."""
    num_pages = math.ceil(max(total, 0) / page_size)
    return [i * page_size + 1 for i in range(num_pages)]


class GoogleSearchClient:
    """Paginated Google Custom Search client that tolerates failed pages."""

    def __init__(
        self,
        *,
        api_key: str,
        cx: str,
        total_results: int = 20,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.cx = cx
        self.total_results = max(int(total_results), 1)
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "GoogleSearchClient":
        return cls(
            api_key=settings.google_api_key,
            cx=settings.google_cx,
            total_results=settings.search_results_total,
            timeout=settings.search_timeout_seconds,
        )

    async def search(self, query: str) -> list[SearchHit]:
        if not query or not query.strip():
            logger.error("Search query cannot be empty")
            return []
        if not self.api_key or not self.cx:
            logger.error("Missing GOOGLE_API_KEY or GOOGLE_CX; returning no results")
            return []

        starts = page_starts(self.total_results)
        logger.info(
            f"Fetching {self.total_results} results for {query[:80]!r} across {len(starts)} pages"
        )

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            pages = await asyncio.gather(
                *(self._fetch_page(client, query, start) for start in starts),
                return_exceptions=True,
            )

        combined: list[SearchHit] = []
        successful_pages = 0
        for page_number, page in enumerate(pages, start=1):
            if isinstance(page, BaseException):
                logger.error(f"Search page {page_number} failed: {page}")
                continue
            if not page:
                logger.warning(f"No items in search response for page {page_number}")
                continue
            successful_pages += 1
            combined.extend(page)

        logger.info(
            f"Search finished: {successful_pages}/{len(starts)} pages ok, {len(combined)} items"
        )
        return combined[: self.total_results]

    async def _fetch_page(
        self,
        client: httpx.AsyncClient,
        query: str,
        start: int,
    ) -> list[SearchHit]:
        params: dict[str, Any] = {
            "key": self.api_key,
            "cx": self.cx,
            "q": query,
            "num": RESULTS_PER_PAGE,
            "start": start,
        }
        response = await client.get(GOOGLE_SEARCH_URL, params=params)
        response.raise_for_status()
        payload = response.json()

        items = payload.get("items", []) or []
        return [
            SearchHit(
                link=item.get("link", "") or "",
                title=item.get("title", "") or "",
                snippet=item.get("snippet", "") or "",
            )
            for item in items
        ]
