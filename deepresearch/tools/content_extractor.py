from __future__ import annotations

import asyncio
import re

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from deepresearch.models.research import ExtractionOutcome
from deepresearch.tools import web_utils

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

NON_CONTENT_SELECTOR = (
    "script, style, noscript, iframe, header, footer, nav, aside, form, "
    '[aria-hidden="true"]'
)
CONTAINER_SELECTOR = 'article, main, [role="main"]'
TEXT_TAGS = ("p", "h1", "h2", "h3", "h4", "h5", "h6", "li", "td", "pre")


def _normalize_text(text: str) -> str:
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def extract_text(raw_html: str) -> str:
    """Reduce an HTML document to its readable text blocks."""
    soup = BeautifulSoup(raw_html, "html.parser")

    for element in soup.select(NON_CONTENT_SELECTOR):
        element.extract()

    root = soup.body or soup
    containers = soup.select(CONTAINER_SELECTOR) or [root]
    container_ids = {id(container) for container in containers}

    def in_container(element) -> bool:
        if id(element) in container_ids:
            return False
        return any(id(parent) in container_ids for parent in element.parents)

    parts: list[str] = []
    for element in soup.find_all(TEXT_TAGS):
        if not in_container(element):
            continue
        text = element.get_text().strip()
        parts.append(f"{text}\n\n" if element.name == "p" else text)

    extracted = _normalize_text("\n".join(parts))
    if extracted:
        return extracted

    # Last resort: whole-body text with collapsed whitespace
    return web_utils.collapse_whitespace(root.get_text())


class ContentExtractor:
    """Fetches pages and extracts readable text. Failures collapse to None."""

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout
        self._transport = transport

    async def extract(self, url: str) -> str | None:
        logger.debug(f"Extracting content from {url}")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(url, headers={"User-Agent": USER_AGENT})

            content_type = response.headers.get("content-type", "")
            if response.status_code != 200 or "text/html" not in content_type.lower():
                logger.warning(
                    f"Skipping non-HTML or error page: {url} "
                    f"(status={response.status_code}, type={content_type or 'n/a'})"
                )
                return None

            text = await asyncio.to_thread(extract_text, response.text)
        except Exception as exc:
            logger.error(f"Error fetching or processing {url}: {exc}")
            return None

        if not text:
            logger.warning(f"No text content found on {url}")
            return None
        logger.info(f"Extracted ~{len(text)} chars from {url}")
        return text

    async def extract_many(self, urls: list[str]) -> list[ExtractionOutcome]:
        """Extract every URL concurrently; one outcome per URL, in input order."""
        results = await asyncio.gather(
            *(self.extract(url) for url in urls),
            return_exceptions=True,
        )
        outcomes: list[ExtractionOutcome] = []
        for url, result in zip(urls, results):
            if isinstance(result, BaseException):
                outcomes.append(ExtractionOutcome(url=url, reason=str(result) or type(result).__name__))
            elif not result:
                outcomes.append(ExtractionOutcome(url=url, reason="no extractable text"))
            else:
                outcomes.append(ExtractionOutcome(url=url, text=result))
        return outcomes
