"""Search -> select -> extract -> synthesize, as one request pipeline."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncGenerator
from uuid import uuid4

from loguru import logger
from pydantic import ValidationError

from deepresearch.agents.orchestrator import StreamOrchestrator, SynthesisJob
from deepresearch.config import ModelCatalog
from deepresearch.models.events import SSEEvent
from deepresearch.models.research import PipelineSources
from deepresearch.models.schemas import ProcessRequest
from deepresearch.services import streaming
from deepresearch.services.logger import log_research_step
from deepresearch.tools.content_extractor import ContentExtractor
from deepresearch.tools.google_search import GoogleSearchClient
from deepresearch.tools.source_scorer import select_top

INVALID_PAYLOAD_MESSAGE = "Missing or invalid query, URLs, or source items to process."
NO_CONTENT_MESSAGE = "Failed to extract content from any sources."


@dataclass
class SearchOutcome:
    query: str
    urls_to_process: list[str]
    top_items: list[dict[str, Any]]


def parse_process_request(payload: Any) -> ProcessRequest | None:
    """Validate a decoded /process-and-summarize body; None when unusable."""
    if not isinstance(payload, dict):
        return None
    urls = payload.get("urlsToProcess")
    items = payload.get("topItems")
    if not isinstance(urls, list) or not urls:
        return None
    if not isinstance(items, list) or not items:
        return None
    try:
        request = ProcessRequest.model_validate(payload)
    except ValidationError:
        return None
    if not request.query.strip():
        return None
    return request


def collect_sources(
    urls: list[str],
    outcomes_by_url: dict[str, str | None],
    top_items: list[dict[str, Any]],
) -> PipelineSources:
    """Pair successful extractions with their search items, in URL-list order."""
    items_by_link: dict[str, dict[str, Any]] = {}
    for item in top_items:
        link = item.get("link") if isinstance(item, dict) else None
        if isinstance(link, str) and link not in items_by_link:
            items_by_link[link] = item

    sources = PipelineSources()
    for url in urls:
        text = outcomes_by_url.get(url)
        if not text:
            continue
        item = items_by_link.get(url)
        if item is None:
            logger.warning(f"Extracted {url} but it is missing from the source items; skipping")
            continue
        sources.items.append(item)
        sources.texts.append(text)
    return sources


class ResearchPipeline:
    """Runs the two request phases: search/select, then extract/synthesize."""

    def __init__(
        self,
        *,
        search_client: GoogleSearchClient,
        extractor: ContentExtractor,
        orchestrator: StreamOrchestrator,
        catalog: ModelCatalog,
        num_sources: int = 3,
    ):
        self.search_client = search_client
        self.extractor = extractor
        self.orchestrator = orchestrator
        self.catalog = catalog
        self.num_sources = max(int(num_sources), 1)

    async def search_phase(self, query: str) -> SearchOutcome:
        hits = await self.search_client.search(query)
        if not hits:
            logger.warning(f"No search results for {query[:80]!r}")
            return SearchOutcome(query=query, urls_to_process=[], top_items=[])

        top = select_top(hits, self.num_sources)
        logger.info(f"Selected {len(top)} of {len(hits)} results for processing")
        return SearchOutcome(
            query=query,
            urls_to_process=[hit.link for hit in top if hit.link],
            top_items=[hit.to_dict() for hit in top],
        )

    async def process_phase(self, request: ProcessRequest) -> AsyncGenerator[SSEEvent, None]:
        result_id = str(uuid4())
        query = request.query.strip()
        urls = list(request.urlsToProcess)

        log_research_step(result_id, "extraction", "running", {"urls": len(urls)})
        outcomes = await self.extractor.extract_many(urls)
        for outcome in outcomes:
            if not outcome.ok:
                logger.warning(f"Failed to extract {outcome.url}: {outcome.reason}")

        sources = collect_sources(
            urls,
            {outcome.url: outcome.text for outcome in outcomes},
            request.topItems,
        )
        if not sources.texts:
            log_research_step(result_id, "extraction", "failed", {"urls": len(urls)})
            yield streaming.error(NO_CONTENT_MESSAGE)
            return

        log_research_step(
            result_id,
            "extraction",
            "completed",
            {"succeeded": len(sources.texts), "requested": len(urls)},
        )
        yield streaming.sources_processed(sources.items)

        model, honoured = self.catalog.resolve(request.selectedModel)
        if not honoured:
            logger.warning(f"Unknown model {request.selectedModel!r}; using {model.id}")
            yield streaming.info(
                f"Selected model not available. Using {model.name} instead.",
                kind="model_fallback",
            )

        job = SynthesisJob(
            result_id=result_id,
            query=query,
            combined_text=sources.combined_text,
            sources=sources.items,
            model=model,
        )
        async for event in self.orchestrator.run(job):
            yield event
