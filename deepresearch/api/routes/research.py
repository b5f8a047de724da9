from __future__ import annotations

import json
from pathlib import Path
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from loguru import logger
from sse_starlette.sse import EventSourceResponse

from deepresearch.agents.pipeline import INVALID_PAYLOAD_MESSAGE, ResearchPipeline, parse_process_request
from deepresearch.api.deps import (
    client_fingerprint,
    get_pipeline,
    get_rate_limiter,
    get_result_store,
    require_session,
    settings_dep,
)
from deepresearch.config import Settings
from deepresearch.errors import (
    InvalidResultIdError,
    PersistenceError,
    RequestTooLargeError,
    ResultNotFoundError,
)
from deepresearch.models.events import SSEEvent
from deepresearch.models.schemas import PersistedResult, RateLimitResponse, SearchResponse
from deepresearch.services import streaming
from deepresearch.services.logger import log_event
from deepresearch.services.result_store import ResultStore
from deepresearch.services.usage_store import RateLimiter

router = APIRouter(tags=["research"])

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parents[2] / "templates"))

EMPTY_QUERY_MESSAGE = "Search query cannot be empty."
SEARCH_FAILED_MESSAGE = "Failed to perform initial search and scoring."
NO_RESULTS_MESSAGE = "No results found by search API."
TOO_LARGE_MESSAGE = "Request too large. Please try a shorter query or fewer sources."
BAD_FORMAT_MESSAGE = "Invalid request format. Please check your input."
UNEXPECTED_MESSAGE = "An unexpected server error occurred. Please contact the system administrator."


async def read_json_body(request: Request, max_bytes: int) -> Any:
    """Decode the request body, refusing anything over `max_bytes`.

    Raises RequestTooLargeError or ValueError (malformed JSON).
    """
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise RequestTooLargeError(f"Declared body of {declared} bytes exceeds {max_bytes}")

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise RequestTooLargeError(f"Body exceeds {max_bytes} bytes")
    if not body:
        return {}
    return json.loads(body)


@router.post("/search", dependencies=[Depends(require_session)])
async def search(
    request: Request,
    settings: Settings = Depends(settings_dep),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    pipeline: ResearchPipeline = Depends(get_pipeline),
):
    """Search, score and select the sources for a query."""
    try:
        payload = await read_json_body(request, settings.max_request_bytes)
    except RequestTooLargeError:
        return JSONResponse(status_code=413, content={"error": TOO_LARGE_MESSAGE})
    except ValueError:
        return JSONResponse(status_code=400, content={"error": BAD_FORMAT_MESSAGE})

    query = payload.get("query") if isinstance(payload, dict) else None
    if not isinstance(query, str) or not query.strip():
        return JSONResponse(status_code=400, content={"error": EMPTY_QUERY_MESSAGE})
    query = query.strip()

    fingerprint = client_fingerprint(request, settings.trust_forwarded_for)
    decision = await rate_limiter.check_and_increment(fingerprint)
    if not decision.allowed:
        body = RateLimitResponse(
            error=(
                f"Daily research limit of {decision.limit} reached. "
                "Please try again tomorrow."
            ),
            currentUsage=decision.current_usage,
            limit=decision.limit,
        )
        return JSONResponse(status_code=429, content=body.model_dump())

    log_event(
        event_type="search_started",
        message="Search requested",
        query=query[:100],
        usage=decision.current_usage,
        limit=decision.limit,
    )
    try:
        outcome = await pipeline.search_phase(query)
    except Exception:
        logger.exception(f"Search phase failed for {query[:80]!r}")
        return JSONResponse(status_code=500, content={"error": SEARCH_FAILED_MESSAGE})

    response = SearchResponse(
        query=outcome.query,
        urlsToProcess=outcome.urls_to_process,
        topItems=outcome.top_items,
        message=None if outcome.urls_to_process else NO_RESULTS_MESSAGE,
    )
    return response.model_dump(exclude_none=True)


@router.post("/process-and-summarize", dependencies=[Depends(require_session)])
async def process_and_summarize(
    request: Request,
    settings: Settings = Depends(settings_dep),
    pipeline: ResearchPipeline = Depends(get_pipeline),
):
    """Extract the selected sources and stream the synthesized answer."""
    try:
        payload = await read_json_body(request, settings.max_request_bytes)
    except RequestTooLargeError as exc:
        logger.warning(f"Rejected oversized process request: {exc}")
        return EventSourceResponse(_sse(_rejection(TOO_LARGE_MESSAGE)))
    except ValueError as exc:
        logger.warning(f"Rejected malformed process request: {exc}")
        return EventSourceResponse(_sse(_rejection(BAD_FORMAT_MESSAGE)))

    process_request = parse_process_request(payload)
    if process_request is None:
        return EventSourceResponse(_sse(_single(streaming.error(INVALID_PAYLOAD_MESSAGE))))

    log_event(
        event_type="research_started",
        message="Processing sources",
        query=process_request.query[:100],
        urls=len(process_request.urlsToProcess),
        model=process_request.selectedModel,
    )
    return EventSourceResponse(_sse(pipeline.process_phase(process_request)))


async def _single(event: SSEEvent) -> AsyncGenerator[SSEEvent, None]:
    yield event


async def _rejection(message_text: str) -> AsyncGenerator[SSEEvent, None]:
    yield streaming.error(message_text)
    yield streaming.done()


async def _sse(events: AsyncGenerator[SSEEvent, None]) -> AsyncGenerator[dict[str, str], None]:
    """Encode pipeline events for EventSourceResponse."""
    try:
        async for event in events:
            yield event.to_sse()
    except Exception as exc:
        logger.exception(f"Unhandled error in research stream: {exc}")
        yield streaming.error(UNEXPECTED_MESSAGE).to_sse()
    finally:
        await events.aclose()


async def _load_result(result_store: ResultStore, result_id: str) -> PersistedResult | JSONResponse:
    try:
        return await result_store.load(result_id)
    except InvalidResultIdError:
        return JSONResponse(status_code=400, content={"error": "Invalid ID format."})
    except ResultNotFoundError:
        return JSONResponse(status_code=404, content={"error": "Research result not found."})
    except PersistenceError as exc:
        logger.error(f"Error loading research result {result_id}: {exc}")
        return JSONResponse(status_code=500, content={"error": "Error loading research result."})


@router.get("/research/{result_id}", response_class=HTMLResponse)
async def research_page(
    request: Request,
    result_id: str,
    result_store: ResultStore = Depends(get_result_store),
):
    """Shareable, read-only page for a persisted result."""
    loaded = await _load_result(result_store, result_id)
    if isinstance(loaded, JSONResponse):
        message = json.loads(loaded.body)["error"]
        return HTMLResponse(content=message, status_code=loaded.status_code)
    return templates.TemplateResponse(request, "result.html", {"result": loaded})


@router.get("/api/research/{result_id}")
async def research_json(
    result_id: str,
    result_store: ResultStore = Depends(get_result_store),
):
    loaded = await _load_result(result_store, result_id)
    if isinstance(loaded, JSONResponse):
        return loaded
    return loaded.model_dump(mode="json")
