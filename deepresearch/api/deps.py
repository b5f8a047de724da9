from __future__ import annotations

import secrets

from fastapi import Depends, Request

from deepresearch.agents.orchestrator import StreamOrchestrator
from deepresearch.agents.pipeline import ResearchPipeline
from deepresearch.config import ModelCatalog, Settings
from deepresearch.errors import AuthenticationError
from deepresearch.llm_client import LLMStreamingClient
from deepresearch.services.result_store import ResultStore
from deepresearch.services.usage_store import FileUsageStore, RateLimiter
from deepresearch.tools.content_extractor import ContentExtractor
from deepresearch.tools.google_search import GoogleSearchClient

SESSION_COOKIE = "session_token"
SESSION_MAX_AGE = 365 * 24 * 60 * 60


def settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def catalog_dep(request: Request) -> ModelCatalog:
    return request.app.state.catalog


def has_valid_session(request: Request, settings: Settings) -> bool:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return False
    return secrets.compare_digest(token.encode(), settings.session_secret_token.encode())


def require_session(request: Request, settings: Settings = Depends(settings_dep)) -> None:
    """Reject requests without the shared-secret session cookie."""
    if not has_valid_session(request, settings):
        raise AuthenticationError("Unauthorized. Please log in.")


def client_fingerprint(request: Request, trust_forwarded_for: bool = False) -> str:
    """Coarse per-client key: peer address plus a user-agent prefix.

    The first X-Forwarded-For address is used only when `trust_forwarded_for`
    is set.
    """
    ip = ""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        ip = forwarded.split(",")[0].strip()
    if not ip and request.client is not None:
        ip = request.client.host
    user_agent = request.headers.get("user-agent", "")
    return f"{ip or 'unknown'}_{user_agent[:50]}"


def get_result_store(request: Request) -> ResultStore:
    return request.app.state.result_store


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def build_rate_limiter(settings: Settings) -> RateLimiter:
    return RateLimiter(FileUsageStore(settings.usage_dir), settings.daily_request_limit)


def get_pipeline(
    settings: Settings = Depends(settings_dep),
    catalog: ModelCatalog = Depends(catalog_dep),
    result_store: ResultStore = Depends(get_result_store),
) -> ResearchPipeline:
    orchestrator = StreamOrchestrator(
        llm=LLMStreamingClient.from_settings(settings),
        result_store=result_store,
        api_key=settings.openrouter_api_key,
        max_attempts=settings.llm_max_attempts,
        retry_delay=settings.llm_retry_delay_seconds,
    )
    return ResearchPipeline(
        search_client=GoogleSearchClient.from_settings(settings),
        extractor=ContentExtractor(timeout=settings.extractor_timeout_seconds),
        orchestrator=orchestrator,
        catalog=catalog,
        num_sources=settings.num_sources,
    )
