"""OpenRouter streaming client for cited research answers."""
from __future__ import annotations

from typing import Any, AsyncIterator, Callable

import openai
from loguru import logger

from deepresearch.config import Settings
from deepresearch.errors import LLMConfigurationError, LLMStreamError
from deepresearch.services.prompt_store import render_prompt

APP_TITLE = "Deep Research"

ClientFactory = Callable[[str], Any]


def build_source_list(sources: list[dict[str, Any]]) -> str:
    """Numbered source block; numbering defines the `#source-N` citation targets."""
    if not sources:
        return render_prompt("research.no_sources")
    return "\n".join(
        render_prompt(
            "research.source_entry",
            index=index,
            title=source.get("title", "") or "",
            link=source.get("link", "") or "",
        )
        for index, source in enumerate(sources, start=1)
    )


def build_prompt(query: str, text: str, sources: list[dict[str, Any]]) -> str:
    return render_prompt(
        "research.answer",
        query=query,
        text=text,
        source_list=build_source_list(sources),
    )


class LLMStreamingClient:
    """Opens token streams against an OpenAI-compatible completions endpoint."""

    def __init__(
        self,
        *,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 120.0,
        referer: str = "http://localhost:3000",
        client_factory: ClientFactory | None = None,
    ):
        self.base_url = base_url.strip() or "https://openrouter.ai/api/v1"
        self.timeout = timeout
        self.referer = referer
        self._client_factory = client_factory or self._default_client

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMStreamingClient":
        return cls(
            base_url=settings.openrouter_base_url,
            timeout=settings.llm_timeout_seconds,
            referer=f"http://localhost:{settings.port}",
        )

    def _default_client(self, api_key: str) -> openai.AsyncOpenAI:
        # Retries are owned by the stream orchestrator.
        return openai.AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
            default_headers={"HTTP-Referer": self.referer, "X-Title": APP_TITLE},
        )

    async def stream_answer(
        self,
        query: str,
        combined_text: str,
        sources: list[dict[str, Any]],
        api_key: str,
        model_id: str,
    ) -> AsyncIterator[Any]:
        """Start a streaming completion and return the raw chunk stream."""
        if not api_key:
            raise LLMConfigurationError("OpenRouter API key not configured.")
        if not model_id:
            raise LLMConfigurationError("OpenRouter model name not configured.")
        if not combined_text or not combined_text.strip():
            raise LLMConfigurationError("No content available to answer the query.")
        if not sources:
            logger.warning("No sources provided for citation")

        prompt = build_prompt(query, combined_text, sources)
        client = self._client_factory(api_key)

        logger.info(f"Sending streaming request with model {model_id}")
        try:
            return await client.chat.completions.create(
                model=model_id,
                messages=[{"role": "user", "content": prompt}],
                stream=True,
                stream_options={"include_usage": True},
            )
        except openai.APIStatusError as exc:
            logger.error(f"Completion request rejected: {exc.status_code} - {exc.message}")
            raise LLMStreamError(
                f"Failed to get stream from the AI. Status: {exc.status_code}."
            ) from exc
        except openai.APIError as exc:
            logger.error(f"Completion request failed: {exc}")
            raise LLMStreamError(
                f"Failed to get stream from the AI. No response received: {exc.message}"
            ) from exc
