from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Awaitable, Callable

import openai
from loguru import logger

from deepresearch.errors import LLMConfigurationError, LLMStreamError, PersistenceError
from deepresearch.llm_client import LLMStreamingClient
from deepresearch.models.events import SSEEvent
from deepresearch.models.schemas import ModelConfig, ModelUsed, PersistedResult
from deepresearch.services import streaming
from deepresearch.services.cost_calculator import calculate_cost
from deepresearch.services.logger import log_llm_call, log_research_step
from deepresearch.services.result_store import ResultStore, shareable_link

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class SynthesisJob:
    """Everything one answer stream needs; built by the pipeline after extraction."""

    result_id: str
    query: str
    combined_text: str
    sources: list[dict[str, Any]]
    model: ModelConfig


@dataclass
class _Attempt:
    number: int
    parts: list[str] = field(default_factory=list)
    usage: dict[str, Any] | None = None

    @property
    def answer(self) -> str:
        return "".join(self.parts)


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _chunk_delta(chunk: Any) -> str | None:
    choices = _field(chunk, "choices") or []
    if not choices:
        return None
    delta = _field(choices[0], "delta")
    content = _field(delta, "content")
    return content if isinstance(content, str) and content else None


def _chunk_error(chunk: Any) -> str | None:
    error = _field(chunk, "error")
    if not error:
        return None
    message = _field(error, "message")
    return str(message) if message else "Unknown error"


def _usage_dict(usage: Any) -> dict[str, Any] | None:
    if not usage:
        return None
    if isinstance(usage, dict):
        return dict(usage)
    if hasattr(usage, "model_dump"):
        return usage.model_dump(exclude_none=True)
    return {
        key: getattr(usage, key)
        for key in ("prompt_tokens", "completion_tokens", "total_tokens")
        if getattr(usage, key, None) is not None
    }


async def _close_stream(stream: Any) -> None:
    close = getattr(stream, "close", None) or getattr(stream, "aclose", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception as exc:
        logger.debug(f"Ignoring error while closing LLM stream: {exc}")


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class StreamOrchestrator:
    """Drives the answer stream for one pipeline run.

    Each attempt opens a fresh stream and forwards deltas as they arrive.
    Failed attempts are retried after a fixed delay; text from a failed
    attempt is never persisted. A successful attempt is persisted and
    announced with a result link followed by the done marker.
    """

    def __init__(
        self,
        *,
        llm: LLMStreamingClient,
        result_store: ResultStore,
        api_key: str,
        max_attempts: int = 3,
        retry_delay: float = 5.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.llm = llm
        self.result_store = result_store
        self.api_key = api_key
        self.max_attempts = max(int(max_attempts), 1)
        self.retry_delay = max(float(retry_delay), 0.0)
        self._sleep = sleep

    async def run(self, job: SynthesisJob) -> AsyncGenerator[SSEEvent, None]:
        last_error: Exception | None = None

        for number in range(1, self.max_attempts + 1):
            attempt = _Attempt(number=number)
            started = time.monotonic()
            try:
                async for event in self._stream_attempt(job, attempt):
                    yield event
            except LLMConfigurationError as exc:
                log_llm_call(job.model.id, "orchestrator.answer", attempt=number, status="failed", error=str(exc))
                yield streaming.error(str(exc))
                return
            except Exception as exc:
                last_error = exc
                log_llm_call(
                    job.model.id,
                    "orchestrator.answer",
                    duration_ms=int((time.monotonic() - started) * 1000),
                    attempt=number,
                    status="failed",
                    error=str(exc),
                )
                if number < self.max_attempts:
                    logger.warning(
                        f"Answer stream attempt {number}/{self.max_attempts} failed; "
                        f"retrying in {self.retry_delay}s"
                    )
                    await self._sleep(self.retry_delay)
                continue

            usage = attempt.usage or {}
            log_llm_call(
                job.model.id,
                "orchestrator.answer",
                input_tokens=int(usage.get("prompt_tokens", 0) or 0),
                output_tokens=int(usage.get("completion_tokens", 0) or 0),
                duration_ms=int((time.monotonic() - started) * 1000),
                attempt=number,
            )
            async for event in self._finalize(job, attempt):
                yield event
            return

        message = str(last_error) if last_error else "Unknown stream error"
        log_research_step(job.result_id, "synthesis", "failed", {"attempts": self.max_attempts})
        yield streaming.error(
            f"Failed after {self.max_attempts} attempts. Last error: {message}"
        )

    async def _stream_attempt(
        self,
        job: SynthesisJob,
        attempt: _Attempt,
    ) -> AsyncGenerator[SSEEvent, None]:
        stream = await self.llm.stream_answer(
            job.query,
            job.combined_text,
            job.sources,
            self.api_key,
            job.model.id,
        )
        try:
            async for chunk in stream:
                in_band_error = _chunk_error(chunk)
                if in_band_error:
                    raise LLMStreamError(f"LLM Error: {in_band_error}")

                usage = _usage_dict(_field(chunk, "usage"))
                if usage:
                    attempt.usage = usage

                delta = _chunk_delta(chunk)
                if delta:
                    attempt.parts.append(delta)
                    yield streaming.message(delta)
        except openai.APIError as exc:
            # The SDK raises on error payloads embedded in the stream
            raise LLMStreamError(f"LLM Error: {exc.message}") from exc
        finally:
            await _close_stream(stream)

    async def _finalize(
        self,
        job: SynthesisJob,
        attempt: _Attempt,
    ) -> AsyncGenerator[SSEEvent, None]:
        cost = calculate_cost(attempt.usage, job.model)
        if cost is None:
            logger.warning("Could not calculate cost: missing usage data or model pricing")

        result = PersistedResult(
            id=job.result_id,
            query=job.query,
            answerHtml=attempt.answer,
            sources=job.sources,
            timestamp=_utc_timestamp(),
            usage=attempt.usage,
            cost=cost,
            modelUsed=ModelUsed(
                id=job.model.id,
                name=job.model.name,
                provider=job.model.provider,
            ),
        )
        try:
            await self.result_store.save(result)
        except PersistenceError as exc:
            logger.error(f"Error saving result {job.result_id}: {exc}")
            yield streaming.error("Failed to save result for sharing.")
            return

        log_research_step(
            job.result_id,
            "synthesis",
            "completed",
            {"attempts": attempt.number, "chars": len(result.answerHtml), "cost": cost},
        )
        yield streaming.result_link(shareable_link(job.result_id), usage=attempt.usage, cost=cost)
        yield streaming.done()
