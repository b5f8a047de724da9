from __future__ import annotations

import json
import uuid
from unittest.mock import AsyncMock

import pytest

from deepresearch.agents.orchestrator import StreamOrchestrator, SynthesisJob
from deepresearch.errors import LLMConfigurationError, LLMStreamError, PersistenceError
from deepresearch.models.events import EventType
from deepresearch.models.schemas import ModelConfig
from deepresearch.services.result_store import ResultStore

from conftest import TEST_MODELS, chunk

USAGE = {"prompt_tokens": 1_000_000, "completion_tokens": 500_000, "total_tokens": 1_500_000}


class ScriptedLLM:
    """Plays back one scripted stream per attempt.

    Each script is a list of chunks; an Exception instance in the list is
    raised at that point of the stream. A script that is itself an
    exception is raised when the stream is opened.
    """

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.calls = []

    async def stream_answer(self, query, combined_text, sources, api_key, model_id):
        self.calls.append((query, combined_text, sources, api_key, model_id))
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        return self._play(script)

    @staticmethod
    async def _play(script):
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield item


def _job(model_index: int = 0) -> SynthesisJob:
    return SynthesisJob(
        result_id=str(uuid.uuid4()),
        query="What are widgets?",
        combined_text="Widgets are devices.\n\n---\n\nThey are useful.",
        sources=[{"link": "https://example.com/a", "title": "A", "snippet": "", "score": 0}],
        model=ModelConfig.model_validate(TEST_MODELS[model_index]),
    )


def _orchestrator(llm, store, sleep=None) -> StreamOrchestrator:
    return StreamOrchestrator(
        llm=llm,
        result_store=store,
        api_key="key",
        max_attempts=3,
        retry_delay=5.0,
        sleep=sleep or AsyncMock(),
    )


async def _collect(orchestrator, job):
    return [event async for event in orchestrator.run(job)]


@pytest.mark.asyncio
async def test_successful_stream_persists_and_links(tmp_path):
    llm = ScriptedLLM([chunk("<p>Widgets"), chunk(" rock</p>"), chunk(usage=USAGE)])
    store = ResultStore(tmp_path)
    job = _job()

    events = await _collect(_orchestrator(llm, store), job)

    assert [e.data for e in events if e.event == EventType.MESSAGE] == ["<p>Widgets", " rock</p>", "[DONE]"]
    link = events[-2]
    assert link.event == EventType.RESULT_LINK
    assert link.data["link"] == f"/research/{job.result_id}"
    assert link.data["usage"] == USAGE
    # 1M prompt tokens at 0.15/M plus 0.5M completion tokens at 0.6/M
    assert link.data["cost"] == pytest.approx(0.45)
    assert events[-1].is_done

    saved = json.loads((tmp_path / f"{job.result_id}.json").read_text())
    assert saved["answerHtml"] == "<p>Widgets rock</p>"
    assert saved["query"] == "What are widgets?"
    assert saved["modelUsed"] == {"id": "openai/gpt-4o-mini", "name": "GPT-4o Mini", "provider": "OpenAI"}
    assert saved["timestamp"].endswith("Z")
    assert llm.calls[0][3:] == ("key", "openai/gpt-4o-mini")


@pytest.mark.asyncio
async def test_retries_until_third_attempt_succeeds(tmp_path):
    llm = ScriptedLLM(
        LLMStreamError("Failed to get stream from the AI. Status: 502."),
        [chunk("stale partial"), LLMStreamError("connection reset")],
        [chunk("final answer"), chunk(usage=USAGE)],
    )
    sleep = AsyncMock()
    store = ResultStore(tmp_path)
    job = _job()

    events = await _collect(_orchestrator(llm, store, sleep), job)

    assert len(llm.calls) == 3
    assert sleep.await_count == 2
    sleep.assert_awaited_with(5.0)
    assert sum(1 for e in events if e.event == EventType.RESULT_LINK) == 1
    assert not any(e.event == EventType.ERROR for e in events)
    # Deltas from failed attempts are forwarded but never persisted
    assert [e.data for e in events if e.event == EventType.MESSAGE][:2] == ["stale partial", "final answer"]
    assert len(list(tmp_path.glob("*.json"))) == 1
    saved = json.loads((tmp_path / f"{job.result_id}.json").read_text())
    assert saved["answerHtml"] == "final answer"


@pytest.mark.asyncio
async def test_in_band_error_aborts_attempt(tmp_path):
    llm = ScriptedLLM(
        [chunk("partial"), chunk(error={"message": "Provider overloaded", "code": 503}), chunk("never")],
        [chunk("recovered")],
    )
    job = _job()

    events = await _collect(_orchestrator(llm, ResultStore(tmp_path)), job)

    assert "never" not in [e.data for e in events]
    saved = json.loads((tmp_path / f"{job.result_id}.json").read_text())
    assert saved["answerHtml"] == "recovered"
    assert saved["usage"] is None
    assert saved["cost"] is None
    assert "usage" not in events[-2].data and "cost" not in events[-2].data


@pytest.mark.asyncio
async def test_exhausted_attempts_emit_single_error(tmp_path):
    llm = ScriptedLLM(
        LLMStreamError("first"),
        [chunk(error={"message": "second"})],
        LLMStreamError("Failed to get stream from the AI. Status: 500."),
    )
    sleep = AsyncMock()

    events = await _collect(_orchestrator(llm, ResultStore(tmp_path), sleep), _job())

    assert sleep.await_count == 2
    assert len(events) == 1
    assert events[0].event == EventType.ERROR
    assert events[0].data == {
        "message": "Failed after 3 attempts. Last error: Failed to get stream from the AI. Status: 500."
    }
    assert not list(tmp_path.glob("*.json"))


@pytest.mark.asyncio
async def test_configuration_error_is_not_retried(tmp_path):
    llm = ScriptedLLM(LLMConfigurationError("OpenRouter API key not configured."))
    sleep = AsyncMock()

    events = await _collect(_orchestrator(llm, ResultStore(tmp_path), sleep), _job())

    assert len(llm.calls) == 1
    sleep.assert_not_awaited()
    assert [e.data for e in events] == [{"message": "OpenRouter API key not configured."}]


@pytest.mark.asyncio
async def test_persistence_failure_is_reported_once():
    llm = ScriptedLLM([chunk("answer")])
    store = AsyncMock()
    store.save.side_effect = PersistenceError("disk full")

    events = await _collect(_orchestrator(llm, store), _job())

    assert len(llm.calls) == 1
    assert events[-1].event == EventType.ERROR
    assert events[-1].data == {"message": "Failed to save result for sharing."}
    assert not any(e.event == EventType.RESULT_LINK for e in events)


@pytest.mark.asyncio
async def test_cost_uses_selected_model_prices(tmp_path):
    llm = ScriptedLLM([chunk("answer"), chunk(usage={"prompt_tokens": 2000, "completion_tokens": 1000})])

    events = await _collect(_orchestrator(llm, ResultStore(tmp_path)), _job(model_index=1))

    # 2000 * 0.8/M + 1000 * 4.0/M
    assert events[-2].data["cost"] == pytest.approx(0.0056)
