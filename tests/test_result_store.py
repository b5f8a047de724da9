from __future__ import annotations

import json
import uuid

import pytest

from deepresearch.errors import InvalidResultIdError, PersistenceError, ResultNotFoundError
from deepresearch.models.schemas import ModelUsed, PersistedResult
from deepresearch.services.result_store import ResultStore, is_valid_result_id, shareable_link


def _result(result_id: str) -> PersistedResult:
    return PersistedResult(
        id=result_id,
        query="What are widgets?",
        answerHtml='<p>Widgets<sup><a href="#source-1">1</a></sup></p>',
        sources=[{"link": "https://example.com", "title": "Example", "snippet": "", "score": 1}],
        timestamp="2025-03-01T12:00:00.000Z",
        usage={"prompt_tokens": 100, "completion_tokens": 50, "total_tokens": 150},
        cost=0.000045,
        modelUsed=ModelUsed(id="openai/gpt-4o-mini", name="GPT-4o Mini", provider="OpenAI"),
    )


def test_result_id_validation():
    assert is_valid_result_id(str(uuid.uuid4()))
    assert not is_valid_result_id("../../etc/passwd")
    assert not is_valid_result_id("")
    assert shareable_link("abc") == "/research/abc"


@pytest.mark.asyncio
async def test_save_then_load_round_trip(tmp_path):
    store = ResultStore(tmp_path / "results")
    result_id = str(uuid.uuid4())

    path = await store.save(_result(result_id))

    assert path == tmp_path / "results" / f"{result_id}.json"
    on_disk = json.loads(path.read_text())
    assert on_disk["answerHtml"] == _result(result_id).answerHtml
    assert on_disk["modelUsed"]["provider"] == "OpenAI"
    assert not list((tmp_path / "results").glob("*.tmp"))

    loaded = await store.load(result_id)
    assert loaded == _result(result_id)


@pytest.mark.asyncio
async def test_load_errors(tmp_path):
    store = ResultStore(tmp_path)

    with pytest.raises(InvalidResultIdError):
        await store.load("not-a-uuid")
    with pytest.raises(ResultNotFoundError):
        await store.load(str(uuid.uuid4()))

    broken_id = str(uuid.uuid4())
    (tmp_path / f"{broken_id}.json").write_text('{"id": "x"}')
    with pytest.raises(PersistenceError):
        await store.load(broken_id)


@pytest.mark.asyncio
async def test_save_failure_raises_persistence_error(tmp_path):
    blocker = tmp_path / "results"
    blocker.write_text("a file where the directory should be")
    store = ResultStore(blocker)

    with pytest.raises(PersistenceError):
        await store.save(_result(str(uuid.uuid4())))
