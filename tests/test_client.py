from __future__ import annotations

import json
import uuid

import httpx
import pytest

from deepresearch.client.consumer import ConsumerState, ResearchClient, StreamConsumer
from deepresearch.client.history import HistoryEntry, HistoryStore
from deepresearch.models.events import SSEEvent
from deepresearch.services import streaming

RESULT_ID = str(uuid.uuid4())
URLS = ["https://example.com/a", "https://example.com/b", "https://example.com/c"]
ITEMS = [{"link": url, "title": url[-1].upper(), "snippet": "", "score": 0} for url in URLS]
PERSISTED = {
    "id": RESULT_ID,
    "query": "widgets",
    "answerHtml": "<p>Clean answer</p>",
    "sources": ITEMS[:2],
    "timestamp": "2025-03-01T12:00:00.000Z",
    "modelUsed": {"id": "openai/gpt-4o-mini", "name": "GPT-4o Mini", "provider": "OpenAI"},
}


def _sse_body(events: list[SSEEvent]) -> bytes:
    # Mirror sse-starlette framing, including CRLF separators and pings
    wire = ": ping\n\n" + "".join(event.format() for event in events)
    return wire.replace("\n", "\r\n").encode()


def _server(stream_events: list[SSEEvent], search_status: int = 200, seen: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path == "/search":
            if search_status != 200:
                return httpx.Response(search_status, json={"error": "Daily limit", "currentUsage": 3, "limit": 3})
            return httpx.Response(200, json={"query": "widgets", "urlsToProcess": URLS, "topItems": ITEMS})
        if request.url.path == "/process-and-summarize":
            return httpx.Response(
                200,
                content=_sse_body(stream_events),
                headers={"content-type": "text/event-stream"},
            )
        if request.url.path == f"/api/research/{RESULT_ID}":
            return httpx.Response(200, json=PERSISTED)
        return httpx.Response(404, json={"error": "Research result not found."})

    return httpx.MockTransport(handler)


def _client(tmp_path, transport) -> ResearchClient:
    return ResearchClient(
        base_url="http://testserver",
        token="secret",
        history=HistoryStore(tmp_path / "history.json"),
        transport=transport,
    )


SUCCESS_EVENTS = [
    streaming.sources_processed(ITEMS[:2]),
    streaming.message("stale "),
    streaming.message("<p>Clean"),
    streaming.message(" answer</p>"),
    streaming.result_link(f"/research/{RESULT_ID}", usage={"total_tokens": 15}, cost=0.0001),
    streaming.done(),
]


@pytest.mark.asyncio
async def test_successful_run_refreshes_answer_and_records_history(tmp_path):
    seen: list[httpx.Request] = []
    deltas: list[str] = []
    client = _client(tmp_path, _server(SUCCESS_EVENTS, seen=seen))

    consumer = await client.research("  widgets ", model="openai/gpt-4o-mini", on_delta=deltas.append)

    assert consumer.state == ConsumerState.FINALIZED
    assert deltas == ["stale ", "<p>Clean", " answer</p>"]
    assert consumer.buffer == "<p>Clean answer</p>"
    assert consumer.result_id == RESULT_ID
    assert consumer.cost == 0.0001
    assert consumer.pending_urls == URLS[:2]
    assert [s["link"] for s in consumer.sources] == URLS[:2]

    process_request = next(r for r in seen if r.url.path == "/process-and-summarize")
    body = json.loads(process_request.content)
    assert body["selectedModel"] == "openai/gpt-4o-mini"
    assert body["urlsToProcess"] == URLS
    assert "session_token=secret" in process_request.headers["cookie"]

    entries = client.history.list_entries()
    assert len(entries) == 1
    assert entries[0].id == RESULT_ID
    assert entries[0].query == "widgets"
    assert entries[0].modelUsed["name"] == "GPT-4o Mini"


@pytest.mark.asyncio
async def test_error_event_skips_history(tmp_path):
    events = [
        streaming.sources_processed(ITEMS[:1]),
        streaming.message("partial"),
        streaming.error("Failed after 3 attempts. Last error: boom"),
    ]
    client = _client(tmp_path, _server(events))

    consumer = await client.research("widgets")

    assert consumer.state == ConsumerState.ERROR
    assert consumer.error == "Failed after 3 attempts. Last error: boom"
    assert consumer.buffer == "partial"
    assert client.history.list_entries() == []


@pytest.mark.asyncio
async def test_search_rejection_ends_in_error(tmp_path):
    client = _client(tmp_path, _server([], search_status=429))

    consumer = await client.research("widgets")

    assert consumer.state == ConsumerState.ERROR
    assert "429" in consumer.error and "Daily limit" in consumer.error


@pytest.mark.asyncio
async def test_stream_without_result_link_is_an_error(tmp_path):
    client = _client(tmp_path, _server([streaming.message("dangling")]))

    consumer = await client.research("widgets")

    assert consumer.state == ConsumerState.ERROR
    assert client.history.list_entries() == []


def test_consumer_state_machine():
    consumer = StreamConsumer(query="q", pending_urls=list(URLS))
    assert consumer.state == ConsumerState.IDLE
    consumer.start()
    assert consumer.state == ConsumerState.LOADING

    consumer.handle(streaming.info("Selected model not available.", kind="model_fallback"))
    assert consumer.state == ConsumerState.STREAMING
    assert consumer.notices == ["Selected model not available."]

    consumer.handle(streaming.result_link(f"/research/{RESULT_ID}"))
    consumer.handle(streaming.done())
    consumer.finish()
    assert consumer.succeeded

    # Events after a terminal state are ignored
    consumer.handle(streaming.message("late"))
    assert consumer.buffer == ""


def test_history_store_add_list_delete(tmp_path):
    store = HistoryStore(tmp_path / "nested" / "history.json")
    store.add(HistoryEntry(id="a", query="first", timestamp="2025-03-01T10:00:00.000Z"))
    store.add(HistoryEntry(id="b", query="second", timestamp="2025-03-02T10:00:00.000Z"))
    store.add(HistoryEntry(id="a", query="first again", timestamp="2025-03-03T10:00:00.000Z"))

    assert [(e.id, e.query) for e in store.list_entries()] == [("a", "first again"), ("b", "second")]

    assert store.delete("b") is True
    assert store.delete("b") is False
    assert [e.id for e in store.list_entries()] == ["a"]

    raw = json.loads((tmp_path / "nested" / "history.json").read_text())
    assert raw == [{"id": "a", "query": "first again", "timestamp": "2025-03-03T10:00:00.000Z"}]


def test_history_store_tolerates_corrupt_file(tmp_path):
    path = tmp_path / "history.json"
    path.write_text("{broken")
    assert HistoryStore(path).list_entries() == []
