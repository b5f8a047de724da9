"""HTTP client for a running Deep Research server.

`StreamConsumer` tracks one research run as events arrive; `ResearchClient`
drives the two-step search / process exchange, refreshes the final answer
from the persisted result and records successful runs in the local history.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

import httpx
from loguru import logger

from deepresearch.client.history import HistoryEntry, HistoryStore
from deepresearch.models.events import EventType, SSEDecoder, SSEEvent

DeltaCallback = Callable[[str], Any]


class ConsumerState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    ERROR = "error"


class ResearchClientError(Exception):
    def __init__(self, message: str, status_code: int | None = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


@dataclass
class StreamConsumer:
    """State of one research run as seen by the client."""

    query: str
    pending_urls: list[str] = field(default_factory=list)
    state: ConsumerState = ConsumerState.IDLE
    buffer: str = ""
    sources: list[dict[str, Any]] = field(default_factory=list)
    result_id: str | None = None
    link: str | None = None
    usage: dict[str, Any] | None = None
    cost: float | None = None
    notices: list[str] = field(default_factory=list)
    error: str | None = None
    model_used: dict[str, Any] | None = None

    def start(self) -> None:
        self.state = ConsumerState.LOADING

    def handle(self, event: SSEEvent) -> None:
        if self.state in (ConsumerState.FINALIZED, ConsumerState.ERROR):
            return
        self.state = ConsumerState.STREAMING

        if event.event == EventType.MESSAGE:
            if not event.is_done and isinstance(event.data, str):
                self.buffer += event.data
        elif event.event == EventType.INFO:
            self._handle_info(event.data if isinstance(event.data, dict) else {})
        elif event.event == EventType.RESULT_LINK:
            data = event.data if isinstance(event.data, dict) else {}
            link = data.get("link")
            if isinstance(link, str) and link:
                self.link = link
                self.result_id = link.rstrip("/").split("/")[-1]
            self.usage = data.get("usage")
            self.cost = data.get("cost")
        elif event.event == EventType.ERROR:
            data = event.data if isinstance(event.data, dict) else {}
            self.fail(str(data.get("message") or "Unknown server error"))

    def _handle_info(self, data: dict[str, Any]) -> None:
        if data.get("type") == "sources_processed":
            self.sources = [s for s in data.get("sources", []) if isinstance(s, dict)]
            kept = {source.get("link") for source in self.sources}
            self.pending_urls = [url for url in self.pending_urls if url in kept]
        elif data.get("message"):
            self.notices.append(str(data["message"]))

    def fail(self, message: str) -> None:
        self.error = message
        self.state = ConsumerState.ERROR

    def finish(self) -> None:
        """Close the run once the stream has ended."""
        if self.state == ConsumerState.ERROR:
            return
        if not self.result_id:
            self.fail("Stream ended before a result was produced.")
            return
        self.state = ConsumerState.FINALIZED

    @property
    def succeeded(self) -> bool:
        return self.state == ConsumerState.FINALIZED and self.result_id is not None


class ResearchClient:
    def __init__(
        self,
        *,
        base_url: str = "http://localhost:3000",
        token: str = "",
        history: HistoryStore | None = None,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.history = history or HistoryStore()
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            cookies={"session_token": self.token} if self.token else None,
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            transport=self._transport,
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> tuple[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return response.text or response.reason_phrase, None
        if isinstance(payload, dict) and payload.get("error"):
            return str(payload["error"]), payload
        return response.reason_phrase, payload

    async def search(self, client: httpx.AsyncClient, query: str) -> dict[str, Any]:
        response = await client.post("/search", json={"query": query})
        if response.status_code != 200:
            message, payload = self._error_message(response)
            raise ResearchClientError(message, response.status_code, payload)
        return response.json()

    async def fetch_result(self, client: httpx.AsyncClient, result_id: str) -> dict[str, Any]:
        response = await client.get(f"/api/research/{result_id}")
        if response.status_code != 200:
            message, payload = self._error_message(response)
            raise ResearchClientError(message, response.status_code, payload)
        return response.json()

    async def research(
        self,
        query: str,
        *,
        model: str | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> StreamConsumer:
        """Run a query end to end and return the consumer in its final state."""
        consumer = StreamConsumer(query=query.strip())
        consumer.start()

        async with self._client() as client:
            try:
                search_data = await self.search(client, consumer.query)
            except ResearchClientError as exc:
                consumer.fail(f"Search request failed ({exc.status_code}): {exc}")
                return consumer
            except httpx.HTTPError as exc:
                consumer.fail(f"Search request failed: {exc}")
                return consumer

            urls = search_data.get("urlsToProcess") or []
            if not urls:
                consumer.fail(search_data.get("message") or "No relevant sources found to process.")
                return consumer
            consumer.pending_urls = list(urls)

            payload: dict[str, Any] = {
                "query": search_data.get("query", consumer.query),
                "urlsToProcess": urls,
                "topItems": search_data.get("topItems") or [],
            }
            if model:
                payload["selectedModel"] = model

            try:
                await self._consume_stream(client, payload, consumer, on_delta)
            except httpx.HTTPError as exc:
                logger.error(f"Error reading research stream: {exc}")
                consumer.fail("Error receiving research data.")
                return consumer

            consumer.finish()
            if consumer.succeeded:
                await self._refresh_answer(client, consumer)
                self._record_history(consumer)
        return consumer

    async def _consume_stream(
        self,
        client: httpx.AsyncClient,
        payload: dict[str, Any],
        consumer: StreamConsumer,
        on_delta: DeltaCallback | None,
    ) -> None:
        decoder = SSEDecoder()
        async with client.stream("POST", "/process-and-summarize", json=payload) as response:
            if response.status_code != 200:
                await response.aread()
                message, _ = self._error_message(response)
                consumer.fail(f"Failed to initiate processing stream ({response.status_code}): {message}")
                return
            async for text in response.aiter_text():
                for event in decoder.feed(text):
                    self._dispatch(consumer, event, on_delta)
            for event in decoder.flush():
                self._dispatch(consumer, event, on_delta)

    @staticmethod
    def _dispatch(consumer: StreamConsumer, event: SSEEvent, on_delta: DeltaCallback | None) -> None:
        consumer.handle(event)
        if (
            on_delta is not None
            and event.event == EventType.MESSAGE
            and not event.is_done
            and isinstance(event.data, str)
        ):
            on_delta(event.data)

    async def _refresh_answer(self, client: httpx.AsyncClient, consumer: StreamConsumer) -> None:
        """Swap the streamed text for the persisted answer; keep the stream on failure."""
        try:
            result = await self.fetch_result(client, consumer.result_id)
        except (ResearchClientError, httpx.HTTPError) as exc:
            logger.warning(f"Could not refresh final answer for {consumer.result_id}: {exc}")
            return
        answer = result.get("answerHtml")
        if isinstance(answer, str):
            consumer.buffer = answer
        if isinstance(result.get("modelUsed"), dict):
            consumer.model_used = result["modelUsed"]

    def _record_history(self, consumer: StreamConsumer) -> None:
        entry = HistoryEntry(
            id=consumer.result_id,
            query=consumer.query,
            timestamp=datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            modelUsed=consumer.model_used,
        )
        try:
            self.history.add(entry)
        except OSError as exc:
            logger.error(f"Failed to save research to history: {exc}")
