from __future__ import annotations

from typing import Any

from deepresearch.models.events import DONE_MARKER, EventType, SSEEvent


def message(delta: str) -> SSEEvent:
    return SSEEvent(event=EventType.MESSAGE, data=delta)


def done() -> SSEEvent:
    """Terminal marker sent after a successful result link."""
    return SSEEvent(event=EventType.MESSAGE, data=DONE_MARKER)


def sources_processed(sources: list[dict[str, Any]]) -> SSEEvent:
    """Emit the sources that survived extraction so clients can prune pending entries."""
    return SSEEvent(
        event=EventType.INFO,
        data={"type": "sources_processed", "count": len(sources), "sources": sources},
    )


def info(message_text: str, *, kind: str = "notice", **kwargs: Any) -> SSEEvent:
    return SSEEvent(
        event=EventType.INFO,
        data={"type": kind, "message": message_text, **kwargs},
    )


def result_link(
    link: str,
    *,
    usage: dict[str, Any] | None = None,
    cost: float | None = None,
) -> SSEEvent:
    data: dict[str, Any] = {"link": link}
    if usage:
        data["usage"] = usage
    if cost is not None:
        data["cost"] = cost
    return SSEEvent(event=EventType.RESULT_LINK, data=data)


def error(message_text: str) -> SSEEvent:
    return SSEEvent(event=EventType.ERROR, data={"message": message_text})
