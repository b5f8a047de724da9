from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DONE_MARKER = "[DONE]"


class EventType(str, Enum):
    MESSAGE = "message"
    INFO = "info"
    RESULT_LINK = "resultLink"
    ERROR = "error"


@dataclass
class SSEEvent:
    event: EventType
    data: Any = field(default_factory=dict)

    @property
    def is_done(self) -> bool:
        return self.event == EventType.MESSAGE and self.data == DONE_MARKER

    @property
    def is_terminal(self) -> bool:
        return self.is_done or self.event == EventType.ERROR

    def to_sse(self) -> dict[str, str]:
        """Shape expected by sse-starlette's EventSourceResponse."""
        return {"event": self.event.value, "data": json.dumps(self.data)}

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data)}\n\n"


class SSEDecoder:
    """Incremental decoder for `event:`/`data:` framed streams.

    Text may arrive split at arbitrary points; complete events are returned
    as soon as their terminating blank line has been seen.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._event_name: str | None = None
        self._data_lines: list[str] = []

    def feed(self, chunk: str) -> list[SSEEvent]:
        self._buffer += chunk
        events: list[SSEEvent] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            event = self._process_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[SSEEvent]:
        events: list[SSEEvent] = []
        if self._buffer:
            event = self._process_line(self._buffer.rstrip("\r"))
            self._buffer = ""
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _process_line(self, line: str) -> SSEEvent | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event_name = value.strip()
        elif name == "data":
            self._data_lines.append(value)
        return None

    def _dispatch(self) -> SSEEvent | None:
        if not self._data_lines:
            self._event_name = None
            return None
        raw = "\n".join(self._data_lines)
        name = self._event_name or EventType.MESSAGE.value
        self._data_lines = []
        self._event_name = None
        try:
            event_type = EventType(name)
        except ValueError:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            data = raw
        return SSEEvent(event=event_type, data=data)
