from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class SearchHit:
    link: str
    title: str = ""
    snippet: str = ""
    score: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ExtractionOutcome:
    url: str
    text: str | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return bool(self.text)


@dataclass
class PipelineSources:
    """Sources that survived extraction, with their texts in URL-list order."""

    items: list[dict[str, Any]] = field(default_factory=list)
    texts: list[str] = field(default_factory=list)

    SEPARATOR = "\n\n---\n\n"

    @property
    def combined_text(self) -> str:
        return self.SEPARATOR.join(self.texts)
