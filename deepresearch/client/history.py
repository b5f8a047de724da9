"""Local index of past research results, kept in a single JSON file."""
from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from loguru import logger

DEFAULT_HISTORY_PATH = Path.home() / ".deepresearch" / "history.json"


@dataclass
class HistoryEntry:
    id: str
    query: str
    timestamp: str
    modelUsed: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, item: dict[str, Any]) -> "HistoryEntry":
        model_used = item.get("modelUsed")
        return cls(
            id=str(item["id"]),
            query=str(item.get("query", "")),
            timestamp=str(item.get("timestamp", "")),
            modelUsed=model_used if isinstance(model_used, dict) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data["modelUsed"] is None:
            del data["modelUsed"]
        return data


class HistoryStore:
    def __init__(self, path: str | Path = DEFAULT_HISTORY_PATH):
        self.path = Path(path)

    def _read(self) -> dict[str, HistoryEntry]:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.error(f"Could not read history file {self.path}: {exc}")
            return {}

        entries: dict[str, HistoryEntry] = {}
        for item in payload if isinstance(payload, list) else []:
            if isinstance(item, dict) and item.get("id"):
                entry = HistoryEntry.from_dict(item)
                entries[entry.id] = entry
        return entries

    def _write(self, entries: dict[str, HistoryEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        tmp_path.write_text(
            json.dumps([entry.to_dict() for entry in entries.values()], indent=2),
            encoding="utf-8",
        )
        os.replace(tmp_path, self.path)

    def add(self, entry: HistoryEntry) -> None:
        """Insert the entry, replacing any existing entry with the same id."""
        entries = self._read()
        entries[entry.id] = entry
        self._write(entries)

    def list_entries(self) -> list[HistoryEntry]:
        """All entries, newest first."""
        return sorted(self._read().values(), key=lambda entry: entry.timestamp, reverse=True)

    def delete(self, entry_id: str) -> bool:
        entries = self._read()
        if entries.pop(entry_id, None) is None:
            return False
        self._write(entries)
        return True
