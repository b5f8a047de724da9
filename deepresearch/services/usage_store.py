"""Per-day request counters and the daily rate-limit policy built on them."""
from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable

from loguru import logger

from deepresearch.services.logger import log_storage_operation

Clock = Callable[[], date]


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class UsageStore(ABC):
    """Key/value counter scoped to the current calendar day."""

    @abstractmethod
    async def get_count(self, key: str) -> int: ...

    @abstractmethod
    async def increment(self, key: str) -> int:
        """Add one to the counter and return the new value."""


class MemoryUsageStore(UsageStore):
    def __init__(self, clock: Clock = utc_today):
        self._clock = clock
        self._counts: dict[tuple[str, str], int] = {}

    async def get_count(self, key: str) -> int:
        return self._counts.get((self._clock().isoformat(), key), 0)

    async def increment(self, key: str) -> int:
        slot = (self._clock().isoformat(), key)
        self._counts[slot] = self._counts.get(slot, 0) + 1
        return self._counts[slot]


class FileUsageStore(UsageStore):
    """One JSON file per day mapping key -> {"count": n}.

    Updates are serialised within this process only.
    """

    def __init__(self, usage_dir: str | Path, clock: Clock = utc_today):
        self.usage_dir = Path(usage_dir)
        self._clock = clock
        self._lock = asyncio.Lock()

    def _path_for_today(self) -> Path:
        return self.usage_dir / f"{self._clock().isoformat()}.json"

    async def get_count(self, key: str) -> int:
        data = await asyncio.to_thread(self._read, self._path_for_today())
        entry = data.get(key) or {}
        return int(entry.get("count", 0) or 0)

    async def increment(self, key: str) -> int:
        async with self._lock:
            path = self._path_for_today()
            data = await asyncio.to_thread(self._read, path)
            entry = data.get(key) or {}
            count = int(entry.get("count", 0) or 0) + 1
            data[key] = {"count": count}
            try:
                await asyncio.to_thread(self._write, path, data)
            except OSError as exc:
                log_storage_operation("increment", "usage", "failed", details=path.name, error=str(exc))
            return count

    @staticmethod
    def _read(path: Path) -> dict:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.error(f"Error reading usage data from {path}: {exc}")
            return {}
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def _write(path: Path, data: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    current_usage: int
    limit: int


class RateLimiter:
    def __init__(self, store: UsageStore, daily_limit: int):
        self.store = store
        self.daily_limit = daily_limit
        self._lock = asyncio.Lock()

    async def check_and_increment(self, fingerprint: str) -> RateLimitDecision:
        """Reject at the limit without counting; otherwise count the request."""
        async with self._lock:
            current = await self.store.get_count(fingerprint)
            if current >= self.daily_limit:
                logger.info(f"Daily limit reached for fingerprint {fingerprint}")
                return RateLimitDecision(False, current, self.daily_limit)
            count = await self.store.increment(fingerprint)
            return RateLimitDecision(True, count, self.daily_limit)
