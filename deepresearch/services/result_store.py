"""Flat-file persistence of research results, one JSON document per UUID."""
from __future__ import annotations

import asyncio
import json
import os
import re
from pathlib import Path

from pydantic import ValidationError

from deepresearch.errors import InvalidResultIdError, PersistenceError, ResultNotFoundError
from deepresearch.models.schemas import PersistedResult
from deepresearch.services.logger import log_storage_operation

RESULT_ID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


def is_valid_result_id(result_id: str) -> bool:
    return bool(RESULT_ID_PATTERN.match(result_id or ""))


def shareable_link(result_id: str) -> str:
    return f"/research/{result_id}"


class ResultStore:
    def __init__(self, results_dir: str | Path):
        self.results_dir = Path(results_dir)

    def path_for(self, result_id: str) -> Path:
        if not is_valid_result_id(result_id):
            raise InvalidResultIdError(f"Invalid ID format: {result_id!r}")
        return self.results_dir / f"{result_id}.json"

    async def save(self, result: PersistedResult) -> Path:
        path = self.path_for(result.id)
        payload = json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2)
        try:
            await asyncio.to_thread(self._write, path, payload)
        except OSError as exc:
            log_storage_operation("save", "results", "failed", details=result.id, error=str(exc))
            raise PersistenceError(f"Failed to save result {result.id}: {exc}") from exc
        log_storage_operation("save", "results", "success", details=result.id)
        return path

    async def load(self, result_id: str) -> PersistedResult:
        path = self.path_for(result_id)
        try:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError as exc:
            raise ResultNotFoundError(f"Research result not found: {result_id}") from exc
        except OSError as exc:
            log_storage_operation("load", "results", "failed", details=result_id, error=str(exc))
            raise PersistenceError(f"Failed to read result {result_id}: {exc}") from exc
        try:
            return PersistedResult.model_validate_json(raw)
        except ValidationError as exc:
            log_storage_operation("load", "results", "failed", details=result_id, error=str(exc))
            raise PersistenceError(f"Corrupt result file for {result_id}") from exc

    @staticmethod
    def _write(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, path)
