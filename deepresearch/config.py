from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from loguru import logger
from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings

from deepresearch.models.schemas import ModelConfig

FALLBACK_MODELS: list[dict] = [
    {
        "id": "google/gemini-2.5-flash-preview-05-20:thinking",
        "name": "Gemini 2.5 Flash Thinking",
        "provider": "Google",
        "inputPrice": 0.15,
        "outputPrice": 0.60,
        "description": "Thinking mode, best value",
        "isDefault": True,
    }
]


class Settings(BaseSettings):
    # Google Custom Search
    google_api_key: str = ""
    google_cx: str = ""
    search_results_total: int = 20

    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    llm_timeout_seconds: float = 120.0
    llm_max_attempts: int = 3
    llm_retry_delay_seconds: float = 5.0

    # Model catalog (JSON array of model entries)
    available_models: str = "[]"
    default_model: str = ""

    # Pipeline
    num_sources: int = 3
    daily_request_limit: int = 10
    # Only enable behind a proxy that overwrites X-Forwarded-For
    trust_forwarded_for: bool = False
    extractor_timeout_seconds: float = 10.0
    search_timeout_seconds: float = 15.0

    # Auth (required)
    session_secret_token: str

    # Storage
    data_dir: str = "data"

    # App
    port: int = 3000
    server_ip: str = "0.0.0.0"
    environment: str = "development"
    max_request_bytes: int = 50 * 1024 * 1024
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "frozen": True,
    }

    @field_validator("session_secret_token")
    @classmethod
    def _secret_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("SESSION_SECRET_TOKEN must not be empty")
        return value

    @field_validator("num_sources", "search_results_total", "llm_max_attempts")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(int(value), 1)

    @property
    def results_dir(self) -> Path:
        return Path(self.data_dir) / "results"

    @property
    def usage_dir(self) -> Path:
        return Path(self.data_dir) / "usage"

    @property
    def is_production(self) -> bool:
        return self.environment.lower().strip() == "production"


@dataclass(frozen=True)
class ModelCatalog:
    models: tuple[ModelConfig, ...]
    default_model_id: str

    def get(self, model_id: str | None) -> ModelConfig | None:
        if not model_id:
            return None
        for model in self.models:
            if model.id == model_id:
                return model
        return None

    @property
    def default(self) -> ModelConfig:
        model = self.get(self.default_model_id)
        if model is not None:
            return model
        for candidate in self.models:
            if candidate.isDefault:
                return candidate
        return self.models[0]

    def resolve(self, model_id: str | None) -> tuple[ModelConfig, bool]:
        """Return the model to use and whether the requested id was honoured."""
        if not model_id:
            return self.default, True
        model = self.get(model_id)
        if model is None:
            return self.default, False
        return model, True


def parse_model_catalog(raw: str, default_model: str = "") -> ModelCatalog:
    """Parse the AVAILABLE_MODELS JSON array, falling back to the built-in entry."""
    try:
        payload = json.loads(raw or "[]")
        if not isinstance(payload, list) or not payload:
            raise ValueError("AVAILABLE_MODELS must be a non-empty array")
        models = tuple(ModelConfig.model_validate(item) for item in payload)
        logger.info(f"Loaded {len(models)} models from environment configuration")
    except (ValueError, ValidationError) as exc:
        logger.error(f"Error parsing AVAILABLE_MODELS: {exc}")
        logger.warning("Falling back to default model configuration")
        models = tuple(ModelConfig.model_validate(item) for item in FALLBACK_MODELS)

    default_id = default_model.strip()
    if not default_id:
        flagged = next((m for m in models if m.isDefault), None)
        default_id = (flagged or models[0]).id
    return ModelCatalog(models=models, default_model_id=default_id)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
