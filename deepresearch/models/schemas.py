from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


# --- Configuration ---


class ModelConfig(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    provider: str = Field(min_length=1)
    inputPrice: float = Field(strict=True)
    outputPrice: float = Field(strict=True)
    description: str = ""
    isDefault: bool = False


# --- Requests ---


class ProcessRequest(BaseModel):
    query: str = ""
    urlsToProcess: list[str] = Field(default_factory=list)
    topItems: list[dict[str, Any]] = Field(default_factory=list)
    selectedModel: str | None = None


# --- Responses ---


class SearchResponse(BaseModel):
    query: str
    urlsToProcess: list[str]
    topItems: list[dict[str, Any]]
    message: str | None = None


class RateLimitResponse(BaseModel):
    error: str
    currentUsage: int
    limit: int


class ModelsResponse(BaseModel):
    models: list[ModelConfig]
    defaultModel: str


class ModelUsed(BaseModel):
    id: str
    name: str
    provider: str


class PersistedResult(BaseModel):
    id: str
    query: str
    answerHtml: str
    sources: list[dict[str, Any]] = Field(default_factory=list)
    timestamp: str
    usage: dict[str, Any] | None = None
    cost: float | None = None
    modelUsed: ModelUsed | None = None
