from __future__ import annotations

import json

import pytest

from deepresearch.config import Settings

TEST_TOKEN = "test-secret"

TEST_MODELS = [
    {
        "id": "openai/gpt-4o-mini",
        "name": "GPT-4o Mini",
        "provider": "OpenAI",
        "inputPrice": 0.15,
        "outputPrice": 0.6,
        "description": "Fast and cheap",
        "isDefault": True,
    },
    {
        "id": "anthropic/claude-3.5-haiku",
        "name": "Claude 3.5 Haiku",
        "provider": "Anthropic",
        "inputPrice": 0.8,
        "outputPrice": 4.0,
        "description": "Concise answers",
    },
]


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    # sse-starlette keeps a module-level exit event bound to the first event loop
    from sse_starlette.sse import AppStatus

    AppStatus.should_exit_event = None
    yield
    AppStatus.should_exit_event = None


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        session_secret_token=TEST_TOKEN,
        data_dir=str(tmp_path / "data"),
        available_models=json.dumps(TEST_MODELS),
        daily_request_limit=3,
        google_api_key="google-key",
        google_cx="google-cx",
        openrouter_api_key="or-key",
        llm_retry_delay_seconds=0,
    )


def chunk(content: str | None = None, usage: dict | None = None, error: dict | None = None) -> dict:
    """Build an OpenAI-style streaming chunk as a plain dict."""
    data: dict = {"choices": [{"delta": {"content": content}}] if content is not None else []}
    if usage is not None:
        data["usage"] = usage
    if error is not None:
        data["error"] = error
    return data
