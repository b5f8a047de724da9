from __future__ import annotations

from typing import Any

from deepresearch.models.schemas import ModelConfig


def _token_count(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return None
    return value


def calculate_cost(usage: dict[str, Any] | None, model: ModelConfig | None) -> float | None:
    """Estimated USD cost of one completion; prices are per million tokens.

    Returns None unless both token counts are positive integers and pricing is known.
    """
    if not usage or model is None:
        return None
    prompt_tokens = _token_count(usage.get("prompt_tokens"))
    completion_tokens = _token_count(usage.get("completion_tokens"))
    if prompt_tokens is None or completion_tokens is None:
        return None

    input_cost = (prompt_tokens / 1_000_000) * model.inputPrice
    output_cost = (completion_tokens / 1_000_000) * model.outputPrice
    return round(input_cost + output_cost, 6)
