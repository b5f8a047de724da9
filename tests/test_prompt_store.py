from __future__ import annotations

import pytest

from deepresearch.services.prompt_store import render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt(
        "research.answer",
        query="How do tides work?",
        text="The moon pulls on the oceans.",
        source_list="1. Title: Tides\n   URL: https://example.com/tides",
    )
    assert "How do tides work?" in prompt
    assert "The moon pulls on the oceans." in prompt
    assert "https://example.com/tides" in prompt
    assert "$query" not in prompt


def test_render_prompt_leaves_dollar_signs_in_values_alone():
    prompt = render_prompt("research.answer", query="Cost of $HOME?", text="$text costs $5", source_list="")
    assert "$text costs $5" in prompt


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_raises_for_missing_value():
    with pytest.raises(KeyError):
        render_prompt("research.source_entry", index=1, title="t")
