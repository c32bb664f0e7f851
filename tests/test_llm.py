"""Tests for the model completion wrapper and the free-text JSON parser."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import pytest

from shopscout.errors import ModelError
from shopscout.utils.llm import (
    ModelClient,
    build_model_client,
    extract_json,
    load_prompt,
    strip_code_fence,
)


class TestStripCodeFence:
    def test_no_fence(self):
        assert strip_code_fence('{"key": "value"}') == '{"key": "value"}'

    def test_multiline_fence(self):
        assert strip_code_fence('```json\n{"key": "value"}\n```') == '{"key": "value"}'

    def test_single_line_fence(self):
        assert strip_code_fence('```{"key": "value"}```') == '{"key": "value"}'

    def test_empty_fence(self):
        assert strip_code_fence("```\n```") == ""


class TestExtractJson:
    def test_plain(self):
        assert extract_json('{"scores": []}') == {"scores": []}

    def test_fenced(self):
        assert extract_json('```json\n{"title": "Shoe"}\n```') == {"title": "Shoe"}

    def test_preamble_and_postamble(self):
        text = 'Here you go:\n{"price": 12.5, "note": "a } in a string"}\nHope that helps.'
        assert extract_json(text) == {"price": 12.5, "note": "a } in a string"}

    def test_nested(self):
        text = 'Result: {"outer": {"inner": 1}} done'
        assert extract_json(text) == {"outer": {"inner": 1}}

    def test_array_is_not_an_object(self):
        assert extract_json("[1, 2, 3]") == {}

    def test_no_json(self):
        assert extract_json("I cannot help with that.") == {}

    def test_unbalanced(self):
        assert extract_json('{"a": 1') == {}


def _response(*texts: str) -> SimpleNamespace:
    return SimpleNamespace(
        content=[SimpleNamespace(text=t) for t in texts],
        usage=SimpleNamespace(input_tokens=10, output_tokens=5),
    )


def _anthropic(response=None, error: Exception | None = None) -> MagicMock:
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=response, side_effect=error)
    return client


class TestModelClient:
    def test_complete_text_joins_blocks(self):
        client = _anthropic(_response("Great ", "value."))
        text = asyncio.run(ModelClient(client).complete_text("sys", "user", model="m"))
        assert text == "Great value."
        kwargs = client.messages.create.await_args.kwargs
        assert kwargs["system"] == "sys"
        assert kwargs["messages"] == [{"role": "user", "content": "user"}]

    def test_complete_json(self):
        client = _anthropic(_response('```json\n{"scores": []}\n```'))
        data = asyncio.run(ModelClient(client).complete_json("sys", "user", model="m"))
        assert data == {"scores": []}
        assert client.messages.create.await_args.kwargs["temperature"] == 0.3

    def test_complete_json_without_json_raises(self):
        client = _anthropic(_response("Sorry, no."))
        with pytest.raises(ModelError):
            asyncio.run(ModelClient(client).complete_json("sys", "user", model="m"))

    def test_api_error_becomes_model_error(self):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        client = _anthropic(error=anthropic.APITimeoutError(request=request))
        with pytest.raises(ModelError):
            asyncio.run(ModelClient(client).complete_text("sys", "user", model="m"))


class TestBuildModelClient:
    def test_missing_key_raises(self):
        with patch("shopscout.utils.llm.settings.anthropic_api_key", ""):
            with pytest.raises(ModelError):
                build_model_client()

    def test_builds_with_key(self):
        with patch("shopscout.utils.llm.settings.anthropic_api_key", "sk-test"):
            assert isinstance(build_model_client(), ModelClient)


class TestPrompts:
    @pytest.mark.parametrize(
        "name",
        ["product_extraction", "candidate_scoring", "coherence_pass", "ranking_explanation"],
    )
    def test_prompt_loads(self, name):
        assert load_prompt(name).strip()

    def test_extraction_prompt_formats(self):
        text = load_prompt("product_extraction").format(item_name="running shoes")
        assert '"running shoes"' in text
        assert '"deliveryDays"' in text
