"""Model completion capability used by extraction and ranking.

Claude has no JSON mode, so JSON answers are pulled out of free text: code
fences are stripped and, failing a clean parse, the outermost ``{...}`` is
located by brace matching. Every transport or API failure surfaces as
``ModelError`` so callers only need one ``except`` to degrade.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import anthropic
import structlog

from shopscout.config import settings
from shopscout.errors import ModelError
from shopscout.utils.tracing import wrap_anthropic

log = structlog.get_logger("shopscout.llm")

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

_prompt_cache: dict[str, str] = {}


def load_prompt(name: str) -> str:
    """Read a prompt template from the prompts directory (cached per name)."""
    if name not in _prompt_cache:
        _prompt_cache[name] = (PROMPTS_DIR / f"{name}.txt").read_text()
    return _prompt_cache[name]


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence, with or without a language tag."""
    text = text.strip()
    if not text.startswith("```"):
        return text
    text = text.removeprefix("```")
    for lang in ("json", "JSON"):
        text = text.removeprefix(lang)
    text = text.lstrip("\n")
    return text.rsplit("```", 1)[0].strip()


def extract_json(text: str) -> dict[str, Any]:
    """Parse the JSON object in a model reply; ``{}`` when there is none."""
    text = strip_code_fence(text.strip())
    if not text:
        return {}

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        pass
    else:
        return parsed if isinstance(parsed, dict) else {}

    start = text.find("{")
    if start == -1:
        return {}

    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                try:
                    parsed = json.loads(text[start : i + 1])
                except json.JSONDecodeError:
                    return {}
                return parsed if isinstance(parsed, dict) else {}
    return {}


class ModelClient:
    """Thin async wrapper over the Anthropic Messages API."""

    def __init__(self, client: Any) -> None:
        self._client = client

    async def complete_text(
        self,
        system: str,
        user: str,
        *,
        model: str,
        max_tokens: int = 1024,
        temperature: float = 0.7,
    ) -> str:
        try:
            response = await self._client.messages.create(
                model=model,
                system=system,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": user}],
            )
        except anthropic.APIError as exc:
            log.warning("model_call_failed", model=model, error_type=type(exc).__name__)
            raise ModelError(f"{model} call failed: {exc}") from exc

        usage = getattr(response, "usage", None)
        if usage is not None:
            log.debug(
                "model_tokens",
                model=model,
                input_tokens=getattr(usage, "input_tokens", None),
                output_tokens=getattr(usage, "output_tokens", None),
            )

        text = ""
        for block in response.content:
            if hasattr(block, "text"):
                text += block.text
        return text.strip()

    async def complete_json(
        self,
        system: str,
        user: str,
        *,
        model: str,
        max_tokens: int = 4096,
        temperature: float = 0.3,
    ) -> dict[str, Any]:
        text = await self.complete_text(
            system, user, model=model, max_tokens=max_tokens, temperature=temperature
        )
        data = extract_json(text)
        if not data:
            raise ModelError(f"{model} returned no JSON object")
        return data


def build_model_client() -> ModelClient:
    """Create the production client from settings."""
    if not settings.anthropic_api_key:
        raise ModelError("ANTHROPIC_API_KEY not set")
    client = anthropic.AsyncAnthropic(
        api_key=settings.anthropic_api_key,
        timeout=settings.model_timeout_seconds,
        max_retries=settings.model_max_retries,
    )
    return ModelClient(wrap_anthropic(client))
