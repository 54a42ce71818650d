"""
Reasoning services backed by LLM chat APIs.
"""

import json
import logging
import os
import re

from ..types import ReasoningAnalysis
from .base import get_registry

logger = logging.getLogger(__name__)

# Longest context sent in a single request
MAX_INPUT_CHARS = 50000

ANALYZE_SYSTEM_PROMPT = """You analyze a single captured item (a link, photo, document or place) together with the context gathered about it.

Respond with a JSON object only, no explanation, with these keys:
- "summary": one or two sentences describing what was captured
- "visual_statements": list of short statements about what the user was doing, inferred from the item itself
- "location_statements": list of short statements inferred from where the user was
- "purpose": a short phrase naming why the user probably captured this
- "tags": list of lowercase topical tags

Use empty lists or null when there is no evidence."""

SUMMARIZE_SYSTEM_PROMPT = (
    "Summarize the text in one short paragraph. "
    "Start directly with the content; do not describe the text itself."
)

PURPOSE_SYSTEM_PROMPT = (
    "Suggest up to 5 likely reasons a person captured the described item. "
    "One per line, each under 40 characters, no numbering."
)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def parse_analysis(text: str) -> ReasoningAnalysis:
    """
    Parse a model's JSON reply into a ReasoningAnalysis.

    Raises:
        ValueError: If the reply is not a JSON object
    """
    cleaned = _CODE_FENCE.sub("", text.strip())
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ValueError(f"Reasoning reply is not JSON: {text[:80]!r}")
    try:
        data = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as e:
        raise ValueError(f"Reasoning reply is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Reasoning reply must be a JSON object")
    return ReasoningAnalysis.from_dict(data)


def truncate_summary(text: str, limit: int = 200) -> str:
    """First `limit` characters plus an ellipsis."""
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def parse_purposes(text: str) -> list[str]:
    """Up to 5 purpose lines, each under 40 characters."""
    lines = (line.strip(" -*\t") for line in text.splitlines())
    return [line for line in lines if line and len(line) < 40][:5]


class _ChatReasoning:
    """Shared analyze/summarize/suggest logic over a single chat completion call."""

    async def _complete(self, system: str, user: str, max_tokens: int) -> str:
        raise NotImplementedError

    async def analyze(self, context: str) -> ReasoningAnalysis:
        reply = await self._complete(ANALYZE_SYSTEM_PROMPT, context[:MAX_INPUT_CHARS], 800)
        return parse_analysis(reply)

    async def summarize(self, text: str) -> str:
        reply = await self._complete(SUMMARIZE_SYSTEM_PROMPT, text[:MAX_INPUT_CHARS], 300)
        return reply.strip() or truncate_summary(text)

    async def suggest_purposes(self, context: str) -> list[str]:
        reply = await self._complete(PURPOSE_SYSTEM_PROMPT, context[:MAX_INPUT_CHARS], 150)
        return parse_purposes(reply)


class AnthropicReasoning(_ChatReasoning):
    """
    Reasoning service using Anthropic's Claude API.

    Authentication (checked in priority order):
    1. api_key parameter (if provided)
    2. ANTHROPIC_API_KEY

    Default model is claude-haiku-4.5; configure via capture.toml
    [reasoning] section.
    """

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        api_key: str | None = None,
    ):
        from anthropic import AsyncAnthropic

        key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not key:
            raise ValueError("Anthropic authentication required. Set ANTHROPIC_API_KEY")
        self.model = model
        self._client = AsyncAnthropic(api_key=key)

    async def _complete(self, system: str, user: str, max_tokens: int) -> str:
        # The SDK retries rate limits itself; anything left propagates
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=0.2,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        if response.content:
            return response.content[0].text
        return ""


class OpenAIReasoning(_ChatReasoning):
    """
    Reasoning service using OpenAI's chat API.

    Requires: CAPTURE_OPENAI_API_KEY or OPENAI_API_KEY environment variable.
    """

    def __init__(
        self,
        model: str = "gpt-4.1-mini",
        api_key: str | None = None,
    ):
        from openai import AsyncOpenAI

        key = api_key or os.environ.get("CAPTURE_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError("OpenAI API key required. Set CAPTURE_OPENAI_API_KEY or OPENAI_API_KEY")
        self.model = model
        self._client = AsyncOpenAI(api_key=key)
        # Reasoning-era models take max_completion_tokens and no temperature
        self._new_api = self.model.startswith(("gpt-5", "o3", "o4"))

    def _completion_kwargs(self, max_tokens: int) -> dict:
        if self._new_api:
            return {"max_completion_tokens": max_tokens}
        return {"max_tokens": max_tokens, "temperature": 0.2}

    async def _complete(self, system: str, user: str, max_tokens: int) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            **self._completion_kwargs(max_tokens),
        )
        if response.choices:
            return response.choices[0].message.content or ""
        return ""


class TruncateReasoning:
    """
    Offline reasoning service: summaries are the first 200 characters.

    Useful for testing or when no LLM is configured. Produces no
    statements, purpose or tags.
    """

    def __init__(self, max_chars: int = 200):
        self.max_chars = max_chars

    async def analyze(self, context: str) -> ReasoningAnalysis:
        return ReasoningAnalysis(summary=truncate_summary(context, self.max_chars) or None)

    async def summarize(self, text: str) -> str:
        return truncate_summary(text, self.max_chars)

    async def suggest_purposes(self, context: str) -> list[str]:
        return []


# Register providers
_registry = get_registry()
_registry.register("reasoning", "anthropic", AnthropicReasoning)
_registry.register("reasoning", "openai", OpenAIReasoning)
_registry.register("reasoning", "truncate", TruncateReasoning)
