"""Insight text generation capability.

The generator only depends on the ``InsightCapability`` protocol. The default
implementation asks an OpenAI-compatible chat completion endpoint for a JSON
object; ``title`` is lifted out and the remaining keys become the body.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Protocol

import openai
from openai import AsyncOpenAI

from tidings.errors import QuotaExhaustedError, TransientError

logger = logging.getLogger(__name__)

_DEFAULT_MODEL = "gpt-4o-mini"

_SYSTEM = (
    "You write short, factual relationship insights for a personal CRM. "
    "You are given recent interactions between the user and one contact. "
    "Return a compact JSON object with keys: title (at most 80 characters), "
    "summary (2-4 sentences), highlights (list of short strings). "
    "Use only facts present in the interactions. Do not invent details."
)


@dataclass
class InsightContext:
    """What the capability gets to see about one subject."""

    kind: str
    subject_type: str
    subject_id: str
    display_name: str | None = None
    interactions: list[dict[str, Any]] = field(default_factory=list)

    def render(self) -> str:
        lines = [f"Insight kind: {self.kind}"]
        if self.display_name:
            lines.append(f"Contact: {self.display_name}")
        lines.append("Interactions (newest first):")
        for item in self.interactions:
            subject = item.get("subject") or "(no subject)"
            lines.append(f"- [{item.get('occurred_at')}] {item.get('type')}: {subject}")
            snippet = item.get("snippet")
            if snippet:
                lines.append(f"  {snippet}")
        return "\n".join(lines)


@dataclass
class GeneratedInsight:
    title: str
    body: dict[str, Any]


class InsightCapability(Protocol):
    @property
    def model(self) -> str: ...

    async def generate(self, context: InsightContext) -> GeneratedInsight: ...


def _extract_json(text: str) -> dict[str, Any]:
    # Be robust to prose around the object
    if "{" in text:
        text = text[text.find("{") : text.rfind("}") + 1]
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("insight response is not a JSON object")
    return data


class OpenAIInsightCapability:
    """Chat-completion backed insight generation.

    ``api_key`` falls back to ``OPENAI_API_KEY``; ``base_url`` allows any
    OpenAI-compatible endpoint.
    """

    def __init__(
        self,
        *,
        model: str = _DEFAULT_MODEL,
        api_key: str | None = None,
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        if client is None:
            client_kwargs: dict[str, Any] = {"api_key": api_key or os.getenv("OPENAI_API_KEY")}
            if base_url:
                client_kwargs["base_url"] = base_url
            client = AsyncOpenAI(**client_kwargs)
        self._client = client

    @property
    def model(self) -> str:
        return self._model

    async def generate(self, context: InsightContext) -> GeneratedInsight:
        try:
            resp = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": _SYSTEM},
                    {"role": "user", "content": context.render()},
                ],
                temperature=0.2,
                response_format={"type": "json_object"},
            )
        except openai.RateLimitError as exc:
            raise QuotaExhaustedError(f"insight provider rate limited: {exc}") from exc
        except openai.APIError as exc:
            raise TransientError(f"insight provider call failed: {exc}") from exc

        text = resp.choices[0].message.content or "{}"
        try:
            data = _extract_json(text)
        except ValueError as exc:
            logger.warning("insight response was not valid JSON: %.200s", text)
            raise TransientError("insight provider returned malformed JSON") from exc

        title = str(data.pop("title", "") or "").strip()
        return GeneratedInsight(title=title, body=data)
