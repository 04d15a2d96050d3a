"""
Auto-generated thread titles.

A short non-streaming request to a small model summarises the first
exchange of a thread. If the title model fails, the main chat model gets
one more try, but only when it is a different model.
"""

from __future__ import annotations

import logging
import re

from threadline.backends.base import BaseBackend

logger = logging.getLogger(__name__)

TITLE_PROMPT = (
    "Generate a concise 3-6 word title for this conversation. "
    "Reply with ONLY the title, no quotes or punctuation."
)

MAX_EXCERPT = 500

_QUOTES = re.compile(r"^[\"']|[\"']$")


class TitleGenerationError(Exception):
    """The service did not produce a usable title."""


def _excerpt(text: str) -> str:
    if len(text) > MAX_EXCERPT:
        return text[:MAX_EXCERPT] + "..."
    return text


def clean_title(raw: str) -> str:
    return _QUOTES.sub("", raw.strip()).strip()


class TitleGenerator:
    """Generates thread titles through the transport's create() call."""

    def __init__(self, backend: BaseBackend, title_model: str, main_model: str):
        self.backend = backend
        self.title_model = title_model or main_model
        self.main_model = main_model

    async def generate(self, user_text: str, assistant_text: str, model: str) -> str:
        """One attempt with one model. Raises TitleGenerationError."""
        body = {
            "model": model,
            "instructions": TITLE_PROMPT,
            "input": f"User: {_excerpt(user_text)}\n\nAssistant: {_excerpt(assistant_text)}",
            "reasoning": {"effort": "minimal"},
        }
        resp = await self.backend.create(body)
        if not resp.ok:
            raise TitleGenerationError(resp.error or f"HTTP {resp.status_code}")
        title = clean_title(resp.content)
        if not title:
            raise TitleGenerationError("Empty title in response")
        return title

    async def generate_with_fallback(self, user_text: str, assistant_text: str) -> str | None:
        """
        Title model first, then the main model if it differs.
        Returns None when every attempt failed.
        """
        models = [self.title_model]
        if self.main_model and self.main_model != self.title_model:
            models.append(self.main_model)

        for model in models:
            try:
                return await self.generate(user_text, assistant_text, model)
            except TitleGenerationError as e:
                logger.warning("Title generation with %s failed: %s", model, e)
        return None
