"""
Token usage — know what a conversation consumed.

Usage is never streamed on its own: it arrives inside the terminal
response object. Extraction is validated; a missing or mistyped required
field means "no usage", never a half-filled object.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from threadline.storage.models import Message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenUsage:
    """Token usage statistics from a response."""
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cached_tokens: int | None = None
    reasoning_tokens: int | None = None

    def to_dict(self) -> dict:
        data = {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }
        if self.cached_tokens is not None:
            data["input_tokens_details"] = {"cached_tokens": self.cached_tokens}
        if self.reasoning_tokens is not None:
            data["output_tokens_details"] = {"reasoning_tokens": self.reasoning_tokens}
        return data


def _is_number(value) -> bool:
    # bool is an int subclass; the API never sends booleans for counts
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _detail(details, key: str):
    if not isinstance(details, dict):
        return None
    value = details.get(key)
    return value if _is_number(value) else None


def extract_token_usage(response_json: dict | None) -> TokenUsage | None:
    """Extract validated TokenUsage from a raw response object."""
    if not isinstance(response_json, dict):
        return None

    usage = response_json.get("usage")
    if not isinstance(usage, dict):
        return None

    required = ("input_tokens", "output_tokens", "total_tokens")
    if not all(_is_number(usage.get(k)) for k in required):
        logger.debug("Ignoring usage block with missing/mistyped fields: %s", usage)
        return None

    return TokenUsage(
        input_tokens=usage["input_tokens"],
        output_tokens=usage["output_tokens"],
        total_tokens=usage["total_tokens"],
        cached_tokens=_detail(usage.get("input_tokens_details"), "cached_tokens"),
        reasoning_tokens=_detail(usage.get("output_tokens_details"), "reasoning_tokens"),
    )


def conversation_usage(messages: list[Message]) -> TokenUsage | None:
    """
    Aggregate token usage across all assistant messages in a thread.
    Returns None when no message carries usable usage data.
    """
    found = False
    total_in = total_out = total_cached = total_reasoning = 0

    for msg in messages:
        if msg.role != "assistant" or not msg.response_json:
            continue
        usage = extract_token_usage(msg.response_json)
        if usage is None:
            continue
        found = True
        total_in += usage.input_tokens
        total_out += usage.output_tokens
        total_cached += usage.cached_tokens or 0
        total_reasoning += usage.reasoning_tokens or 0

    if not found:
        return None

    return TokenUsage(
        input_tokens=total_in,
        output_tokens=total_out,
        total_tokens=total_in + total_out,
        cached_tokens=total_cached or None,
        reasoning_tokens=total_reasoning or None,
    )
