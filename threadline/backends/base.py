"""
Base transport abstraction.
The stream engine only needs two calls from the service: a streaming
create that yields raw event objects, and a plain create for short
side requests like title generation.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

logger = logging.getLogger(__name__)


@dataclass
class BackendResponse:
    """Result of a non-streaming create call."""
    ok: bool
    status_code: int = 200
    data: dict = field(default_factory=dict)
    latency_ms: float = 0.0
    error: str = ""

    @property
    def content(self) -> str:
        """Extract assistant text from a Responses API response object."""
        text = self.data.get("output_text")
        if isinstance(text, str) and text:
            return text
        parts = []
        for item in self.data.get("output", []) or []:
            if not isinstance(item, dict) or item.get("type") != "message":
                continue
            for block in item.get("content", []) or []:
                if isinstance(block, dict) and block.get("type") == "output_text":
                    parts.append(block.get("text", ""))
        return "".join(parts)


class BaseBackend(abc.ABC):
    """
    Abstract base for Responses API transports.
    """

    def __init__(self, name: str, url: str, timeout: float | None = 120):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout

    @abc.abstractmethod
    def stream(self, body: dict) -> AsyncIterator[dict]:
        """
        Send a streaming request.
        Yields raw event dicts in arrival order. Transport failures raise.
        """
        ...

    @abc.abstractmethod
    async def create(self, body: dict) -> BackendResponse:
        """
        Send a non-streaming request.
        Never raises for HTTP or network errors; check BackendResponse.ok.
        """
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
