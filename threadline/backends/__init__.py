"""
Transports for the Responses API.
"""
from __future__ import annotations

import logging

from threadline.backends.base import BaseBackend, BackendResponse
from threadline.backends.responses import ResponsesBackend

logger = logging.getLogger(__name__)

# Provider name → backend class
PROVIDERS: dict[str, type[BaseBackend]] = {
    "responses": ResponsesBackend,
    "azure": ResponsesBackend,
}


def make_backend(cfg: dict) -> BaseBackend:
    """Build the transport described by the `service` config section."""
    service = cfg.get("service", {}) or {}
    provider = service.get("provider", "responses")
    cls = PROVIDERS.get(provider)
    if cls is None:
        raise ValueError(f"Unknown service provider '{provider}'")
    endpoint = service.get("endpoint", "")
    if not endpoint:
        raise ValueError("service.endpoint is not configured")
    logger.debug("Using %s backend at %s", provider, endpoint)
    return cls(
        name=provider,
        url=endpoint,
        timeout=service.get("timeout", 120),
        api_key=service.get("api_key", ""),
        stream_timeout=service.get("stream_timeout"),
    )


__all__ = [
    "BaseBackend",
    "BackendResponse",
    "ResponsesBackend",
    "make_backend",
]
