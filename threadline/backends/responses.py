"""
Responses API backend over httpx.

Works with Azure OpenAI resources and anything else that serves
POST {base}/responses. The endpoint is normalised to end in /openai/v1,
so a bare resource URL like https://my-resource.openai.azure.com works.

Streaming responses are server-sent events; each `data:` line carries one
JSON event object. A `[DONE]` sentinel is tolerated and ends the stream.
"""

from __future__ import annotations

import json
import logging
import time
from typing import AsyncIterator

import httpx

from threadline.backends.base import BaseBackend, BackendResponse

logger = logging.getLogger(__name__)

API_SUFFIX = "/openai/v1"


def normalize_endpoint(endpoint: str) -> str:
    """Trim, drop a trailing slash, and append /openai/v1 when missing."""
    url = endpoint.strip()
    if url.endswith("/"):
        url = url[:-1]
    if not url.endswith(API_SUFFIX):
        url = f"{url}{API_SUFFIX}"
    return url


def parse_sse_line(line: str):
    """
    Parse one SSE line. Returns the event dict, the string "[DONE]",
    or None for comments, blank lines and non-data fields.
    """
    line = line.strip()
    if not line or line.startswith(":"):
        return None
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload:
        return None
    if payload == "[DONE]":
        return payload
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Skipping undecodable SSE payload: %s", payload[:200])
        return None


def _error_detail(status_code: int, text: str) -> str:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return f"HTTP {status_code}: {err['message']}"
    return f"HTTP {status_code}: {text[:200]}"


class ResponsesBackend(BaseBackend):
    """
    Backend for the Responses API.

    Auth: Azure-style `api-key` header plus a bearer token, the same key in both.
    """

    def __init__(
        self,
        name: str,
        url: str,
        timeout: float | None = 120,
        api_key: str = "",
        stream_timeout: float | None = None,
    ):
        super().__init__(name, normalize_endpoint(url), timeout)
        self.api_key = api_key
        self.stream_timeout = stream_timeout

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["api-key"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def stream(self, body: dict) -> AsyncIterator[dict]:
        """Stream a response, yielding event dicts."""
        body = {**body, "stream": True}
        timeout = httpx.Timeout(self.timeout, read=self.stream_timeout)
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.url}/responses",
                    json=body,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        text = (await resp.aread()).decode("utf-8", errors="replace")
                        raise httpx.HTTPStatusError(
                            _error_detail(resp.status_code, text),
                            request=resp.request,
                            response=resp,
                        )
                    async for line in resp.aiter_lines():
                        event = parse_sse_line(line)
                        if event is None:
                            continue
                        if event == "[DONE]":
                            break
                        yield event
        except httpx.TimeoutException:
            logger.warning("Responses backend '%s' stream timed out", self.name)
            raise
        except httpx.HTTPError as e:
            logger.warning("Responses backend '%s' stream failed: %s", self.name, e)
            raise

    async def create(self, body: dict) -> BackendResponse:
        """Non-streaming create."""
        body = {**body, "stream": False}
        t0 = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.url}/responses",
                    json=body,
                    headers=self._headers(),
                )
                latency = (time.monotonic() - t0) * 1000

                if resp.status_code >= 400:
                    return BackendResponse(
                        ok=False,
                        status_code=resp.status_code,
                        latency_ms=latency,
                        error=_error_detail(resp.status_code, resp.text),
                    )

                return BackendResponse(
                    ok=True,
                    status_code=resp.status_code,
                    data=resp.json(),
                    latency_ms=latency,
                )
        except httpx.TimeoutException:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Responses backend '%s' timed out after %.0fms", self.name, latency)
            return BackendResponse(ok=False, latency_ms=latency, error=f"Timeout after {self.timeout}s")
        except (httpx.HTTPError, ValueError) as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Responses backend '%s' failed: %s", self.name, e)
            return BackendResponse(ok=False, latency_ms=latency, error=str(e))
