"""
Test doubles shared by the stream and coordinator tests.

FakeBackend hands out one StreamFeed per stream() call. A test pushes
events into the feed and finishes (or fails) it whenever it wants, so the
interleaving of stream progress and user actions is fully scripted.
"""

import asyncio
from collections import deque

from threadline.backends.base import BaseBackend, BackendResponse

_END = object()


class StreamFeed:
    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, *events):
        for event in events:
            self.queue.put_nowait(event)
        return self

    def finish(self):
        self.queue.put_nowait(_END)
        return self

    def fail(self, exc: Exception):
        self.queue.put_nowait(exc)
        return self

    async def events(self):
        try:
            while True:
                item = await self.queue.get()
                if item is _END:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.closed = True


class FakeBackend(BaseBackend):

    def __init__(self):
        super().__init__("fake", "http://fake")
        self.requests: list[dict] = []
        self.feeds: list[StreamFeed] = []
        self.create_calls: list[dict] = []
        self.create_results: deque = deque()
        # When set, create() waits for it; lets a test act while a title request is out
        self.create_gate: asyncio.Event | None = None
        self._scripted: deque = deque()

    @property
    def last_feed(self) -> StreamFeed:
        return self.feeds[-1]

    def script(self, *events, finish=True) -> StreamFeed:
        """Pre-load the feed for the next stream() call."""
        feed = StreamFeed().push(*events)
        if finish:
            feed.finish()
        self._scripted.append(feed)
        return feed

    def stream(self, body: dict):
        self.requests.append(body)
        feed = self._scripted.popleft() if self._scripted else StreamFeed()
        self.feeds.append(feed)
        return feed.events()

    async def create(self, body: dict) -> BackendResponse:
        self.create_calls.append(body)
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_results:
            return self.create_results.popleft()
        return BackendResponse(ok=False, status_code=500, error="no response scripted")


def title_response(text: str) -> BackendResponse:
    return BackendResponse(ok=True, data={
        "output": [{"type": "message", "content": [{"type": "output_text", "text": text}]}],
    })


async def spin(n: int = 20):
    """Let the loop run n times so queued events flow through."""
    for _ in range(n):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Event builders
# ---------------------------------------------------------------------------

def created(response_id="resp_pending"):
    return {"type": "response.created", "response": {"id": response_id}}


def delta(text, item_id="msg_1"):
    return {"type": "response.output_text.delta", "item_id": item_id, "delta": text}


def completed(response_id="resp_1", usage=None, output=None):
    response = {"id": response_id, "status": "completed", "output": output or []}
    if usage is not None:
        response["usage"] = usage
    return {"type": "response.completed", "response": response}


def incomplete(response_id="resp_1", reason="max_output_tokens"):
    return {
        "type": "response.incomplete",
        "response": {"id": response_id, "status": "incomplete", "incomplete_details": {"reason": reason}},
    }


def failed(message="boom"):
    return {"type": "response.failed", "response": {"error": {"message": message}}}


def item_added(item):
    return {"type": "response.output_item.added", "item": item}


def item_done(item):
    return {"type": "response.output_item.done", "item": item}
