"""
StreamSession — drive one event source through the accumulator.

A session owns exactly one event sequence. It reports every state change
to `on_update` and exactly one terminal outcome to `on_done`:

    Completed(message, response_id)   natural end of stream
    Stopped(message)                  cancel() was called
    Failed(message, error)            transport exception or terminal error event

The session never touches UI state. With no listener attached it keeps
running, which is what detached background turns rely on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from threadline.accumulator import StreamState, abort_active_tools, apply
from threadline.storage.models import Message
from threadline.usage import TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class StreamOutcome:
    """Terminal result of a session. `message` is a finished copy."""
    message: Message

    @property
    def status(self) -> str:
        return type(self).__name__.lower()


@dataclass
class Completed(StreamOutcome):
    response_id: str | None = None
    usage: TokenUsage | None = None


@dataclass
class Stopped(StreamOutcome):
    pass


@dataclass
class Failed(StreamOutcome):
    error: str = ""


UpdateListener = Callable[[Message], None]
DoneListener = Callable[[StreamOutcome], None]


def _error_content(partial: str, error: str) -> str:
    if partial:
        return f"{partial}\n\nError: {error}"
    return f"Error: {error}"


class StreamSession:
    """One assistant message being streamed from one event source."""

    def __init__(
        self,
        events: AsyncIterator[dict],
        message: Message,
        *,
        continue_message: bool = False,
        recorder=None,
    ):
        """
        Args:
            events:           async iterator of raw event dicts from the transport.
            message:          the assistant message this session fills in.
            continue_message: seed the accumulator from `message` instead of
                              starting empty (MCP approval continuations).
            recorder:         optional RecordingSession that sees every raw event.
        """
        self._events = events
        self._base = message.copy()
        self._state = StreamState.from_message(message) if continue_message else StreamState()
        self._recorder = recorder
        self._on_update: UpdateListener | None = None
        self._on_done: DoneListener | None = None
        self._task: asyncio.Task | None = None
        self._outcome: StreamOutcome | None = None
        self._done_future: asyncio.Future | None = None

    @property
    def message_id(self) -> str:
        return self._base.id

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def done(self) -> bool:
        return self._outcome is not None

    @property
    def outcome(self) -> StreamOutcome | None:
        return self._outcome

    def current_message(self) -> Message:
        """Latest accumulated message (a copy)."""
        if self._outcome is not None:
            return self._outcome.message.copy()
        return self._state.to_message(self._base, streaming=True)

    def start(
        self,
        on_update: UpdateListener | None = None,
        on_done: DoneListener | None = None,
    ) -> asyncio.Task:
        """Begin consuming the event source on the running loop."""
        if self._task is not None:
            raise RuntimeError("StreamSession already started")
        self._on_update = on_update
        self._on_done = on_done
        loop = asyncio.get_running_loop()
        self._done_future = loop.create_future()
        self._task = loop.create_task(self._drive())
        return self._task

    async def wait(self) -> StreamOutcome:
        """Wait for the terminal outcome."""
        if self._done_future is None:
            raise RuntimeError("StreamSession not started")
        return await asyncio.shield(self._done_future)

    def cancel(self) -> None:
        """
        Stop the stream. Delivers Stopped immediately; idempotent, and a
        no-op once the session has already finished.
        """
        if self._outcome is not None:
            return
        state = abort_active_tools(self._state)
        msg = state.to_message(self._base, streaming=False)
        msg.is_stopped = True
        logger.info("Stream for message %s stopped by caller", self._base.id)
        self._finish(Stopped(message=msg))
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _drive(self):
        try:
            async for raw in self._events:
                if self._outcome is not None:
                    break
                if self._recorder is not None:
                    self._recorder.record_event(raw)
                try:
                    new_state = apply(self._state, raw)
                except (TypeError, ValueError, AttributeError, KeyError) as e:
                    logger.warning("Skipping malformed event for message %s: %s", self._base.id, e)
                    continue
                if new_state is self._state:
                    continue
                self._state = new_state
                if self._on_update is not None:
                    self._on_update(self._state.to_message(self._base, streaming=True))
        except asyncio.CancelledError:
            if self._outcome is None:
                # Cancelled from outside without cancel(): still a stop
                self.cancel()
            return
        except Exception as e:
            if self._outcome is None:
                logger.warning("Stream for message %s failed: %s", self._base.id, e)
                self._fail(str(e) or type(e).__name__)
            return
        finally:
            await self._close_source()

        if self._outcome is not None:
            return
        if self._state.is_error:
            self._fail(self._state.error or "The response failed")
            return

        msg = self._state.to_message(self._base, streaming=False)
        self._finish(Completed(message=msg, response_id=self._state.response_id, usage=self._state.usage))

    def _fail(self, error: str):
        msg = self._state.to_message(self._base, streaming=False)
        msg.content = _error_content(self._state.content, error)
        msg.is_error = True
        self._finish(Failed(message=msg, error=error))

    def _finish(self, outcome: StreamOutcome):
        self._outcome = outcome
        if self._done_future is not None and not self._done_future.done():
            self._done_future.set_result(outcome)
        if self._on_done is not None:
            try:
                self._on_done(outcome)
            except Exception:
                logger.exception("Stream completion handler failed for message %s", self._base.id)
        if self._recorder is not None:
            try:
                self._recorder.finalize()
            except OSError as e:
                logger.error("Failed to save recording for message %s: %s", self._base.id, e)

    async def _close_source(self):
        aclose = getattr(self._events, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug("Closing event source raised: %s", e)
