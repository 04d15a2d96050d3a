"""
Stream lifecycle — which stream is the user looking at, and which ones
are still running somewhere else.

Per thread:
    none → foreground → completed | stopped | failed
    none → foreground → background → completed_in_background | aborted
    background → foreground (reattach) → ...

Every running session writes into a StreamBuffer (the thread's message
list plus continuity data). Detach moves the foreground buffer, still being
written to, into the background registry and leaves an empty foreground
behind. Reattach moves it back. Nothing is copied while a stream is live,
so a detach/reattach round trip shows exactly what the foreground would
have shown.

Finished turns are posted to `outbox` as TurnSettled records. Background
entries also resolve their own `completion` future. Nothing here touches
the durable store; that is the coordinator's job.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from threadline.session import Completed, Failed, Stopped, StreamOutcome, StreamSession
from threadline.storage.models import Message

logger = logging.getLogger(__name__)


class StreamConflictError(RuntimeError):
    """A lifecycle transition was requested out of order."""


class StreamPhase(str, Enum):
    NONE = "none"
    FOREGROUND = "foreground"
    BACKGROUND = "background"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"
    COMPLETED_IN_BACKGROUND = "completed_in_background"
    ABORTED = "aborted"


_FOREGROUND_TERMINAL = {
    Completed: StreamPhase.COMPLETED,
    Stopped: StreamPhase.STOPPED,
    Failed: StreamPhase.FAILED,
}


@dataclass
class StreamBuffer:
    """Live message state for one thread."""
    thread_id: str | None = None
    messages: list[Message] = field(default_factory=list)
    previous_response_id: str | None = None
    uploaded_file_ids: list[str] = field(default_factory=list)
    ephemeral: bool = False

    def apply_message(self, message: Message):
        """Replace the message with the same id, or append it."""
        for i, existing in enumerate(self.messages):
            if existing.id == message.id:
                self.messages[i] = message
                return
        self.messages.append(message)

    def snapshot(self) -> "StreamBuffer":
        return copy.deepcopy(self)


@dataclass
class TurnSettled:
    """A finished turn, posted to the controller's outbox."""
    thread_id: str | None
    outcome: StreamOutcome
    messages: list[Message]
    previous_response_id: str | None
    uploaded_file_ids: list[str]
    in_background: bool = False
    ephemeral: bool = False


@dataclass
class BackgroundStream:
    """Registry entry for a detached, still-running session."""
    thread_id: str
    session: StreamSession
    buffer: StreamBuffer
    completion: asyncio.Future


class StreamLifecycleController:
    """
    Owns the foreground buffer/session and the background registry.
    All methods are synchronous and run on the event loop thread.
    """

    def __init__(self):
        self.foreground = StreamBuffer()
        self.outbox: asyncio.Queue[TurnSettled] = asyncio.Queue()
        # Called with each message update that lands in the foreground view
        self.listener: Callable[[Message], None] | None = None
        self._foreground_session: StreamSession | None = None
        self._background: dict[str, BackgroundStream] = {}
        self._phases: dict[str, StreamPhase] = {}

    # ─ Inspection ────────────────────────────────────────────────────────

    @property
    def foreground_session(self) -> StreamSession | None:
        return self._foreground_session

    @property
    def is_streaming(self) -> bool:
        return self._foreground_session is not None

    def phase(self, thread_id: str) -> StreamPhase:
        return self._phases.get(thread_id, StreamPhase.NONE)

    def background_ids(self) -> list[str]:
        return list(self._background)

    def is_background(self, thread_id: str) -> bool:
        return thread_id in self._background

    def background_snapshot(self, thread_id: str) -> StreamBuffer | None:
        record = self._background.get(thread_id)
        return record.buffer.snapshot() if record else None

    def background_completion(self, thread_id: str) -> asyncio.Future | None:
        record = self._background.get(thread_id)
        return record.completion if record else None

    # ─ Transitions ───────────────────────────────────────────────────────

    def begin(self, session: StreamSession) -> None:
        """Start `session` as the foreground stream, writing into the foreground buffer."""
        if self._foreground_session is not None:
            raise StreamConflictError("A foreground stream is already running")

        buffer = self.foreground
        self._foreground_session = session
        if buffer.thread_id:
            self._phases[buffer.thread_id] = StreamPhase.FOREGROUND

        def on_update(message: Message):
            buffer.apply_message(message)
            if buffer is self.foreground and self.listener is not None:
                self.listener(message)

        def on_done(outcome: StreamOutcome):
            self._settle(session, buffer, outcome)

        session.start(on_update=on_update, on_done=on_done)

    def detach(self, create_thread: Callable[[StreamBuffer], str] | None = None) -> str | None:
        """
        Move the running foreground stream to the background without
        cancelling it. Returns the thread id it now runs under, or None if
        nothing was streaming.

        create_thread is called (synchronously) when the turn has no thread
        yet, so the background entry always has a home.
        """
        session = self._foreground_session
        if session is None:
            return None

        buffer = self.foreground
        if buffer.ephemeral:
            raise StreamConflictError("Ephemeral streams cannot be detached")

        if not buffer.thread_id:
            if create_thread is None:
                raise StreamConflictError("Cannot detach a stream that has no thread")
            buffer.thread_id = create_thread(buffer.snapshot())

        thread_id = buffer.thread_id
        loop = asyncio.get_running_loop()
        self._background[thread_id] = BackgroundStream(
            thread_id=thread_id,
            session=session,
            buffer=buffer,
            completion=loop.create_future(),
        )
        self._foreground_session = None
        self.foreground = StreamBuffer()
        self._phases[thread_id] = StreamPhase.BACKGROUND
        logger.info("Detached stream for thread %s (%d in background)", thread_id, len(self._background))
        return thread_id

    def release_foreground(self, create_thread: Callable[[StreamBuffer], str] | None = None) -> str:
        """
        Get the foreground stream out of the way before navigating.
        Ephemeral streams are cancelled; everything else is detached.

        Returns "idle", "stopped" or "detached".
        """
        if self._foreground_session is None:
            return "idle"
        if self.foreground.ephemeral:
            self.stop_foreground()
            return "stopped"
        self.detach(create_thread)
        return "detached"

    def reattach(self, thread_id: str) -> StreamBuffer | None:
        """
        Bring a background stream back to the foreground.
        Returns a snapshot of the live buffer, or None when there is no live
        buffer (never detached, aborted, or it finished first). The caller
        then falls back to the persisted snapshot.
        """
        if self._foreground_session is not None:
            raise StreamConflictError("Detach the foreground stream before reattaching another")

        record = self._background.pop(thread_id, None)
        if record is None:
            return None

        self.foreground = record.buffer
        self._foreground_session = record.session
        self._phases[thread_id] = StreamPhase.FOREGROUND
        logger.info("Reattached stream for thread %s", thread_id)
        return record.buffer.snapshot()

    def abort_background(self, thread_id: str) -> bool:
        """Cancel a background stream and drop it. Its turn is not delivered."""
        record = self._background.pop(thread_id, None)
        if record is None:
            return False
        self._phases[thread_id] = StreamPhase.ABORTED
        record.session.cancel()
        if not record.completion.done():
            record.completion.cancel()
        logger.info("Aborted background stream for thread %s", thread_id)
        return True

    def abort_all(self) -> int:
        count = 0
        for thread_id in list(self._background):
            if self.abort_background(thread_id):
                count += 1
        return count

    def stop_foreground(self) -> bool:
        """Cancel the foreground stream. Its Stopped turn is settled immediately."""
        session = self._foreground_session
        if session is None:
            return False
        session.cancel()
        return True

    def clear_foreground(self) -> None:
        """Reset the foreground view to an empty new chat."""
        if self._foreground_session is not None:
            raise StreamConflictError("Stop the foreground stream before clearing it")
        self.foreground = StreamBuffer()

    def load_foreground(self, buffer: StreamBuffer) -> None:
        """Show a persisted (not streaming) thread in the foreground."""
        if self._foreground_session is not None:
            raise StreamConflictError("Cannot load a thread over a running foreground stream")
        self.foreground = buffer

    def forget(self, thread_id: str) -> None:
        self._phases.pop(thread_id, None)

    # ─ Completion ────────────────────────────────────────────────────────

    def _settle(self, session: StreamSession, buffer: StreamBuffer, outcome: StreamOutcome):
        buffer.apply_message(outcome.message)
        if isinstance(outcome, Completed) and outcome.response_id:
            buffer.previous_response_id = outcome.response_id

        thread_id = buffer.thread_id
        settled = TurnSettled(
            thread_id=thread_id,
            outcome=outcome,
            messages=copy.deepcopy(buffer.messages),
            previous_response_id=buffer.previous_response_id,
            uploaded_file_ids=list(buffer.uploaded_file_ids),
            ephemeral=buffer.ephemeral,
        )

        if session is self._foreground_session:
            self._foreground_session = None
            if thread_id:
                self._phases[thread_id] = _FOREGROUND_TERMINAL.get(type(outcome), StreamPhase.COMPLETED)
            if buffer is self.foreground and self.listener is not None:
                self.listener(outcome.message)
        elif thread_id and thread_id in self._background and self._background[thread_id].session is session:
            record = self._background.pop(thread_id)
            self._phases[thread_id] = StreamPhase.COMPLETED_IN_BACKGROUND
            settled.in_background = True
            record.completion.set_result(settled)
            logger.info("Background stream for thread %s finished (%s)", thread_id, outcome.status)
        else:
            # Aborted in the background: the thread is going away, nothing to deliver
            return

        self.outbox.put_nowait(settled)
