"""
ThreadCoordinator — owns the thread list and runs every user action that
touches a stream or the durable store.

Responsibilities:
  - create a thread when the first user message of a new chat is sent
  - persist each turn once its stream settles (completed, stopped, failed)
  - generate a title once per thread, after the first exchange
  - decide for every navigation whether the running stream is stopped,
    detached to the background, or reattached

Finished turns arrive as TurnSettled records on the lifecycle controller's
outbox. The coordinator drains the outbox at the start of every action, so
a background turn that finished a moment ago is on disk before a switch or
delete looks at it. A worker task drains it for turns that finish while
nobody is doing anything.

Storage failures never take the chat down: they are logged and shown in
ChatView.error, and the in-memory state is kept.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from threadline.backends.base import BaseBackend
from threadline.lifecycle import StreamBuffer, StreamLifecycleController, TurnSettled
from threadline.recording import RecordingSession
from threadline.request import (
    Attachment,
    ChatSettings,
    attachment_file_ids,
    build_approval_request,
    build_request,
)
from threadline.session import Failed, StreamSession
from threadline.storage.base import StorageError, ThreadStore
from threadline.storage.models import PLACEHOLDER_TITLE, Message, Thread
from threadline.titles import TitleGenerator
from threadline.usage import TokenUsage, conversation_usage

logger = logging.getLogger(__name__)


class ThreadPhase(str, Enum):
    JUST_CREATED = "just_created"   # record written, first turn not settled yet
    STREAMING = "streaming"
    SETTLED = "settled"


@dataclass
class ChatView:
    """What a UI shows. Always a copy."""
    thread_id: str | None = None
    title: str | None = None
    messages: list[Message] = field(default_factory=list)
    is_streaming: bool = False
    ephemeral: bool = False
    error: str | None = None
    background_thread_ids: list[str] = field(default_factory=list)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ThreadCoordinator:

    def __init__(
        self,
        backend: BaseBackend,
        store: ThreadStore,
        settings: ChatSettings,
        *,
        controller: StreamLifecycleController | None = None,
        title_generator: TitleGenerator | None = None,
        recorder_factory: Callable[[], RecordingSession | None] | None = None,
    ):
        self.backend = backend
        self.store = store
        self.settings = settings
        self.controller = controller or StreamLifecycleController()
        self.title_generator = title_generator
        self.recorder_factory = recorder_factory
        self.threads: dict[str, Thread] = {}
        self.active_thread_id: str | None = None
        self.error: str | None = None
        self._phases: dict[str, ThreadPhase] = {}
        self._titles_requested: set[str] = set()
        self._titles_outstanding: set[str] = set()
        self._title_tasks: set[asyncio.Task] = set()
        self._worker: asyncio.Task | None = None

    # ─ Startup ───────────────────────────────────────────────────────────

    def load(self) -> None:
        """Read threads and the last active thread id from the store."""
        try:
            threads = self.store.list_threads()
            active_id = self.store.get_active_thread_id()
        except StorageError as e:
            self._storage_failed("load threads", e)
            return

        self.threads = {t.id: t for t in threads}
        self._phases = {t.id: ThreadPhase.SETTLED for t in threads}
        logger.info("Loaded %d threads", len(threads))

        if active_id and active_id in self.threads:
            self.controller.load_foreground(self._buffer_for(self.threads[active_id]))
            self.active_thread_id = active_id
        elif active_id:
            logger.info("Active thread %s no longer exists, starting a new chat", active_id)
            self._set_active(None)

    # ─ Inspection ────────────────────────────────────────────────────────

    def snapshot(self) -> ChatView:
        self._drain()
        buffer = self.controller.foreground
        thread = self.threads.get(buffer.thread_id) if buffer.thread_id else None
        return ChatView(
            thread_id=buffer.thread_id,
            title=thread.title if thread else None,
            messages=copy.deepcopy(buffer.messages),
            is_streaming=self.controller.is_streaming,
            ephemeral=buffer.ephemeral,
            error=self.error,
            background_thread_ids=self.controller.background_ids(),
        )

    def list_threads(self) -> list[Thread]:
        """Copies of every thread, most recently updated first."""
        self._drain()
        threads = [t.copy() for t in self.threads.values()]
        threads.sort(key=lambda t: t.updated_at, reverse=True)
        return threads

    def thread_phase(self, thread_id: str) -> ThreadPhase | None:
        return self._phases.get(thread_id)

    def conversation_usage(self) -> TokenUsage | None:
        return conversation_usage(self.controller.foreground.messages)

    # ─ Sending ───────────────────────────────────────────────────────────

    def send_message(
        self,
        content: str,
        attachments: list[Attachment] | None = None,
    ) -> StreamSession | None:
        """
        Send a user turn from the foreground view. Returns the running
        session, or None if nothing was sent.
        """
        self._drain()
        content = content.strip()
        if not content and not attachments:
            return None
        if self.controller.is_streaming:
            logger.info("Ignoring send while a response is streaming")
            return None

        self.error = None
        buffer = self.controller.foreground
        if not buffer.ephemeral and not buffer.thread_id:
            return self._send_turn(content, None, create_thread=True, attachments=attachments)
        return self._send_turn(content, buffer.previous_response_id, attachments=attachments)

    def retry_message(self, message_id: str) -> StreamSession | None:
        """
        Re-send the user turn behind a failed assistant message. The failed
        pair is removed and the request continues from the same response id
        the original user turn used.
        """
        self._drain()
        if self.controller.is_streaming:
            return None

        buffer = self.controller.foreground
        idx = next((i for i, m in enumerate(buffer.messages) if m.id == message_id), None)
        if idx is None:
            return None
        failed = buffer.messages[idx]
        if failed.role != "assistant" or not failed.is_error:
            return None
        if idx == 0 or buffer.messages[idx - 1].role != "user":
            logger.warning("Failed message %s has no user turn before it", message_id)
            return None

        user = buffer.messages[idx - 1]
        previous_response_id = (user.request_json or {}).get("previous_response_id")
        del buffer.messages[idx - 1:idx + 1]
        buffer.previous_response_id = previous_response_id

        thread = self.threads.get(buffer.thread_id) if buffer.thread_id else None
        if thread is not None and not buffer.ephemeral:
            thread.messages = copy.deepcopy(buffer.messages)
            thread.previous_response_id = previous_response_id
            thread.updated_at = _now()
            self._persist(thread.id, {
                "messages": thread.messages,
                "previous_response_id": previous_response_id,
                "updated_at": thread.updated_at,
            })

        logger.info("Retrying failed turn %s", message_id)
        self.error = None
        # Attachments go out again exactly as first sent
        sent_input = (user.request_json or {}).get("input")
        return self._send_turn(
            user.content,
            previous_response_id,
            sent_input=sent_input if isinstance(sent_input, list) else None,
        )

    def approve(self, approval_request_id: str) -> StreamSession | None:
        return self._respond_to_approval(approval_request_id, True)

    def deny(self, approval_request_id: str) -> StreamSession | None:
        return self._respond_to_approval(approval_request_id, False)

    def stop(self) -> bool:
        """Stop the foreground stream. The stopped turn is persisted."""
        self._drain()
        stopped = self.controller.stop_foreground()
        self._drain()
        return stopped

    # ─ Navigation ────────────────────────────────────────────────────────

    def new_chat(self) -> None:
        """Leave the current view for an empty chat. A running stream keeps going in the background."""
        self._release()
        self.controller.clear_foreground()
        self._set_active(None)

    def start_ephemeral(self) -> None:
        """Like new_chat, but nothing sent from here is ever stored."""
        self._release()
        self.controller.load_foreground(StreamBuffer(ephemeral=True))
        self._set_active(None)

    def switch_thread(self, thread_id: str) -> bool:
        self._drain()
        if thread_id not in self.threads:
            logger.warning("Cannot switch to unknown thread %s", thread_id)
            return False
        if self.controller.foreground.thread_id == thread_id:
            return True

        self._release()
        if self.controller.reattach(thread_id) is None:
            self.controller.load_foreground(self._buffer_for(self.threads[thread_id]))
        self._set_active(thread_id)
        return True

    def delete_thread(self, thread_id: str) -> bool:
        self._drain()
        # Forget the thread first so its stopped turn is dropped on settle
        existed = self.threads.pop(thread_id, None) is not None
        self._phases.pop(thread_id, None)
        self._titles_outstanding.discard(thread_id)
        if self.controller.foreground.thread_id == thread_id:
            # Stop strictly before clear so the stopped turn cannot land in a fresh view
            self.controller.stop_foreground()
            self._drain()
            self.controller.clear_foreground()
            self._set_active(None)
        elif self.controller.is_background(thread_id):
            self.controller.abort_background(thread_id)

        self.controller.forget(thread_id)
        try:
            self.store.delete_thread(thread_id)
        except StorageError as e:
            self._storage_failed("delete thread", e)
        if existed:
            logger.info("Deleted thread %s", thread_id)
        return existed

    def rename_thread(self, thread_id: str, title: str) -> bool:
        self._drain()
        title = title.strip()
        thread = self.threads.get(thread_id)
        if thread is None or not title:
            return False
        thread.title = title
        thread.updated_at = _now()
        self._persist(thread_id, {"title": title, "updated_at": thread.updated_at})
        return True

    def clear_all_threads(self) -> None:
        self._drain()
        self.controller.stop_foreground()
        self._drain()
        self.controller.clear_foreground()
        aborted = self.controller.abort_all()
        self.threads.clear()
        self._phases.clear()
        self._titles_outstanding.clear()
        self.active_thread_id = None
        try:
            self.store.clear_all()
        except StorageError as e:
            self._storage_failed("clear threads", e)
        logger.info("Cleared all threads (%d background streams aborted)", aborted)

    # ─ Waiting / shutdown ────────────────────────────────────────────────

    async def settle(self) -> None:
        """Wait until every stream and title request has finished and been persisted."""
        while True:
            self._drain()
            pending = []
            session = self.controller.foreground_session
            if session is not None:
                pending.append(session.wait())
            for thread_id in self.controller.background_ids():
                completion = self.controller.background_completion(thread_id)
                if completion is not None:
                    pending.append(completion)
            pending.extend(self._title_tasks)
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        self._drain()

    async def aclose(self) -> None:
        """Stop everything. Stopped turns are persisted; background turns are dropped."""
        self.controller.stop_foreground()
        self.controller.abort_all()
        self._drain()
        tasks = list(self._title_tasks)
        if self._worker is not None:
            tasks.append(self._worker)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._worker = None

    # ─ Internals: streaming ──────────────────────────────────────────────

    def _send_turn(
        self,
        content: str,
        previous_response_id: str | None,
        create_thread: bool = False,
        attachments: list[Attachment] | None = None,
        sent_input: list | None = None,
    ) -> StreamSession:
        buffer = self.controller.foreground
        body = build_request(self.settings, content, previous_response_id, attachments)
        if sent_input is not None:
            body["input"] = copy.deepcopy(sent_input)
        user = Message(role="user", content=content, request_json=body)
        assistant = Message(role="assistant", is_streaming=True)
        buffer.messages.extend([user, assistant])
        for file_id in attachment_file_ids(attachments):
            if file_id not in buffer.uploaded_file_ids:
                buffer.uploaded_file_ids.append(file_id)

        if create_thread:
            thread = Thread(
                messages=copy.deepcopy(buffer.messages),
                uploaded_file_ids=list(buffer.uploaded_file_ids),
            )
            self.threads[thread.id] = thread
            self._phases[thread.id] = ThreadPhase.JUST_CREATED
            buffer.thread_id = thread.id
            self._save(thread)
            self._set_active(thread.id)
            logger.info("Created thread %s", thread.id)
        elif buffer.thread_id and not buffer.ephemeral:
            self._phases[buffer.thread_id] = ThreadPhase.STREAMING

        return self._start_session(body, assistant)

    def _respond_to_approval(self, approval_request_id: str, approve: bool) -> StreamSession | None:
        self._drain()
        if self.controller.is_streaming:
            logger.info("Ignoring approval %s while a response is streaming", approval_request_id)
            return None

        buffer = self.controller.foreground
        target = None
        for msg in reversed(buffer.messages):
            if msg.role != "assistant":
                continue
            for call in msg.tool_calls:
                if (call.type == "mcp_approval"
                        and call.approval_request_id == approval_request_id
                        and call.status == "pending_approval"):
                    target = (msg, call)
                    break
            if target:
                break

        if target is None:
            logger.info("Ignoring approval %s: no pending request in the current view", approval_request_id)
            return None

        msg, call = target
        call.status = "approved" if approve else "denied"
        msg.is_streaming = True
        msg.is_stopped = False
        body = build_approval_request(self.settings, approval_request_id, approve, buffer.previous_response_id)
        if buffer.thread_id and not buffer.ephemeral:
            self._phases[buffer.thread_id] = ThreadPhase.STREAMING
        logger.info("MCP approval %s %s", approval_request_id, "approved" if approve else "denied")
        return self._start_session(body, msg, continue_message=True)

    def _start_session(self, body: dict, message: Message, continue_message: bool = False) -> StreamSession:
        recorder = self.recorder_factory() if self.recorder_factory else None
        if recorder is not None:
            recorder.record_request(body)
        session = StreamSession(
            self.backend.stream(body),
            message,
            continue_message=continue_message,
            recorder=recorder,
        )
        self.controller.begin(session)
        self._ensure_worker()
        return session

    def _release(self):
        """Stop or detach the foreground stream, then apply whatever settled."""
        self._drain()
        self.controller.release_foreground(self._adopt_buffer)
        self._drain()

    def _adopt_buffer(self, buffer: StreamBuffer) -> str:
        """Create a thread for a streaming turn that does not have one yet."""
        thread = Thread(
            messages=copy.deepcopy(buffer.messages),
            previous_response_id=buffer.previous_response_id,
            uploaded_file_ids=list(buffer.uploaded_file_ids),
        )
        self.threads[thread.id] = thread
        self._phases[thread.id] = ThreadPhase.JUST_CREATED
        self._save(thread)
        return thread.id

    @staticmethod
    def _buffer_for(thread: Thread) -> StreamBuffer:
        return StreamBuffer(
            thread_id=thread.id,
            messages=copy.deepcopy(thread.messages),
            previous_response_id=thread.previous_response_id,
            uploaded_file_ids=list(thread.uploaded_file_ids),
        )

    # ─ Internals: settling ───────────────────────────────────────────────

    def _ensure_worker(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run_worker())

    async def _run_worker(self):
        outbox = self.controller.outbox
        while True:
            settled = await outbox.get()
            try:
                self._on_turn_settled(settled)
            except Exception:
                logger.exception("Failed to apply settled turn for thread %s", settled.thread_id)

    def _drain(self):
        outbox = self.controller.outbox
        while True:
            try:
                settled = outbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._on_turn_settled(settled)

    def _on_turn_settled(self, settled: TurnSettled):
        if isinstance(settled.outcome, Failed) and not settled.in_background:
            self.error = settled.outcome.error
        if settled.ephemeral or not settled.thread_id:
            return

        thread = self.threads.get(settled.thread_id)
        if thread is None:
            logger.debug("Dropping settled turn for deleted thread %s", settled.thread_id)
            return

        thread.messages = copy.deepcopy(settled.messages)
        thread.previous_response_id = settled.previous_response_id
        thread.uploaded_file_ids = list(settled.uploaded_file_ids)
        thread.updated_at = _now()

        if self._phases.get(thread.id) is ThreadPhase.JUST_CREATED:
            # Upsert, in case the first write never made it to disk
            self._save(thread)
        else:
            self._persist(thread.id, {
                "messages": thread.messages,
                "previous_response_id": thread.previous_response_id,
                "uploaded_file_ids": thread.uploaded_file_ids,
                "updated_at": thread.updated_at,
            })
        self._phases[thread.id] = ThreadPhase.SETTLED
        logger.debug("Persisted %s turn for thread %s (background=%s)",
                     settled.outcome.status, thread.id, settled.in_background)
        self._maybe_generate_title(thread.id)

    # ─ Internals: titles ─────────────────────────────────────────────────

    def _maybe_generate_title(self, thread_id: str):
        if self.title_generator is None:
            return
        thread = self.threads.get(thread_id)
        if thread is None or thread.title != PLACEHOLDER_TITLE:
            return
        if len(thread.messages) != 2:
            return
        if thread_id in self._titles_outstanding or thread_id in self._titles_requested:
            return
        user, assistant = thread.messages
        if user.role != "user" or assistant.role != "assistant" or assistant.is_error:
            return
        if not assistant.content.strip():
            return

        self._titles_requested.add(thread_id)
        self._titles_outstanding.add(thread_id)
        task = asyncio.get_running_loop().create_task(
            self._generate_title(thread_id, user.content, assistant.content)
        )
        self._title_tasks.add(task)
        task.add_done_callback(self._title_tasks.discard)

    async def _generate_title(self, thread_id: str, user_text: str, assistant_text: str):
        try:
            title = await self.title_generator.generate_with_fallback(user_text, assistant_text)
        except Exception as e:
            logger.warning("Title generation for thread %s failed: %s", thread_id, e)
            title = None
        finally:
            self._titles_outstanding.discard(thread_id)

        if not title:
            return
        thread = self.threads.get(thread_id)
        if thread is None or thread.title != PLACEHOLDER_TITLE:
            # Deleted or renamed while the request was out
            return
        thread.title = title
        self._persist(thread_id, {"title": title})
        logger.info("Titled thread %s: %s", thread_id, title)

    # ─ Internals: storage ────────────────────────────────────────────────

    def _save(self, thread: Thread):
        try:
            self.store.save_thread(thread)
        except StorageError as e:
            self._storage_failed(f"save thread {thread.id}", e)

    def _persist(self, thread_id: str, fields: dict) -> bool:
        try:
            return self.store.update_thread(thread_id, fields)
        except StorageError as e:
            self._storage_failed(f"update thread {thread_id}", e)
            return False

    def _set_active(self, thread_id: str | None):
        self.active_thread_id = thread_id
        try:
            self.store.set_active_thread_id(thread_id)
        except StorageError as e:
            self._storage_failed("save active thread", e)

    def _storage_failed(self, action: str, error: StorageError):
        logger.error("Failed to %s: %s", action, error)
        self.error = f"Failed to {action}: {error}"
