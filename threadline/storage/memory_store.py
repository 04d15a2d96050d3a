"""
In-memory thread store. Nothing survives the process; used for ephemeral
sessions and tests.
"""

from __future__ import annotations

import logging

from threadline.storage.base import ThreadStore, check_fields
from threadline.storage.models import Message, Thread

logger = logging.getLogger(__name__)


class MemoryStore(ThreadStore):

    def __init__(self):
        self._threads: dict[str, Thread] = {}
        self._active_id: str | None = None

    def list_threads(self) -> list[Thread]:
        threads = [t.copy() for t in self._threads.values()]
        threads.sort(key=lambda t: t.updated_at, reverse=True)
        return threads

    def get_thread(self, thread_id: str) -> Thread | None:
        thread = self._threads.get(thread_id)
        return thread.copy() if thread else None

    def save_thread(self, thread: Thread) -> None:
        # Round-trip through the persisted shape so streaming flags are sanitized
        self._threads[thread.id] = Thread.from_dict(thread.to_dict())

    def update_thread(self, thread_id: str, fields: dict) -> bool:
        check_fields(fields)
        thread = self._threads.get(thread_id)
        if thread is None:
            logger.debug("Ignoring update for missing thread %s", thread_id)
            return False
        for key, value in fields.items():
            if key == "messages":
                value = [Message.from_dict(m.to_dict()) for m in value]
            elif key == "uploaded_file_ids":
                value = list(value)
            setattr(thread, key, value)
        return True

    def delete_thread(self, thread_id: str) -> bool:
        if self._active_id == thread_id:
            self._active_id = None
        return self._threads.pop(thread_id, None) is not None

    def clear_all(self) -> None:
        self._threads.clear()
        self._active_id = None

    def get_active_thread_id(self) -> str | None:
        return self._active_id

    def set_active_thread_id(self, thread_id: str | None) -> None:
        self._active_id = thread_id
