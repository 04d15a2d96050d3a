"""
ThreadStore — abstract base for durable thread storage.

The coordinator talks to storage only through this port:
  save_thread    : insert or replace a whole record
  update_thread  : partial update; a missing record is a no-op, never a create
  delete_thread  : remove a record
  plus the active thread id, kept alongside the threads

Stores hand out copies. Callers never hold a live reference into the store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from threadline.storage.models import Thread

# Fields update_thread() accepts
UPDATABLE_FIELDS = frozenset({
    "title",
    "messages",
    "previous_response_id",
    "uploaded_file_ids",
    "updated_at",
})


class StorageError(Exception):
    """A read or write against the durable store failed."""


def check_fields(fields: dict):
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update thread fields: {', '.join(sorted(unknown))}")


class ThreadStore(ABC):
    """Abstract thread storage backend."""

    @abstractmethod
    def list_threads(self) -> list[Thread]:
        """All threads, most recently updated first."""
        ...

    @abstractmethod
    def get_thread(self, thread_id: str) -> Thread | None:
        ...

    @abstractmethod
    def save_thread(self, thread: Thread) -> None:
        """Insert or replace a thread record."""
        ...

    @abstractmethod
    def update_thread(self, thread_id: str, fields: dict) -> bool:
        """
        Apply a partial update. Returns False (and writes nothing) when the
        record does not exist.
        """
        ...

    @abstractmethod
    def delete_thread(self, thread_id: str) -> bool:
        ...

    @abstractmethod
    def clear_all(self) -> None:
        """Delete every thread and the active thread id."""
        ...

    @abstractmethod
    def get_active_thread_id(self) -> str | None:
        ...

    @abstractmethod
    def set_active_thread_id(self, thread_id: str | None) -> None:
        ...

    def export_threads(self) -> list[dict]:
        """Every thread as a plain dict, oldest first."""
        threads = sorted(self.list_threads(), key=lambda t: t.created_at)
        return [t.to_dict() for t in threads]
