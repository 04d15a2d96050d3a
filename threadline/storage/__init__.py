"""
Thread store factory.

Usage:
    from threadline.storage import make_store
    store = make_store("sqlite", db_path="./data/threads.db")
"""

from threadline.storage.base import StorageError, ThreadStore
from threadline.storage.memory_store import MemoryStore
from threadline.storage.sqlite_store import SQLiteStore

_REGISTRY: dict[str, type[ThreadStore]] = {
    "sqlite": SQLiteStore,
    "memory": MemoryStore,
}


def make_store(backend_type: str, **kwargs) -> ThreadStore:
    """
    Instantiate a thread store by name.

    Raises:
        ValueError: If the store type is not registered.
    """
    cls = _REGISTRY.get(backend_type)
    if cls is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(
            f"Unknown storage backend: '{backend_type}'. "
            f"Available: {available}"
        )
    return cls(**kwargs)


def store_from_config(cfg: dict) -> ThreadStore:
    storage = cfg.get("storage", {}) or {}
    backend = storage.get("backend", "sqlite")
    if backend == "sqlite":
        return make_store("sqlite", db_path=storage.get("sqlite_path", "./data/threads.db"))
    return make_store(backend)


__all__ = ["StorageError", "ThreadStore", "MemoryStore", "SQLiteStore", "make_store", "store_from_config"]
