
from .base import Storage
from .factory import build_storage
from .memory_store import InMemoryStore
from .store import SqliteStore

__all__ = ["InMemoryStore", "SqliteStore", "Storage", "build_storage"]
