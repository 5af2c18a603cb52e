from __future__ import annotations

import logging

from ..config import Settings
from .base import Storage
from .memory_store import InMemoryStore
from .store import SqliteStore

logger = logging.getLogger("companion_core.storage")


def build_storage(settings: Settings) -> Storage:
    backend = settings.storage_backend
    if backend == "memory":
        logger.warning("[storage] using in-memory store; nothing survives a restart")
        return InMemoryStore()
    if backend == "sqlite":
        return SqliteStore(settings.sqlite_path)
    if backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("POSTGRES_DSN is required when STORAGE_BACKEND=postgres")

        from .postgres_store import PostgresStore

        return PostgresStore(settings.postgres_dsn)
    raise ValueError("STORAGE_BACKEND must be 'memory', 'sqlite' or 'postgres'")
