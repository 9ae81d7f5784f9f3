"""Keyed record storage: transactional backends and the batch upserter."""

from recordsync.storage.backends import (
    PersistenceBackend,
    PostgresBackend,
    SqliteBackend,
    create_backend,
)
from recordsync.storage.upserter import BatchUpserter, canonical_json

__all__ = [
    "BatchUpserter",
    "PersistenceBackend",
    "PostgresBackend",
    "SqliteBackend",
    "canonical_json",
    "create_backend",
]
