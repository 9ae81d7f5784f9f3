"""Data models for the sync service."""

from recordsync.models.config import (
    AppConfig,
    LoggingConfig,
    NotifierConfig,
    SourceConfig,
    StorageConfig,
    SyncConfig,
)
from recordsync.models.record import CollectionSnapshot, PageResult, Record

__all__ = [
    "AppConfig",
    "CollectionSnapshot",
    "LoggingConfig",
    "NotifierConfig",
    "PageResult",
    "Record",
    "SourceConfig",
    "StorageConfig",
    "SyncConfig",
]
