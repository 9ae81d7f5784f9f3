"""Synchronization components: new-record detection and cycle orchestration."""

from recordsync.sync.change_tracker import ChangeTracker, SeenSet
from recordsync.sync.models import CycleReport, CycleState
from recordsync.sync.sync_cycle import CollectionSource, SyncCycle

__all__ = [
    "ChangeTracker",
    "CollectionSource",
    "CycleReport",
    "CycleState",
    "SeenSet",
    "SyncCycle",
]
