"""Data models for synchronization cycles."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from recordsync.models.record import Record


class CycleState(str, Enum):
    """Lifecycle of one sync cycle."""

    IDLE = "idle"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class CycleReport(BaseModel):
    """Report of one fetch, classify and persist pass."""

    cycle_id: str = Field(..., description="Identifier bound to the cycle's log entries")
    state: CycleState = Field(default=CycleState.IDLE, description="Final state of the cycle")
    new_records: list[Record] = Field(
        default_factory=list, description="Records of the primary collection seen for the first time"
    )
    fetched_counts: dict[str, int] = Field(
        default_factory=dict, description="Deduplicated record count per collection"
    )
    persisted_collections: list[str] = Field(
        default_factory=list, description="Collections committed in this cycle"
    )
    start_time: datetime = Field(..., description="Cycle start timestamp")
    end_time: datetime | None = Field(default=None, description="Cycle end timestamp")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Cycle duration in seconds")
    error: str | None = Field(default=None, description="Error that failed the cycle")

    @property
    def success(self) -> bool:
        """Check if the cycle reached the done state."""
        return self.state == CycleState.DONE

    @property
    def new_count(self) -> int:
        return len(self.new_records)
