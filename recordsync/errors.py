"""Exception hierarchy for the sync pipeline."""

from dataclasses import dataclass


class RecordSyncError(Exception):
    """Base class for all pipeline errors."""


class TransportError(RecordSyncError):
    """Raised when a remote page or collection request fails."""

    def __init__(self, message: str, url: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class CollectionCancelledError(TransportError):
    """Raised when a collection fetch is cancelled before it completes."""


class IdentifierError(RecordSyncError, ValueError):
    """Raised when a record has no usable 64-bit identifier."""


class InvalidTargetError(RecordSyncError, ValueError):
    """Raised when a collection name is not allowed or not a safe identifier."""


class PersistenceError(RecordSyncError):
    """Raised when a storage transaction cannot be opened, committed or rolled back."""


@dataclass(frozen=True)
class RecordError:
    """Failure of a single record inside an upsert batch.

    ``index`` is the zero-based batch position; -1 marks a failure of the
    transaction itself rather than of one record.
    """

    index: int
    identifier: int | None
    message: str

    def __str__(self) -> str:
        if self.index < 0:
            return f"transaction: {self.message}"
        # Messages count records from 1
        position = f"record {self.index + 1}"
        if self.identifier is None:
            return f"{position}: {self.message}"
        return f"{position} (id={self.identifier}): {self.message}"


class BatchUpsertError(PersistenceError):
    """Raised when one or more records of a batch failed and the batch was rolled back."""

    def __init__(self, collection: str, record_errors: list[RecordError]):
        self.collection = collection
        self.record_errors = list(record_errors)
        details = "; ".join(str(e) for e in self.record_errors)
        super().__init__(
            f"Upsert into '{collection}' rolled back, "
            f"{len(self.record_errors)} record(s) failed: {details}"
        )


class NotifierError(RecordSyncError):
    """Raised when a notification cannot be delivered."""


class CycleInProgressError(RecordSyncError):
    """Raised when a sync cycle is started while another one is still running."""
