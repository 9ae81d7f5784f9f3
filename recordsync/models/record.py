"""Record containers shared by the fetch, classify and persist stages."""

from threading import Lock
from typing import Any

import structlog
from pydantic import BaseModel, Field

from recordsync.errors import IdentifierError
from recordsync.utils.identifiers import extract_identifier

log = structlog.stdlib.get_logger()

Record = dict[str, Any]


class PageResult(BaseModel):
    """One page of records returned by the remote source."""

    items: list[Record] = Field(default_factory=list, description="Records in page order")
    total_count: int | None = Field(
        default=None,
        ge=0,
        description="Collection size, only set when the count was requested",
    )


class CollectionSnapshot:
    """
    Thread-safe mapping from identifier to record for one fetch pass.

    Writers may merge pages in any order; a repeated identifier keeps the
    record merged last.
    """

    def __init__(self, id_field: str = "id"):
        self._id_field = id_field
        self._records: dict[int, Record] = {}
        self._lock = Lock()

    def merge(self, records: list[Record]) -> int:
        """
        Merge records by identifier.

        Records without a usable identifier are skipped and logged.

        Args:
            records: Records of one page

        Returns:
            Number of records merged
        """
        keyed: list[tuple[int, Record]] = []
        for record in records:
            try:
                keyed.append((extract_identifier(record, self._id_field), record))
            except IdentifierError as e:
                log.warning("record_without_identifier_skipped", error=str(e))

        with self._lock:
            for identifier, record in keyed:
                self._records[identifier] = record

        return len(keyed)

    def to_sorted_list(self) -> list[Record]:
        """Return the records ordered by ascending identifier."""
        with self._lock:
            return [self._records[key] for key in sorted(self._records)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, identifier: object) -> bool:
        with self._lock:
            return identifier in self._records
