"""New-record detection against identifiers seen in earlier cycles."""

from typing import Iterable

import structlog

from recordsync.errors import IdentifierError
from recordsync.models.record import Record
from recordsync.utils.identifiers import extract_identifier

log = structlog.stdlib.get_logger()


class SeenSet:
    """Identifiers already classified, kept for the lifetime of the process.

    The set only grows. Nothing is evicted, so memory use is proportional to
    the number of distinct identifiers ever observed.
    """

    def __init__(self, identifiers: Iterable[int] = ()):
        self._seen: dict[int, bool] = {identifier: True for identifier in identifiers}

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add_many(self, identifiers: Iterable[int]) -> None:
        for identifier in identifiers:
            self._seen[identifier] = True

    def snapshot(self) -> frozenset[int]:
        return frozenset(self._seen)


class ChangeTracker:
    """Classifies fetched records as new or already seen."""

    def __init__(self, seen_set: SeenSet, id_field: str = "id"):
        """
        Initialize change tracker.

        Args:
            seen_set: Shared SeenSet, constructed once per process
            id_field: Identifier field of the records
        """
        self._seen_set = seen_set
        self._id_field = id_field

    @property
    def seen_set(self) -> SeenSet:
        return self._seen_set

    def classify(self, records: list[Record], remember: bool = True) -> list[Record]:
        """
        Return the records whose identifier was not seen before this call.

        Every record is compared with the SeenSet as it was before the batch,
        so a repeated identifier inside the batch is reported each time it
        appears if it was unseen beforehand. Records without a usable
        identifier are logged and left out of both the result and the
        SeenSet update.

        Args:
            records: Records of the current cycle
            remember: Add the batch identifiers to the SeenSet after
                classification. Pass False to defer the update to remember().

        Returns:
            New records in discovery order
        """
        new_records: list[Record] = []
        batch_ids: list[int] = []
        skipped = 0

        for record in records:
            try:
                identifier = extract_identifier(record, self._id_field)
            except IdentifierError as e:
                skipped += 1
                log.warning("record_identifier_unresolvable", error=str(e))
                continue

            batch_ids.append(identifier)
            if identifier not in self._seen_set:
                new_records.append(record)

        if remember:
            self._seen_set.add_many(batch_ids)

        log.info(
            "records_classified",
            total=len(records),
            new=len(new_records),
            skipped=skipped,
            seen_set_size=len(self._seen_set),
        )
        return new_records

    def remember(self, records: list[Record]) -> int:
        """
        Add the identifiers of records to the SeenSet.

        Returns:
            Number of identifiers added (records without one are skipped)
        """
        identifiers: list[int] = []
        for record in records:
            try:
                identifiers.append(extract_identifier(record, self._id_field))
            except IdentifierError as e:
                log.debug("record_identifier_unresolvable", error=str(e))

        self._seen_set.add_many(identifiers)
        log.debug("identifiers_remembered", count=len(identifiers))
        return len(identifiers)
