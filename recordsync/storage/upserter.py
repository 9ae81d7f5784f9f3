"""All-or-nothing batch upsert of records into an allow-listed collection."""

import json
import re
import time
from typing import Any, Iterable

import structlog

from recordsync.errors import (
    BatchUpsertError,
    IdentifierError,
    InvalidTargetError,
    PersistenceError,
    RecordError,
)
from recordsync.models.record import Record
from recordsync.storage.backends import PersistenceBackend
from recordsync.utils.identifiers import extract_identifier

log = structlog.stdlib.get_logger()

_SAFE_NAME = re.compile(r"[A-Za-z0-9_]+")


def canonical_json(record: dict[str, Any]) -> str:
    """Serialize a record deterministically (sorted keys, compact separators)."""
    return json.dumps(record, sort_keys=True, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


class BatchUpserter:
    """Persists one collection's records in a single transaction.

    Per-record failures (serialization, identifier, statement) are collected
    while the batch runs. If any occurred the whole transaction is rolled back
    and the collected errors are raised together, so a batch is either fully
    persisted or not persisted at all.
    """

    def __init__(
        self,
        backend: PersistenceBackend,
        allowed_collections: Iterable[str],
        id_field: str = "id",
        transaction_timeout: float = 30.0,
        statement_timeout: float = 5.0,
    ):
        """
        Initialize the upserter.

        Args:
            backend: Transactional persistence backend
            allowed_collections: Collection names the upserter may write to
            id_field: Identifier field of the records
            transaction_timeout: Overall budget for one batch in seconds
            statement_timeout: Budget for a single record upsert in seconds
        """
        self._backend = backend
        self._allowed = frozenset(name.lower() for name in allowed_collections)
        self._id_field = id_field
        self._transaction_timeout = transaction_timeout
        self._statement_timeout = statement_timeout

    def validate_collection(self, collection_name: str) -> str:
        """
        Check a collection name against the allow-list and the safe-name rule.

        Returns:
            The lowercased collection name

        Raises:
            InvalidTargetError: If the name is empty, unsafe or not allowed
        """
        if not collection_name or not _SAFE_NAME.fullmatch(collection_name):
            raise InvalidTargetError(
                f"collection name {collection_name!r} must contain only letters, digits and '_'"
            )

        normalized = collection_name.lower()
        if normalized not in self._allowed:
            raise InvalidTargetError(f"collection '{collection_name}' is not allowed")
        return normalized

    def upsert(self, collection_name: str, records: list[Record]) -> None:
        """
        Insert or overwrite every record of the batch, keyed by identifier.

        Args:
            collection_name: Target collection
            records: Records to persist

        Raises:
            InvalidTargetError: Before any storage access, if the name is rejected
            BatchUpsertError: If any record failed; nothing of the batch is kept
            PersistenceError: If the transaction cannot begin or commit
        """
        collection = self.validate_collection(collection_name)

        if not records:
            log.info("upsert_skipped_empty_batch", collection=collection)
            return

        log.info("upsert_started", collection=collection, records=len(records))
        started = time.monotonic()
        deadline = started + self._transaction_timeout

        try:
            self._backend.begin()
        except PersistenceError as e:
            log.error("upsert_begin_failed", collection=collection, error=str(e))
            raise

        try:
            record_errors = self._upsert_records(collection, records, deadline)
        except BaseException:
            self._rollback_quietly(collection)
            raise

        if record_errors:
            log.warning(
                "upsert_rolled_back",
                collection=collection,
                failed=len(record_errors),
                records=len(records),
            )
            try:
                self._backend.rollback()
            except PersistenceError as e:
                log.error("rollback_failed", collection=collection, error=str(e))
                record_errors.append(RecordError(index=-1, identifier=None, message=str(e)))
            raise BatchUpsertError(collection, record_errors)

        try:
            self._backend.commit()
        except PersistenceError as commit_error:
            log.error("commit_failed", collection=collection, error=str(commit_error))
            try:
                self._backend.rollback()
            except PersistenceError as rollback_error:
                log.error("rollback_failed", collection=collection, error=str(rollback_error))
                raise PersistenceError(
                    f"commit of '{collection}' failed: {commit_error}; "
                    f"rollback also failed: {rollback_error}"
                ) from commit_error
            raise PersistenceError(f"commit of '{collection}' failed: {commit_error}") from commit_error

        log.info(
            "upsert_committed",
            collection=collection,
            records=len(records),
            duration_seconds=round(time.monotonic() - started, 3),
        )

    def _upsert_records(
        self, collection: str, records: list[Record], deadline: float
    ) -> list[RecordError]:
        record_errors: list[RecordError] = []

        for index, record in enumerate(records):
            try:
                identifier = extract_identifier(record, self._id_field)
            except IdentifierError as e:
                log.warning("record_identifier_invalid", collection=collection, index=index, error=str(e))
                record_errors.append(RecordError(index=index, identifier=None, message=str(e)))
                continue

            try:
                payload = canonical_json(record)
            except (TypeError, ValueError) as e:
                log.warning("record_serialization_failed", collection=collection, index=index, error=str(e))
                record_errors.append(
                    RecordError(index=index, identifier=identifier, message=f"serialization: {e}")
                )
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                record_errors.append(
                    RecordError(
                        index=index,
                        identifier=identifier,
                        message=f"transaction timeout of {self._transaction_timeout}s exceeded",
                    )
                )
                continue

            try:
                self._backend.execute_upsert(
                    collection, identifier, payload, timeout=min(self._statement_timeout, remaining)
                )
            except PersistenceError as e:
                log.warning(
                    "record_upsert_failed",
                    collection=collection,
                    index=index,
                    identifier=identifier,
                    error=str(e),
                )
                record_errors.append(RecordError(index=index, identifier=identifier, message=str(e)))

        return record_errors

    def _rollback_quietly(self, collection: str) -> None:
        try:
            self._backend.rollback()
        except PersistenceError as e:
            log.error("rollback_failed", collection=collection, error=str(e))
