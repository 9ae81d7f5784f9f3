"""Property-based tests for all-or-nothing batch upserts.

**Feature: record-sync, Property 11: Batch atomicity**
**Feature: record-sync, Property 12: Upsert overwrites by identifier**
**Feature: record-sync, Property 13: Collection allow-list**
"""

import json
import sqlite3
import time
from unittest.mock import MagicMock

import psycopg
import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from recordsync.errors import BatchUpsertError, InvalidTargetError, PersistenceError
from recordsync.storage.backends import PersistenceBackend, PostgresBackend, SqliteBackend
from recordsync.storage.upserter import BatchUpserter, canonical_json

log = structlog.stdlib.get_logger()

ALLOWED = ["contracts", "states", "lots"]


class RecordingBackend(PersistenceBackend):
    """Backend double recording every call, with optional injected failures."""

    def __init__(self, fail_ids=(), fail_commit=False, fail_rollback=False):
        self.calls: list[tuple] = []
        self.fail_ids = set(fail_ids)
        self.fail_commit = fail_commit
        self.fail_rollback = fail_rollback

    def begin(self):
        self.calls.append(("begin",))

    def execute_upsert(self, collection, identifier, payload, timeout):
        self.calls.append(("upsert", collection, identifier, payload))
        if identifier in self.fail_ids:
            raise PersistenceError(f"statement failed for {identifier}")

    def commit(self):
        self.calls.append(("commit",))
        if self.fail_commit:
            raise PersistenceError("commit failed: connection lost")

    def rollback(self):
        self.calls.append(("rollback",))
        if self.fail_rollback:
            raise PersistenceError("rollback failed: connection lost")

    def ensure_collection(self, collection):
        self.calls.append(("ensure", collection))

    def fetch_payload(self, collection, identifier):
        return None

    def close(self):
        pass


@pytest.fixture
def sqlite_backend():
    backend = SqliteBackend()
    for name in ALLOWED:
        backend.ensure_collection(name)
    yield backend
    backend.close()


def _stored(backend: SqliteBackend, collection: str, identifier: int):
    payload = backend.fetch_payload(collection, identifier)
    return None if payload is None else json.loads(payload)


@given(
    records=st.lists(
        st.fixed_dictionaries(
            {"id": st.integers(min_value=1, max_value=10_000), "name": st.text(max_size=20)}
        ),
        max_size=30,
    )
)
@settings(max_examples=50, deadline=None)
def test_property_12_last_record_per_identifier_wins(records: list[dict]):
    """Property 12: Upsert overwrites by identifier.

    After an upsert, each identifier of the batch maps to the last record
    carrying it, and the collection holds one row per distinct identifier.

    **Feature: record-sync, Property 12: Upsert overwrites by identifier**
    """
    backend = SqliteBackend()
    backend.ensure_collection("contracts")
    try:
        BatchUpserter(backend, ALLOWED).upsert("contracts", records)

        expected = {record["id"]: record for record in records}
        assert backend.count("contracts") == len(expected)
        for identifier, record in expected.items():
            assert _stored(backend, "contracts", identifier) == record
    finally:
        backend.close()


def test_upsert_overwrites_across_batches(sqlite_backend):
    upserter = BatchUpserter(sqlite_backend, ALLOWED)

    upserter.upsert("contracts", [{"id": 1, "status": "draft"}, {"id": 2, "status": "draft"}])
    upserter.upsert("contracts", [{"id": 1, "status": "signed"}])

    assert _stored(sqlite_backend, "contracts", 1) == {"id": 1, "status": "signed"}
    assert _stored(sqlite_backend, "contracts", 2) == {"id": 2, "status": "draft"}
    assert sqlite_backend.count("contracts") == 2


def test_property_11_one_bad_record_rolls_back_the_batch(sqlite_backend):
    """Property 11: Batch atomicity.

    When record 3 of 5 has an unparseable identifier nothing of the batch is
    persisted and the error names that record.

    **Feature: record-sync, Property 11: Batch atomicity**
    """
    upserter = BatchUpserter(sqlite_backend, ALLOWED)
    records = [{"id": 1}, {"id": 2}, {"id": "three"}, {"id": 4}, {"id": 5}]

    with pytest.raises(BatchUpsertError) as exc_info:
        upserter.upsert("contracts", records)

    error = exc_info.value
    assert error.collection == "contracts"
    assert [e.index for e in error.record_errors] == [2]
    assert error.record_errors[0].identifier is None
    assert "record 3:" in str(error)
    assert sqlite_backend.count("contracts") == 0


def test_batch_failure_keeps_previously_committed_rows(sqlite_backend):
    upserter = BatchUpserter(sqlite_backend, ALLOWED)
    upserter.upsert("contracts", [{"id": 1, "v": 1}])

    with pytest.raises(BatchUpsertError):
        upserter.upsert("contracts", [{"id": 1, "v": 2}, {"id": 2, "bad": {1, 2}}])

    assert _stored(sqlite_backend, "contracts", 1) == {"id": 1, "v": 1}
    assert _stored(sqlite_backend, "contracts", 2) is None


@given(bad_indexes=st.sets(st.integers(min_value=0, max_value=9), min_size=1))
@settings(max_examples=30, deadline=None)
def test_every_failed_record_is_reported(bad_indexes: set[int]):
    """All per-record failures are collected before the rollback."""
    records = [{"id": i + 1} for i in range(10)]
    backend = RecordingBackend(fail_ids={i + 1 for i in bad_indexes})

    with pytest.raises(BatchUpsertError) as exc_info:
        BatchUpserter(backend, ALLOWED).upsert("contracts", records)

    assert [e.index for e in exc_info.value.record_errors] == sorted(bad_indexes)
    assert [c[0] for c in backend.calls].count("upsert") == 10
    assert backend.calls[-1] == ("rollback",)
    assert ("commit",) not in backend.calls


def test_empty_batch_touches_nothing():
    backend = RecordingBackend()

    BatchUpserter(backend, ALLOWED).upsert("contracts", [])

    assert backend.calls == []


@given(
    name=st.one_of(
        st.sampled_from(["users", "contracts; DROP TABLE states", "", "con tracts", "lots2"]),
        st.text(max_size=20).filter(lambda s: s.lower() not in ALLOWED),
    )
)
@settings(max_examples=50)
def test_property_13_disallowed_collections_never_reach_storage(name: str):
    """Property 13: Collection allow-list.

    A collection name that is not allow-listed fails before any backend call.

    **Feature: record-sync, Property 13: Collection allow-list**
    """
    backend = RecordingBackend()

    with pytest.raises(InvalidTargetError):
        BatchUpserter(backend, ALLOWED).upsert(name, [{"id": 1}])

    assert backend.calls == []


@pytest.mark.parametrize("name", ["contracts", "CONTRACTS", "States", "lots"])
def test_allow_list_is_case_insensitive(name: str):
    backend = RecordingBackend()
    upserter = BatchUpserter(backend, ALLOWED)

    upserter.upsert(name, [{"id": 1}])

    assert backend.calls[1][1] == name.lower()
    assert upserter.validate_collection(name) == name.lower()


def test_commit_failure_rolls_back_and_raises():
    backend = RecordingBackend(fail_commit=True)

    with pytest.raises(PersistenceError, match="commit of 'contracts' failed"):
        BatchUpserter(backend, ALLOWED).upsert("contracts", [{"id": 1}])

    assert [c[0] for c in backend.calls] == ["begin", "upsert", "commit", "rollback"]


def test_commit_and_rollback_failure_reports_both():
    backend = RecordingBackend(fail_commit=True, fail_rollback=True)

    with pytest.raises(PersistenceError, match="rollback also failed"):
        BatchUpserter(backend, ALLOWED).upsert("contracts", [{"id": 1}])


def test_rollback_failure_is_added_to_record_errors():
    backend = RecordingBackend(fail_ids={1}, fail_rollback=True)

    with pytest.raises(BatchUpsertError) as exc_info:
        BatchUpserter(backend, ALLOWED).upsert("contracts", [{"id": 1}])

    assert [e.index for e in exc_info.value.record_errors] == [0, -1]


def test_expired_transaction_budget_fails_records(monkeypatch):
    backend = RecordingBackend()
    upserter = BatchUpserter(backend, ALLOWED, transaction_timeout=0.001)
    # Batch start and the first record see t=0, everything after sees t=10
    ticks = []

    def clock():
        ticks.append(None)
        return 0.0 if len(ticks) <= 2 else 10.0

    monkeypatch.setattr("recordsync.storage.upserter.time.monotonic", clock)

    with pytest.raises(BatchUpsertError) as exc_info:
        upserter.upsert("contracts", [{"id": 1}, {"id": 2}])

    assert [e.index for e in exc_info.value.record_errors] == [1]
    assert "timeout" in exc_info.value.record_errors[0].message


def test_statement_timeout_is_bounded_by_remaining_budget():
    timeouts = []

    class TimeoutRecordingBackend(RecordingBackend):
        def execute_upsert(self, collection, identifier, payload, timeout):
            timeouts.append(timeout)

    BatchUpserter(
        TimeoutRecordingBackend(), ALLOWED, transaction_timeout=30.0, statement_timeout=5.0
    ).upsert("contracts", [{"id": 1}])

    assert timeouts == [5.0]


def test_canonical_json_is_deterministic():
    assert canonical_json({"b": 1, "a": "ü"}) == '{"a":"ü","b":1}'

    with pytest.raises(ValueError):
        canonical_json({"id": 1, "score": float("nan")})


def test_sqlite_backend_rejects_nested_begin(sqlite_backend):
    sqlite_backend.begin()
    try:
        with pytest.raises(PersistenceError, match="already open"):
            sqlite_backend.begin()
    finally:
        sqlite_backend.rollback()


def test_sqlite_statement_timeout_interrupts_the_upsert(sqlite_backend):
    # Check the deadline on every VM instruction
    sqlite_backend.PROGRESS_STEPS = 1
    sqlite_backend.begin()
    sqlite_backend.execute_upsert("contracts", 1, '{"id":1}', 5.0)

    with pytest.raises(PersistenceError, match="timed out"):
        sqlite_backend.execute_upsert("contracts", 2, '{"id":2}', -1.0)

    sqlite_backend.rollback()
    assert sqlite_backend.count("contracts") == 0

    sqlite_backend.begin()
    sqlite_backend.execute_upsert("contracts", 3, '{"id":3}', 5.0)
    sqlite_backend.commit()
    assert _stored(sqlite_backend, "contracts", 3) == {"id": 3}


def test_aborted_sqlite_transaction_is_not_rolled_back_twice(sqlite_backend):
    sqlite_backend.begin()
    sqlite_backend._conn.execute("SAVEPOINT record_upsert")
    # What SQLite does when an interrupted write aborts the transaction
    sqlite_backend._conn.execute("ROLLBACK")

    sqlite_backend._discard_savepoint()

    with pytest.raises(PersistenceError, match="no open transaction"):
        sqlite_backend.execute_upsert("contracts", 1, '{"id":1}', 5.0)
    sqlite_backend.rollback()
    sqlite_backend.begin()
    sqlite_backend.rollback()


def test_sqlite_lock_wait_is_bounded_by_statement_timeout(tmp_path):
    path = str(tmp_path / "records.db")
    backend = SqliteBackend(path, busy_timeout=30.0)
    backend.ensure_collection("contracts")
    blocker = sqlite3.connect(path, isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        backend.begin()
        started = time.monotonic()
        with pytest.raises(PersistenceError, match="locked"):
            backend.execute_upsert("contracts", 1, '{"id":1}', 0.2)
        assert time.monotonic() - started < 5.0

        blocker.rollback()
        backend.execute_upsert("contracts", 1, '{"id":1}', 5.0)
        backend.commit()
        assert backend.count("contracts") == 1
    finally:
        blocker.close()
        backend.close()


def test_postgres_statement_cancel_is_reported_as_timeout():
    cursor = MagicMock()
    cursor.execute.side_effect = [
        None,
        psycopg.errors.QueryCanceled("canceling statement due to statement timeout"),
    ]
    conn = MagicMock()
    conn.transaction.return_value.__exit__.return_value = False
    conn.cursor.return_value.__enter__.return_value = cursor
    conn.cursor.return_value.__exit__.return_value = False

    backend = PostgresBackend("postgresql://unused")
    backend._conn = conn
    backend._in_transaction = True

    with pytest.raises(PersistenceError, match="timed out after 0.250s"):
        backend.execute_upsert("contracts", 7, '{"id":7}', 0.25)

    set_timeout = cursor.execute.call_args_list[0]
    assert set_timeout.args[1] == ("250ms",)
    assert "set_config('statement_timeout'" in set_timeout.args[0]
