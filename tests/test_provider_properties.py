"""Integration tests for the provider wiring.

**Feature: record-sync, Property 18: Assembled cycle end to end**
"""

import json
from threading import Event

import pytest
import structlog

from recordsync.errors import CollectionCancelledError
from recordsync.models.config import AppConfig, SourceConfig, StorageConfig
from recordsync.models.record import PageResult
from recordsync.providers import (
    AUXILIARY_COLLECTION,
    PRIMARY_COLLECTION,
    build_sync_cycle,
    get_backend,
    get_source_client,
)
from recordsync.storage.backends import PostgresBackend, SqliteBackend
from recordsync.sync.change_tracker import SeenSet

log = structlog.stdlib.get_logger()


class FakeSourceClient:
    """Stands in for SourceClient with an in-memory remote collection."""

    def __init__(self, contracts, states):
        self.contracts = contracts
        self.states = states
        self.logins = 0
        self.collection_requests = []

    def login(self):
        self.logins += 1

    def fetch_page(self, offset, limit, want_count=False, cancel_event=None):
        items = self.contracts[offset : offset + limit]
        return PageResult(items=items, total_count=len(self.contracts) if want_count else None)

    def fetch_collection(self, url, filter_body=None):
        self.collection_requests.append((url, filter_body))
        return self.states


@pytest.fixture
def app_config():
    return AppConfig(
        source=SourceConfig(username="operator", password="secret", page_size=3, max_concurrency=2),
        storage=StorageConfig(backend="sqlite", dsn=":memory:"),
    )


def test_property_18_assembled_cycle_end_to_end(app_config):
    """Property 18: Assembled cycle end to end.

    The cycle built from configuration logs in, pages through contracts,
    fetches states once with the configured filter, persists both
    collections and reports new contracts across cycles.

    **Feature: record-sync, Property 18: Assembled cycle end to end**
    """
    contracts = [{"id": i, "number": f"C-{i}"} for i in range(10, 0, -1)]
    states = [{"id": 100, "code": "signed"}]
    client = FakeSourceClient(contracts, states)
    backend = SqliteBackend()
    seen_set = SeenSet()

    cycle = build_sync_cycle(app_config, seen_set, client=client, backend=backend)
    report = cycle.run_cycle()

    assert client.logins == 1
    assert client.collection_requests == [
        (str(app_config.source.states_url), {"categoryCode": "contractstagesupplier"})
    ]
    assert [r["id"] for r in report.new_records] == list(range(1, 11))
    assert report.fetched_counts == {PRIMARY_COLLECTION: 10, AUXILIARY_COLLECTION: 1}
    assert backend.count(PRIMARY_COLLECTION) == 10
    assert json.loads(backend.fetch_payload(AUXILIARY_COLLECTION, 100)) == states[0]

    client.contracts = [{"id": 11, "number": "C-11"}] + contracts
    second = cycle.run_cycle()

    assert second.new_records == [{"id": 11, "number": "C-11"}]
    assert client.logins == 2
    assert backend.count(PRIMARY_COLLECTION) == 11


def test_cancelled_cycle_skips_states_request(app_config):
    client = FakeSourceClient([{"id": 1}], [{"id": 100}])
    cancel = Event()
    cancel.set()

    cycle = build_sync_cycle(app_config, SeenSet(), client=client, backend=SqliteBackend())

    with pytest.raises(CollectionCancelledError):
        cycle.run_cycle(cancel_event=cancel)

    assert client.collection_requests == []


def test_get_backend_selects_implementation():
    assert isinstance(get_backend(StorageConfig(backend="sqlite", dsn=":memory:")), SqliteBackend)

    # The postgres backend connects lazily, so construction needs no server
    backend = get_backend(StorageConfig(backend="postgres", dsn="postgresql://localhost/none"))
    assert isinstance(backend, PostgresBackend)


def test_get_source_client_uses_contracts_endpoint():
    config = SourceConfig(username="operator", password="secret", request_timeout=7)

    client = get_source_client(config)

    assert client.session.headers["X-Requested-With"] == "XMLHttpRequest"
