"""Centralized provider module wiring the sync components from configuration.

This module provides factory functions for the remote source client, the
persistence backend, the notifier and the assembled sync cycle. Swap an
implementation here without changing the pipeline code.

Default implementations:
- Source: SourceClient (requests session, JSON POST pagination)
- Storage: PostgresBackend (psycopg), SqliteBackend for local runs
- Notifier: TelegramNotifier (Bot API over requests)
"""

from threading import Event

import structlog

from recordsync.errors import CollectionCancelledError
from recordsync.ingestion.collector import ConcurrentCollector
from recordsync.ingestion.source_client import SourceClient
from recordsync.models.config import AppConfig, NotifierConfig, SourceConfig, StorageConfig
from recordsync.notify.telegram_notifier import TelegramNotifier
from recordsync.storage.backends import PersistenceBackend, create_backend
from recordsync.storage.upserter import BatchUpserter
from recordsync.sync.change_tracker import ChangeTracker, SeenSet
from recordsync.sync.sync_cycle import CollectionSource, SyncCycle

log = structlog.stdlib.get_logger()

PRIMARY_COLLECTION = "contracts"
AUXILIARY_COLLECTION = "states"


def get_source_client(config: SourceConfig) -> SourceClient:
    """Get the client for the paginated primary collection.

    Args:
        config: Source configuration

    Returns:
        SourceClient bound to the contracts endpoint
    """
    return SourceClient(
        collection_url=str(config.contracts_url),
        login_url=str(config.login_url),
        username=config.username,
        password=config.password,
        filter_body=config.contracts_filter,
        timeout=config.request_timeout,
    )


def get_backend(config: StorageConfig) -> PersistenceBackend:
    """Get the configured persistence backend.

    Raises:
        ValueError: If the backend type is not supported
    """
    log.info("initializing_backend", backend=config.backend)
    return create_backend(config.backend, config.dsn)


def get_notifier(
    config: NotifierConfig, cancel_event: Event | None = None
) -> TelegramNotifier | None:
    """Get the Telegram notifier, or None when it is not configured.

    A set cancel_event stops pending delivery retries.
    """
    if not config.enabled:
        log.info("notifier_disabled")
        return None

    return TelegramNotifier(
        bot_token=config.telegram_bot_token,
        chat_id=config.telegram_chat_id,
        max_retries=config.max_retries,
        retry_delay=config.retry_delay,
        cancel_event=cancel_event,
    )


def build_sync_cycle(
    config: AppConfig,
    seen_set: SeenSet,
    client: SourceClient | None = None,
    backend: PersistenceBackend | None = None,
) -> SyncCycle:
    """Assemble a SyncCycle for the contracts and states collections.

    Args:
        config: Application configuration
        seen_set: Process-lifetime SeenSet shared across cycles
        client: Optional source client (built from config if None)
        backend: Optional persistence backend (built from config if None)

    Returns:
        SyncCycle ready to run
    """
    client = client or get_source_client(config.source)
    backend = backend or get_backend(config.storage)

    for name in (PRIMARY_COLLECTION, AUXILIARY_COLLECTION):
        backend.ensure_collection(name)

    collector = ConcurrentCollector(
        client,
        page_size=config.source.page_size,
        max_concurrency=config.source.max_concurrency,
    )
    states_url = str(config.source.states_url)
    states_filter = config.source.states_filter

    def fetch_contracts(cancel_event: Event | None) -> list:
        return collector.fetch_all(cancel_event=cancel_event)

    def fetch_states(cancel_event: Event | None) -> list:
        if cancel_event is not None and cancel_event.is_set():
            raise CollectionCancelledError("states fetch cancelled by caller", url=states_url)
        return client.fetch_collection(states_url, states_filter)

    upserter = BatchUpserter(
        backend,
        allowed_collections=config.storage.allowed_collections,
        transaction_timeout=config.storage.transaction_timeout,
        statement_timeout=config.storage.statement_timeout,
    )

    return SyncCycle(
        primary=CollectionSource(PRIMARY_COLLECTION, fetch_contracts),
        auxiliary=[CollectionSource(AUXILIARY_COLLECTION, fetch_states)],
        tracker=ChangeTracker(seen_set),
        upserter=upserter,
        login=client.login,
        defer_seen_update=config.sync.defer_seen_update,
    )
