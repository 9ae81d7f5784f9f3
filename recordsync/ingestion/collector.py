"""Bounded-concurrency pagination that merges pages into a deduplicated snapshot."""

import math
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from threading import Event

import structlog

from recordsync.errors import CollectionCancelledError
from recordsync.ingestion.source_client import PageFetcher
from recordsync.models.record import CollectionSnapshot, Record

log = structlog.stdlib.get_logger()


class ConcurrentCollector:
    """Fetches every page of a collection with a fixed number of workers.

    Page 0 is fetched first, on the calling thread, because it is the only
    response that carries the total record count. The remaining pages fan out
    to a thread pool once the page count is known.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        page_size: int,
        max_concurrency: int = 5,
        id_field: str = "id",
    ):
        """
        Initialize the collector.

        Args:
            fetcher: Page source
            page_size: Records requested per page
            max_concurrency: Maximum page requests in flight
            id_field: Identifier field used for deduplication
        """
        if page_size <= 0:
            raise ValueError(f"page_size must be > 0, got {page_size}")
        if max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be > 0, got {max_concurrency}")

        self._fetcher = fetcher
        self._page_size = page_size
        self._max_concurrency = max_concurrency
        self._id_field = id_field

    def fetch_all(
        self,
        total_pages: int | None = None,
        cancel_event: Event | None = None,
    ) -> list[Record]:
        """
        Retrieve all pages and merge them by identifier.

        Args:
            total_pages: Optional upper bound on the number of pages to fetch.
                When None the page count is derived from the first response.
            cancel_event: Optional caller cancellation signal

        Returns:
            Deduplicated records ordered by ascending identifier

        Raises:
            TransportError: The first page failure; remaining fetches are cancelled
            CollectionCancelledError: If cancel_event fires before completion
        """
        snapshot = CollectionSnapshot(self._id_field)

        self._raise_if_cancelled(cancel_event)
        first_page = self._fetcher.fetch_page(
            0, self._page_size, want_count=True, cancel_event=cancel_event
        )
        snapshot.merge(first_page.items)

        total_count = first_page.total_count or 0
        pages = math.ceil(total_count / self._page_size)
        if total_pages is not None:
            pages = min(pages, total_pages)

        if pages <= 1:
            log.info("collection_fetched", pages=1, records=len(snapshot))
            return snapshot.to_sorted_list()

        log.info(
            "collection_fan_out_started",
            total_count=total_count,
            pages=pages,
            max_concurrency=self._max_concurrency,
        )

        # Internal stop signal shared by all workers; set on first failure or
        # when the caller cancels.
        stop = Event()

        def fetch_and_merge(page_index: int) -> int:
            if stop.is_set():
                raise CollectionCancelledError(f"page {page_index} skipped after cancellation")
            result = self._fetcher.fetch_page(
                page_index * self._page_size, self._page_size, want_count=False, cancel_event=stop
            )
            if stop.is_set():
                raise CollectionCancelledError(f"page {page_index} discarded after cancellation")
            return snapshot.merge(result.items)

        with ThreadPoolExecutor(
            max_workers=self._max_concurrency, thread_name_prefix="page-fetch"
        ) as executor:
            futures: dict[Future, int] = {
                executor.submit(fetch_and_merge, index): index for index in range(1, pages)
            }
            error = self._wait_for_pages(futures, stop, cancel_event)

        if error is not None:
            raise error

        records = snapshot.to_sorted_list()
        log.info("collection_fetched", pages=pages, records=len(records))
        return records

    def _wait_for_pages(
        self,
        futures: dict[Future, int],
        stop: Event,
        cancel_event: Event | None,
    ) -> BaseException | None:
        """Join the page futures, returning the error that stopped the collection."""
        pending = set(futures)
        while pending:
            done, pending = wait(pending, timeout=0.1, return_when=FIRST_EXCEPTION)

            for future in done:
                exc = future.exception()
                if exc is None:
                    continue
                if isinstance(exc, CollectionCancelledError) and stop.is_set():
                    continue
                log.error("page_fetch_failed", page=futures[future], error=str(exc))
                return self._stop_all(exc, stop, pending)

            if cancel_event is not None and cancel_event.is_set():
                log.warning("collection_cancelled", pending_pages=len(pending))
                return self._stop_all(
                    CollectionCancelledError("collection fetch cancelled by caller"), stop, pending
                )

        return None

    @staticmethod
    def _stop_all(
        error: BaseException, stop: Event, pending: set[Future]
    ) -> BaseException:
        stop.set()
        for future in pending:
            future.cancel()
        return error

    @staticmethod
    def _raise_if_cancelled(cancel_event: Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise CollectionCancelledError("collection fetch cancelled by caller")
