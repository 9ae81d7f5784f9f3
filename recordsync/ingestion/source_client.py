"""HTTP client for the paginated remote record source."""

from threading import Event
from typing import Any, Protocol

import requests
import structlog
from requests.exceptions import RequestException

from recordsync.errors import CollectionCancelledError, TransportError
from recordsync.models.record import PageResult, Record

log = structlog.stdlib.get_logger()


class PageFetcher(Protocol):
    """Fetches one page of a collection."""

    def fetch_page(
        self,
        offset: int,
        limit: int,
        want_count: bool = False,
        cancel_event: Event | None = None,
    ) -> PageResult:
        ...


def build_page_request(
    offset: int, limit: int, want_count: bool, filter_body: dict[str, Any] | None = None
) -> dict[str, Any]:
    """
    Build the JSON body of a page request.

    Args:
        offset: Number of records to skip
        limit: Page size
        want_count: Ask the source to include the total collection size
        filter_body: Static filter for the collection

    Returns:
        Request body as a dict
    """
    return {
        "filter": dict(filter_body or {}),
        "order": [{"field": "id", "desc": True}],
        "skip": offset,
        "take": limit,
        "withCount": want_count,
    }


class SourceClient:
    """Client for the remote source over a shared authenticated requests session."""

    def __init__(
        self,
        collection_url: str,
        login_url: str | None = None,
        username: str | None = None,
        password: str | None = None,
        filter_body: dict[str, Any] | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        """
        Initialize the source client.

        Args:
            collection_url: Paginated endpoint served by fetch_page
            login_url: Endpoint used by login()
            username: Account username for login()
            password: Account password for login()
            filter_body: Static filter sent with every page request
            timeout: HTTP timeout per request in seconds
            session: Optional session to reuse (cookies are kept on it)
        """
        self._collection_url = collection_url
        self._login_url = login_url
        self._username = username
        self._password = password
        self._filter_body = dict(filter_body or {})
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Content-Type": "application/json",
                "X-Requested-With": "XMLHttpRequest",
            }
        )
        log.info("source_client_initialized", collection_url=collection_url)

    @property
    def session(self) -> requests.Session:
        return self._session

    def login(self) -> None:
        """
        Establish the authenticated session.

        Raises:
            TransportError: If the login request fails or is rejected
        """
        if not self._login_url:
            raise TransportError("login_url is not configured")

        log.info("source_login_started", login_url=self._login_url)
        body = {"username": self._username, "password": self._password, "remember": True}
        self._post(self._login_url, body, expect_json=False)
        log.info("source_login_succeeded")

    def fetch_page(
        self,
        offset: int,
        limit: int,
        want_count: bool = False,
        cancel_event: Event | None = None,
    ) -> PageResult:
        """
        Fetch one page of the collection.

        Args:
            offset: Number of records to skip (>= 0)
            limit: Page size (> 0)
            want_count: Request the total collection size
            cancel_event: Optional event; when set the request is not sent

        Returns:
            PageResult with the page items and, if requested, the total count

        Raises:
            ValueError: If offset or limit is out of range
            CollectionCancelledError: If cancel_event is already set
            TransportError: On connection failure, non-2xx status or bad payload
        """
        if offset < 0:
            raise ValueError(f"offset must be >= 0, got {offset}")
        if limit <= 0:
            raise ValueError(f"limit must be > 0, got {limit}")
        if cancel_event is not None and cancel_event.is_set():
            raise CollectionCancelledError(
                f"page request at offset {offset} cancelled", url=self._collection_url
            )

        body = build_page_request(offset, limit, want_count, self._filter_body)
        payload = self._post(self._collection_url, body)
        items = self._extract_items(payload, self._collection_url)

        total_count = None
        if want_count:
            total_count = payload.get("count")
            if isinstance(total_count, bool) or not isinstance(total_count, int) or total_count < 0:
                raise TransportError(
                    f"invalid 'count' in response: {total_count!r}", url=self._collection_url
                )

        log.debug(
            "page_fetched",
            url=self._collection_url,
            offset=offset,
            limit=limit,
            items=len(items),
            total_count=total_count,
        )
        return PageResult(items=items, total_count=total_count)

    def fetch_collection(self, url: str, filter_body: dict[str, Any] | None = None) -> list[Record]:
        """
        Fetch an unpaged collection with a single request.

        Raises:
            TransportError: On connection failure, non-2xx status or bad payload
        """
        payload = self._post(url, {"filter": dict(filter_body or {})})
        items = self._extract_items(payload, url)
        log.info("collection_fetched", url=url, items=len(items))
        return items

    def _post(self, url: str, body: dict[str, Any], expect_json: bool = True) -> dict[str, Any]:
        try:
            resp = self._session.post(url, json=body, timeout=self._timeout)
        except RequestException as e:
            log.error("source_request_failed", url=url, error=str(e))
            raise TransportError(f"POST {url} failed: {e}", url=url) from e

        if not 200 <= resp.status_code < 300:
            log.error("source_request_rejected", url=url, status_code=resp.status_code)
            raise TransportError(
                f"POST {url} returned status {resp.status_code}: {resp.text[:500]}",
                url=url,
                status_code=resp.status_code,
            )

        if not expect_json:
            return {}

        try:
            payload = resp.json()
        except ValueError as e:
            raise TransportError(
                f"POST {url} returned malformed JSON: {e}", url=url, status_code=resp.status_code
            ) from e

        if not isinstance(payload, dict):
            raise TransportError(
                f"POST {url} returned {type(payload).__name__}, expected an object",
                url=url,
                status_code=resp.status_code,
            )
        return payload

    @staticmethod
    def _extract_items(payload: dict[str, Any], url: str) -> list[Record]:
        items = payload.get("items")
        if items is None:
            return []
        if not isinstance(items, list):
            raise TransportError(f"'items' in response from {url} is not a list", url=url)
        for position, item in enumerate(items):
            if not isinstance(item, dict):
                raise TransportError(
                    f"item {position} in response from {url} is "
                    f"{type(item).__name__}, expected an object",
                    url=url,
                )
        return items
