"""Telegram Bot API notifier for cycle results."""

import json
from threading import Event
from typing import Any, Protocol

import requests
import structlog
from requests.exceptions import RequestException

from recordsync.errors import NotifierError
from recordsync.utils.retry import exponential_backoff_retry

log = structlog.stdlib.get_logger()

# Bot API limit for a single text message
MAX_MESSAGE_LENGTH = 4096


class Notifier(Protocol):
    """Outbound channel for cycle results."""

    def notify(self, text: str) -> None:
        ...

    def send_document(self, name: str, data: bytes) -> None:
        ...

    def send_json_document(self, document: Any, name: str = "document.json") -> None:
        ...


class TelegramNotifier:
    """Sends messages and documents to one Telegram chat."""

    def __init__(
        self,
        bot_token: str,
        chat_id: int,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        timeout: float = 30.0,
        api_base_url: str = "https://api.telegram.org",
        session: requests.Session | None = None,
        cancel_event: Event | None = None,
    ):
        """
        Initialize the notifier.

        Args:
            bot_token: Bot API token
            chat_id: Target chat
            max_retries: Retries per API call after the first attempt
            retry_delay: Base delay for exponential backoff in seconds
            timeout: HTTP timeout per call in seconds
            api_base_url: Bot API base URL
            session: Optional requests session
            cancel_event: Optional shutdown event that aborts pending retries
        """
        if not bot_token:
            raise ValueError("bot_token cannot be empty")
        if chat_id == 0:
            raise ValueError("chat_id cannot be 0")

        self._base_url = f"{api_base_url.rstrip('/')}/bot{bot_token}"
        self._chat_id = chat_id
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._timeout = timeout
        self._session = session or requests.Session()
        self._cancel_event = cancel_event
        log.info("telegram_notifier_initialized", chat_id=chat_id)

    @property
    def chat_id(self) -> int:
        return self._chat_id

    def notify(self, text: str) -> None:
        """Send a text message, truncated to the Bot API length limit."""
        if len(text) > MAX_MESSAGE_LENGTH:
            text = text[: MAX_MESSAGE_LENGTH - 1] + "…"
        self._call("sendMessage", data={"chat_id": self._chat_id, "text": text})
        log.info("telegram_message_sent", chat_id=self._chat_id, length=len(text))

    def send_document(self, name: str, data: bytes) -> None:
        """Send raw bytes as a file attachment."""
        self._call(
            "sendDocument",
            data={"chat_id": self._chat_id},
            files={"document": (name, data)},
        )
        log.info("telegram_document_sent", chat_id=self._chat_id, name=name, size=len(data))

    def send_json_document(self, document: Any, name: str = "document.json") -> None:
        """Serialize document as indented JSON and send it as a file."""
        try:
            payload = json.dumps(document, ensure_ascii=False, indent=2).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise NotifierError(f"failed to serialize document {name}: {e}") from e
        self.send_document(name, payload)

    def _call(self, method: str, data: dict[str, Any], files: dict[str, Any] | None = None) -> dict:
        @exponential_backoff_retry(
            max_retries=self._max_retries,
            base_delay=self._retry_delay,
            max_delay=60.0,
            exceptions=(NotifierError,),
            cancel_event=self._cancel_event,
        )
        def send() -> dict:
            try:
                resp = self._session.post(
                    f"{self._base_url}/{method}", data=data, files=files, timeout=self._timeout
                )
            except RequestException as e:
                raise NotifierError(f"{method} request failed: {e}") from e

            try:
                body = resp.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}

            if resp.status_code != 200 or not body.get("ok", False):
                description = body.get("description") or resp.text[:200]
                raise NotifierError(f"{method} returned {resp.status_code}: {description}")
            return body

        return send()
