"""Shared utilities for configuration, logging, identifiers and retries"""

from recordsync.utils.identifiers import extract_identifier
from recordsync.utils.retry import exponential_backoff_retry

__all__ = ["exponential_backoff_retry", "extract_identifier"]
