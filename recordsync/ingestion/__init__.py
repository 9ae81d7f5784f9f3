"""Remote source client and concurrent page collection"""

from recordsync.ingestion.collector import ConcurrentCollector
from recordsync.ingestion.source_client import PageFetcher, SourceClient

__all__ = ["ConcurrentCollector", "PageFetcher", "SourceClient"]
