"""Concurrent fetch, dedupe and upsert pipeline for paginated remote records."""

__version__ = "0.1.0"
