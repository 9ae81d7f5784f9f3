"""Sync cycle orchestrating fetch, classification and persistence."""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Event, Lock
from typing import Callable

import structlog

from recordsync.errors import CycleInProgressError
from recordsync.models.record import Record
from recordsync.storage.upserter import BatchUpserter
from recordsync.sync.change_tracker import ChangeTracker
from recordsync.sync.models import CycleReport, CycleState

log = structlog.stdlib.get_logger()


@dataclass(frozen=True)
class CollectionSource:
    """A named collection and the callable that retrieves all of its records."""

    name: str
    fetch: Callable[[Event | None], list[Record]]


class SyncCycle:
    """Runs one fetch, classify and persist pass per call.

    States: idle -> fetching -> classifying -> persisting -> done | failed.
    Only the primary collection is classified; auxiliary collections are
    persisted alongside it but never reported as new.
    """

    def __init__(
        self,
        primary: CollectionSource,
        tracker: ChangeTracker,
        upserter: BatchUpserter,
        auxiliary: list[CollectionSource] | None = None,
        login: Callable[[], None] | None = None,
        defer_seen_update: bool = False,
    ):
        """
        Initialize the sync cycle.

        Args:
            primary: Collection whose new records are reported
            tracker: Change tracker holding the process SeenSet
            upserter: Batch upserter for every collection
            auxiliary: Reference collections persisted with the primary one
            login: Optional hook establishing the remote session each cycle
            defer_seen_update: Remember primary identifiers only after every
                upsert committed. When False the SeenSet is updated during
                classification and is not reverted if persistence fails.
        """
        self._primary = primary
        self._auxiliary = list(auxiliary or [])
        self._tracker = tracker
        self._upserter = upserter
        self._login = login
        self._defer_seen_update = defer_seen_update
        self._lock = Lock()
        self._state = CycleState.IDLE
        self._last_report: CycleReport | None = None

        names = [primary.name] + [source.name for source in self._auxiliary]
        if len(set(names)) != len(names):
            raise ValueError(f"collection names must be unique: {names}")
        for name in names:
            self._upserter.validate_collection(name)

        log.info(
            "sync_cycle_initialized",
            primary=primary.name,
            auxiliary=[source.name for source in self._auxiliary],
            defer_seen_update=defer_seen_update,
        )

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    def run_cycle(self, cancel_event: Event | None = None) -> CycleReport:
        """
        Run one complete cycle.

        Args:
            cancel_event: Optional cancellation signal forwarded to the fetchers

        Returns:
            CycleReport in the done state with the new primary records

        Raises:
            CycleInProgressError: If another cycle is running
            TransportError: If any collection fetch failed (nothing persisted)
            InvalidTargetError, PersistenceError: If any upsert failed
        """
        if not self._lock.acquire(blocking=False):
            raise CycleInProgressError("a sync cycle is already running")

        report = CycleReport(
            cycle_id=uuid.uuid4().hex[:12],
            start_time=datetime.now(timezone.utc),
        )
        try:
            with structlog.contextvars.bound_contextvars(cycle_id=report.cycle_id):
                return self._run(report, cancel_event)
        finally:
            self._lock.release()

    def _run(self, report: CycleReport, cancel_event: Event | None) -> CycleReport:
        log.info("sync_cycle_started")

        try:
            self._transition(report, CycleState.FETCHING)
            if self._login is not None:
                self._login()

            fetched: dict[str, list[Record]] = {}
            for source in [self._primary] + self._auxiliary:
                fetched[source.name] = source.fetch(cancel_event)
                report.fetched_counts[source.name] = len(fetched[source.name])
                log.info("collection_retrieved", collection=source.name, records=len(fetched[source.name]))

            self._transition(report, CycleState.CLASSIFYING)
            primary_records = fetched[self._primary.name]
            report.new_records = self._tracker.classify(
                primary_records, remember=not self._defer_seen_update
            )

            self._transition(report, CycleState.PERSISTING)
            for name, records in fetched.items():
                self._upserter.upsert(name, records)
                report.persisted_collections.append(name)

            if self._defer_seen_update:
                self._tracker.remember(primary_records)

            self._transition(report, CycleState.DONE)

        except Exception as e:
            failed_in = self._state
            self._transition(report, CycleState.FAILED)
            report.error = str(e)
            self._finish(report)
            log.error(
                "sync_cycle_failed",
                failed_in=failed_in.value,
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=report.duration_seconds,
            )
            raise

        self._finish(report)
        log.info(
            "sync_cycle_completed",
            new_records=report.new_count,
            fetched=report.fetched_counts,
            duration_seconds=report.duration_seconds,
        )
        return report

    def _transition(self, report: CycleReport, state: CycleState) -> None:
        log.debug("sync_cycle_transition", from_state=self._state.value, to_state=state.value)
        self._state = state
        report.state = state

    def _finish(self, report: CycleReport) -> None:
        report.end_time = datetime.now(timezone.utc)
        report.duration_seconds = (report.end_time - report.start_time).total_seconds()
        self._last_report = report
