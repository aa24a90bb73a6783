"""Observer-side cache of published run status.

The reconciler never writes back to the channel or the run stores: the record
an execution unit publishes always wins over whatever is cached here.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime

from runledger.config import ReconcilerSettings
from runledger.orchestrator.channels import StatusChannel
from runledger.orchestrator.errors import StatusChannelError
from runledger.orchestrator.liveness import LivenessChecker, ProcessLivenessChecker, ProcessState
from runledger.orchestrator.models import (
    TERMINAL_RUN_STATUSES,
    CachedStatus,
    Liveness,
    RunDetail,
    RunStatus,
    RunSummary,
    StatusRecord,
)
from runledger.storage.common import utc_now

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = frozenset(status.value for status in TERMINAL_RUN_STATUSES)


@dataclass(slots=True)
class _Entry:
    record: StatusRecord
    fetched_at: datetime
    fetched_monotonic: float


class StatusReconciler:
    """Serve run status to observers from a cache fed by watch and polling."""

    def __init__(
        self,
        channel: StatusChannel,
        *,
        poll_interval_seconds: float = 15.0,
        stale_after_seconds: float = 90.0,
        stuck_task_after_seconds: float = 3_600.0,
        liveness: LivenessChecker | None = None,
    ) -> None:
        self.channel = channel
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.stuck_task_after_seconds = stuck_task_after_seconds
        self.liveness = liveness or ProcessLivenessChecker()
        self._cache: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._last_full_refresh: float | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        channel: StatusChannel,
        settings: ReconcilerSettings,
        *,
        liveness: LivenessChecker | None = None,
    ) -> StatusReconciler:
        return cls(
            channel,
            poll_interval_seconds=settings.poll_interval_seconds,
            stale_after_seconds=settings.stale_after_seconds,
            stuck_task_after_seconds=settings.stuck_task_after_seconds,
            liveness=liveness,
        )

    def start(self) -> None:
        """Follow channel changes on a background thread."""

        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._watch,
            name="runledger-status-watch",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None

    def ingest(self, record: StatusRecord) -> None:
        entry = _Entry(record=record, fetched_at=utc_now(), fetched_monotonic=time.monotonic())
        with self._lock:
            self._cache[record.run_id] = entry

    def forget(self, run_id: str) -> None:
        with self._lock:
            self._cache.pop(run_id, None)

    def refresh_all(self) -> int:
        """Poll the whole channel. Returns how many records were read."""

        try:
            records = self.channel.fetch_all()
        except StatusChannelError as error:
            logger.warning("Status refresh failed; serving cached records: %s", error)
            return 0
        for record in records:
            self.ingest(record)
        self._last_full_refresh = time.monotonic()
        return len(records)

    def get(self, run_id: str, *, fresh: bool = False) -> CachedStatus | None:
        """Cached status of one run; ``fresh`` reads through to the channel first."""

        with self._lock:
            entry = self._cache.get(run_id)
        expired = (
            entry is None
            or time.monotonic() - entry.fetched_monotonic >= self.poll_interval_seconds
        )
        if fresh or expired:
            try:
                record = self.channel.fetch(run_id)
            except StatusChannelError as error:
                logger.warning("Status fetch for run %s failed: %s", run_id, error)
            else:
                if record is not None:
                    self.ingest(record)
            with self._lock:
                entry = self._cache.get(run_id)
        if entry is None:
            return None
        return self._to_cached(entry)

    def list_runs(self, *, status: RunStatus | None = None) -> list[RunSummary]:
        if (
            self._last_full_refresh is None
            or time.monotonic() - self._last_full_refresh >= self.poll_interval_seconds
        ):
            self.refresh_all()
        with self._lock:
            entries = list(self._cache.values())
        summaries = [self._summary(self._to_cached(entry)) for entry in entries]
        if status is not None:
            summaries = [summary for summary in summaries if summary.status == status.value]
        return sorted(summaries, key=lambda summary: summary.updated_at, reverse=True)

    def get_run(self, run_id: str, *, fresh: bool = False) -> RunDetail | None:
        cached = self.get(run_id, fresh=fresh)
        if cached is None:
            return None
        return RunDetail(
            summary=self._summary(cached),
            record=cached.record,
            liveness=self.assess_liveness(cached.record),
            stuck_task=self.is_stuck(cached.record),
            fetched_at=cached.fetched_at,
        )

    def assess_liveness(self, record: StatusRecord, *, now: datetime | None = None) -> Liveness:
        """Combine heartbeat age with a process check.

        An old heartbeat alone never makes a unit dead: only the process check can.
        """

        if record.status in _TERMINAL_VALUES or record.pid is None:
            return Liveness.UNKNOWN
        current = now or utc_now()
        last_seen = record.heartbeat_at or record.updated_at
        heartbeat_stale = (current - last_seen).total_seconds() > self.stale_after_seconds
        state = self.liveness.check(
            pid=record.pid,
            hostname=record.hostname,
            process_started_at=record.process_started_at,
        )
        if state == ProcessState.DEAD:
            return Liveness.DEAD
        if state == ProcessState.ALIVE:
            return Liveness.ALIVE_STALE_HEARTBEAT if heartbeat_stale else Liveness.ALIVE
        return Liveness.UNKNOWN if heartbeat_stale else Liveness.ALIVE

    def is_stuck(self, record: StatusRecord, *, now: datetime | None = None) -> bool:
        if record.status != RunStatus.RUNNING.value or record.task_started_at is None:
            return False
        age = ((now or utc_now()) - record.task_started_at).total_seconds()
        return age > self.stuck_task_after_seconds

    def _to_cached(self, entry: _Entry) -> CachedStatus:
        age = (utc_now() - entry.record.updated_at).total_seconds()
        # A settled run stops publishing; its last record stays current.
        settled = entry.record.status in _TERMINAL_VALUES
        return CachedStatus(
            record=entry.record,
            fetched_at=entry.fetched_at,
            is_stale=not settled and age > self.stale_after_seconds,
            age_seconds=max(0.0, age),
        )

    def _summary(self, cached: CachedStatus) -> RunSummary:
        record = cached.record
        return RunSummary(
            run_id=record.run_id,
            status=record.status,
            phase=record.phase,
            current_task=record.current_task,
            progress_finished=record.progress_finished,
            progress_total=record.progress_total,
            updated_at=record.updated_at,
            is_stale=cached.is_stale,
        )

    def _watch(self) -> None:
        try:
            self.channel.watch(self.ingest, self._stop, self.poll_interval_seconds)
        except Exception:
            logger.exception("Status watch stopped unexpectedly; falling back to polling.")
