"""Fire-and-forget projection of run state onto a status channel."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime

from runledger.orchestrator.channels import StatusChannel
from runledger.orchestrator.errors import StatusChannelError
from runledger.orchestrator.models import HolderIdentity, Phase, StatusRecord, TaskStatus
from runledger.orchestrator.store import RunStore
from runledger.storage.common import utc_now

logger = logging.getLogger(__name__)


class StatusPublisher:
    """Publish the latest status record from a background thread.

    ``publish`` only replaces the pending record and returns; a newer record
    supersedes one that has not gone out yet. Channel failures are retried a
    bounded number of times with backoff, then logged and dropped. Nothing
    here ever raises into task execution.
    """

    def __init__(
        self,
        channel: StatusChannel,
        *,
        max_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
    ) -> None:
        self.channel = channel
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._pending: StatusRecord | None = None
        self._sequence = 0
        self._in_flight = False
        self._condition = threading.Condition()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.published_count = 0
        self.failed_count = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="runledger-status-publisher",
            daemon=True,
        )
        self._thread.start()

    def publish(self, record: StatusRecord) -> None:
        with self._condition:
            self._sequence += 1
            record.sequence = self._sequence
            self._pending = record
            self._condition.notify_all()
        if self._thread is None:
            self._drain_once()

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until nothing is pending or in flight. Returns False on timeout."""

        deadline = time.monotonic() + timeout
        with self._condition:
            while self._pending is not None or self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(remaining)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self.flush(timeout=timeout)
        self._stop.set()
        with self._condition:
            self._condition.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            with self._condition:
                while self._pending is None and not self._stop.is_set():
                    self._condition.wait(0.5)
            if self._stop.is_set() and self._pending is None:
                return
            self._drain_once()

    def _drain_once(self) -> None:
        with self._condition:
            record = self._pending
            self._pending = None
            self._in_flight = record is not None
        if record is None:
            return
        try:
            self._deliver(record)
        finally:
            with self._condition:
                self._in_flight = False
                self._condition.notify_all()

    def _deliver(self, record: StatusRecord) -> None:
        for attempt in range(self.max_retries + 1):
            try:
                self.channel.publish(record)
            except StatusChannelError as error:
                if attempt >= self.max_retries:
                    self.failed_count += 1
                    logger.warning(
                        "Dropping status for run %s after %s attempts: %s",
                        record.run_id,
                        attempt + 1,
                        error,
                    )
                    return
                with self._condition:
                    superseded = self._pending is not None
                if superseded:
                    return
                self._stop.wait(self.retry_backoff_seconds * (2**attempt))
                continue
            self.published_count += 1
            return


def project_status(  # noqa: PLR0913
    store: RunStore,
    run_id: str,
    *,
    phase: Phase,
    unit_id: str | None = None,
    holder: HolderIdentity | None = None,
    heartbeat_at: datetime | None = None,
) -> StatusRecord:
    """Build the externally visible record of a run from its store."""

    run = store.load_run(run_id)
    tasks = store.list_tasks(run_id)
    current = next((task for task in tasks if task.task_id == run.current_task), None)
    in_flight = current is not None and current.status == TaskStatus.IN_PROGRESS
    return StatusRecord(
        run_id=run_id,
        status=run.status.value,
        phase=Phase.DONE.value if run.is_terminal else phase.value,
        current_task=run.current_task,
        attempt=run.task_attempt,
        iteration=run.iteration_count,
        progress_finished=sum(1 for task in tasks if task.status == TaskStatus.FINISHED),
        progress_total=len(tasks),
        updated_at=utc_now(),
        unit_id=unit_id,
        pid=holder.pid if holder is not None else None,
        hostname=holder.hostname if holder is not None else None,
        process_started_at=holder.process_started_at if holder is not None else None,
        heartbeat_at=heartbeat_at,
        block_reason=run.block_reason.value if run.block_reason is not None else None,
        task_started_at=current.started_at if in_flight and current is not None else None,
    )
