"""Per-run persisted state store guarded by a single-writer lease."""

from __future__ import annotations

import json
import logging
import shutil
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from runledger.orchestrator.errors import (
    LeaseConflict,
    OrchestratorError,
    RunNotFound,
    RunTerminal,
    TaskImmutable,
    TaskOrderViolation,
)
from runledger.orchestrator.liveness import (
    LivenessChecker,
    ProcessLivenessChecker,
    ProcessState,
    current_holder_identity,
)
from runledger.orchestrator.models import (
    BlockReason,
    FeedbackDecision,
    FeedbackView,
    HeartbeatView,
    HolderIdentity,
    LeaseView,
    ResumePlan,
    RunDetails,
    RunEventView,
    RunStatus,
    RunView,
    TaskResult,
    TaskResultView,
    TaskSpec,
    TaskStatus,
    TaskView,
)
from runledger.orchestrator.state_machine import ensure_transition, is_terminal
from runledger.storage.alembic_runner import RUN_STATE_BRANCH, upgrade_head
from runledger.storage.common import (
    build_sqlite_engine,
    new_ulid,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from runledger.storage.sqlmodel_models import (
    RunEventRow,
    RunFeedbackRow,
    RunHeartbeatRow,
    RunLeaseRow,
    RunRow,
    RunTaskRow,
    TaskResultRow,
)
from runledger.storage.volume import AttachLock, ensure_supported_volume

logger = logging.getLogger(__name__)

STATE_DB_NAME = "state.db"

# Results that close an attempt must follow an attempt that was started.
_ATTEMPT_CLOSING_STATUSES = frozenset({TaskStatus.FINISHED, TaskStatus.FAILED, TaskStatus.PENDING})


class RunStore:
    """Persistence facade over the per-run SQLite databases under ``runs_root``.

    Each run lives in ``<runs_root>/<run_id>/state.db``. Reads are open to
    anyone; task, status and lease-holder writes require this store instance to
    hold the run's lease (see :meth:`acquire_lease`).
    """

    def __init__(  # noqa: PLR0913
        self,
        runs_root: Path,
        *,
        busy_timeout_ms: int = 5_000,
        lease_stale_after_seconds: int = 120,
        allow_network_volumes: bool = False,
        liveness: LivenessChecker | None = None,
    ) -> None:
        self.runs_root = runs_root
        self.busy_timeout_ms = busy_timeout_ms
        self.lease_stale_after_seconds = lease_stale_after_seconds
        self.allow_network_volumes = allow_network_volumes
        self.liveness = liveness or ProcessLivenessChecker()
        self._engines: dict[str, Engine] = {}
        self._attach_locks: dict[str, AttachLock] = {}
        self._held_leases: dict[str, str] = {}
        self._lock = threading.Lock()

    def close(self) -> None:
        """Dispose engines and drop any attach locks still held."""

        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
            for attach in self._attach_locks.values():
                attach.release()
            self._attach_locks.clear()
            self._held_leases.clear()

    def run_dir(self, run_id: str) -> Path:
        return self.runs_root / run_id

    def db_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / STATE_DB_NAME

    def exists(self, run_id: str) -> bool:
        """Whether persisted state exists for ``run_id``."""

        return self.db_path(run_id).is_file()

    def list_run_ids(self) -> list[str]:
        if not self.runs_root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.runs_root.iterdir()
            if entry.is_dir() and (entry / STATE_DB_NAME).is_file()
        )

    def holds_lease(self, run_id: str) -> bool:
        return run_id in self._held_leases

    def create_run(  # noqa: PLR0913
        self,
        spec_id: str,
        tasks: list[TaskSpec],
        *,
        template: str = "default",
        resources: dict[str, Any] | None = None,
        deadline_at: datetime | None = None,
        run_id: str | None = None,
        default_max_attempts: int = 3,
    ) -> RunView:
        """Create a ``pending`` run with its ordered tasks and an unheld lease."""

        if not tasks:
            raise ValueError(f"Spec {spec_id!r} has no tasks.")
        seen: set[str] = set()
        for task in tasks:
            if task.task_id in seen:
                raise ValueError(f"Duplicate task id in spec {spec_id!r}: {task.task_id}")
            seen.add(task.task_id)

        now = utc_now()
        run_id = run_id or new_ulid(now)
        if self.exists(run_id):
            raise OrchestratorError(f"Run already exists: {run_id}")
        engine = self._engine(run_id, create=True)
        with Session(engine) as session:
            session.add(
                RunRow(
                    run_id=run_id,
                    spec_id=spec_id,
                    status=RunStatus.PENDING.value,
                    current_task=None,
                    task_attempt=0,
                    iteration_count=0,
                    template=template,
                    resources_json=json.dumps(resources or {}, sort_keys=True),
                    deadline_at=to_db_datetime(deadline_at) if deadline_at is not None else None,
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            for position, task in enumerate(tasks, start=1):
                session.add(
                    RunTaskRow(
                        run_id=run_id,
                        task_id=task.task_id,
                        position=position,
                        task_type=task.task_type,
                        status=TaskStatus.PENDING.value,
                        attempt_count=0,
                        max_attempts=task.max_attempts or default_max_attempts,
                        human_gate=task.human_gate,
                        command=task.command,
                        updated_at=to_db_datetime(now),
                    ),
                )
            session.add(RunLeaseRow(run_id=run_id, epoch=0))
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="created",
                status_to=RunStatus.PENDING.value,
                details={"spec_id": spec_id, "tasks": len(tasks), "template": template},
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise OrchestratorError(f"Run already exists: {run_id}") from error
            row = session.exec(select(RunRow).where(RunRow.run_id == run_id)).one()
            return _to_run_view(row)

    def load_run(self, run_id: str) -> RunView:
        with Session(self._engine(run_id)) as session:
            return _to_run_view(self._get_run_row(session=session, run_id=run_id))

    def list_tasks(self, run_id: str) -> list[TaskView]:
        with Session(self._engine(run_id)) as session:
            rows = session.exec(
                select(RunTaskRow)
                .where(RunTaskRow.run_id == run_id)
                .order_by(col(RunTaskRow.position).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_results(self, run_id: str) -> list[TaskResultView]:
        with Session(self._engine(run_id)) as session:
            rows = session.exec(
                select(TaskResultRow)
                .where(TaskResultRow.run_id == run_id)
                .order_by(col(TaskResultRow.seq).asc()),
            ).all()
        return [_to_result_view(row) for row in rows]

    def list_events(self, run_id: str) -> list[RunEventView]:
        with Session(self._engine(run_id)) as session:
            rows = session.exec(
                select(RunEventRow)
                .where(RunEventRow.run_id == run_id)
                .order_by(col(RunEventRow.id).asc()),
            ).all()

        events: list[RunEventView] = []
        for row in rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                RunEventView(
                    event_id=row.id or 0,
                    run_id=row.run_id,
                    event_type=row.event_type,
                    task_id=row.task_id,
                    status_from=row.status_from,
                    status_to=row.status_to,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    def get_run_details(self, run_id: str) -> RunDetails:
        return RunDetails(
            run=self.load_run(run_id),
            tasks=self.list_tasks(run_id),
            results=self.list_results(run_id),
            events=self.list_events(run_id),
            lease=self.get_lease(run_id),
            heartbeat=self.get_heartbeat(run_id),
        )

    def build_resume_plan(self, run_id: str) -> ResumePlan:
        """Locate the first task that is not finished."""

        tasks = self.list_tasks(run_id)
        completed = sum(1 for task in tasks if task.status == TaskStatus.FINISHED)
        next_task = next((task for task in tasks if task.status != TaskStatus.FINISHED), None)
        return ResumePlan(completed=completed, total=len(tasks), next_task=next_task)

    def start_iteration(self, run_id: str) -> RunView:
        """Count one more controller session against the run and record its owner."""

        unit_id = self._require_held_unit(run_id)
        now = utc_now()
        with Session(self._engine(run_id)) as session:
            self._ensure_writer(session=session, run_id=run_id)
            row = self._get_run_row(session=session, run_id=run_id)
            row.iteration_count += 1
            row.owner_unit_id = unit_id
            row.updated_at = to_db_datetime(now)
            session.add(row)
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="iteration_started",
                details={"iteration": row.iteration_count, "unit_id": unit_id},
            )
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def reset_in_progress_tasks(self, run_id: str) -> list[str]:
        """Return tasks left ``in-progress`` by a crashed unit to ``pending``.

        Attempt counts are preserved: the interrupted attempt still counts.
        """

        self._require_held_unit(run_id)
        now = utc_now()
        with Session(self._engine(run_id)) as session:
            self._ensure_writer(session=session, run_id=run_id)
            rows = session.exec(
                select(RunTaskRow)
                .where(
                    RunTaskRow.run_id == run_id,
                    RunTaskRow.status == TaskStatus.IN_PROGRESS.value,
                )
                .order_by(col(RunTaskRow.position).asc()),
            ).all()
            reset: list[str] = []
            for row in rows:
                row.status = TaskStatus.PENDING.value
                row.updated_at = to_db_datetime(now)
                session.add(row)
                reset.append(row.task_id)
                self._add_event(
                    session=session,
                    run_id=run_id,
                    event_type="task_reset",
                    task_id=row.task_id,
                    status_from=TaskStatus.IN_PROGRESS.value,
                    status_to=TaskStatus.PENDING.value,
                    details={"attempt_count": row.attempt_count},
                )
            session.commit()
        for task_id in reset:
            logger.warning("Reset stuck in-progress task %s of run %s to pending.", task_id, run_id)
        return reset

    def append_task_result(self, run_id: str, task_id: str, result: TaskResult) -> TaskView:
        """Append one result to the ordered task log and update the task row.

        Only the first task that is not finished may receive results, finished
        tasks never change, and terminal runs accept no task writes.
        """

        unit_id = self._require_held_unit(run_id)
        now = utc_now()
        with Session(self._engine(run_id)) as session:
            self._ensure_writer(session=session, run_id=run_id)
            run_row = self._get_run_row(session=session, run_id=run_id)
            if is_terminal(RunStatus(run_row.status)):
                raise RunTerminal(
                    f"Run {run_id} is {run_row.status}; task {task_id} cannot be written.",
                )

            task_row = session.exec(
                select(RunTaskRow).where(
                    RunTaskRow.run_id == run_id,
                    RunTaskRow.task_id == task_id,
                ),
            ).one_or_none()
            if task_row is None:
                raise TaskOrderViolation(f"Task {task_id} does not belong to run {run_id}.")
            if task_row.status == TaskStatus.FINISHED.value:
                raise TaskImmutable(f"Task {task_id} of run {run_id} is finished.")

            head = session.exec(
                select(RunTaskRow)
                .where(
                    RunTaskRow.run_id == run_id,
                    RunTaskRow.status != TaskStatus.FINISHED.value,
                )
                .order_by(col(RunTaskRow.position).asc())
                .limit(1),
            ).one()
            if head.task_id != task_id:
                raise TaskOrderViolation(
                    f"Run {run_id} must continue with task {head.task_id}, got {task_id}.",
                )

            previous = TaskStatus(task_row.status)
            if result.status == TaskStatus.IN_PROGRESS and previous == TaskStatus.IN_PROGRESS:
                raise TaskOrderViolation(f"Task {task_id} already has an attempt in progress.")
            if result.status in _ATTEMPT_CLOSING_STATUSES and previous != TaskStatus.IN_PROGRESS:
                raise TaskOrderViolation(
                    f"Task {task_id} has no attempt in progress (status={previous.value}).",
                )

            attempt = task_row.attempt_count
            values: dict[str, Any] = {
                "status": result.status.value,
                "updated_at": to_db_datetime(now),
            }
            if result.status == TaskStatus.IN_PROGRESS:
                attempt += 1
                values.update(attempt_count=attempt, started_at=to_db_datetime(now))
            elif result.status == TaskStatus.FINISHED:
                values.update(
                    finished_at=to_db_datetime(now),
                    last_exit_code=result.exit_code,
                )
            elif result.status == TaskStatus.FAILED:
                values.update(last_error=result.error, last_exit_code=result.exit_code)
            elif result.refund_attempt:
                values.update(attempt_count=max(0, attempt - 1))

            update_result = session.exec(
                sa_update(RunTaskRow)
                .where(
                    col(RunTaskRow.run_id) == run_id,
                    col(RunTaskRow.task_id) == task_id,
                    col(RunTaskRow.status) == previous.value,
                )
                .values(**values),
            )
            if update_result.rowcount != 1:
                session.rollback()
                raise TaskOrderViolation(
                    f"Task {task_id} changed concurrently; result was not appended.",
                )

            session.add(
                TaskResultRow(
                    run_id=run_id,
                    task_id=task_id,
                    status=result.status.value,
                    attempt=attempt,
                    exit_code=result.exit_code,
                    error=result.error,
                    unit_id=unit_id,
                    recorded_at=to_db_datetime(now),
                ),
            )
            run_row.current_task = task_id
            run_row.task_attempt = values.get("attempt_count", task_row.attempt_count)
            run_row.updated_at = to_db_datetime(now)
            session.add(run_row)
            session.commit()

            refreshed = session.exec(
                select(RunTaskRow).where(
                    RunTaskRow.run_id == run_id,
                    RunTaskRow.task_id == task_id,
                ),
            ).one()
            return _to_task_view(refreshed)

    def transition_run(
        self,
        run_id: str,
        target: RunStatus,
        *,
        block_reason: BlockReason | None = None,
        error_summary: str | None = None,
    ) -> RunView:
        """Move the run along one state machine edge."""

        self._require_held_unit(run_id)
        now = utc_now()
        with Session(self._engine(run_id)) as session:
            self._ensure_writer(session=session, run_id=run_id)
            row = self._get_run_row(session=session, run_id=run_id)
            current = RunStatus(row.status)
            ensure_transition(current, target)

            values: dict[str, Any] = {
                "status": target.value,
                "block_reason": block_reason.value if block_reason is not None else None,
                "updated_at": to_db_datetime(now),
            }
            if error_summary is not None:
                values["error_summary"] = error_summary
            if is_terminal(target):
                values["finished_at"] = to_db_datetime(now)

            result = session.exec(
                sa_update(RunRow)
                .where(col(RunRow.run_id) == run_id, col(RunRow.status) == current.value)
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise LeaseConflict(f"Run {run_id} status changed concurrently.")
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="status_changed",
                status_from=current.value,
                status_to=target.value,
                details={
                    key: value
                    for key, value in (
                        ("block_reason", values["block_reason"]),
                        ("error_summary", error_summary),
                    )
                    if value is not None
                },
            )
            session.commit()
            refreshed = self._get_run_row(session=session, run_id=run_id)
            logger.info("Run %s: %s -> %s", run_id, current.value, target.value)
            return _to_run_view(refreshed)

    def set_command_template(self, run_id: str, command_template: str) -> None:
        """Record the command template bound at execution start."""

        self._require_held_unit(run_id)
        with Session(self._engine(run_id)) as session:
            self._ensure_writer(session=session, run_id=run_id)
            row = self._get_run_row(session=session, run_id=run_id)
            if row.command_template == command_template:
                return
            row.command_template = command_template
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="command_template_bound",
                details={"command_template": command_template},
            )
            session.commit()

    def request_cancel(self, run_id: str, *, force: bool = False) -> RunView:
        """Flag a cancel request for the lease holder to act on cooperatively."""

        now = utc_now()
        with Session(self._engine(run_id)) as session:
            row = self._get_run_row(session=session, run_id=run_id)
            if is_terminal(RunStatus(row.status)):
                raise RunTerminal(f"Run {run_id} is already {row.status}.")
            if row.cancel_requested_at is None:
                row.cancel_requested_at = to_db_datetime(now)
            row.cancel_force = row.cancel_force or force
            row.updated_at = to_db_datetime(now)
            session.add(row)
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="cancel_requested",
                details={"force": force},
            )
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def submit_feedback(
        self,
        run_id: str,
        decision: FeedbackDecision,
        notes: str | None = None,
        *,
        task_id: str | None = None,
    ) -> FeedbackView:
        """Drop a human-gate decision into the run's feedback inbox.

        The decision is stamped with the gate the run waits on next (the first
        human gate not yet finished). Naming any other task is refused.
        """

        now = utc_now()
        with Session(self._engine(run_id)) as session:
            row = self._get_run_row(session=session, run_id=run_id)
            if is_terminal(RunStatus(row.status)):
                raise RunTerminal(f"Run {run_id} is already {row.status}.")
            gate = self._awaited_gate(session=session, run_id=run_id)
            if gate is None:
                raise OrchestratorError(f"Run {run_id} has no human gate awaiting feedback.")
            if task_id is not None and task_id != gate.task_id:
                raise OrchestratorError(
                    f"Run {run_id} awaits feedback on task {gate.task_id}, not {task_id}.",
                )
            feedback = RunFeedbackRow(
                run_id=run_id,
                task_id=gate.task_id,
                decision=decision.value,
                notes=notes,
                created_at=to_db_datetime(now),
            )
            session.add(feedback)
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="feedback_submitted",
                task_id=gate.task_id,
                details={"decision": decision.value},
            )
            session.commit()
            session.refresh(feedback)
            return _to_feedback_view(feedback)

    def take_feedback(self, run_id: str, *, task_id: str) -> FeedbackView | None:
        """Consume the oldest unread decision for gate ``task_id``.

        Unread decisions addressed to any other task are discarded.
        """

        self._require_held_unit(run_id)
        now = utc_now()
        with Session(self._engine(run_id)) as session:
            self._ensure_writer(session=session, run_id=run_id)
            unread = session.exec(
                select(RunFeedbackRow)
                .where(
                    RunFeedbackRow.run_id == run_id,
                    col(RunFeedbackRow.consumed_at).is_(None),
                )
                .order_by(col(RunFeedbackRow.id).asc()),
            ).all()
            stale = [row for row in unread if row.task_id not in (None, task_id)]
            match = next((row for row in unread if row.task_id in (None, task_id)), None)

            for row in stale:
                row.consumed_at = to_db_datetime(now)
                session.add(row)
                self._add_event(
                    session=session,
                    run_id=run_id,
                    event_type="feedback_discarded",
                    task_id=row.task_id,
                    details={"decision": row.decision, "gate_task_id": task_id},
                )
            if stale:
                logger.warning(
                    "Discarded %d feedback entr%s of run %s not meant for gate %s.",
                    len(stale),
                    "y" if len(stale) == 1 else "ies",
                    run_id,
                    task_id,
                )
            if match is None:
                session.commit()
                return None

            result = session.exec(
                sa_update(RunFeedbackRow)
                .where(
                    col(RunFeedbackRow.id) == match.id,
                    col(RunFeedbackRow.consumed_at).is_(None),
                )
                .values(consumed_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            session.refresh(match)
            return _to_feedback_view(match)

    def add_event(
        self,
        run_id: str,
        event_type: str,
        *,
        task_id: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append an audit event."""

        with Session(self._engine(run_id)) as session:
            self._add_event(
                session=session,
                run_id=run_id,
                event_type=event_type,
                task_id=task_id,
                details=details or {},
            )
            session.commit()

    def get_lease(self, run_id: str) -> LeaseView | None:
        with Session(self._engine(run_id)) as session:
            row = session.get(RunLeaseRow, run_id)
            return _to_lease_view(row) if row is not None else None

    def acquire_lease(
        self,
        run_id: str,
        unit_id: str,
        *,
        holder: HolderIdentity | None = None,
        hold_attach: bool = True,
    ) -> bool:
        """Take the run's write lease for ``unit_id`` or raise ``LeaseConflict``.

        Re-acquiring with the unit id that already holds the lease adopts it.
        A lease held by another unit is reclaimed only when its heartbeat is
        older than ``lease_stale_after_seconds`` and the liveness check
        confirms the holder process is gone.

        With ``hold_attach`` the exclusive attach lock stays with this store
        until :meth:`release_lease`; otherwise it only serializes the swap.
        """

        engine = self._engine(run_id)
        identity = holder or current_holder_identity()
        attach = self._attach_locks.get(run_id)
        owns_attach = attach is None
        if attach is None:
            attach = AttachLock(self.run_dir(run_id))
            attach.acquire(run_id=run_id)
        try:
            self._swap_lease(engine=engine, run_id=run_id, unit_id=unit_id, holder=identity)
        except BaseException:
            if owns_attach:
                attach.release()
            raise

        if hold_attach:
            with self._lock:
                self._attach_locks[run_id] = attach
                self._held_leases[run_id] = unit_id
        elif owns_attach:
            attach.release()
        return True

    def bind_lease_holder(self, run_id: str, unit_id: str, holder: HolderIdentity) -> bool:
        """Point an already-acquired lease at the process that will adopt it."""

        now = utc_now()
        with Session(self._engine(run_id)) as session:
            result = session.exec(
                sa_update(RunLeaseRow)
                .where(col(RunLeaseRow.run_id) == run_id, col(RunLeaseRow.unit_id) == unit_id)
                .values(
                    pid=holder.pid,
                    hostname=holder.hostname,
                    process_started_at=holder.process_started_at,
                    heartbeat_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="lease_bound",
                details={"unit_id": unit_id, "pid": holder.pid, "hostname": holder.hostname},
            )
            session.commit()
            return True

    def release_lease(self, run_id: str, unit_id: str | None = None) -> bool:
        """Give the lease up. Returns False when ``unit_id`` no longer holds it."""

        holder_unit = unit_id or self._held_leases.get(run_id)
        released = False
        if holder_unit is not None:
            now = utc_now()
            with Session(self._engine(run_id)) as session:
                result = session.exec(
                    sa_update(RunLeaseRow)
                    .where(
                        col(RunLeaseRow.run_id) == run_id,
                        col(RunLeaseRow.unit_id) == holder_unit,
                    )
                    .values(
                        unit_id=None,
                        pid=None,
                        hostname=None,
                        process_started_at=None,
                        released_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount == 1:
                    self._add_event(
                        session=session,
                        run_id=run_id,
                        event_type="lease_released",
                        details={"unit_id": holder_unit},
                    )
                    session.commit()
                    released = True
                else:
                    session.rollback()

        with self._lock:
            self._held_leases.pop(run_id, None)
            attach = self._attach_locks.pop(run_id, None)
        if attach is not None:
            attach.release()
        return released

    def record_heartbeat(
        self,
        run_id: str,
        unit_id: str,
        *,
        phase: str,
        current_task: str | None,
        pid: int | None = None,
    ) -> bool:
        """Refresh the lease heartbeat and the run heartbeat record.

        Returns False when ``unit_id`` no longer holds the lease.
        """

        now = utc_now()
        with Session(self._engine(run_id)) as session:
            result = session.exec(
                sa_update(RunLeaseRow)
                .where(col(RunLeaseRow.run_id) == run_id, col(RunLeaseRow.unit_id) == unit_id)
                .values(heartbeat_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            row = session.get(RunHeartbeatRow, run_id)
            if row is None:
                row = RunHeartbeatRow(
                    run_id=run_id,
                    unit_id=unit_id,
                    phase=phase,
                    sequence=0,
                    beat_at=to_db_datetime(now),
                )
            row.unit_id = unit_id
            row.pid = pid
            row.phase = phase
            row.current_task = current_task
            row.sequence += 1
            row.beat_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            return True

    def get_heartbeat(self, run_id: str) -> HeartbeatView | None:
        with Session(self._engine(run_id)) as session:
            row = session.get(RunHeartbeatRow, run_id)
            if row is None:
                return None
            return HeartbeatView(
                run_id=row.run_id,
                unit_id=row.unit_id,
                pid=row.pid,
                phase=row.phase,
                current_task=row.current_task,
                sequence=row.sequence,
                beat_at=to_utc_aware_datetime(row.beat_at),
            )

    def delete_run(self, run_id: str) -> None:
        """Remove the run directory together with its database."""

        with self._lock:
            engine = self._engines.pop(run_id, None)
            attach = self._attach_locks.pop(run_id, None)
            self._held_leases.pop(run_id, None)
        if engine is not None:
            engine.dispose()
        if attach is not None:
            attach.release()
        shutil.rmtree(self.run_dir(run_id), ignore_errors=False)

    def _swap_lease(
        self,
        *,
        engine: Engine,
        run_id: str,
        unit_id: str,
        holder: HolderIdentity,
    ) -> None:
        now = utc_now()
        with Session(engine) as session:
            lease = session.get(RunLeaseRow, run_id)
            if lease is None:
                raise RunNotFound(run_id)
            # ORM updates below refresh ``lease`` in place.
            previous_unit_id = lease.unit_id
            previous_pid = lease.pid
            previous_epoch = lease.epoch

            holder_values = {
                "pid": holder.pid,
                "hostname": holder.hostname,
                "process_started_at": holder.process_started_at,
                "heartbeat_at": to_db_datetime(now),
            }

            if previous_unit_id == unit_id:
                result = session.exec(
                    sa_update(RunLeaseRow)
                    .where(
                        col(RunLeaseRow.run_id) == run_id,
                        col(RunLeaseRow.unit_id) == unit_id,
                        col(RunLeaseRow.epoch) == previous_epoch,
                    )
                    .values(**holder_values),
                )
                event_type = "lease_adopted"
                details: dict[str, object] = {"unit_id": unit_id, "epoch": previous_epoch}
            elif previous_unit_id is None:
                result = session.exec(
                    sa_update(RunLeaseRow)
                    .where(col(RunLeaseRow.run_id) == run_id, col(RunLeaseRow.unit_id).is_(None))
                    .values(
                        unit_id=unit_id,
                        epoch=previous_epoch + 1,
                        acquired_at=to_db_datetime(now),
                        released_at=None,
                        **holder_values,
                    ),
                )
                event_type = "lease_acquired"
                details = {"unit_id": unit_id, "epoch": previous_epoch + 1}
            else:
                self._ensure_reclaimable(run_id=run_id, lease=lease, now=now)
                result = session.exec(
                    sa_update(RunLeaseRow)
                    .where(
                        col(RunLeaseRow.run_id) == run_id,
                        col(RunLeaseRow.unit_id) == previous_unit_id,
                        col(RunLeaseRow.epoch) == previous_epoch,
                    )
                    .values(
                        unit_id=unit_id,
                        epoch=previous_epoch + 1,
                        acquired_at=to_db_datetime(now),
                        released_at=None,
                        **holder_values,
                    ),
                )
                event_type = "lease_reclaimed"
                details = {
                    "unit_id": unit_id,
                    "previous_unit_id": previous_unit_id,
                    "previous_pid": previous_pid,
                    "epoch": previous_epoch + 1,
                }

            if result.rowcount != 1:
                session.rollback()
                raise LeaseConflict(
                    f"Run {run_id} lease changed concurrently; unit {unit_id} lost the race.",
                )
            self._add_event(
                session=session,
                run_id=run_id,
                event_type=event_type,
                details=details,
            )
            session.commit()
        if event_type == "lease_reclaimed":
            logger.warning(
                "Reclaimed lease of run %s from dead unit %s (pid=%s).",
                run_id,
                details["previous_unit_id"],
                details["previous_pid"],
            )

    def _ensure_reclaimable(self, *, run_id: str, lease: RunLeaseRow, now: datetime) -> None:
        last_seen = lease.heartbeat_at or lease.acquired_at
        if last_seen is not None:
            age = (now - to_utc_aware_datetime(last_seen)).total_seconds()
            if age < self.lease_stale_after_seconds:
                raise LeaseConflict(
                    f"Run {run_id} is leased by unit {lease.unit_id} "
                    f"(heartbeat {age:.0f}s ago).",
                )
        state = self.liveness.check(
            pid=lease.pid,
            hostname=lease.hostname,
            process_started_at=lease.process_started_at,
        )
        if state != ProcessState.DEAD:
            raise LeaseConflict(
                f"Run {run_id} lease heartbeat is stale but holder {lease.unit_id} "
                f"(pid={lease.pid}, host={lease.hostname}) is {state.value}; refusing to reclaim.",
            )

    def _require_held_unit(self, run_id: str) -> str:
        unit_id = self._held_leases.get(run_id)
        if unit_id is None:
            raise LeaseConflict(f"This process does not hold the lease of run {run_id}.")
        return unit_id

    def _ensure_writer(self, *, session: Session, run_id: str) -> None:
        lease = session.get(RunLeaseRow, run_id)
        expected = self._held_leases.get(run_id)
        if lease is None or expected is None or lease.unit_id != expected:
            raise LeaseConflict(
                f"Lease of run {run_id} is no longer held by unit {expected} "
                f"(holder={lease.unit_id if lease is not None else None}).",
            )

    def _get_run_row(self, *, session: Session, run_id: str) -> RunRow:
        row = session.exec(select(RunRow).where(RunRow.run_id == run_id)).one_or_none()
        if row is None:
            raise RunNotFound(run_id)
        return row

    def _awaited_gate(self, *, session: Session, run_id: str) -> RunTaskRow | None:
        return session.exec(
            select(RunTaskRow)
            .where(
                RunTaskRow.run_id == run_id,
                col(RunTaskRow.human_gate).is_(True),
                RunTaskRow.status != TaskStatus.FINISHED.value,
            )
            .order_by(col(RunTaskRow.position).asc())
            .limit(1),
        ).first()

    def _engine(self, run_id: str, *, create: bool = False) -> Engine:
        with self._lock:
            engine = self._engines.get(run_id)
            if engine is not None:
                return engine
            db_path = self.db_path(run_id)
            if not create and not db_path.is_file():
                raise RunNotFound(run_id)
            run_dir = self.run_dir(run_id)
            run_dir.mkdir(parents=True, exist_ok=True)
            ensure_supported_volume(run_dir, allow_network_volumes=self.allow_network_volumes)
            upgrade_head(db_path, branch=RUN_STATE_BRANCH)
            engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=self.busy_timeout_ms)
            self._engines[run_id] = engine
            return engine

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        run_id: str,
        event_type: str,
        task_id: str | None = None,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        session.add(
            RunEventRow(
                run_id=run_id,
                event_type=event_type,
                task_id=task_id,
                status_from=status_from,
                status_to=status_to,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_run_view(row: RunRow) -> RunView:
    resources: dict[str, Any] = {}
    if row.resources_json:
        parsed = json.loads(row.resources_json)
        if isinstance(parsed, dict):
            resources = parsed
    return RunView(
        run_id=row.run_id,
        spec_id=row.spec_id,
        status=RunStatus(row.status),
        current_task=row.current_task,
        task_attempt=row.task_attempt,
        iteration_count=row.iteration_count,
        template=row.template,
        resources=resources,
        command_template=row.command_template,
        owner_unit_id=row.owner_unit_id,
        block_reason=BlockReason(row.block_reason) if row.block_reason is not None else None,
        error_summary=row.error_summary,
        deadline_at=_optional_aware(row.deadline_at),
        cancel_requested_at=_optional_aware(row.cancel_requested_at),
        cancel_force=bool(row.cancel_force),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=_optional_aware(row.finished_at),
    )


def _to_task_view(row: RunTaskRow) -> TaskView:
    return TaskView(
        run_id=row.run_id,
        task_id=row.task_id,
        position=row.position,
        task_type=row.task_type,
        status=TaskStatus(row.status),
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        human_gate=bool(row.human_gate),
        command=row.command,
        last_error=row.last_error,
        last_exit_code=row.last_exit_code,
        started_at=_optional_aware(row.started_at),
        finished_at=_optional_aware(row.finished_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_result_view(row: TaskResultRow) -> TaskResultView:
    return TaskResultView(
        seq=row.seq or 0,
        task_id=row.task_id,
        status=TaskStatus(row.status),
        attempt=row.attempt,
        exit_code=row.exit_code,
        error=row.error,
        unit_id=row.unit_id,
        recorded_at=to_utc_aware_datetime(row.recorded_at),
    )


def _to_lease_view(row: RunLeaseRow) -> LeaseView:
    return LeaseView(
        run_id=row.run_id,
        unit_id=row.unit_id,
        pid=row.pid,
        hostname=row.hostname,
        process_started_at=row.process_started_at,
        epoch=row.epoch,
        acquired_at=_optional_aware(row.acquired_at),
        heartbeat_at=_optional_aware(row.heartbeat_at),
        released_at=_optional_aware(row.released_at),
    )


def _to_feedback_view(row: RunFeedbackRow) -> FeedbackView:
    return FeedbackView(
        feedback_id=row.id or 0,
        run_id=row.run_id,
        task_id=row.task_id,
        decision=FeedbackDecision(row.decision),
        notes=row.notes,
        created_at=to_utc_aware_datetime(row.created_at),
        consumed_at=_optional_aware(row.consumed_at),
    )
