"""Execution unit controller: drives one run through its ordered tasks under a lease."""

from __future__ import annotations

import logging
import random
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from runledger.config import ControllerSettings, Settings
from runledger.orchestrator.backend import SubprocessTaskBackend, TaskBackend
from runledger.orchestrator.channels import build_status_channel
from runledger.orchestrator.credentials import CredentialRegistry
from runledger.orchestrator.errors import (
    CredentialExhausted,
    OrchestratorError,
    UnrecoverableTaskError,
)
from runledger.orchestrator.heartbeat import HeartbeatTicker
from runledger.orchestrator.interfaces import (
    AlertSink,
    JsonSpecSource,
    SpecSource,
    build_alert_sink,
)
from runledger.orchestrator.liveness import current_holder_identity
from runledger.orchestrator.models import (
    AlertSeverity,
    BlockReason,
    FeedbackDecision,
    HolderIdentity,
    Phase,
    ResumePlan,
    RunStatus,
    RunView,
    StatusRecord,
    TaskResult,
    TaskStatus,
    TaskView,
)
from runledger.orchestrator.publisher import StatusPublisher, project_status
from runledger.orchestrator.store import RunStore
from runledger.orchestrator.wrapper import (
    CredentialRotationWrapper,
    InvocationOutcome,
    InvocationStatus,
    TaskInvocation,
)
from runledger.storage.common import utc_now

logger = logging.getLogger(__name__)


class ExitReason(str, Enum):
    """Why a controller session ended."""

    FINISHED = "finished"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ALREADY_TERMINAL = "already_terminal"
    STOP_REQUESTED = "stop_requested"
    MAX_RUN_TIME = "max_run_time"
    LEASE_LOST = "lease_lost"
    CREDENTIAL_WAIT_EXPIRED = "credential_wait_expired"


@dataclass(slots=True)
class ControllerResult:
    """Outcome of one controller session for CLI reporting."""

    run_id: str
    unit_id: str
    status: RunStatus
    exit_reason: ExitReason
    completed: int
    total: int
    iteration: int
    error_summary: str | None


class ExecutionUnitController:
    """Run the tasks of one run in order, resuming wherever the store says to.

    The controller owns the run's lease for the whole session. A heartbeat
    thread refreshes the lease, re-reads cancel requests and credential
    generation, and republishes status. Task state only moves forward through
    the store, so a crash at any point leaves a run that the next session can
    pick up from the first unfinished task.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: RunStore,
        run_id: str,
        unit_id: str,
        settings: ControllerSettings,
        wrapper: CredentialRotationWrapper,
        alerts: AlertSink,
        publisher: StatusPublisher | None = None,
        spec_source: SpecSource | None = None,
        holder: HolderIdentity | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.run_id = run_id
        self.unit_id = unit_id
        self.settings = settings
        self.wrapper = wrapper
        self.alerts = alerts
        self.publisher = publisher
        self.spec_source = spec_source
        self.holder = holder or current_holder_identity()
        self._random = rng or random.Random()  # noqa: S311
        if self.wrapper.on_event is None:
            self.wrapper.on_event = self._record_wrapper_event

        self._heartbeat = HeartbeatTicker(
            interval_seconds=settings.heartbeat_interval_seconds,
            beat=self._beat,
            name=f"runledger-heartbeat-{run_id}",
        )
        self._phase = Phase.STARTING
        self._current_task_id: str | None = None
        self._command_template = ""
        self._deadline_at: datetime | None = None
        self._last_beat_at: datetime | None = None
        self._session_started = time.monotonic()

        self._stop_event = threading.Event()
        self._stop_reason: ExitReason | None = None
        self._lease_lost = threading.Event()
        self._restart_event = threading.Event()
        self._task_in_flight = False
        self._known_generation = 0
        self._cancel_requested = False
        self._cancel_force = False
        self._next_flag_poll = 0.0
        self._owned: list[object] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        run_id: str,
        unit_id: str | None = None,
        backend: TaskBackend | None = None,
        alerts: AlertSink | None = None,
    ) -> ExecutionUnitController:
        """Wire a controller with the stores, channel and backend the settings describe."""

        store = RunStore(
            settings.store.runs_root,
            busy_timeout_ms=settings.store.busy_timeout_ms,
            lease_stale_after_seconds=settings.store.lease_stale_after_seconds,
            allow_network_volumes=settings.store.allow_network_volumes,
        )
        registry = CredentialRegistry(
            settings.credentials.control_db_path,
            busy_timeout_ms=settings.store.busy_timeout_ms,
        )
        registry.init_schema()
        wrapper = CredentialRotationWrapper(
            backend=backend or SubprocessTaskBackend(),
            registry=registry,
            provider=settings.credentials.default_provider,
            env_var_name=settings.credentials.env_var_name,
            rate_limit_exit_code=settings.credentials.rate_limit_exit_code,
            rate_limit_backoff_seconds=settings.credentials.rate_limit_backoff_seconds,
            transient_exit_codes=settings.controller.transient_exit_codes,
            graceful_shutdown_seconds=settings.controller.graceful_shutdown_seconds,
        )
        owned_alerts = None
        if alerts is None:
            alerts = owned_alerts = build_alert_sink(settings)
        channel = build_status_channel(settings.publisher)
        publisher = StatusPublisher(
            channel,
            max_retries=settings.publisher.max_retries,
            retry_backoff_seconds=settings.publisher.retry_backoff_seconds,
        )
        controller = cls(
            store=store,
            run_id=run_id,
            unit_id=unit_id or settings.controller.unit_id,
            settings=settings.controller,
            wrapper=wrapper,
            alerts=alerts,
            publisher=publisher,
            spec_source=JsonSpecSource(settings.specs_dir),
        )
        controller._owned = [store, registry, channel]
        if owned_alerts is not None:
            controller._owned.append(owned_alerts)
        return controller

    def close(self) -> None:
        for resource in self._owned:
            resource.close()  # type: ignore[attr-defined]
        self._owned = []

    def run(self) -> ControllerResult:
        """Acquire the lease, execute until the run settles or the session must end.

        Raises ``LeaseConflict`` when another live unit holds the run.
        """

        self.store.acquire_lease(self.run_id, self.unit_id, holder=self.holder)
        logger.info("Unit %s holds the lease of run %s.", self.unit_id, self.run_id)
        try:
            with self._signal_handlers():
                exit_reason = self._run_with_lease()
        finally:
            self._shutdown()
        return self._result(exit_reason)

    def _run_with_lease(self) -> ExitReason:
        run = self.store.load_run(self.run_id)
        if run.is_terminal:
            logger.info("Run %s is already %s; nothing to do.", self.run_id, run.status.value)
            return ExitReason.ALREADY_TERMINAL

        run = self.store.start_iteration(self.run_id)
        self.store.reset_in_progress_tasks(self.run_id)
        plan = self.store.build_resume_plan(self.run_id)
        if run.iteration_count > 1 or plan.completed:
            logger.info(
                "[resume] Found existing run %s (iteration %d).",
                self.run_id,
                run.iteration_count,
            )
        logger.info("Completed: %d/%d tasks", plan.completed, plan.total)
        if plan.next_task is not None:
            logger.info("Continuing from: %s", plan.next_task.label)

        self._deadline_at = run.deadline_at
        self._command_template = self._bind_command_template(run)
        still_exhausted = None
        credential_blocked = (
            run.status == RunStatus.BLOCKED
            and run.block_reason == BlockReason.CREDENTIAL_EXHAUSTED
        )
        if credential_blocked:
            still_exhausted = self.wrapper.pending_exhaustion()
        if still_exhausted is None:
            self._enter_running(run, plan)

        if self.publisher is not None:
            self.publisher.start()
        self._heartbeat.start()
        self._heartbeat.beat_now()

        try:
            if still_exhausted is not None:
                logger.info("Run %s: every credential slot is still limited.", self.run_id)
                outcome = self._wait_for_credentials(still_exhausted, alert=False)
                if outcome is not None:
                    return outcome
            return self._execute()
        except UnrecoverableTaskError as error:
            logger.error("Run %s: %s", self.run_id, error)
            return self._finish_failed(str(error))

    def _execute(self) -> ExitReason:
        while True:
            stop = self._stop_exit()
            if stop is not None:
                return stop
            self._refresh_run_flags(force=True)
            if self._cancel_requested:
                return self._finish_cancelled()

            run = self.store.load_run(self.run_id)
            gated = run.status == RunStatus.BLOCKED and run.block_reason == BlockReason.HUMAN_GATE
            if not gated and self._deadline_passed():
                return self._finish_failed(
                    f"deadline_exceeded: run deadline {self._deadline_at} passed",
                )

            plan = self.store.build_resume_plan(self.run_id)
            if plan.next_task is None:
                return self._finish_succeeded(plan)

            task = plan.next_task
            if task.human_gate:
                outcome = self._run_human_gate(task)
            else:
                outcome = self._run_task(task)
            if outcome is not None:
                return outcome

    def _run_task(self, task: TaskView) -> ExitReason | None:
        if task.attempt_count >= task.max_attempts:
            raise UnrecoverableTaskError(
                task.task_id,
                f"all {task.max_attempts} attempts were used by earlier sessions",
            )

        started = self.store.append_task_result(
            self.run_id,
            task.task_id,
            TaskResult(status=TaskStatus.IN_PROGRESS),
        )
        self._current_task_id = started.task_id
        self._phase = Phase.EXECUTING
        self._publish()
        logger.info(
            "Task %s (%s) attempt %d/%d started.",
            started.task_id,
            started.label,
            started.attempt_count,
            started.max_attempts,
        )

        invocation = TaskInvocation(
            run_id=self.run_id,
            task=started,
            attempt=started.attempt_count,
            command_template=started.command or self._command_template,
            workdir=self._task_workdir(started),
            timeout_seconds=self.settings.task_timeout_seconds,
        )
        self._known_generation = self.wrapper.current_generation()
        self._restart_event.clear()
        self._task_in_flight = True
        try:
            outcome = self.wrapper.invoke(
                invocation,
                cancel_requested=self._should_interrupt,
                restart_requested=self._restart_event.is_set,
                force_kill_requested=lambda: self._cancel_force,
            )
        except CredentialExhausted as exhausted:
            if self._lease_lost.is_set():
                return ExitReason.LEASE_LOST
            self.store.append_task_result(
                self.run_id,
                started.task_id,
                TaskResult(status=TaskStatus.PENDING, error=str(exhausted), refund_attempt=True),
            )
            return self._wait_for_credentials(exhausted)
        finally:
            self._task_in_flight = False
        return self._handle_outcome(started, outcome)

    def _handle_outcome(self, task: TaskView, outcome: InvocationOutcome) -> ExitReason | None:
        if self._lease_lost.is_set():
            return ExitReason.LEASE_LOST
        if outcome.status == InvocationStatus.SUCCEEDED:
            finished = self.store.append_task_result(
                self.run_id,
                task.task_id,
                TaskResult(status=TaskStatus.FINISHED, exit_code=0),
            )
            logger.info("Task %s (%s) finished.", finished.task_id, finished.label)
            self._publish()
            return None

        if outcome.status in {InvocationStatus.CANCELLED, InvocationStatus.RESTART_REQUESTED}:
            restart = outcome.status == InvocationStatus.RESTART_REQUESTED
            self.store.append_task_result(
                self.run_id,
                task.task_id,
                TaskResult(
                    status=TaskStatus.PENDING,
                    exit_code=outcome.exit_code,
                    error="restarted after credential change" if restart else "interrupted",
                    refund_attempt=True,
                ),
            )
            if restart:
                logger.info(
                    "Credentials changed while task %s was running; restarting it.",
                    task.task_id,
                )
                self.store.add_event(self.run_id, "task_restarted", task_id=task.task_id)
            self._publish()
            return None

        failed = self.store.append_task_result(
            self.run_id,
            task.task_id,
            TaskResult(
                status=TaskStatus.FAILED,
                exit_code=outcome.exit_code,
                error=outcome.error_summary,
            ),
        )
        classification = outcome.classification
        retryable = classification is not None and (
            classification.retryable or classification.rotates_credential
        )
        reason = outcome.error_summary or "task failed"
        if retryable and failed.attempt_count < failed.max_attempts:
            delay_seconds = self._compute_retry_delay(retry_number=failed.attempt_count)
            logger.warning(
                "Task %s attempt %d/%d failed (%s); retrying in %.1fs.",
                failed.task_id,
                failed.attempt_count,
                failed.max_attempts,
                classification.failure_class.value if classification else "unknown",
                delay_seconds,
            )
            self.store.add_event(
                self.run_id,
                "task_retry_scheduled",
                task_id=failed.task_id,
                details={
                    "attempt": failed.attempt_count,
                    "delay_seconds": round(delay_seconds, 3),
                    **(classification.to_event_details() if classification else {}),
                },
            )
            self._phase = Phase.RETRY_BACKOFF
            self._publish()
            self._sleep_with_stop(delay_seconds)
            return None
        raise UnrecoverableTaskError(failed.task_id, reason)

    def _run_human_gate(self, task: TaskView) -> ExitReason | None:
        if task.status != TaskStatus.IN_PROGRESS:
            task = self.store.append_task_result(
                self.run_id,
                task.task_id,
                TaskResult(status=TaskStatus.IN_PROGRESS),
            )
        self._current_task_id = task.task_id
        run = self.store.load_run(self.run_id)
        if run.status == RunStatus.RUNNING:
            self.store.transition_run(
                self.run_id,
                RunStatus.BLOCKED,
                block_reason=BlockReason.HUMAN_GATE,
            )
            self.alerts.notify(
                AlertSeverity.INFO,
                f"Run {self.run_id} is waiting for feedback on task {task.label}.",
                run_id=self.run_id,
            )
        self._phase = Phase.AWAITING_FEEDBACK
        self._publish()

        while True:
            stop = self._stop_exit()
            if stop is not None:
                return stop
            self._refresh_run_flags(force=True)
            if self._cancel_requested:
                return self._finish_cancelled()
            feedback = self.store.take_feedback(self.run_id, task_id=task.task_id)
            if feedback is not None:
                break
            self._sleep_with_stop(self.settings.feedback_poll_seconds, honor_deadline=False)

        self.store.transition_run(self.run_id, RunStatus.RUNNING)
        self._phase = Phase.EXECUTING
        if feedback.decision == FeedbackDecision.APPROVE:
            self.store.append_task_result(
                self.run_id,
                task.task_id,
                TaskResult(status=TaskStatus.FINISHED),
            )
            logger.info("Task %s (%s) approved.", task.task_id, task.label)
            self._publish()
            return None

        reason = "rejected by reviewer"
        if feedback.notes:
            reason = f"{reason}: {feedback.notes}"
        self.store.append_task_result(
            self.run_id,
            task.task_id,
            TaskResult(status=TaskStatus.FAILED, error=reason),
        )
        raise UnrecoverableTaskError(task.task_id, reason)

    def _wait_for_credentials(
        self,
        exhausted: CredentialExhausted,
        *,
        alert: bool = True,
    ) -> ExitReason | None:
        run = self.store.load_run(self.run_id)
        if run.status == RunStatus.RUNNING:
            self.store.transition_run(
                self.run_id,
                RunStatus.BLOCKED,
                block_reason=BlockReason.CREDENTIAL_EXHAUSTED,
            )
        if alert:
            self.alerts.notify(AlertSeverity.CRITICAL, str(exhausted), run_id=self.run_id)
        self._phase = Phase.AWAITING_CREDENTIALS
        self._publish()

        generation = self.wrapper.current_generation()
        give_up_at = time.monotonic() + self.settings.credential_wait_seconds
        while True:
            stop = self._stop_exit()
            if stop is not None:
                return stop
            self._refresh_run_flags(force=True)
            if self._cancel_requested:
                return self._finish_cancelled()
            now = utc_now()
            if exhausted.retry_at is not None and now >= exhausted.retry_at:
                logger.info("Credential backoff for run %s elapsed.", self.run_id)
                break
            if self.wrapper.current_generation() != generation:
                logger.info("Credential slots changed; resuming run %s.", self.run_id)
                break
            if self._deadline_passed():
                break
            remaining = give_up_at - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Run %s stays blocked: no usable credential within %ds.",
                    self.run_id,
                    self.settings.credential_wait_seconds,
                )
                return ExitReason.CREDENTIAL_WAIT_EXPIRED
            wait_seconds = min(remaining, self.settings.feedback_poll_seconds)
            if exhausted.retry_at is not None:
                wait_seconds = min(wait_seconds, (exhausted.retry_at - now).total_seconds())
            self._sleep_with_stop(max(0.05, wait_seconds), honor_deadline=False)

        self.store.transition_run(self.run_id, RunStatus.RUNNING)
        self._phase = Phase.EXECUTING
        self._publish()
        return None

    def _finish_succeeded(self, plan: ResumePlan) -> ExitReason:
        self.store.transition_run(self.run_id, RunStatus.FINISHED)
        self._phase = Phase.DONE
        self.alerts.notify(
            AlertSeverity.INFO,
            f"Run {self.run_id} finished ({plan.completed}/{plan.total} tasks).",
            run_id=self.run_id,
        )
        self._publish()
        return ExitReason.FINISHED

    def _finish_failed(self, reason: str) -> ExitReason:
        run = self.store.load_run(self.run_id)
        if run.status == RunStatus.BLOCKED:
            self.store.transition_run(self.run_id, RunStatus.RUNNING)
        self.store.transition_run(self.run_id, RunStatus.FAILED, error_summary=reason)
        self._phase = Phase.DONE
        self.alerts.notify(
            AlertSeverity.CRITICAL,
            f"Run {self.run_id} failed: {reason}",
            run_id=self.run_id,
        )
        self._publish()
        return ExitReason.FAILED

    def _finish_cancelled(self) -> ExitReason:
        self._phase = Phase.CANCELLING
        for task in self.store.list_tasks(self.run_id):
            if task.status == TaskStatus.IN_PROGRESS:
                self.store.append_task_result(
                    self.run_id,
                    task.task_id,
                    TaskResult(status=TaskStatus.PENDING, error="cancelled", refund_attempt=True),
                )
        self.store.transition_run(self.run_id, RunStatus.CANCELLED)
        self._phase = Phase.DONE
        self.alerts.notify(AlertSeverity.INFO, f"Run {self.run_id} cancelled.", run_id=self.run_id)
        self._publish()
        return ExitReason.CANCELLED

    def _enter_running(self, run: RunView, plan: ResumePlan) -> None:
        if run.status == RunStatus.PENDING:
            self.store.transition_run(self.run_id, RunStatus.RUNNING)
            return
        if run.status != RunStatus.BLOCKED:
            return
        waiting_on_gate = (
            run.block_reason == BlockReason.HUMAN_GATE
            and plan.next_task is not None
            and plan.next_task.human_gate
        )
        if not waiting_on_gate:
            self.store.transition_run(self.run_id, RunStatus.RUNNING)

    def _bind_command_template(self, run: RunView) -> str:
        template: str | None = None
        if self.spec_source is not None:
            try:
                template = self.spec_source.get_spec(run.spec_id).command_template
            except OrchestratorError as error:
                logger.warning("Could not reload spec %s: %s", run.spec_id, error)
        template = template or self.settings.default_command_template or run.command_template
        if template:
            self.store.set_command_template(self.run_id, template)
        return template or ""

    def _task_workdir(self, task: TaskView) -> Path:
        safe_id = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in task.task_id)
        return self.store.run_dir(self.run_id) / "tasks" / f"{task.position:04d}-{safe_id}"

    def _beat(self) -> None:
        held = self.store.record_heartbeat(
            self.run_id,
            self.unit_id,
            phase=self._phase.value,
            current_task=self._current_task_id,
            pid=self.holder.pid,
        )
        if not held:
            if not self._lease_lost.is_set():
                logger.error(
                    "Unit %s lost the lease of run %s; stopping without further writes.",
                    self.unit_id,
                    self.run_id,
                )
            self._lease_lost.set()
            return
        self._last_beat_at = utc_now()
        self._refresh_run_flags(force=True)
        if self._task_in_flight and self.wrapper.current_generation() != self._known_generation:
            self._restart_event.set()
        max_run_seconds = self.settings.max_run_seconds
        if max_run_seconds and time.monotonic() - self._session_started >= max_run_seconds:
            self._request_stop(reason=ExitReason.MAX_RUN_TIME, detail="max_run_seconds")
        self._publish()

    def _publish(self) -> None:
        if self.publisher is None:
            return
        try:
            record = self._status_record()
        except Exception:  # noqa: BLE001
            logger.warning("Could not build status record for run %s.", self.run_id, exc_info=True)
            return
        self.publisher.publish(record)

    def _status_record(self) -> StatusRecord:
        return project_status(
            self.store,
            self.run_id,
            phase=self._phase,
            unit_id=self.unit_id,
            holder=self.holder,
            heartbeat_at=self._last_beat_at,
        )

    def _refresh_run_flags(self, *, force: bool = False) -> None:
        now = time.monotonic()
        if not force and now < self._next_flag_poll:
            return
        self._next_flag_poll = now + min(
            self.settings.feedback_poll_seconds,
            self.settings.heartbeat_interval_seconds,
        )
        run = self.store.load_run(self.run_id)
        if run.cancel_requested_at is not None and not self._cancel_requested:
            logger.warning(
                "Cancel requested for run %s%s.",
                self.run_id,
                " (force)" if run.cancel_force else "",
            )
        self._cancel_requested = run.cancel_requested_at is not None
        self._cancel_force = run.cancel_force

    def _should_interrupt(self, *, honor_deadline: bool = True) -> bool:
        if self._stop_event.is_set() or self._lease_lost.is_set():
            return True
        self._refresh_run_flags()
        if self._cancel_requested:
            return True
        return honor_deadline and self._deadline_passed()

    def _deadline_passed(self) -> bool:
        return self._deadline_at is not None and utc_now() >= self._deadline_at

    def _stop_exit(self) -> ExitReason | None:
        if self._lease_lost.is_set():
            return ExitReason.LEASE_LOST
        if self._stop_event.is_set():
            return self._stop_reason or ExitReason.STOP_REQUESTED
        return None

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.settings.retry_max_seconds,
            self.settings.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _sleep_with_stop(self, seconds: float, *, honor_deadline: bool = True) -> None:
        deadline = time.monotonic() + seconds
        while time.monotonic() < deadline and not self._should_interrupt(
            honor_deadline=honor_deadline,
        ):
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    def _record_wrapper_event(self, event_type: str, details: dict[str, object]) -> None:
        task_id = details.get("task_id")
        self.store.add_event(
            self.run_id,
            event_type,
            task_id=str(task_id) if task_id is not None else None,
            details=details,
        )

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(reason=ExitReason.STOP_REQUESTED, detail=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, reason: ExitReason, detail: str) -> None:
        if self._stop_event.is_set():
            return
        self._stop_reason = reason
        self._stop_event.set()
        logger.warning("Stopping unit %s for run %s (%s).", self.unit_id, self.run_id, detail)

    def _shutdown(self) -> None:
        self._heartbeat.stop()
        if self._phase != Phase.DONE:
            self._phase = Phase.IDLE
        self._current_task_id = None
        if not self._lease_lost.is_set():
            self._publish()
        if self.publisher is not None:
            self.publisher.stop()
        released = self.store.release_lease(self.run_id, self.unit_id)
        if released:
            logger.info("Unit %s released the lease of run %s.", self.unit_id, self.run_id)

    def _result(self, exit_reason: ExitReason) -> ControllerResult:
        run = self.store.load_run(self.run_id)
        plan = self.store.build_resume_plan(self.run_id)
        return ControllerResult(
            run_id=self.run_id,
            unit_id=self.unit_id,
            status=run.status,
            exit_reason=exit_reason,
            completed=plan.completed,
            total=plan.total,
            iteration=run.iteration_count,
            error_summary=run.error_summary,
        )
