"""Dispatch new runs to execution units and resume or cancel existing ones."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from runledger.orchestrator.channels import StatusChannel
from runledger.orchestrator.errors import (
    LeaseConflict,
    OrchestratorError,
    RunNotFound,
    StatusChannelError,
)
from runledger.orchestrator.interfaces import AlertSink, Provisioner, SpecSource, UnitHandle
from runledger.orchestrator.liveness import current_holder_identity
from runledger.orchestrator.models import (
    AlertSeverity,
    FeedbackDecision,
    FeedbackView,
    HolderIdentity,
    Phase,
    RunStatus,
    RunView,
    TaskResult,
    TaskStatus,
)
from runledger.orchestrator.publisher import project_status
from runledger.orchestrator.store import RunStore
from runledger.storage.common import new_ulid

logger = logging.getLogger(__name__)


def new_unit_id(prefix: str = "unit") -> str:
    return f"{prefix}-{new_ulid()}"


@dataclass(slots=True)
class DispatchResult:
    run_id: str
    created: bool
    status: RunStatus
    unit: UnitHandle | None
    message: str


class Dispatcher:
    """Front door for run lifecycle requests.

    Before a unit is scheduled the dispatcher takes the run's lease for the
    unit id it is about to hand out; the unit adopts it on start. Two
    dispatches racing for the same run therefore meet at the lease and only
    one of them schedules anything.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: RunStore,
        spec_source: SpecSource,
        provisioner: Provisioner,
        alerts: AlertSink,
        channel: StatusChannel | None = None,
        default_max_attempts: int = 3,
        holder: HolderIdentity | None = None,
    ) -> None:
        self.store = store
        self.spec_source = spec_source
        self.provisioner = provisioner
        self.alerts = alerts
        self.channel = channel
        self.default_max_attempts = default_max_attempts
        self.holder = holder or current_holder_identity()

    def dispatch(  # noqa: PLR0913
        self,
        spec_id: str,
        *,
        template: str = "default",
        resources: dict[str, Any] | None = None,
        run_id: str | None = None,
        deadline_at: datetime | None = None,
    ) -> DispatchResult:
        """Create a run for ``spec_id`` and schedule a unit for it.

        Dispatching an explicit ``run_id`` that already exists resumes that run
        instead; if another unit holds it ``LeaseConflict`` is raised and
        nothing is scheduled.
        """

        if run_id is not None and self.store.exists(run_id):
            return self.resume(run_id, strict=True)

        task_list = self.spec_source.get_spec(spec_id)
        try:
            run = self.store.create_run(
                spec_id,
                task_list.tasks,
                template=template,
                resources=resources,
                deadline_at=deadline_at,
                run_id=run_id,
                default_max_attempts=self.default_max_attempts,
            )
        except OrchestratorError:
            if run_id is not None and self.store.exists(run_id):
                # Lost a creation race; treat it as a dispatch of the existing run.
                return self.resume(run_id, strict=True)
            raise
        logger.info(
            "Created run %s for spec %s with %d tasks.",
            run.run_id,
            spec_id,
            len(task_list.tasks),
        )
        self._publish_snapshot(run.run_id, phase=Phase.STARTING)
        return self._launch(run, created=True, strict=True)

    def resume(self, run_id: str, *, strict: bool = False) -> DispatchResult:
        """Schedule a unit for an existing run unless a live unit already has it.

        Without ``strict`` a held lease is reported instead of raised.
        """

        run = self.store.load_run(run_id)
        if run.is_terminal:
            return DispatchResult(
                run_id=run_id,
                created=False,
                status=run.status,
                unit=None,
                message=f"Run {run_id} is already {run.status.value}.",
            )
        return self._launch(run, created=False, strict=strict)

    def recover_orphans(self) -> list[DispatchResult]:
        """Resume every unfinished run whose lease is free or provably abandoned."""

        resumed: list[DispatchResult] = []
        for run_id in self.store.list_run_ids():
            try:
                result = self.resume(run_id)
            except RunNotFound:
                continue
            if result.unit is not None:
                resumed.append(result)
        return resumed

    def cancel_run(self, run_id: str, *, force: bool = False) -> RunView:
        """Request cancellation; settle the run here when no live unit holds it."""

        self.store.request_cancel(run_id, force=force)
        unit_id = new_unit_id("cancel")
        try:
            self.store.acquire_lease(run_id, unit_id, holder=self.holder)
        except LeaseConflict:
            logger.info("Run %s has a live unit; it will cancel cooperatively.", run_id)
            return self.store.load_run(run_id)

        try:
            run = self.store.load_run(run_id)
            if not run.is_terminal:
                self._settle_cancelled(run)
        finally:
            self.store.release_lease(run_id, unit_id)
        self._publish_snapshot(run_id, phase=Phase.DONE)
        return self.store.load_run(run_id)

    def submit_feedback(
        self,
        run_id: str,
        decision: FeedbackDecision,
        notes: str | None = None,
        *,
        task_id: str | None = None,
    ) -> FeedbackView:
        return self.store.submit_feedback(run_id, decision, notes, task_id=task_id)

    def _launch(self, run: RunView, *, created: bool, strict: bool) -> DispatchResult:
        unit_id = new_unit_id()
        try:
            self.store.acquire_lease(run.run_id, unit_id, holder=self.holder, hold_attach=False)
        except LeaseConflict as conflict:
            if strict:
                self.alerts.notify(
                    AlertSeverity.WARNING,
                    f"Dispatch of run {run.run_id} refused: {conflict}",
                    run_id=run.run_id,
                )
                raise
            logger.info("Run %s already has a live unit: %s", run.run_id, conflict)
            return DispatchResult(
                run_id=run.run_id,
                created=created,
                status=run.status,
                unit=None,
                message=f"Run {run.run_id} already has a live execution unit.",
            )

        try:
            handle = self.provisioner.schedule_unit(
                run.run_id,
                unit_id=unit_id,
                template=run.template,
                resources=run.resources,
            )
        except OSError as error:
            self.store.release_lease(run.run_id, unit_id)
            raise OrchestratorError(
                f"Failed to schedule an execution unit for run {run.run_id}: {error}",
            ) from error

        self.store.bind_lease_holder(run.run_id, unit_id, handle.holder)
        self.store.add_event(
            run.run_id,
            "unit_scheduled",
            details={
                "unit_id": unit_id,
                "pid": handle.holder.pid,
                "template": run.template,
                "resumed": not created,
            },
        )
        verb = "Dispatched" if created else "Resumed"
        return DispatchResult(
            run_id=run.run_id,
            created=created,
            status=run.status,
            unit=handle,
            message=f"{verb} run {run.run_id} on unit {unit_id} (pid={handle.holder.pid}).",
        )

    def _settle_cancelled(self, run: RunView) -> None:
        for task in self.store.list_tasks(run.run_id):
            if task.status == TaskStatus.IN_PROGRESS:
                self.store.append_task_result(
                    run.run_id,
                    task.task_id,
                    TaskResult(status=TaskStatus.PENDING, error="cancelled", refund_attempt=True),
                )
        if run.status == RunStatus.PENDING:
            self.store.transition_run(run.run_id, RunStatus.RUNNING)
        self.store.transition_run(run.run_id, RunStatus.CANCELLED)
        self.alerts.notify(AlertSeverity.INFO, f"Run {run.run_id} cancelled.", run_id=run.run_id)

    def _publish_snapshot(self, run_id: str, *, phase: Phase) -> None:
        if self.channel is None:
            return
        try:
            self.channel.publish(project_status(self.store, run_id, phase=phase))
        except StatusChannelError as error:
            logger.warning("Could not publish status for run %s: %s", run_id, error)
