"""Controllers for run orchestration CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from runledger.config import Settings
from runledger.orchestrator.channels import StatusChannel, build_status_channel
from runledger.orchestrator.controller import ExecutionUnitController, ExitReason
from runledger.orchestrator.credentials import CredentialRegistry
from runledger.orchestrator.dispatcher import Dispatcher
from runledger.orchestrator.interfaces import (
    AlertSink,
    JsonSpecSource,
    LocalProcessProvisioner,
    build_alert_sink,
)
from runledger.orchestrator.models import FeedbackDecision, RunStatus
from runledger.orchestrator.reconciler import StatusReconciler
from runledger.orchestrator.retention import prune_runs
from runledger.orchestrator.store import RunStore
from runledger.storage.common import utc_now


@dataclass(slots=True)
class DispatchCommand:
    """CLI input for run dispatch."""

    home: Path | None
    spec_id: str
    template: str
    resources: dict[str, str]
    run_id: str | None
    deadline_minutes: int | None


@dataclass(slots=True)
class RunRefCommand:
    """CLI input for commands addressing one run."""

    home: Path | None
    run_id: str


@dataclass(slots=True)
class ListRunsCommand:
    home: Path | None
    status: str | None


@dataclass(slots=True)
class ShowRunCommand:
    home: Path | None
    run_id: str
    fresh: bool
    events: int


@dataclass(slots=True)
class CancelCommand:
    home: Path | None
    run_id: str
    force: bool


@dataclass(slots=True)
class FeedbackCommand:
    home: Path | None
    run_id: str
    decision: str
    notes: str | None
    task_id: str | None


@dataclass(slots=True)
class CredentialAddCommand:
    home: Path | None
    provider: str | None
    key: str
    label: str | None


@dataclass(slots=True)
class CredentialSlotCommand:
    """CLI input for remove/rotate on one provider."""

    home: Path | None
    provider: str | None
    slot_index: int | None


@dataclass(slots=True)
class CredentialListCommand:
    home: Path | None


@dataclass(slots=True)
class UnitRunCommand:
    """CLI input for running an execution unit in the foreground."""

    home: Path | None
    run_id: str
    unit_id: str | None


@dataclass(slots=True)
class UnitRunResult:
    lines: list[str]
    success: bool


@dataclass(slots=True)
class ReconcileCommand:
    home: Path | None
    auto_resume: bool


@dataclass(slots=True)
class PruneCommand:
    home: Path | None
    days: int | None
    dry_run: bool


@dataclass(slots=True)
class RunCliController:
    """Coordinates dispatch, execution, inspection and credential CLI operations."""

    def dispatch(self, command: DispatchCommand) -> list[str]:
        settings = _settings(command.home)
        deadline_at = (
            utc_now() + timedelta(minutes=command.deadline_minutes)
            if command.deadline_minutes
            else None
        )
        with _dispatcher(settings) as dispatcher:
            result = dispatcher.dispatch(
                command.spec_id,
                template=command.template,
                resources=dict(command.resources),
                run_id=command.run_id,
                deadline_at=deadline_at,
            )
        return [result.message, f"Run: {result.run_id} status={result.status.value}"]

    def resume(self, command: RunRefCommand) -> list[str]:
        settings = _settings(command.home)
        with _dispatcher(settings) as dispatcher:
            result = dispatcher.resume(command.run_id)
        return [result.message]

    def list_runs(self, command: ListRunsCommand) -> list[str]:
        settings = _settings(command.home)
        status_filter = RunStatus(command.status.strip().lower()) if command.status else None
        with _channel(settings) as channel:
            reconciler = StatusReconciler.from_settings(channel, settings.reconciler)
            runs = reconciler.list_runs(status=status_filter)

        lines = [f"Runs: {len(runs)}"]
        for summary in runs:
            lines.append(
                f"  {summary.run_id} status={summary.status} phase={summary.phase} "
                f"progress={summary.progress_finished}/{summary.progress_total} "
                f"task={summary.current_task or '-'} "
                f"updated_at={summary.updated_at.isoformat()}"
                f"{' STALE' if summary.is_stale else ''}",
            )
        return lines

    def show_run(self, command: ShowRunCommand) -> list[str]:
        settings = _settings(command.home)
        with _channel(settings) as channel:
            reconciler = StatusReconciler.from_settings(channel, settings.reconciler)
            detail = reconciler.get_run(command.run_id, fresh=command.fresh)
        with _store(settings) as store:
            details = store.get_run_details(command.run_id)

        run = details.run
        lines = [
            f"Run: {run.run_id}",
            f"Spec: {run.spec_id}",
            f"Status: {run.status.value}"
            + (f" ({run.block_reason.value})" if run.block_reason is not None else ""),
            f"Iteration: {run.iteration_count}",
            f"Template: {run.template}",
            f"Command: {run.command_template or '-'}",
            f"Error: {run.error_summary or '-'}",
            f"Deadline: {run.deadline_at.isoformat() if run.deadline_at else '-'}",
        ]
        if details.lease is not None and details.lease.is_held:
            lines.append(
                f"Lease: unit={details.lease.unit_id} pid={details.lease.pid} "
                f"host={details.lease.hostname} epoch={details.lease.epoch}",
            )
        else:
            lines.append("Lease: free")
        if detail is None:
            lines.append("Published status: none")
        else:
            lines.append(
                f"Published status: {detail.record.status} phase={detail.record.phase} "
                f"liveness={detail.liveness.value} "
                f"stale={'yes' if detail.summary.is_stale else 'no'} "
                f"stuck_task={'yes' if detail.stuck_task else 'no'}",
            )
        lines.append(f"Tasks: {len(details.tasks)}")
        for task in details.tasks:
            lines.append(
                f"  {task.label} {task.task_id} status={task.status.value} "
                f"attempt={task.attempt_count}/{task.max_attempts}"
                f"{' gate' if task.human_gate else ''}"
                f"{f' error={task.last_error}' if task.last_error else ''}",
            )
        events = details.events[-command.events :] if command.events > 0 else []
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}"
                f"{f' task={event.task_id}' if event.task_id else ''}",
            )
        return lines

    def cancel(self, command: CancelCommand) -> list[str]:
        settings = _settings(command.home)
        with _dispatcher(settings) as dispatcher:
            run = dispatcher.cancel_run(command.run_id, force=command.force)
        if run.status == RunStatus.CANCELLED:
            return [f"Run cancelled: {run.run_id}"]
        return [
            f"Cancel requested: {run.run_id} "
            f"(status={run.status.value}; the execution unit will stop it)",
        ]

    def feedback(self, command: FeedbackCommand) -> list[str]:
        settings = _settings(command.home)
        decision = FeedbackDecision(command.decision.strip().lower())
        with _dispatcher(settings) as dispatcher:
            feedback = dispatcher.submit_feedback(
                command.run_id,
                decision,
                command.notes,
                task_id=command.task_id,
            )
        return [
            f"Feedback recorded: run={feedback.run_id} decision={feedback.decision.value} "
            f"task={feedback.task_id}",
        ]

    def add_credential(self, command: CredentialAddCommand) -> list[str]:
        settings = _settings(command.home)
        provider = command.provider or settings.credentials.default_provider
        with _registry(settings) as registry:
            slot = registry.add_slot(provider, command.key, label=command.label)
            generation = registry.generation(provider)
        return [
            f"Credential slot added: provider={provider} slot={slot.slot_index} "
            f"generation={generation}",
        ]

    def remove_credential(self, command: CredentialSlotCommand) -> list[str]:
        settings = _settings(command.home)
        provider = command.provider or settings.credentials.default_provider
        if command.slot_index is None:
            raise ValueError("--slot is required to remove a credential slot.")
        with _registry(settings) as registry:
            registry.remove_slot(provider, command.slot_index)
        return [f"Credential slot removed: provider={provider} slot={command.slot_index}"]

    def rotate_credential(self, command: CredentialSlotCommand) -> list[str]:
        settings = _settings(command.home)
        provider = command.provider or settings.credentials.default_provider
        with _registry(settings) as registry:
            current = registry.rotate(provider, command.slot_index)
        return [f"Credential pointer moved: provider={provider} slot={current}"]

    def list_credentials(self, command: CredentialListCommand) -> list[str]:
        settings = _settings(command.home)
        with _registry(settings) as registry:
            slots = registry.list_status()
        lines = [f"Credential slots: {len(slots)}"]
        for slot in slots:
            limited = (
                slot.rate_limited_until.isoformat() if slot.rate_limited_until is not None else "-"
            )
            lines.append(
                f"  {'*' if slot.is_current else ' '} {slot.provider}[{slot.slot_index}] "
                f"{slot.label or '-'} key={slot.masked_key} "
                f"rate_limited_until={limited} hits={slot.rate_limit_count} "
                f"generation={slot.generation}"
                f"{' removed' if slot.is_removed else ''}",
            )
        return lines

    def run_unit(self, command: UnitRunCommand) -> UnitRunResult:
        settings = _settings(command.home)
        controller = ExecutionUnitController.from_settings(
            settings,
            run_id=command.run_id,
            unit_id=command.unit_id,
        )
        try:
            result = controller.run()
        finally:
            controller.close()

        lines = [
            "Unit summary: "
            f"run_id={result.run_id} unit={result.unit_id} status={result.status.value} "
            f"exit={result.exit_reason.value} completed={result.completed}/{result.total} "
            f"iteration={result.iteration}",
        ]
        if result.error_summary:
            lines.append(f"Error: {result.error_summary}")
        return UnitRunResult(lines=lines, success=result.exit_reason != ExitReason.FAILED)

    def reconcile(self, command: ReconcileCommand) -> list[str]:
        settings = _settings(command.home)
        with _channel(settings) as channel:
            reconciler = StatusReconciler.from_settings(channel, settings.reconciler)
            count = reconciler.refresh_all()
            details = [reconciler.get_run(summary.run_id) for summary in reconciler.list_runs()]

        lines = [f"Status records: {count}"]
        for detail in details:
            if detail is None:
                continue
            flags = []
            if detail.summary.is_stale:
                flags.append("stale")
            if detail.stuck_task:
                flags.append("stuck")
            lines.append(
                f"  {detail.summary.run_id} status={detail.record.status} "
                f"liveness={detail.liveness.value}"
                f"{' ' + ','.join(flags) if flags else ''}",
            )

        if command.auto_resume:
            with _dispatcher(settings) as dispatcher:
                resumed = dispatcher.recover_orphans()
            lines.append(f"Resumed runs: {len(resumed)}")
            lines.extend(f"  {result.message}" for result in resumed)
        return lines

    def prune(self, command: PruneCommand) -> list[str]:
        settings = _settings(command.home)
        days = settings.retention.retention_days if command.days is None else command.days
        if days < 0:
            raise ValueError("--days must be >= 0.")
        with _store(settings) as store, _channel(settings) as channel:
            result = prune_runs(
                store,
                retention_days=days,
                channel=channel,
                dry_run=command.dry_run,
            )

        if result is None:
            return [
                "Retention prune skipped: days=0.",
                "Set RUNLEDGER_RETENTION_DAYS > 0 or pass --days.",
            ]
        lines = [
            "Retention prune completed: "
            f"days={days} dry_run={'yes' if command.dry_run else 'no'} "
            f"cutoff={result.cutoff.isoformat()}",
            f"Runs deleted: {len(result.deleted)}",
            f"Runs skipped (lease held): {len(result.skipped_leased)}",
            f"Runs still active: {result.active}",
        ]
        lines.extend(f"  {run_id}" for run_id in result.deleted)
        return lines


def _settings(home: Path | None) -> Settings:
    settings = Settings.from_env(home=home)
    settings.validate()
    return settings


@contextmanager
def _store(settings: Settings) -> Iterator[RunStore]:
    store = RunStore(
        settings.store.runs_root,
        busy_timeout_ms=settings.store.busy_timeout_ms,
        lease_stale_after_seconds=settings.store.lease_stale_after_seconds,
        allow_network_volumes=settings.store.allow_network_volumes,
    )
    try:
        yield store
    finally:
        store.close()


@contextmanager
def _channel(settings: Settings) -> Iterator[StatusChannel]:
    channel = build_status_channel(settings.publisher)
    try:
        yield channel
    finally:
        channel.close()


@contextmanager
def _registry(settings: Settings) -> Iterator[CredentialRegistry]:
    registry = CredentialRegistry(
        settings.credentials.control_db_path,
        busy_timeout_ms=settings.store.busy_timeout_ms,
    )
    registry.init_schema()
    try:
        yield registry
    finally:
        registry.close()


@contextmanager
def _alert_sink(settings: Settings) -> Iterator[AlertSink]:
    sink = build_alert_sink(settings)
    try:
        yield sink
    finally:
        sink.close()


@contextmanager
def _dispatcher(settings: Settings) -> Iterator[Dispatcher]:
    with _store(settings) as store, _channel(settings) as channel, _alert_sink(settings) as sink:
        yield Dispatcher(
            store=store,
            spec_source=JsonSpecSource(settings.specs_dir),
            provisioner=LocalProcessProvisioner(settings),
            alerts=sink,
            channel=channel,
            default_max_attempts=settings.controller.max_attempts,
        )
