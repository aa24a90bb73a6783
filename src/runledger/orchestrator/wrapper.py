"""Credential rotation wrapper around task process invocation."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path

from runledger.orchestrator.backend import (
    BackendRunError,
    BackendRunRequest,
    BackendRunResult,
    TaskBackend,
)
from runledger.orchestrator.backend.cli_backend import read_tail
from runledger.orchestrator.credentials import CredentialRegistry
from runledger.orchestrator.errors import CredentialExhausted
from runledger.orchestrator.failure_classifier import (
    FailureClassification,
    classify_task_failure,
)
from runledger.orchestrator.models import CredentialSlotView, FailureClass, TaskView
from runledger.storage.common import utc_now

logger = logging.getLogger(__name__)


class InvocationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RESTART_REQUESTED = "restart_requested"


@dataclass(slots=True)
class TaskInvocation:
    """One attempt of one task as seen by the wrapper."""

    run_id: str
    task: TaskView
    attempt: int
    command_template: str
    workdir: Path
    timeout_seconds: int


@dataclass(slots=True)
class InvocationOutcome:
    status: InvocationStatus
    exit_code: int | None
    classification: FailureClassification | None
    error_summary: str | None
    slot_index: int | None
    rotations: int


class CredentialRotationWrapper:
    """Invoke a task process with a provider credential, failing over on rate limits.

    A rate-limit or auth-exhaustion exit marks the slot limited for the backoff
    window and re-invokes the same task with the next usable slot. When every
    slot is limited ``CredentialExhausted`` propagates to the controller.
    Without a registry, or with no slots configured for the provider, the task
    runs without an injected credential.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: TaskBackend,
        registry: CredentialRegistry | None,
        provider: str,
        env_var_name: str,
        rate_limit_exit_code: int = 75,
        rate_limit_backoff_seconds: int = 3_600,
        transient_exit_codes: tuple[int, ...] = (137, 143),
        graceful_shutdown_seconds: int = 30,
        on_event: Callable[[str, dict[str, object]], None] | None = None,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.provider = provider
        self.env_var_name = env_var_name
        self.rate_limit_exit_code = rate_limit_exit_code
        self.rate_limit_backoff_seconds = rate_limit_backoff_seconds
        self.transient_exit_codes = transient_exit_codes
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.on_event = on_event

    def current_generation(self) -> int:
        if self.registry is None:
            return 0
        return self.registry.generation(self.provider)

    def pending_exhaustion(self) -> CredentialExhausted | None:
        """The exhaustion still in force, or None when a slot would be handed out."""
        if self.registry is None or not self.registry.has_active_slots(self.provider):
            return None
        try:
            self.registry.ensure_available(self.provider)
        except CredentialExhausted as exhausted:
            return exhausted
        return None

    def invoke(
        self,
        invocation: TaskInvocation,
        *,
        cancel_requested: Callable[[], bool],
        restart_requested: Callable[[], bool],
        force_kill_requested: Callable[[], bool] | None = None,
    ) -> InvocationOutcome:
        """Run the task until it exits on its own terms or is interrupted."""

        rotations = 0
        limited: set[int] = set()
        while True:
            slot = self._acquire_slot(limited=limited)
            env: dict[str, str] = {}
            if slot is not None:
                env[self.env_var_name] = slot.key_material
                env["RUNLEDGER_CREDENTIAL_SLOT"] = str(slot.slot_index)

            request = BackendRunRequest(
                run_id=invocation.run_id,
                task_id=invocation.task.task_id,
                task_type=invocation.task.task_type,
                attempt=invocation.attempt,
                command_template=invocation.command_template,
                workdir=invocation.workdir,
                timeout_seconds=invocation.timeout_seconds,
                env=env,
                invocation_index=rotations,
                shutdown_requested=lambda: cancel_requested() or restart_requested(),
                graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                force_kill_requested=force_kill_requested,
            )
            try:
                execution = self.backend.run(request)
            except BackendRunError as error:
                return InvocationOutcome(
                    status=InvocationStatus.FAILED,
                    exit_code=None,
                    classification=FailureClassification(
                        failure_class=(
                            FailureClass.BACKEND_TRANSIENT
                            if error.transient
                            else FailureClass.BACKEND_NON_RETRYABLE
                        ),
                        matched_rule="backend_error",
                        matched_pattern=None,
                    ),
                    error_summary=str(error),
                    slot_index=slot.slot_index if slot is not None else None,
                    rotations=rotations,
                )

            slot_index = slot.slot_index if slot is not None else None
            if execution.interrupted:
                status = (
                    InvocationStatus.CANCELLED
                    if cancel_requested()
                    else InvocationStatus.RESTART_REQUESTED
                )
                return InvocationOutcome(
                    status=status,
                    exit_code=execution.exit_code,
                    classification=None,
                    error_summary=None,
                    slot_index=slot_index,
                    rotations=rotations,
                )
            if execution.exit_code == 0:
                return InvocationOutcome(
                    status=InvocationStatus.SUCCEEDED,
                    exit_code=0,
                    classification=None,
                    error_summary=None,
                    slot_index=slot_index,
                    rotations=rotations,
                )

            classification = self._classify(execution)
            if classification.rotates_credential and slot is not None:
                self._mark_limited(slot=slot, invocation=invocation, classification=classification)
                limited.add(slot.slot_index)
                rotations += 1
                continue

            return InvocationOutcome(
                status=InvocationStatus.FAILED,
                exit_code=execution.exit_code,
                classification=classification,
                error_summary=_error_summary(execution),
                slot_index=slot_index,
                rotations=rotations,
            )

    def _acquire_slot(self, *, limited: set[int]) -> CredentialSlotView | None:
        if self.registry is None or not self.registry.has_active_slots(self.provider):
            return None
        slot = self.registry.acquire(self.provider)
        if slot.slot_index in limited:
            # Zero backoff would hand the same slot straight back.
            raise CredentialExhausted(self.provider, slot.rate_limited_until or utc_now())
        return slot

    def _mark_limited(
        self,
        *,
        slot: CredentialSlotView,
        invocation: TaskInvocation,
        classification: FailureClassification,
    ) -> None:
        if self.registry is None:
            return
        until = utc_now() + timedelta(seconds=self.rate_limit_backoff_seconds)
        self.registry.mark_rate_limited(self.provider, slot.slot_index, until=until)
        logger.warning(
            "Task %s of run %s hit %s on %s slot %s; rotating.",
            invocation.task.task_id,
            invocation.run_id,
            classification.failure_class.value,
            self.provider,
            slot.slot_index,
        )
        if self.on_event is not None:
            self.on_event(
                "credential_rotated",
                {
                    "task_id": invocation.task.task_id,
                    "provider": self.provider,
                    "slot_index": slot.slot_index,
                    "rate_limited_until": until.isoformat(),
                    **classification.to_event_details(),
                },
            )

    def _classify(self, execution: BackendRunResult) -> FailureClassification:
        return classify_task_failure(
            exit_code=execution.exit_code,
            timed_out=execution.timed_out,
            stdout=read_tail(execution.stdout_path),
            stderr=read_tail(execution.stderr_path),
            rate_limit_exit_code=self.rate_limit_exit_code,
            transient_exit_codes=self.transient_exit_codes,
        )


def _error_summary(execution: BackendRunResult) -> str:
    if execution.timed_out:
        return "Task process timed out."
    tail = read_tail(execution.stderr_path, limit=500).strip()
    if tail:
        return f"exit code {execution.exit_code}: {tail}"
    return f"exit code {execution.exit_code}"
