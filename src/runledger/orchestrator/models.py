"""Domain models for runs, tasks, leases and published status."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from runledger.storage.common import from_iso


class RunStatus(str, Enum):
    """Run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    BLOCKED = "blocked"
    FINISHED = "finished"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.FINISHED, RunStatus.FAILED, RunStatus.CANCELLED},
)


class TaskStatus(str, Enum):
    """Per-task states within one run."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    FINISHED = "finished"
    FAILED = "failed"


class BlockReason(str, Enum):
    HUMAN_GATE = "human_gate"
    CREDENTIAL_EXHAUSTED = "credential_exhausted"


class Phase(str, Enum):
    """Coarse activity of the execution unit, published with every status record."""

    STARTING = "starting"
    EXECUTING = "executing"
    RETRY_BACKOFF = "retry_backoff"
    AWAITING_FEEDBACK = "awaiting_feedback"
    AWAITING_CREDENTIALS = "awaiting_credentials"
    CANCELLING = "cancelling"
    IDLE = "idle"
    DONE = "done"


class FeedbackDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry and rotation policy."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    ACCESS_OR_AUTH = "access_or_auth"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Liveness(str, Enum):
    """Observer verdict that combines heartbeat age with a process check."""

    ALIVE = "alive"
    ALIVE_STALE_HEARTBEAT = "alive_stale_heartbeat"
    DEAD = "dead"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class TaskSpec:
    """One ordered task as described by a spec source."""

    task_id: str
    task_type: str
    command: str | None = None
    human_gate: bool = False
    max_attempts: int | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskSpec:
        task_id = str(payload.get("id") or "").strip()
        task_type = str(payload.get("type") or "").strip()
        if not task_id or not task_type:
            raise ValueError(f"Task entries need non-empty 'id' and 'type': {payload!r}")
        max_attempts = payload.get("max_attempts")
        return cls(
            task_id=task_id,
            task_type=task_type,
            command=payload.get("command"),
            human_gate=bool(payload.get("human_gate", False)),
            max_attempts=int(max_attempts) if max_attempts is not None else None,
        )


@dataclass(slots=True)
class TaskList:
    """Spec source output: ordered tasks plus an optional command template."""

    spec_id: str
    tasks: list[TaskSpec]
    command_template: str | None = None


@dataclass(slots=True)
class TaskResult:
    """Outcome appended to a task's result log."""

    status: TaskStatus
    exit_code: int | None = None
    error: str | None = None
    refund_attempt: bool = False


@dataclass(slots=True)
class RunView:
    run_id: str
    spec_id: str
    status: RunStatus
    current_task: str | None
    task_attempt: int
    iteration_count: int
    template: str
    resources: dict[str, Any]
    command_template: str | None
    owner_unit_id: str | None
    block_reason: BlockReason | None
    error_summary: str | None
    deadline_at: datetime | None
    cancel_requested_at: datetime | None
    cancel_force: bool
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


@dataclass(slots=True)
class TaskView:
    run_id: str
    task_id: str
    position: int
    task_type: str
    status: TaskStatus
    attempt_count: int
    max_attempts: int
    human_gate: bool
    command: str | None
    last_error: str | None
    last_exit_code: int | None
    started_at: datetime | None
    finished_at: datetime | None
    updated_at: datetime

    @property
    def label(self) -> str:
        """Human readable ``<position>:<type>`` label, positions starting at 1."""

        return f"{self.position}:{self.task_type}"


@dataclass(slots=True)
class TaskResultView:
    seq: int
    task_id: str
    status: TaskStatus
    attempt: int
    exit_code: int | None
    error: str | None
    unit_id: str | None
    recorded_at: datetime


@dataclass(slots=True)
class LeaseView:
    run_id: str
    unit_id: str | None
    pid: int | None
    hostname: str | None
    process_started_at: float | None
    epoch: int
    acquired_at: datetime | None
    heartbeat_at: datetime | None
    released_at: datetime | None

    @property
    def is_held(self) -> bool:
        return self.unit_id is not None


@dataclass(slots=True)
class HolderIdentity:
    """Process identity stored with a lease so liveness can be checked independently."""

    pid: int
    hostname: str
    process_started_at: float | None


@dataclass(slots=True)
class HeartbeatView:
    run_id: str
    unit_id: str
    pid: int | None
    phase: str
    current_task: str | None
    sequence: int
    beat_at: datetime


@dataclass(slots=True)
class RunEventView:
    event_id: int
    run_id: str
    event_type: str
    task_id: str | None
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FeedbackView:
    feedback_id: int
    run_id: str
    task_id: str | None
    decision: FeedbackDecision
    notes: str | None
    created_at: datetime
    consumed_at: datetime | None


@dataclass(slots=True)
class RunDetails:
    """Full store-side view of one run."""

    run: RunView
    tasks: list[TaskView]
    results: list[TaskResultView]
    events: list[RunEventView]
    lease: LeaseView | None
    heartbeat: HeartbeatView | None


@dataclass(slots=True)
class ResumePlan:
    """Where a controller session picks up inside a run."""

    completed: int
    total: int
    next_task: TaskView | None
    reset_task_ids: list[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.next_task is None


@dataclass(slots=True)
class StatusRecord:
    """Externally visible projection of one run."""

    run_id: str
    status: str
    phase: str
    current_task: str | None
    attempt: int
    iteration: int
    progress_finished: int
    progress_total: int
    updated_at: datetime
    unit_id: str | None = None
    pid: int | None = None
    hostname: str | None = None
    process_started_at: float | None = None
    heartbeat_at: datetime | None = None
    block_reason: str | None = None
    task_started_at: datetime | None = None
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["progress"] = {
            "finished": payload.pop("progress_finished"),
            "total": payload.pop("progress_total"),
        }
        for key in ("updated_at", "heartbeat_at", "task_started_at"):
            value = payload[key]
            payload[key] = value.isoformat() if value is not None else None
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StatusRecord:
        progress = payload.get("progress") or {}
        return cls(
            run_id=str(payload["run_id"]),
            status=str(payload["status"]),
            phase=str(payload.get("phase") or Phase.IDLE.value),
            current_task=payload.get("current_task"),
            attempt=int(payload.get("attempt") or 0),
            iteration=int(payload.get("iteration") or 0),
            progress_finished=int(progress.get("finished") or 0),
            progress_total=int(progress.get("total") or 0),
            updated_at=from_iso(str(payload["updated_at"])),
            unit_id=payload.get("unit_id"),
            pid=payload.get("pid"),
            hostname=payload.get("hostname"),
            process_started_at=payload.get("process_started_at"),
            heartbeat_at=_optional_iso(payload.get("heartbeat_at")),
            block_reason=payload.get("block_reason"),
            task_started_at=_optional_iso(payload.get("task_started_at")),
            sequence=int(payload.get("sequence") or 0),
        )


@dataclass(slots=True)
class CachedStatus:
    """Reconciler cache entry served to observers."""

    record: StatusRecord
    fetched_at: datetime
    is_stale: bool
    age_seconds: float


@dataclass(slots=True)
class RunSummary:
    run_id: str
    status: str
    phase: str
    current_task: str | None
    progress_finished: int
    progress_total: int
    updated_at: datetime
    is_stale: bool


@dataclass(slots=True)
class RunDetail:
    """Observer view of one run served from the reconciler cache."""

    summary: RunSummary
    record: StatusRecord
    liveness: Liveness
    stuck_task: bool
    fetched_at: datetime


@dataclass(slots=True)
class CredentialSlotView:
    provider: str
    slot_index: int
    label: str | None
    key_material: str
    rate_limited_until: datetime | None
    rate_limit_count: int
    last_used_at: datetime | None
    added_at: datetime
    removed_at: datetime | None

    @property
    def is_active(self) -> bool:
        return self.removed_at is None


@dataclass(slots=True)
class SlotStatus:
    """Credential slot status safe to print: key material is masked."""

    provider: str
    slot_index: int
    label: str | None
    masked_key: str
    is_current: bool
    is_removed: bool
    rate_limited_until: datetime | None
    rate_limit_count: int
    generation: int


def _optional_iso(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    return from_iso(str(value))
