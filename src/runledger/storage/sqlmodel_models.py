"""SQLModel ORM tables for the per-run state store and the control-plane store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Index, PrimaryKeyConstraint, Text
from sqlmodel import Field, SQLModel


class RunRow(SQLModel, table=True):
    __tablename__ = "runs"  # type: ignore[bad-override]

    run_id: str = Field(primary_key=True)
    spec_id: str = Field(index=True)
    status: str = Field(index=True)
    current_task: str | None = None
    task_attempt: int = Field(default=0)
    iteration_count: int = Field(default=0)
    template: str = Field(default="default")
    resources_json: str | None = Field(default=None, sa_column=Column(Text))
    command_template: str | None = Field(default=None, sa_column=Column(Text))
    owner_unit_id: str | None = Field(default=None, index=True)
    block_reason: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    deadline_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    cancel_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    cancel_force: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default="0"),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class RunTaskRow(SQLModel, table=True):
    __tablename__ = "run_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("run_id", "task_id", name="pk_run_tasks"),
        Index("uq_run_tasks_position", "run_id", "position", unique=True),
    )

    run_id: str
    task_id: str
    position: int
    task_type: str
    status: str = Field(index=True)
    attempt_count: int = Field(default=0)
    max_attempts: int = Field(default=3)
    human_gate: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default="0"),
    )
    command: str | None = Field(default=None, sa_column=Column(Text))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    last_exit_code: int | None = None
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskResultRow(SQLModel, table=True):
    __tablename__ = "task_results"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_results_run_task", "run_id", "task_id"),)

    seq: int | None = Field(default=None, primary_key=True)
    run_id: str
    task_id: str
    status: str
    attempt: int
    exit_code: int | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    unit_id: str | None = None
    recorded_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunLeaseRow(SQLModel, table=True):
    __tablename__ = "run_leases"  # type: ignore[bad-override]

    run_id: str = Field(primary_key=True)
    unit_id: str | None = None
    pid: int | None = None
    hostname: str | None = None
    process_started_at: float | None = None
    epoch: int = Field(default=0)
    acquired_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    released_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class RunHeartbeatRow(SQLModel, table=True):
    __tablename__ = "run_heartbeats"  # type: ignore[bad-override]

    run_id: str = Field(primary_key=True)
    unit_id: str
    pid: int | None = None
    phase: str
    current_task: str | None = None
    sequence: int = Field(default=0)
    beat_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunEventRow(SQLModel, table=True):
    __tablename__ = "run_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_run_events_run_time", "run_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    run_id: str
    event_type: str = Field(index=True)
    task_id: str | None = None
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunFeedbackRow(SQLModel, table=True):
    __tablename__ = "run_feedback"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    task_id: str | None = None
    decision: str
    notes: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    consumed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class CredentialProviderRow(SQLModel, table=True):
    __tablename__ = "credential_providers"  # type: ignore[bad-override]

    provider: str = Field(primary_key=True)
    current_slot_index: int | None = None
    generation: int = Field(default=0)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CredentialSlotRow(SQLModel, table=True):
    __tablename__ = "credential_slots"  # type: ignore[bad-override]
    __table_args__ = (
        Index("uq_credential_slots_provider_index", "provider", "slot_index", unique=True),
    )

    id: int | None = Field(default=None, primary_key=True)
    provider: str = Field(index=True)
    slot_index: int
    label: str | None = None
    key_material: str = Field(sa_column=Column(Text, nullable=False))
    rate_limited_until: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    rate_limit_count: int = Field(default=0)
    last_used_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    added_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    removed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class CredentialEventRow(SQLModel, table=True):
    __tablename__ = "credential_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_credential_events_provider_time", "provider", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    provider: str
    slot_index: int | None = None
    event_type: str
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
