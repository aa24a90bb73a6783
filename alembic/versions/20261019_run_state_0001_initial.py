"""Initial per-run state store schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "run_state_0001"
down_revision = None
branch_labels = ("run_state",)
depends_on = None


def upgrade() -> None:
    op.create_table(
        "runs",
        sa.Column("run_id", sa.String(), primary_key=True),
        sa.Column("spec_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_task", sa.String(), nullable=True),
        sa.Column("task_attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("iteration_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("template", sa.String(), nullable=False, server_default="default"),
        sa.Column("resources_json", sa.Text(), nullable=True),
        sa.Column("command_template", sa.Text(), nullable=True),
        sa.Column("owner_unit_id", sa.String(), nullable=True),
        sa.Column("block_reason", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_force", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_runs_spec_id", "runs", ["spec_id"])
    op.create_index("ix_runs_status", "runs", ["status"])
    op.create_index("ix_runs_owner_unit_id", "runs", ["owner_unit_id"])

    op.create_table(
        "run_tasks",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("human_gate", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("command", sa.Text(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_exit_code", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("run_id", "task_id", name="pk_run_tasks"),
    )
    op.create_index("uq_run_tasks_position", "run_tasks", ["run_id", "position"], unique=True)
    op.create_index("ix_run_tasks_status", "run_tasks", ["status"])

    op.create_table(
        "task_results",
        sa.Column("seq", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("unit_id", sa.String(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_task_results_run_task", "task_results", ["run_id", "task_id"])

    op.create_table(
        "run_leases",
        sa.Column("run_id", sa.String(), primary_key=True),
        sa.Column("unit_id", sa.String(), nullable=True),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("hostname", sa.String(), nullable=True),
        sa.Column("process_started_at", sa.Float(), nullable=True),
        sa.Column("epoch", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "run_heartbeats",
        sa.Column("run_id", sa.String(), primary_key=True),
        sa.Column("unit_id", sa.String(), nullable=False),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("phase", sa.String(), nullable=False),
        sa.Column("current_task", sa.String(), nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("beat_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "run_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_run_events_event_type", "run_events", ["event_type"])
    op.create_index("idx_run_events_run_time", "run_events", ["run_id", "created_at"])

    op.create_table(
        "run_feedback",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("decision", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_run_feedback_run_id", "run_feedback", ["run_id"])


def downgrade() -> None:
    op.drop_table("run_feedback")
    op.drop_table("run_events")
    op.drop_table("run_heartbeats")
    op.drop_table("run_leases")
    op.drop_table("task_results")
    op.drop_table("run_tasks")
    op.drop_table("runs")
