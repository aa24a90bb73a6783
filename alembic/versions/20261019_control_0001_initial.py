"""Initial control-plane schema for credential slots."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "control_0001"
down_revision = None
branch_labels = ("control",)
depends_on = None


def upgrade() -> None:
    op.create_table(
        "credential_providers",
        sa.Column("provider", sa.String(), primary_key=True),
        sa.Column("current_slot_index", sa.Integer(), nullable=True),
        sa.Column("generation", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "credential_slots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("slot_index", sa.Integer(), nullable=False),
        sa.Column("label", sa.String(), nullable=True),
        sa.Column("key_material", sa.Text(), nullable=False),
        sa.Column("rate_limited_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rate_limit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_credential_slots_provider", "credential_slots", ["provider"])
    op.create_index(
        "uq_credential_slots_provider_index",
        "credential_slots",
        ["provider", "slot_index"],
        unique=True,
    )

    op.create_table(
        "credential_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("slot_index", sa.Integer(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_credential_events_provider_time",
        "credential_events",
        ["provider", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("credential_events")
    op.drop_table("credential_slots")
    op.drop_table("credential_providers")
