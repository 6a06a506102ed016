"""Initial schema — jobs and workers.

Revision ID: v001
Revises:
Create Date: 2026-10-17 00:00:00.000000

Creates both tables from scratch.  Runs against SQLite (dev) and PostgreSQL
(production) without changes.

To apply:
    cd backend/
    alembic upgrade head
"""
from __future__ import annotations
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "v001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── jobs ────────────────────────────────────────────────────────────────
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(64), primary_key=True),
        sa.Column("revision", sa.String(32), nullable=False),
        sa.Column("state", sa.String(32), nullable=False),
        sa.Column("demands_json", sa.Text(), nullable=False),
        sa.Column("configuration_json", sa.Text(), nullable=True),
        sa.Column("configuration_revision", sa.Integer(), nullable=False),
        sa.Column("required_slots", sa.Integer(), nullable=False),
        sa.Column("assigned_worker_id", sa.String(256), nullable=True),
        sa.Column("lease_token", sa.String(64), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_delivered_revision", sa.Integer(), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    # Heartbeats list created jobs; the sweep lists owned jobs per worker
    op.create_index("ix_jobs_state", "jobs", ["state"])
    op.create_index("ix_jobs_assigned_worker_id", "jobs", ["assigned_worker_id"])

    # ── workers ─────────────────────────────────────────────────────────────
    op.create_table(
        "workers",
        sa.Column("worker_id", sa.String(256), primary_key=True),
        sa.Column("revision", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("capabilities_json", sa.Text(), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_workers_status", "workers", ["status"])
    op.create_index("ix_workers_lease_expires_at", "workers", ["lease_expires_at"])


def downgrade() -> None:
    op.drop_index("ix_workers_lease_expires_at", table_name="workers")
    op.drop_index("ix_workers_status", table_name="workers")
    op.drop_table("workers")
    op.drop_index("ix_jobs_assigned_worker_id", table_name="jobs")
    op.drop_index("ix_jobs_state", table_name="jobs")
    op.drop_table("jobs")
