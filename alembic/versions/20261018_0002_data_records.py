"""Scored data records, per-item failure markers and system settings."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "data_records",
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("environment", sa.String(), nullable=False),
        sa.Column("record_type", sa.String(), nullable=False, server_default="task"),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("alignment_analysis", sa.Text(), nullable=True),
        sa.Column("embedding_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("record_id"),
    )
    op.create_index("ix_data_records_environment", "data_records", ["environment"])
    op.create_index(
        "idx_data_records_env_created",
        "data_records",
        ["environment", "created_at"],
    )

    op.create_table(
        "work_item_failures",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("error_kind", sa.String(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["record_id"],
            ["data_records.record_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "record_id", name="uq_work_item_failures_job"),
    )
    op.create_index("ix_work_item_failures_job_id", "work_item_failures", ["job_id"])
    op.create_index("ix_work_item_failures_record_id", "work_item_failures", ["record_id"])

    op.create_table(
        "system_settings",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("system_settings")
    op.drop_index("ix_work_item_failures_record_id", table_name="work_item_failures")
    op.drop_index("ix_work_item_failures_job_id", table_name="work_item_failures")
    op.drop_table("work_item_failures")
    op.drop_index("idx_data_records_env_created", table_name="data_records")
    op.drop_index("ix_data_records_environment", table_name="data_records")
    op.drop_table("data_records")
