"""Enforce a single active job per job type and scope."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0003"
down_revision = "20261018_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_jobs_active_scope
            ON jobs (job_type, scope_key)
            WHERE status IN ('pending', 'processing')
            """,
        ),
    )


def downgrade() -> None:
    op.execute(
        sa.text(
            "DROP INDEX IF EXISTS uq_jobs_active_scope",
        ),
    )
