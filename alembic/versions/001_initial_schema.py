"""Initial schema with the ai_jobs registry table

Revision ID: 001
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create enums using raw SQL with IF NOT EXISTS
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE ai_job_status AS ENUM ('queued', 'processing', 'succeeded', 'failed', 'dead-letter');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.execute("""
        DO $$ BEGIN
            CREATE TYPE ai_job_priority AS ENUM ('low', 'normal', 'high', 'critical');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.create_table(
        "ai_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", sa.String(100), nullable=False),
        sa.Column("requester_key", sa.String(255), nullable=True),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column(
            "status",
            postgresql.ENUM(
                "queued", "processing", "succeeded", "failed", "dead-letter",
                name="ai_job_status",
                create_type=False,
            ),
            nullable=False,
            server_default="queued",
        ),
        sa.Column(
            "priority",
            postgresql.ENUM("low", "normal", "high", "critical", name="ai_job_priority", create_type=False),
            nullable=False,
            server_default="normal",
        ),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index("ix_ai_jobs_requester_key", "ai_jobs", ["requester_key"])
    op.create_index("ix_ai_jobs_status", "ai_jobs", ["status"])
    # Newest-first listing per requester
    op.create_index("ix_ai_jobs_requester_created", "ai_jobs", ["requester_key", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_ai_jobs_requester_created")
    op.drop_index("ix_ai_jobs_status")
    op.drop_index("ix_ai_jobs_requester_key")

    op.drop_table("ai_jobs")

    op.execute("DROP TYPE IF EXISTS ai_job_status")
    op.execute("DROP TYPE IF EXISTS ai_job_priority")
