"""
SQLAlchemy database models.
Defines the job registry table.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Enum, Index, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ai_jobs.constants import JobPriority, JobStatus

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Registry row for one AI job.

    This is the authoritative, queryable record clients read. The queue
    store only holds what a worker needs to run the job; status, attempts,
    results and errors live here.
    """

    __tablename__ = "ai_jobs"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    kind: Mapped[str] = mapped_column(String(100), nullable=False)
    requester_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="ai_job_status", create_constraint=True, values_callable=_enum_values),
        nullable=False,
        default=JobStatus.QUEUED,
        index=True,
    )
    priority: Mapped[JobPriority] = mapped_column(
        Enum(JobPriority, name="ai_job_priority", create_constraint=True, values_callable=_enum_values),
        nullable=False,
        default=JobPriority.NORMAL,
    )

    # Retry tracking
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    result: Mapped[Any] = mapped_column(JsonType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps are set by the registry so every backend agrees on them
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # Newest-first listing per requester
        Index("ix_ai_jobs_requester_created", "requester_key", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, kind={self.kind}, "
            f"status={self.status}, attempt={self.attempt}/{self.max_attempts})"
        )
