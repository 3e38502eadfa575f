"""
SQL-backed Job Registry.

Conditional updates are a single ``UPDATE ... WHERE status = :seen AND
attempt = :seen`` so two actors racing on the same job cannot both apply
their patch.
"""

import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError

from ai_jobs.db.connection import Database
from ai_jobs.db.models import Job
from ai_jobs.errors import DuplicateJobId, InvalidTransition, JobNotFound, StoreUnavailable
from ai_jobs.registry.base import DEFAULT_PAGE_SIZE, check_transition, patch_values
from ai_jobs.types.job import JobPatch, JobRecord, utcnow

logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(job: Job) -> JobRecord:
    record = JobRecord.model_validate(job)
    return record.model_copy(
        update={
            "created_at": _aware(record.created_at),
            "updated_at": _aware(record.updated_at),
            "completed_at": _aware(record.completed_at),
        }
    )


class SqlJobRegistry:
    """JobRegistry implementation on SQLAlchemy 2.0 async."""

    def __init__(self, database: Database):
        """
        Initialize the registry.

        Args:
            database: Engine and session factory to run statements on.
        """
        self._db = database

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (OperationalError, InterfaceError, OSError) as e:
            logger.warning(
                "Registry operation failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise StoreUnavailable("registry", str(e)) from e

    async def connect(self) -> None:
        await self._db.connect()

    async def ping(self) -> bool:
        return await self._db.ping()

    async def close(self) -> None:
        await self._db.close()

    async def create(self, job: JobRecord) -> JobRecord:
        """
        Insert a new record.

        Raises:
            DuplicateJobId: If a record with the same id exists.
            StoreUnavailable: If the database cannot be reached.
        """
        try:
            with self._translate_errors("create"):
                async with self._db.session() as session:
                    row = Job(**job.model_dump())
                    session.add(row)
                    await session.flush()
        except IntegrityError as e:
            raise DuplicateJobId(job.id) from e

        logger.info(
            "Created job record",
            extra={"job_id": str(job.id), "kind": job.kind},
        )
        return _to_record(row)

    async def get(self, job_id: UUID) -> JobRecord:
        with self._translate_errors("get"):
            async with self._db.session() as session:
                row = await session.get(Job, job_id)
        if row is None:
            raise JobNotFound(job_id)
        return _to_record(row)

    async def update(self, job_id: UUID, patch: JobPatch) -> JobRecord:
        """
        Apply ``patch`` if the record still has the status and attempt read
        at the start of the call.

        Raises:
            JobNotFound: Unknown id.
            InvalidTransition: Rejected by the state machine, or another
                actor updated the record first.
        """
        with self._translate_errors("update"):
            async with self._db.session() as session:
                row = await session.get(Job, job_id)
                if row is None:
                    raise JobNotFound(job_id)
                current = _to_record(row)
                check_transition(current, patch)

                stmt = (
                    update(Job)
                    .where(
                        and_(
                            Job.id == job_id,
                            Job.status == current.status,
                            Job.attempt == current.attempt,
                        )
                    )
                    .values(**patch_values(current, patch, utcnow()))
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                if result.rowcount == 0:
                    raise InvalidTransition(job_id, "record changed concurrently")
                await session.refresh(row)
                record = _to_record(row)

        logger.debug(
            "Updated job record",
            extra={"job_id": str(job_id), "status": record.status.value, "attempt": record.attempt},
        )
        return record

    async def list_by_requester(
        self, requester_key: str, page_size: int = DEFAULT_PAGE_SIZE
    ) -> AsyncIterator[JobRecord]:
        """
        Yield a requester's records newest first.

        Pages are fetched lazily with keyset pagination on
        ``(created_at, id)``, each in its own short session.
        """
        last: JobRecord | None = None
        while True:
            stmt = select(Job).where(Job.requester_key == requester_key)
            if last is not None:
                stmt = stmt.where(
                    or_(
                        Job.created_at < last.created_at,
                        and_(Job.created_at == last.created_at, Job.id < last.id),
                    )
                )
            stmt = stmt.order_by(Job.created_at.desc(), Job.id.desc()).limit(page_size)

            with self._translate_errors("list_by_requester"):
                async with self._db.session() as session:
                    result = await session.execute(stmt)
                    page = [_to_record(row) for row in result.scalars().all()]

            for record in page:
                yield record
            if len(page) < page_size:
                return
            last = page[-1]
