"""QueueJob repository for GENMEDIA backend.

Provides data access methods for queue entries with worker coordination via
FOR UPDATE SKIP LOCKED.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genmedia.models.queue_job import QueueJob, QueueJobStatus


class QueueJobRepository:
    """Repository for QueueJob entities.

    Claim queries use FOR UPDATE SKIP LOCKED so concurrent workers never
    receive the same job at the same instant.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: QueueJob) -> QueueJob:
        """Persist new queue job to database.

        Args:
            job: QueueJob entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> QueueJob | None:
        """Retrieve queue job by UUID."""
        result = await self.session.execute(
            select(QueueJob)
            .where(QueueJob.id == job_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_generation(self, generation_id: UUID) -> list[QueueJob]:
        """Retrieve all queue jobs for a generation, oldest first."""
        result = await self.session.execute(
            select(QueueJob)
            .where(QueueJob.generation_id == generation_id)  # type: ignore[arg-type]
            .order_by(QueueJob.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def lock_next_available(
        self, queue_name: str, now: datetime, lease_expired_before: datetime
    ) -> QueueJob | None:
        """Lock the next deliverable job.

        Deliverable means either queued and due (``available_at <= now``), or
        active with a lease older than ``lease_expired_before`` (its worker died).

        Query explanation:
        - ORDER BY available_at ASC: Oldest due job first
        - LIMIT 1: One job per claim
        - FOR UPDATE SKIP LOCKED: Skip rows another worker is claiming
        """
        result = await self.session.execute(
            select(QueueJob)
            .where(QueueJob.queue_name == queue_name)  # type: ignore[arg-type]
            .where(
                or_(
                    (QueueJob.status == QueueJobStatus.QUEUED)  # type: ignore[arg-type]
                    & (QueueJob.available_at <= now),  # type: ignore[operator]
                    (QueueJob.status == QueueJobStatus.ACTIVE)  # type: ignore[arg-type]
                    & (QueueJob.locked_at < lease_expired_before),  # type: ignore[operator]
                )
            )
            .order_by(QueueJob.available_at.asc())  # type: ignore[attr-defined]
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        return result.scalar_one_or_none()

    async def update_if_leased(self, job_id: UUID, attempt: int, **values: Any) -> bool:
        """Update a job only while it is still held by the given delivery attempt.

        A worker whose lease expired (and whose job was redelivered) can no longer
        ack or nack it: the attempt counter has moved on.
        """
        result = await self.session.execute(
            update(QueueJob)
            .where(QueueJob.id == job_id)  # type: ignore[arg-type]
            .where(QueueJob.status == QueueJobStatus.ACTIVE)  # type: ignore[arg-type]
            .where(QueueJob.attempts == attempt)  # type: ignore[arg-type]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def release_active(self, queue_name: str) -> int:
        """Return every active job to the queue (startup orphan recovery).

        Returns:
            Number of jobs released
        """
        result = await self.session.execute(
            update(QueueJob)
            .where(QueueJob.queue_name == queue_name)  # type: ignore[arg-type]
            .where(QueueJob.status == QueueJobStatus.ACTIVE)  # type: ignore[arg-type]
            .values(status=QueueJobStatus.QUEUED, locked_at=None, locked_by=None)
        )
        return result.rowcount  # type: ignore[attr-defined]

    async def count_by_status(self, queue_name: str) -> dict[str, int]:
        """Count jobs per status (statuses with no jobs report 0)."""
        result = await self.session.execute(
            select(QueueJob.status, func.count())
            .where(QueueJob.queue_name == queue_name)  # type: ignore[arg-type]
            .group_by(QueueJob.status)
        )
        counts = {status.value: 0 for status in QueueJobStatus}
        for status, count in result.all():
            counts[QueueJobStatus(status).value] = count
        return counts
