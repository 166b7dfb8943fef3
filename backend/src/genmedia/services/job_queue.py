"""Durable at-least-once job queue backed by the ``queue_jobs`` table.

Delivery model:
- ``enqueue`` inserts a queued job (optionally inside the caller's unit of work,
  so the job becomes visible together with its generation record).
- ``dequeue`` claims one due job with FOR UPDATE SKIP LOCKED and leases it to
  the calling worker (status=active). Two workers never hold the same job.
- ``ack`` completes the job; ``nack`` either schedules a redelivery with
  exponential backoff or dead-letters the job once attempts are exhausted.
- A lease older than the visibility timeout is reclaimable, and
  ``recover_orphans`` releases every active job on worker startup. Processing
  must therefore be idempotent per generation.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional
from uuid import UUID

import structlog

from genmedia.core.config import Settings
from genmedia.core.timezone import utcnow
from genmedia.models.params import JobDescriptor
from genmedia.models.queue_job import QueueJob, QueueJobStatus
from genmedia.repositories.queue_job import QueueJobRepository
from genmedia.uow import UnitOfWork

logger = structlog.get_logger(__name__)

GENERATION_QUEUE = "generation"


@dataclass(frozen=True)
class LeasedJob:
    """A job currently owned by one worker."""

    job_id: UUID
    attempt: int
    max_attempts: int
    descriptor: JobDescriptor

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


class JobQueue:
    """Queue of generation job descriptors shared by all dispatch workers."""

    def __init__(
        self,
        session_factory: Callable,
        queue_name: str = GENERATION_QUEUE,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
        backoff_max_seconds: float = 300.0,
        visibility_timeout_seconds: int = 600,
    ):
        self.session_factory = session_factory
        self.queue_name = queue_name
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds

    @classmethod
    def from_settings(cls, session_factory: Callable, settings: Settings) -> "JobQueue":
        return cls(
            session_factory,
            max_attempts=settings.queue_max_attempts,
            backoff_seconds=settings.queue_backoff_seconds,
            backoff_max_seconds=settings.queue_backoff_max_seconds,
            visibility_timeout_seconds=settings.queue_visibility_timeout_seconds,
        )

    async def enqueue(
        self, descriptor: JobDescriptor, uow: Optional[UnitOfWork] = None
    ) -> QueueJob:
        """Add a job descriptor to the queue.

        Args:
            descriptor: Immutable job payload
            uow: Join this unit of work instead of committing on a new session

        Returns:
            The queue job (its ``id`` is the job handle)
        """
        job = QueueJob(
            queue_name=self.queue_name,
            generation_id=descriptor.generation_id,
            payload=descriptor.model_dump(mode="json"),
            max_attempts=self.max_attempts,
        )

        if uow is not None:
            await uow.queue_jobs.add(job)
        else:
            async with self.session_factory() as session:
                await QueueJobRepository(session).add(job)
                await session.commit()

        logger.info(
            "queue.enqueued",
            queue=self.queue_name,
            job_id=str(job.id),
            generation_id=str(descriptor.generation_id),
        )
        return job

    async def dequeue(self, worker_id: str) -> Optional[LeasedJob]:
        """Claim the next due job for ``worker_id``.

        Returns:
            LeasedJob, or None if nothing is deliverable right now
        """
        now = utcnow()
        lease_expired_before = now - timedelta(seconds=self.visibility_timeout_seconds)

        async with self.session_factory() as session:
            repo = QueueJobRepository(session)
            job = await repo.lock_next_available(self.queue_name, now, lease_expired_before)
            if job is None:
                await session.rollback()
                return None

            redelivered_lease = job.status == QueueJobStatus.ACTIVE
            job.status = QueueJobStatus.ACTIVE
            job.attempts += 1
            job.locked_at = now
            job.locked_by = worker_id
            session.add(job)
            await session.commit()

            if redelivered_lease:
                logger.warning(
                    "queue.lease_expired_redelivery",
                    job_id=str(job.id),
                    attempt=job.attempts,
                )

            try:
                descriptor = JobDescriptor.model_validate(job.payload)
            except ValueError as e:
                # Undecodable payload can never succeed: dead-letter it right away
                await repo.update_if_leased(
                    job.id,
                    job.attempts,
                    status=QueueJobStatus.FAILED,
                    last_error=f"Invalid job payload: {e}",
                    finished_at=utcnow(),
                    locked_at=None,
                )
                await session.commit()
                logger.error("queue.invalid_payload", job_id=str(job.id), error=str(e))
                return None

            return LeasedJob(
                job_id=job.id,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                descriptor=descriptor,
            )

    async def ack(self, leased: LeasedJob) -> bool:
        """Mark a leased job as completed.

        Returns:
            False if the lease was lost (job redelivered to another worker)
        """
        async with self.session_factory() as session:
            updated = await QueueJobRepository(session).update_if_leased(
                leased.job_id,
                leased.attempt,
                status=QueueJobStatus.COMPLETED,
                finished_at=utcnow(),
                locked_at=None,
            )
            await session.commit()

        if not updated:
            logger.warning("queue.ack_lease_lost", job_id=str(leased.job_id))
        return updated

    async def nack(self, leased: LeasedJob, error: str, retryable: bool = True) -> QueueJobStatus:
        """Report a failed delivery attempt.

        Retryable failures with attempts left are redelivered after
        ``backoff_seconds * 2 ** (attempt - 1)`` (capped). Everything else is
        dead-lettered.

        Returns:
            The job's resulting status (queued or failed), or active if the lease
            was lost to a redelivery
        """
        now = utcnow()
        if retryable and not leased.is_final_attempt:
            delay = min(
                self.backoff_seconds * (2 ** (leased.attempt - 1)), self.backoff_max_seconds
            )
            values = {
                "status": QueueJobStatus.QUEUED,
                "available_at": now + timedelta(seconds=delay),
                "locked_at": None,
                "locked_by": None,
                "last_error": error,
            }
            outcome = QueueJobStatus.QUEUED
        else:
            delay = 0.0
            values = {
                "status": QueueJobStatus.FAILED,
                "finished_at": now,
                "locked_at": None,
                "last_error": error,
            }
            outcome = QueueJobStatus.FAILED

        async with self.session_factory() as session:
            updated = await QueueJobRepository(session).update_if_leased(
                leased.job_id, leased.attempt, **values
            )
            await session.commit()

        if not updated:
            logger.warning("queue.nack_lease_lost", job_id=str(leased.job_id))
            return QueueJobStatus.ACTIVE

        if outcome == QueueJobStatus.QUEUED:
            logger.info(
                "queue.retry_scheduled",
                job_id=str(leased.job_id),
                attempt=leased.attempt,
                max_attempts=leased.max_attempts,
                retry_in_seconds=delay,
            )
        else:
            logger.error(
                "queue.dead_lettered",
                job_id=str(leased.job_id),
                attempt=leased.attempt,
                error=error,
            )
        return outcome

    async def recover_orphans(self) -> int:
        """Release jobs left active by a crashed or restarted worker.

        Returns:
            Number of jobs returned to the queue
        """
        async with self.session_factory() as session:
            released = await QueueJobRepository(session).release_active(self.queue_name)
            await session.commit()

        if released > 0:
            logger.info("queue.recovery", queue=self.queue_name, orphaned_jobs_released=released)
        return released

    async def counts(self) -> dict[str, int]:
        """Number of jobs per status."""
        async with self.session_factory() as session:
            return await QueueJobRepository(session).count_by_status(self.queue_name)
