"""Generation repository for GENMEDIA backend.

Every status write is a conditional UPDATE (compare-and-set on the current
status) so concurrent workers and duplicate webhooks can never regress a record.
"""

from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genmedia.core.timezone import utcnow
from genmedia.models.generation import Generation, GenerationStatus, sources_for


class GenerationRepository:
    """Repository for Generation entities (the record store)."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, generation: Generation) -> Generation:
        """Persist new generation to database.

        Args:
            generation: Generation entity to persist

        Returns:
            Persisted generation with generated ID
        """
        self.session.add(generation)
        await self.session.flush()
        return generation

    async def get_by_id(self, generation_id: UUID) -> Generation | None:
        """Retrieve generation by UUID, always reflecting the latest row state."""
        result = await self.session.execute(
            select(Generation)
            .where(Generation.id == generation_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_provider_job_id(self, provider_job_id: str) -> Generation | None:
        """Retrieve generation by the provider's correlation key (taskId).

        Args:
            provider_job_id: External job identifier (unique once set)

        Returns:
            Generation if found, None otherwise
        """
        result = await self.session.execute(
            select(Generation)
            .where(Generation.provider_job_id == provider_job_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_recent(self, limit: int = 50) -> list[Generation]:
        """Retrieve newest generations first.

        Args:
            limit: Maximum number of generations to return (default: 50)
        """
        result = await self.session.execute(
            select(Generation)
            .order_by(Generation.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def update_if_status(
        self,
        generation_id: UUID,
        allowed_from: Iterable[GenerationStatus],
        **values: Any,
    ) -> bool:
        """Apply ``values`` only if the row's current status is in ``allowed_from``.

        Returns:
            True if the row was updated, False if the guard did not match
            (missing row or status moved on concurrently)
        """
        allowed = list(allowed_from)
        if not allowed:
            return False

        values["updated_at"] = utcnow()
        result = await self.session.execute(
            update(Generation)
            .where(Generation.id == generation_id)  # type: ignore[arg-type]
            .where(Generation.status.in_(allowed))  # type: ignore[attr-defined]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def mark_processing(self, generation_id: UUID) -> bool:
        """pending -> processing (processing -> processing is a no-op write)."""
        return await self.update_if_status(
            generation_id,
            sources_for(GenerationStatus.PROCESSING),
            status=GenerationStatus.PROCESSING,
        )

    async def attach_provider_job(self, generation_id: UUID, provider_job_id: str) -> bool:
        """Record the provider's job id exactly once, keeping status=processing.

        The guard also requires ``provider_job_id IS NULL`` so a redelivered job
        can never overwrite the correlation key of an earlier submission.
        """
        values = {
            "status": GenerationStatus.PROCESSING,
            "provider_job_id": provider_job_id,
            "updated_at": utcnow(),
        }
        allowed = sources_for(GenerationStatus.PROCESSING)
        result = await self.session.execute(
            update(Generation)
            .where(Generation.id == generation_id)  # type: ignore[arg-type]
            .where(Generation.provider_job_id.is_(None))  # type: ignore[union-attr]
            .where(Generation.status.in_(allowed))  # type: ignore[attr-defined]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def mark_failed(self, generation_id: UUID, error_message: str | None) -> bool:
        """Any non-terminal status -> failed, storing the error description."""
        return await self.update_if_status(
            generation_id,
            sources_for(GenerationStatus.FAILED),
            status=GenerationStatus.FAILED,
            error_message=error_message,
        )

    async def apply_provider_status(
        self,
        generation: Generation,
        target: GenerationStatus,
        result_url: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Apply a provider-reported status as a compare-and-set on ``generation.status``.

        ``result_url`` is only written on completed and ``error_message`` only on
        failed, keeping both fields tied to their terminal status.

        Returns:
            True if the row changed, False if the write was not allowed or lost a race
        """
        if generation.status not in sources_for(target):
            return False

        values: dict[str, Any] = {"status": target}
        if target == GenerationStatus.COMPLETED:
            values["result_url"] = result_url
        elif target == GenerationStatus.FAILED:
            values["error_message"] = error_message

        return await self.update_if_status(generation.id, [generation.status], **values)
