"""Dispatch worker pool: submits queued generations to the provider.

Each of ``WORKER_CONCURRENCY`` consumer loops claims one job at a time from the
durable queue, moves the generation to processing, submits it to kie.ai and
stores the provider's task id. Completion is reported later by the webhook;
the worker's job is best-effort submission, not waiting for the result.

Redelivery safety: a job may be delivered more than once (nack retry, expired
lease, orphan recovery). Every record write is conditioned on the current
status, and a generation that already has a provider task id or a terminal
status is acknowledged without calling the provider again.

Failure handling:
- Provider errors that the queue will retry leave the record in processing.
- Provider errors on the last attempt, and permanent provider errors, mark the
  record failed with the error description.
- Either way the error is reported to the queue (nack), which owns the retry
  and backoff policy.
- A missing generation record is fatal for the job and is never retried.
"""

import asyncio
import time
from typing import Callable, Optional, Protocol

import structlog

from genmedia.core.config import Settings
from genmedia.models.params import JobDescriptor
from genmedia.repositories.generation import GenerationRepository
from genmedia.services.exceptions import GenerationNotFoundError, ProviderError
from genmedia.services.job_queue import JobQueue, LeasedJob
from genmedia.services.provider.kie_client import KieClient, ProviderSubmission

logger = structlog.get_logger(__name__)

ERROR_BACKOFF_SECONDS = 5


class GenerationProvider(Protocol):
    async def submit(self, descriptor: JobDescriptor) -> ProviderSubmission: ...


async def process_job(
    descriptor: JobDescriptor,
    session_factory: Callable,
    provider: GenerationProvider,
    final_attempt: bool = True,
) -> Optional[ProviderSubmission]:
    """Submit one generation and record the outcome on its record.

    Args:
        descriptor: Job descriptor delivered by the queue
        session_factory: Factory function to create new database sessions
        provider: Provider client used for submission
        final_attempt: Whether the queue will dead-letter this job on failure

    Returns:
        The provider submission, or None if the job needed no submission
        (record already terminal or already submitted)

    Raises:
        GenerationNotFoundError: The generation record does not exist
        ProviderError: Submission failed (already recorded when final)
    """
    generation_id = descriptor.generation_id
    log = logger.bind(generation_id=str(generation_id))

    # Step 1: Take ownership (pending -> processing)
    async with session_factory() as session:
        repo = GenerationRepository(session)
        generation = await repo.get_by_id(generation_id)
        if generation is None:
            raise GenerationNotFoundError(f"Generation {generation_id} not found")

        if generation.is_terminal:
            log.info(
                "generation.dispatch.skipped",
                reason="terminal",
                status=generation.status.value,
            )
            return None
        if generation.provider_job_id:
            log.info(
                "generation.dispatch.skipped",
                reason="already_submitted",
                provider_job_id=generation.provider_job_id,
            )
            return None

        if not await repo.mark_processing(generation_id):
            # Status moved on between read and write (another delivery won)
            await session.rollback()
            log.info("generation.dispatch.skipped", reason="status_changed")
            return None
        await session.commit()

    log.info("generation.dispatch.started", model=descriptor.model, mode=descriptor.mode.value)
    start_time = time.time()

    # Step 2: Submit to provider
    try:
        submission = await provider.submit(descriptor)
    except ProviderError as e:
        will_retry = e.retryable and not final_attempt
        if not will_retry:
            async with session_factory() as session:
                marked = await GenerationRepository(session).mark_failed(generation_id, str(e))
                await session.commit()
            log.error(
                "generation.dispatch.failed",
                error_type=type(e).__name__,
                error_message=str(e),
                record_marked_failed=marked,
            )
        else:
            log.warning(
                "generation.dispatch.retry",
                error_type=type(e).__name__,
                error_message=str(e),
            )
        raise

    # Step 3: Store correlation key (status stays processing)
    async with session_factory() as session:
        attached = await GenerationRepository(session).attach_provider_job(
            generation_id, submission.provider_job_id
        )
        await session.commit()

    if attached:
        log.info(
            "generation.dispatch.submitted",
            provider_job_id=submission.provider_job_id,
            provider_state=submission.state,
            duration_seconds=time.time() - start_time,
        )
    else:
        log.warning(
            "generation.dispatch.correlation_not_stored",
            provider_job_id=submission.provider_job_id,
        )

    return submission


async def handle_leased_job(
    leased: LeasedJob,
    queue: JobQueue,
    session_factory: Callable,
    provider: GenerationProvider,
) -> None:
    """Run ``process_job`` for a leased job and report the outcome to the queue."""
    try:
        await process_job(
            leased.descriptor,
            session_factory,
            provider,
            final_attempt=leased.is_final_attempt,
        )
    except GenerationNotFoundError as e:
        logger.error("generation.dispatch.record_missing", job_id=str(leased.job_id), error=str(e))
        await queue.nack(leased, str(e), retryable=False)
    except ProviderError as e:
        await queue.nack(leased, str(e), retryable=e.retryable)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(
            "generation.dispatch.unexpected_error",
            job_id=str(leased.job_id),
            generation_id=str(leased.descriptor.generation_id),
            error_type=type(e).__name__,
            error_message=str(e),
            exc_info=True,
        )
        await queue.nack(leased, f"{type(e).__name__}: {e}", retryable=True)
    else:
        await queue.ack(leased)


async def process_next(
    worker_id: str,
    queue: JobQueue,
    session_factory: Callable,
    provider: GenerationProvider,
) -> bool:
    """Claim and handle one job.

    Returns:
        True if a job was handled, False if the queue had nothing due
    """
    leased = await queue.dequeue(worker_id)
    if leased is None:
        return False
    await handle_leased_job(leased, queue, session_factory, provider)
    return True


async def consume(
    worker_id: str,
    queue: JobQueue,
    session_factory: Callable,
    provider: GenerationProvider,
    poll_interval: float,
) -> None:
    """Single consumer loop; polls when the queue is empty."""
    while True:
        try:
            handled = await process_next(worker_id, queue, session_factory, provider)
            if not handled:
                await asyncio.sleep(poll_interval)

        except asyncio.CancelledError:
            raise

        except Exception as e:
            # Unexpected error in polling loop (e.g. database down) - log and back off
            logger.error(
                "worker.error",
                worker_id=worker_id,
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            await asyncio.sleep(ERROR_BACKOFF_SECONDS)


async def run_dispatch_worker(
    session_factory: Callable,
    settings: Settings,
    provider: Optional[GenerationProvider] = None,
    queue: Optional[JobQueue] = None,
) -> None:
    """Main worker entry point: a bounded pool of consumer loops.

    Workflow:
    1. Release jobs orphaned by a previous crash
    2. Start WORKER_CONCURRENCY consumer loops
    3. Propagate CancelledError for graceful shutdown

    Args:
        session_factory: Factory function that creates database sessions
        settings: Application settings (concurrency, poll interval, API keys)
        provider: Provider client (defaults to KieClient from settings)
        queue: Job queue (defaults to JobQueue from settings)
    """
    provider = provider or KieClient.from_settings(settings)
    queue = queue or JobQueue.from_settings(session_factory, settings)

    await queue.recover_orphans()

    logger.info(
        "worker.started",
        concurrency=settings.worker_concurrency,
        poll_interval=settings.poll_interval_seconds,
    )

    consumers = [
        asyncio.create_task(
            consume(
                f"dispatch-{index}",
                queue,
                session_factory,
                provider,
                settings.poll_interval_seconds,
            )
        )
        for index in range(settings.worker_concurrency)
    ]

    try:
        await asyncio.gather(*consumers)
    except asyncio.CancelledError:
        logger.info("worker.stopped")
        raise
    finally:
        for task in consumers:
            task.cancel()
        await asyncio.gather(*consumers, return_exceptions=True)
