"""Dispatch worker tests.

Tests focus on the submission side of the lifecycle:
- Successful submission stores the provider task id (status stays processing)
- Retryable provider errors leave the record processing and requeue the job
- Final-attempt and permanent errors mark the record failed
- Redelivered jobs never submit twice
- Missing records dead-letter the job
"""

import asyncio
from uuid import uuid4

import pytest

from genmedia.models.generation import GenerationMode, GenerationStatus
from genmedia.models.params import ImageParams, JobDescriptor
from genmedia.models.queue_job import QueueJobStatus
from genmedia.repositories.generation import GenerationRepository
from genmedia.repositories.queue_job import QueueJobRepository
from genmedia.services.exceptions import (
    GenerationNotFoundError,
    ProviderApplicationError,
    ProviderNetworkError,
)
from genmedia.services.job_queue import JobQueue, LeasedJob
from genmedia.services.provider.kie_client import ProviderSubmission
from genmedia.workers.dispatch_worker import (
    handle_leased_job,
    process_job,
    process_next,
    run_dispatch_worker,
)


class FakeProvider:
    """Provider double: returns sequential task ids or raises the configured error."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls: list[JobDescriptor] = []

    async def submit(self, descriptor: JobDescriptor) -> ProviderSubmission:
        self.calls.append(descriptor)
        if self.error is not None:
            raise self.error
        return ProviderSubmission(provider_job_id=f"task-{len(self.calls)}")


class FakeQueue:
    """Records ack/nack outcomes reported by handle_leased_job."""

    def __init__(self):
        self.acked: list[LeasedJob] = []
        self.nacked: list[tuple[LeasedJob, str, bool]] = []

    async def ack(self, leased):
        self.acked.append(leased)
        return True

    async def nack(self, leased, error, retryable=True):
        self.nacked.append((leased, error, retryable))
        return QueueJobStatus.FAILED if not retryable else QueueJobStatus.QUEUED


async def load_generation(session_factory, generation_id):
    async with session_factory() as session:
        return await GenerationRepository(session).get_by_id(generation_id)


async def load_job(session_factory, job_id):
    async with session_factory() as session:
        return await QueueJobRepository(session).get_by_id(job_id)


async def enqueue(generation_factory, queue: JobQueue, **overrides):
    generation = await generation_factory(**overrides)
    job = await queue.enqueue(JobDescriptor.from_generation(generation))
    return generation, job


@pytest.mark.asyncio
async def test_successful_submission_stores_task_id(
    job_queue, generation_factory, session_factory
):
    """Test the happy path through process_next.

    Scenario:
    1. Pending generation with a queued job
    2. Worker claims it and the provider accepts (taskId "task-1")
    3. Generation is processing with provider_job_id "task-1"
    4. Job is completed
    """
    generation, job = await enqueue(generation_factory, job_queue)
    provider = FakeProvider()

    handled = await process_next("dispatch-0", job_queue, session_factory, provider)

    assert handled is True
    assert len(provider.calls) == 1
    assert provider.calls[0].generation_id == generation.id

    stored = await load_generation(session_factory, generation.id)
    assert stored.status == GenerationStatus.PROCESSING
    assert stored.provider_job_id == "task-1"
    assert stored.error_message is None

    assert (await load_job(session_factory, job.id)).status == QueueJobStatus.COMPLETED


@pytest.mark.asyncio
async def test_process_next_with_empty_queue(job_queue, session_factory):
    assert await process_next("dispatch-0", job_queue, session_factory, FakeProvider()) is False


@pytest.mark.asyncio
async def test_transient_error_requeues_and_keeps_processing(
    job_queue, generation_factory, session_factory
):
    """Test a retryable failure on a non-final attempt.

    The record stays processing (no error message) and the job is scheduled for
    redelivery with the error recorded on the queue side.
    """
    generation, job = await enqueue(generation_factory, job_queue)
    provider = FakeProvider(error=ProviderNetworkError("Request timeout after 30.0s: boom"))

    await process_next("dispatch-0", job_queue, session_factory, provider)

    stored = await load_generation(session_factory, generation.id)
    assert stored.status == GenerationStatus.PROCESSING
    assert stored.error_message is None
    assert stored.provider_job_id is None

    queued = await load_job(session_factory, job.id)
    assert queued.status == QueueJobStatus.QUEUED
    assert queued.attempts == 1
    assert queued.last_error == "Request timeout after 30.0s: boom"


@pytest.mark.asyncio
async def test_transient_error_on_final_attempt_marks_failed(
    session_factory, generation_factory
):
    queue = JobQueue(session_factory, max_attempts=1)
    generation, job = await enqueue(generation_factory, queue)
    provider = FakeProvider(error=ProviderNetworkError("Network error: connection refused"))

    await process_next("dispatch-0", queue, session_factory, provider)

    stored = await load_generation(session_factory, generation.id)
    assert stored.status == GenerationStatus.FAILED
    assert stored.error_message == "Network error: connection refused"
    assert (await load_job(session_factory, job.id)).status == QueueJobStatus.FAILED


@pytest.mark.asyncio
async def test_permanent_error_marks_failed_on_first_attempt(
    job_queue, generation_factory, session_factory
):
    generation, job = await enqueue(generation_factory, job_queue)
    provider = FakeProvider(
        error=ProviderApplicationError(402, "kie.ai API error: 402 Insufficient credits")
    )

    await process_next("dispatch-0", job_queue, session_factory, provider)

    stored = await load_generation(session_factory, generation.id)
    assert stored.status == GenerationStatus.FAILED
    assert stored.error_message == "kie.ai API error: 402 Insufficient credits"

    dead = await load_job(session_factory, job.id)
    assert dead.status == QueueJobStatus.FAILED
    assert dead.attempts == 1


@pytest.mark.asyncio
async def test_retry_then_success(session_factory, generation_factory):
    """A job that failed transiently succeeds on redelivery."""
    queue = JobQueue(session_factory, max_attempts=3, backoff_seconds=0)
    generation, job = await enqueue(generation_factory, queue)

    await process_next("w", queue, session_factory, FakeProvider(error=ProviderNetworkError("x")))
    await process_next("w", queue, session_factory, FakeProvider())

    stored = await load_generation(session_factory, generation.id)
    assert stored.status == GenerationStatus.PROCESSING
    assert stored.provider_job_id == "task-1"

    done = await load_job(session_factory, job.id)
    assert done.status == QueueJobStatus.COMPLETED
    assert done.attempts == 2


@pytest.mark.asyncio
async def test_redelivered_job_does_not_submit_twice(session_factory, generation_factory):
    """A generation that already has a provider task id is acknowledged without a call."""
    generation = await generation_factory(
        status=GenerationStatus.PROCESSING, provider_job_id="task-first-submit"
    )
    provider = FakeProvider()

    result = await process_job(JobDescriptor.from_generation(generation), session_factory, provider)

    assert result is None
    assert provider.calls == []
    stored = await load_generation(session_factory, generation.id)
    assert stored.provider_job_id == "task-first-submit"


@pytest.mark.asyncio
async def test_terminal_generation_is_skipped(session_factory, generation_factory):
    """Webhook completed the generation before the redelivered job ran."""
    generation = await generation_factory(
        status=GenerationStatus.COMPLETED, result_url="https://cdn.kie.test/done.png"
    )
    provider = FakeProvider()

    result = await process_job(JobDescriptor.from_generation(generation), session_factory, provider)

    assert result is None
    assert provider.calls == []
    assert (await load_generation(session_factory, generation.id)).status == (
        GenerationStatus.COMPLETED
    )


@pytest.mark.asyncio
async def test_missing_generation_raises(session_factory):
    descriptor = JobDescriptor(
        generation_id=uuid4(),
        prompt="ghost",
        model="seedream/4.5-text-to-image",
        mode=GenerationMode.IMAGE,
        params=ImageParams(aspect_ratio="1:1"),
    )

    with pytest.raises(GenerationNotFoundError):
        await process_job(descriptor, session_factory, FakeProvider())


@pytest.mark.asyncio
async def test_missing_generation_dead_letters_job(session_factory):
    descriptor = JobDescriptor(
        generation_id=uuid4(),
        prompt="ghost",
        model="seedream/4.5-text-to-image",
        mode=GenerationMode.IMAGE,
        params=ImageParams(aspect_ratio="1:1"),
    )
    leased = LeasedJob(job_id=uuid4(), attempt=1, max_attempts=3, descriptor=descriptor)
    queue = FakeQueue()
    provider = FakeProvider()

    await handle_leased_job(leased, queue, session_factory, provider)

    assert queue.acked == []
    assert len(queue.nacked) == 1
    assert queue.nacked[0][2] is False
    assert provider.calls == []


@pytest.mark.asyncio
async def test_unexpected_error_is_nacked_retryable(session_factory, generation_factory):
    generation = await generation_factory()
    leased = LeasedJob(
        job_id=uuid4(),
        attempt=1,
        max_attempts=3,
        descriptor=JobDescriptor.from_generation(generation),
    )
    queue = FakeQueue()

    await handle_leased_job(leased, queue, session_factory, FakeProvider(error=KeyError("boom")))

    assert queue.acked == []
    assert len(queue.nacked) == 1
    _, error, retryable = queue.nacked[0]
    assert retryable is True
    assert error.startswith("KeyError")


@pytest.mark.asyncio
async def test_run_dispatch_worker_drains_queue(
    settings, job_queue, generation_factory, session_factory
):
    """Test the worker pool end to end.

    Scenario:
    1. Three pending generations, one of them orphaned in active state
    2. Start the worker pool (orphan recovery runs first)
    3. All three end up processing with distinct task ids
    4. Cancelling the pool stops it cleanly
    """
    generations = [(await enqueue(generation_factory, job_queue))[0] for _ in range(3)]
    await job_queue.dequeue("crashed-worker")

    provider = FakeProvider()
    worker = asyncio.create_task(
        run_dispatch_worker(session_factory, settings, provider=provider, queue=job_queue)
    )

    try:
        for _ in range(500):
            counts = await job_queue.counts()
            if counts["completed"] == 3:
                break
            await asyncio.sleep(0.01)
    finally:
        worker.cancel()
        with pytest.raises(asyncio.CancelledError):
            await worker

    assert (await job_queue.counts())["completed"] == 3

    task_ids = set()
    for generation in generations:
        stored = await load_generation(session_factory, generation.id)
        assert stored.status == GenerationStatus.PROCESSING
        task_ids.add(stored.provider_job_id)
    assert len(task_ids) == 3
