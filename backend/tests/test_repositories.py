"""Repository layer tests for GENMEDIA backend.

Tests focus on complex logic:
- Conditional (compare-and-set) status updates
- Exactly-once storage of the provider correlation key
- Lookup by provider task id and newest-first listing

Simple CRUD operations are not tested (trust SQLAlchemy).

Note: FOR UPDATE SKIP LOCKED worker coordination is validated in production
via real concurrent workers against PostgreSQL. SQLite ignores the lock clause.
"""

from datetime import datetime, timedelta, timezone

import pytest

from genmedia.models.generation import GenerationStatus
from genmedia.repositories.generation import GenerationRepository


@pytest.mark.asyncio
async def test_mark_processing_is_conditional(session, generation_factory):
    """Test GenerationRepository.mark_processing only moves non-terminal rows.

    Scenario:
    1. Create pending generation
    2. mark_processing -> True (pending -> processing)
    3. mark_failed -> True
    4. mark_processing -> False (failed is absorbing)
    """
    generation = await generation_factory()
    repo = GenerationRepository(session)

    assert await repo.mark_processing(generation.id) is True
    await session.commit()

    assert await repo.mark_failed(generation.id, "provider rejected prompt") is True
    await session.commit()

    assert await repo.mark_processing(generation.id) is False
    await session.commit()

    stored = await repo.get_by_id(generation.id)
    assert stored.status == GenerationStatus.FAILED
    assert stored.error_message == "provider rejected prompt"


@pytest.mark.asyncio
async def test_attach_provider_job_only_once(session, generation_factory):
    """Test the provider task id is stored exactly once.

    A redelivered job must never overwrite the correlation key of the earlier
    submission, otherwise the first task's webhook would become unroutable.
    """
    generation = await generation_factory()
    repo = GenerationRepository(session)

    assert await repo.attach_provider_job(generation.id, "task-first") is True
    await session.commit()

    assert await repo.attach_provider_job(generation.id, "task-second") is False
    await session.commit()

    stored = await repo.get_by_id(generation.id)
    assert stored.provider_job_id == "task-first"
    assert stored.status == GenerationStatus.PROCESSING


@pytest.mark.asyncio
async def test_attach_provider_job_rejected_for_terminal(session, generation_factory):
    generation = await generation_factory(status=GenerationStatus.FAILED)
    repo = GenerationRepository(session)

    assert await repo.attach_provider_job(generation.id, "task-late") is False


@pytest.mark.asyncio
async def test_get_by_provider_job_id(session, generation_factory):
    generation = await generation_factory(
        status=GenerationStatus.PROCESSING, provider_job_id="task-abc"
    )
    await generation_factory()
    repo = GenerationRepository(session)

    found = await repo.get_by_provider_job_id("task-abc")
    assert found is not None
    assert found.id == generation.id

    assert await repo.get_by_provider_job_id("task-unknown") is None


@pytest.mark.asyncio
async def test_list_recent_newest_first(session, generation_factory):
    """Test list_recent orders by created_at descending and honors limit."""
    base = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    oldest = await generation_factory(prompt="oldest", created_at=base)
    middle = await generation_factory(prompt="middle", created_at=base + timedelta(minutes=1))
    newest = await generation_factory(prompt="newest", created_at=base + timedelta(minutes=2))

    repo = GenerationRepository(session)

    listed = await repo.list_recent()
    assert [g.id for g in listed] == [newest.id, middle.id, oldest.id]

    limited = await repo.list_recent(limit=2)
    assert [g.id for g in limited] == [newest.id, middle.id]


@pytest.mark.asyncio
async def test_apply_provider_status_loses_race(session, session_factory, generation_factory):
    """Test apply_provider_status is a compare-and-set on the status that was read.

    Scenario:
    1. Read processing generation (stale copy)
    2. Another writer completes it
    3. Applying "failed" with the stale copy returns False
    4. Record stays completed with its result URL
    """
    generation = await generation_factory(
        status=GenerationStatus.PROCESSING, provider_job_id="task-race"
    )
    repo = GenerationRepository(session)
    stale = await repo.get_by_id(generation.id)
    await session.commit()

    async with session_factory() as other:
        winner = await GenerationRepository(other).get_by_id(generation.id)
        assert await GenerationRepository(other).apply_provider_status(
            winner, GenerationStatus.COMPLETED, result_url="https://cdn.kie.test/a.png"
        )
        await other.commit()

    changed = await repo.apply_provider_status(
        stale, GenerationStatus.FAILED, error_message="late failure"
    )
    await session.commit()
    assert changed is False

    stored = await repo.get_by_id(generation.id)
    assert stored.status == GenerationStatus.COMPLETED
    assert stored.result_url == "https://cdn.kie.test/a.png"
    assert stored.error_message is None


@pytest.mark.asyncio
async def test_apply_provider_status_writes_only_matching_field(session, generation_factory):
    """result_url is written only on completed; error_message only on failed."""
    generation = await generation_factory(status=GenerationStatus.PROCESSING)
    repo = GenerationRepository(session)

    current = await repo.get_by_id(generation.id)
    assert await repo.apply_provider_status(
        current,
        GenerationStatus.FAILED,
        result_url="https://cdn.kie.test/ignored.png",
        error_message="NSFW content detected",
    )
    await session.commit()

    stored = await repo.get_by_id(generation.id)
    assert stored.status == GenerationStatus.FAILED
    assert stored.error_message == "NSFW content detected"
    assert stored.result_url is None
