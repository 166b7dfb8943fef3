"""Request intake: validate a generation request, create its record, enqueue its job.

The record and its queue job are written in one unit of work, so a job can never
be observed for a generation that was not created.
"""

from typing import Callable, Union

import structlog

from genmedia.core.config import Settings
from genmedia.models.generation import Generation, GenerationMode, GenerationStatus
from genmedia.models.params import ImageParams, JobDescriptor, VideoParams, flatten_params
from genmedia.services.job_queue import JobQueue

logger = structlog.get_logger(__name__)

MAX_PROMPT_LENGTH = 1000


def validate_prompt(prompt: str) -> str:
    """Validate prompt text for generation.

    Args:
        prompt: Text prompt from the user

    Returns:
        Validated prompt (unchanged if valid)

    Raises:
        ValueError: If prompt is empty, None, or exceeds 1000 characters
    """
    if not prompt:
        raise ValueError("Prompt cannot be empty or None")

    if not isinstance(prompt, str):
        raise ValueError(f"Prompt must be a string, got {type(prompt).__name__}")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    return prompt


def select_model(mode: GenerationMode, settings: Settings) -> str:
    """Provider model for a mode, from configuration."""
    if mode == GenerationMode.VIDEO:
        return settings.kie_video_model
    return settings.kie_image_model


async def create_generation(
    prompt: str,
    mode: GenerationMode,
    params: Union[ImageParams, VideoParams],
    uow_factory: Callable,
    queue: JobQueue,
    settings: Settings,
) -> Generation:
    """Create a pending generation and enqueue its dispatch job.

    Args:
        prompt: User prompt (1-1000 characters)
        mode: image or video
        params: Tagged mode parameters matching ``mode``; defaults are applied here
        uow_factory: UnitOfWork factory
        queue: Job queue the dispatch workers consume
        settings: Application settings (model selection)

    Returns:
        The created generation (status=pending)

    Raises:
        ValueError: Invalid prompt, or parameters that do not match the mode
    """
    prompt = validate_prompt(prompt)
    if params.kind != mode.value:
        raise ValueError(f"Parameters for {params.kind} cannot be used in {mode.value} mode")

    params = params.with_defaults()

    async with await uow_factory() as uow:
        generation = Generation(
            prompt=prompt,
            mode=mode,
            model=select_model(mode, settings),
            status=GenerationStatus.PENDING,
            **flatten_params(params),
        )
        await uow.generations.add(generation)

        job = await queue.enqueue(JobDescriptor.from_generation(generation), uow=uow)
        generation.queue_job_id = job.id
        uow.session.add(generation)
        await uow.session.flush()

    logger.info(
        "generation.created",
        generation_id=str(generation.id),
        mode=mode.value,
        model=generation.model,
        queue_job_id=str(job.id),
        prompt_length=len(prompt),
    )
    return generation
