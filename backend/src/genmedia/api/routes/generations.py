"""Generation intake and listing API endpoints.

This module implements:
- POST /api/generate - Validate a prompt, create a pending generation, enqueue its job
- GET /api/generations - Newest generations first (polled by the UI)
- GET /api/generations/{generation_id} - Single generation

Errors use the envelope ``{"success": false, "error": ...}``.
"""

import json
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    StrictInt,
    ValidationError,
    field_validator,
)

from genmedia.api.dependencies import get_job_queue, get_settings, get_uow_factory
from genmedia.core.config import Settings
from genmedia.models.generation import Generation, GenerationMode
from genmedia.models.params import (
    MAX_INPUT_IMAGES,
    VIDEO_DURATIONS,
    AspectRatio,
    ImageParams,
    Resolution,
    VideoParams,
)
from genmedia.services.intake import create_generation
from genmedia.services.job_queue import JobQueue

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["generations"])


# Request/Response Models


class GenerateRequest(BaseModel):
    """Request model for a new generation (field names as the web form sends them)."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(..., min_length=1, max_length=1000)
    mode: GenerationMode = GenerationMode.IMAGE

    # Video-specific parameters (optional)
    input_image_urls: Optional[list[HttpUrl]] = Field(
        default=None, alias="inputImageUrls", max_length=MAX_INPUT_IMAGES
    )
    aspect_ratio: Optional[AspectRatio] = Field(default=None, alias="aspectRatio")
    resolution: Optional[Resolution] = None
    duration: Optional[StrictInt] = None
    fixed_lens: Optional[bool] = Field(default=None, alias="fixedLens")
    generate_audio: Optional[bool] = Field(default=None, alias="generateAudio")

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v not in VIDEO_DURATIONS:
            raise ValueError("Duration must be 4, 8, or 12 seconds")
        return v

    def to_params(self) -> ImageParams | VideoParams:
        """Tagged parameters for the requested mode."""
        if self.mode == GenerationMode.VIDEO:
            return VideoParams(
                input_image_urls=tuple(str(url) for url in self.input_image_urls or ()),
                aspect_ratio=self.aspect_ratio,
                resolution=self.resolution,
                duration=self.duration,
                fixed_lens=self.fixed_lens,
                generate_audio=self.generate_audio,
            )
        return ImageParams(aspect_ratio=self.aspect_ratio)


class GenerationSummary(BaseModel):
    """Intake response body."""

    id: UUID
    status: str
    prompt: str
    mode: str


class GenerationDTO(BaseModel):
    """Data Transfer Object for generation records in API responses."""

    id: UUID
    prompt: str
    mode: str
    model: str
    status: str = Field(..., description="pending, processing, completed or failed")
    provider_job_id: Optional[str] = Field(default=None, serialization_alias="kieJobId")
    queue_job_id: Optional[UUID] = Field(default=None, serialization_alias="jobId")
    result_url: Optional[str] = Field(default=None, serialization_alias="resultUrl")
    error_message: Optional[str] = Field(default=None, serialization_alias="errorMessage")
    input_image_urls: list[str] = Field(default_factory=list, serialization_alias="inputImageUrls")
    aspect_ratio: Optional[str] = Field(default=None, serialization_alias="aspectRatio")
    resolution: Optional[str] = None
    duration: Optional[int] = None
    fixed_lens: bool = Field(default=False, serialization_alias="fixedLens")
    generate_audio: bool = Field(default=False, serialization_alias="generateAudio")
    created_at: datetime = Field(..., serialization_alias="createdAt")
    updated_at: datetime = Field(..., serialization_alias="updatedAt")

    @classmethod
    def from_model(cls, generation: Generation) -> "GenerationDTO":
        return cls(
            id=generation.id,
            prompt=generation.prompt,
            mode=generation.mode.value,
            model=generation.model,
            status=generation.status.value,
            provider_job_id=generation.provider_job_id,
            queue_job_id=generation.queue_job_id,
            result_url=generation.result_url,
            error_message=generation.error_message,
            input_image_urls=list(generation.input_image_urls or []),
            aspect_ratio=generation.aspect_ratio,
            resolution=generation.resolution,
            duration=generation.duration,
            fixed_lens=generation.fixed_lens,
            generate_audio=generation.generate_audio,
            created_at=generation.created_at,
            updated_at=generation.updated_at,
        )


def error_response(status_code: int, error: str, details: Optional[list] = None) -> JSONResponse:
    """Build the ``{success: false, error}`` envelope."""
    content: dict = {"success": False, "error": error}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


# API Endpoints


@router.post("/generate")
async def generate(
    request: Request,
    uow_factory=Depends(get_uow_factory),
    queue: JobQueue = Depends(get_job_queue),
    settings: Settings = Depends(get_settings),
):
    """Create a generation and enqueue it for dispatch.

    Returns:
        200: {"success": true, "generation": {id, status, prompt, mode}}
        400: {"success": false, "error": "Invalid request data", "details": [...]}
        500: {"success": false, "error": "Internal server error"}

    Example:
        POST /api/generate
        {"prompt": "a red fox", "mode": "video", "duration": 8, "aspectRatio": "9:16"}
    """
    try:
        body = json.loads(await request.body())
        generate_request = GenerateRequest.model_validate(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("generate.invalid_json", error=str(e))
        return error_response(status.HTTP_400_BAD_REQUEST, "Invalid request data")
    except ValidationError as e:
        details = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        logger.warning("generate.validation_failed", details=details)
        return error_response(status.HTTP_400_BAD_REQUEST, "Invalid request data", details)

    try:
        generation = await create_generation(
            prompt=generate_request.prompt,
            mode=generate_request.mode,
            params=generate_request.to_params(),
            uow_factory=uow_factory,
            queue=queue,
            settings=settings,
        )
    except ValueError as e:
        logger.warning("generate.rejected", error=str(e))
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            "Invalid request data",
            [{"field": "prompt", "message": str(e)}],
        )
    except Exception as e:
        logger.error(
            "generate.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

    summary = GenerationSummary(
        id=generation.id,
        status=generation.status.value,
        prompt=generation.prompt,
        mode=generation.mode.value,
    )
    return {"success": True, "generation": summary.model_dump(mode="json")}


@router.get("/generations")
async def list_generations(
    limit: Optional[int] = Query(default=None, ge=1, le=200),
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
):
    """List generations, newest first.

    The UI polls this endpoint at a fixed interval; there is no push channel.
    """
    try:
        async with await uow_factory() as uow:
            generations = await uow.generations.list_recent(
                limit=limit or settings.generations_page_limit
            )
    except Exception as e:
        logger.error("generations.list_failed", error=str(e), error_type=type(e).__name__)
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

    return {
        "success": True,
        "generations": [
            GenerationDTO.from_model(g).model_dump(mode="json", by_alias=True) for g in generations
        ],
    }


@router.get("/generations/{generation_id}")
async def get_generation(generation_id: UUID, uow_factory=Depends(get_uow_factory)):
    """Get a single generation by id."""
    async with await uow_factory() as uow:
        generation = await uow.generations.get_by_id(generation_id)

    if generation is None:
        return error_response(status.HTTP_404_NOT_FOUND, "Generation not found")

    return {
        "success": True,
        "generation": GenerationDTO.from_model(generation).model_dump(mode="json", by_alias=True),
    }
