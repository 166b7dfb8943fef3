"""Generation entity - a user's image/video request and its lifecycle."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from genmedia.core.timezone import utcnow


class GenerationMode(str, Enum):
    """What the provider is asked to produce."""

    IMAGE = "image"
    VIDEO = "video"


class GenerationStatus(str, Enum):
    """Generation lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


TERMINAL_STATUSES = frozenset({GenerationStatus.COMPLETED, GenerationStatus.FAILED})

_STATUS_RANK = {
    GenerationStatus.PENDING: 0,
    GenerationStatus.PROCESSING: 1,
    GenerationStatus.COMPLETED: 2,
    GenerationStatus.FAILED: 2,
}


def can_transition(current: GenerationStatus, target: GenerationStatus) -> bool:
    """Check whether a status write is allowed.

    Terminal statuses absorb every later write. Otherwise a write may only keep
    or advance the rank (processing may be re-entered, pending may not).
    """
    if current.is_terminal:
        return False
    return target.rank >= current.rank


def sources_for(target: GenerationStatus) -> tuple[GenerationStatus, ...]:
    """Statuses from which ``target`` may be written (used for conditional UPDATEs)."""
    return tuple(status for status in GenerationStatus if can_transition(status, target))


class Generation(SQLModel, table=True):
    """Generation tracks a single prompt from intake to provider result.

    Mode parameters are flattened onto the row; use ``genmedia.models.params``
    to work with them as a tagged variant.
    """

    __tablename__ = "generations"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    prompt: str = Field(min_length=1, max_length=1000)
    mode: GenerationMode = Field(default=GenerationMode.IMAGE)
    model: str = Field(max_length=255)
    status: GenerationStatus = Field(default=GenerationStatus.PENDING, index=True)

    # Correlation with the provider, set once by the dispatch worker
    provider_job_id: Optional[str] = Field(default=None, max_length=255, unique=True, index=True)
    queue_job_id: Optional[UUID] = Field(default=None)

    result_url: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)

    # Mode parameters (video-only fields stay null for images)
    input_image_urls: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    aspect_ratio: Optional[str] = Field(default=None, max_length=10)
    resolution: Optional[str] = Field(default=None, max_length=10)
    duration: Optional[int] = Field(default=None)
    fixed_lens: bool = Field(default=False)
    generate_audio: bool = Field(default=False)

    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
