"""QueueJob entity - durable delivery record for generation job descriptors."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from genmedia.core.timezone import utcnow


class QueueJobStatus(str, Enum):
    """Delivery status of a queued job."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueJob(SQLModel, table=True):
    """QueueJob carries one job descriptor from intake to a dispatch worker.

    A job is owned by at most one worker at a time (status=active, locked_at set).
    Jobs are redelivered after a nack (with backoff) or after the lease expires.
    """

    __tablename__ = "queue_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    queue_name: str = Field(default="generation", max_length=50, index=True)
    generation_id: UUID = Field(foreign_key="generations.id", index=True)
    payload: dict = Field(sa_column=Column(JSON, nullable=False))
    status: QueueJobStatus = Field(default=QueueJobStatus.QUEUED, index=True)
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    available_at: datetime = Field(default_factory=utcnow, index=True)
    locked_at: Optional[datetime] = Field(default=None)
    locked_by: Optional[str] = Field(default=None, max_length=100)
    last_error: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = Field(default=None)
