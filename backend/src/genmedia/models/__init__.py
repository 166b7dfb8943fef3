"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from genmedia.models.generation import Generation, GenerationMode, GenerationStatus
from genmedia.models.params import ImageParams, JobDescriptor, VideoParams
from genmedia.models.queue_job import QueueJob, QueueJobStatus

__all__ = [
    "Generation",
    "GenerationMode",
    "GenerationStatus",
    "ImageParams",
    "VideoParams",
    "JobDescriptor",
    "QueueJob",
    "QueueJobStatus",
]
