"""Repository layer for GENMEDIA backend.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from genmedia.repositories.generation import GenerationRepository
from genmedia.repositories.queue_job import QueueJobRepository

__all__ = [
    "GenerationRepository",
    "QueueJobRepository",
]
