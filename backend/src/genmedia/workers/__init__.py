"""Background workers for async processing tasks."""

from genmedia.workers.dispatch_worker import process_job, run_dispatch_worker

__all__ = [
    "process_job",
    "run_dispatch_worker",
]
