"""Job queue and worker pool for background document parsing."""

from .processors import ParseJobProcessor, score_quality
from .queue import Job, JobOptions, JobQueue, QueueControl, compute_backoff
from .worker import ProgressReporter, SlotState, WorkerPool

__all__ = [
    "Job",
    "JobOptions",
    "JobQueue",
    "ParseJobProcessor",
    "ProgressReporter",
    "QueueControl",
    "SlotState",
    "WorkerPool",
    "compute_backoff",
    "score_quality",
]
