"""Job queue, job handlers and the pipeline orchestrator."""

from .handlers import BatchOutcome, JobHandlers
from .models import Job, JobResult, JobState, JobType
from .orchestrator import PipelineOrchestrator
from .queue import JobQueue
from .store import JobStore, MemoryJobStore, RedisJobStore, create_job_store

__all__ = [
    "BatchOutcome",
    "Job",
    "JobHandlers",
    "JobQueue",
    "JobResult",
    "JobState",
    "JobStore",
    "JobType",
    "MemoryJobStore",
    "PipelineOrchestrator",
    "RedisJobStore",
    "create_job_store",
]
