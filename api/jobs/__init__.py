"""Job tracking, execution and the approval gate."""
from .models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Artifact,
    BuildRecord,
    BuildResult,
    Job,
    JobStatus,
    JobType,
    SavedLog,
)
from .registry import JobRegistry
from .runner import JobCancelled, JobRunner
from .store import JobStore

__all__ = [
    "ACTIVE_STATUSES",
    "Artifact",
    "BuildRecord",
    "BuildResult",
    "Job",
    "JobCancelled",
    "JobRegistry",
    "JobRunner",
    "JobStatus",
    "JobStore",
    "JobType",
    "SavedLog",
    "TERMINAL_STATUSES",
]
