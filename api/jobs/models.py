"""Job data models."""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


def utcnow_iso() -> str:
    """Current UTC time as a sortable ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class JobStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    awaiting_approval = "awaiting_approval"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.failed, JobStatus.cancelled})
ACTIVE_STATUSES = frozenset({JobStatus.pending, JobStatus.running, JobStatus.awaiting_approval})


class JobType(str, enum.Enum):
    """Built-in job types.  The strategy table is keyed by plain strings,
    so new types can be registered without touching this enum."""

    build = "build"
    deploy = "deploy"
    diff = "diff"
    synth = "synth"
    deploy_unit = "deploy-unit"
    tail_logs = "tail-logs"
    frontend_build = "frontend-build"
    build_deploy_all = "build-deploy-all"
    test_run = "test-run"
    ai_fix = "ai-fix"


class Job(BaseModel):
    """A tracked unit of asynchronous work."""

    id: str
    type: str
    target: str
    status: JobStatus = JobStatus.pending
    progress: int = 0
    output: List[str] = Field(default_factory=list)
    started_at: str = Field(default_factory=utcnow_iso)
    completed_at: Optional[str] = None
    error: Optional[str] = None
    # Volatile tier: only populated while the job is awaiting approval
    awaiting_approval: bool = False
    diff_output: Optional[List[str]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class BuildRecord(BaseModel):
    """Per-artifact build memory, upserted after every build attempt."""

    name: str
    type: str
    last_built_at: Optional[str] = None
    last_build_status: Optional[str] = None  # "success" | "failed"
    package_exists: bool = False


class SavedLog(BaseModel):
    """Append-once capture of execution output saved by explicit user action."""

    id: str
    artifact_name: str
    name: str
    content: str
    created_at: str = Field(default_factory=utcnow_iso)


class Artifact(BaseModel):
    """A buildable unit reported by artifact discovery."""

    name: str
    toolchain: str
    path: str
    output_path: str = ""
    package_exists: bool = False


class BuildResult(BaseModel):
    """Outcome of building one artifact."""

    name: str
    success: bool
    error: Optional[str] = None
    duration_ms: int = 0
