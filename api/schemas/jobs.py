"""Request schemas for job, saved-log and config endpoints."""
from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, Field


class CreateJobRequest(BaseModel):
    """Request body for POST /api/jobs."""

    type: str
    target: str
    params: Dict[str, Any] = Field(default_factory=dict)


class ApprovalRequest(BaseModel):
    """Request body for POST /api/jobs/{id}/respond."""

    approved: bool


class InputRequest(BaseModel):
    """Request body for POST /api/jobs/{id}/input."""

    data: str


class SaveLogRequest(BaseModel):
    """Request body for POST /api/logs."""

    artifact_name: str
    name: str
    content: str
