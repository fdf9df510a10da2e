"""Job management endpoints."""
from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from ..config import ApiSettings
from ..deps.providers import get_infra, get_job_runner, get_registry, get_settings
from ..errors import (
    ApprovalStateError,
    InvalidJobRequestError,
    JobNotFoundError,
    ProtectedEnvironmentError,
)
from ..jobs.models import Job, JobStatus, JobType
from ..jobs.registry import JobRegistry
from ..jobs.runner import JobRunner
from ..schemas.envelope import ApiResponse
from ..schemas.jobs import ApprovalRequest, CreateJobRequest, InputRequest
from ..services.infra import InfraCommands

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])

# Job types that mutate a deployed environment
_MUTATING_TYPES = {JobType.deploy.value, JobType.deploy_unit.value, JobType.build_deploy_all.value}


async def _require_job(registry: JobRegistry, job_id: str) -> Job:
    """Return the job or raise JobNotFoundError for the global error handler."""
    job = await registry.get(job_id)
    if job is None:
        raise JobNotFoundError(f"Job '{job_id}' not found")
    return job


@router.get("")
async def list_jobs(
    active: bool = False,
    limit: Optional[int] = None,
    registry: JobRegistry = Depends(get_registry),
) -> ApiResponse:
    jobs = await registry.list_active() if active else await registry.list_recent(limit)
    return ApiResponse.success([j.model_dump() for j in jobs])


@router.post("")
async def create_job(
    req: CreateJobRequest,
    runner: JobRunner = Depends(get_job_runner),
    settings: ApiSettings = Depends(get_settings),
    infra: InfraCommands = Depends(get_infra),
) -> ApiResponse:
    if not req.type or not req.target:
        raise InvalidJobRequestError("Missing type or target")
    if req.type in _MUTATING_TYPES and settings.is_protected(infra.environment):
        raise ProtectedEnvironmentError(
            f'Cannot deploy to protected environment "{infra.environment}". '
            "Switch to a personal environment first."
        )
    if req.type == JobType.deploy_unit.value and not req.params.get("remote_name"):
        raise InvalidJobRequestError("Missing remote unit name")
    try:
        job = await runner.submit(req.type, req.target, req.params)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise InvalidJobRequestError(f"Invalid job parameters: {fields}") from exc
    return ApiResponse.success(job.model_dump())


@router.get("/builds")
async def list_builds(registry: JobRegistry = Depends(get_registry)) -> ApiResponse:
    records = await registry.get_build_records()
    return ApiResponse.success({r.name: r.model_dump() for r in records})


@router.post("/clear")
async def clear_jobs(registry: JobRegistry = Depends(get_registry)) -> ApiResponse:
    killed = await registry.force_kill_all()
    return ApiResponse.success({"killed": killed, "message": "All jobs cleared and processes killed"})


@router.get("/{job_id}")
async def get_job(
    job_id: str,
    registry: JobRegistry = Depends(get_registry),
) -> ApiResponse:
    job = await _require_job(registry, job_id)
    return ApiResponse.success(job.model_dump())


@router.get("/{job_id}/output")
async def job_output(
    job_id: str,
    registry: JobRegistry = Depends(get_registry),
):
    await _require_job(registry, job_id)

    async def _generate():
        async for line in registry.stream_output(job_id):
            yield {"data": json.dumps({"line": line})}
        job = await registry.get(job_id)
        status = job.status.value if job is not None else JobStatus.cancelled.value
        yield {"event": "done", "data": json.dumps({"done": True, "status": status})}

    return EventSourceResponse(_generate())


@router.post("/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    registry: JobRegistry = Depends(get_registry),
) -> ApiResponse:
    await _require_job(registry, job_id)
    if not await registry.cancel(job_id):
        raise InvalidJobRequestError("Cannot cancel job (not running)")
    return ApiResponse.success({"cancelled": True})


@router.post("/{job_id}/respond")
async def respond_to_job(
    job_id: str,
    req: ApprovalRequest,
    registry: JobRegistry = Depends(get_registry),
) -> ApiResponse:
    job = await _require_job(registry, job_id)
    if job.status != JobStatus.awaiting_approval:
        raise ApprovalStateError("Job is not awaiting approval")
    if not await registry.send_approval_response(job_id, req.approved):
        raise ApprovalStateError("Failed to send response to job")
    return ApiResponse.success({"approved": req.approved})


@router.get("/{job_id}/diff")
async def job_diff(
    job_id: str,
    registry: JobRegistry = Depends(get_registry),
) -> ApiResponse:
    job = await _require_job(registry, job_id)
    diff = registry.get_diff_output(job_id)
    return ApiResponse.success({
        "diff_output": diff if diff is not None else job.output,
        "status": job.status.value,
        "target": job.target,
    })


@router.post("/{job_id}/input")
async def job_input(
    job_id: str,
    req: InputRequest,
    registry: JobRegistry = Depends(get_registry),
) -> ApiResponse:
    await _require_job(registry, job_id)
    if not registry.send_input(job_id, req.data):
        raise ApprovalStateError("Job is not accepting input")
    return ApiResponse.success({"sent": True})
