"""Saved execution logs, kept per artifact by explicit user action."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ..deps.providers import get_registry
from ..errors import InvalidJobRequestError, SavedLogNotFoundError
from ..jobs.registry import JobRegistry
from ..schemas.envelope import ApiResponse
from ..schemas.jobs import SaveLogRequest

router = APIRouter(prefix="/api/logs", tags=["logs"])


@router.post("")
async def save_log(
    req: SaveLogRequest,
    registry: JobRegistry = Depends(get_registry),
) -> ApiResponse:
    if not req.artifact_name or not req.name:
        raise InvalidJobRequestError("Missing artifact_name or name")
    saved = await registry.save_log(req.artifact_name, req.name, req.content)
    return ApiResponse.success(saved.model_dump())


@router.get("/view/{log_id}")
async def view_log(
    log_id: str,
    registry: JobRegistry = Depends(get_registry),
) -> ApiResponse:
    saved = await registry.get_saved_log(log_id)
    if saved is None:
        raise SavedLogNotFoundError(f"Log '{log_id}' not found")
    return ApiResponse.success(saved.model_dump())


@router.get("/{artifact_name}")
async def list_logs(
    artifact_name: str,
    registry: JobRegistry = Depends(get_registry),
) -> ApiResponse:
    logs = await registry.list_saved_logs(artifact_name)
    # Listing omits bodies; fetch one through /view/{id}
    return ApiResponse.success([log.model_dump(exclude={"content"}) for log in logs])


@router.delete("/{log_id}")
async def delete_log(
    log_id: str,
    registry: JobRegistry = Depends(get_registry),
) -> ApiResponse:
    if not await registry.delete_saved_log(log_id):
        raise SavedLogNotFoundError(f"Log '{log_id}' not found")
    return ApiResponse.success({"deleted": log_id})
