"""Host telemetry, build staleness and runtime config endpoints."""
from __future__ import annotations

import time
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from ..cache.manager import CacheManager
from ..config import RuntimeConfig
from ..deps.providers import (
    get_cache,
    get_changed_files,
    get_context,
    get_registry,
    get_runtime_config,
)
from ..errors import ConfigValidationError
from ..jobs.registry import JobRegistry
from ..jobs.strategies.base import JobContext
from ..orchestrator import compute_parallelism
from ..schemas.envelope import ApiResponse
from ..services.staleness import ChangedFilesProvider, stale_artifacts

router = APIRouter(tags=["system"])

_RESOURCES_KEY = "resources:sample"


@router.get("/api/system/resources")
async def system_resources(
    ctx: JobContext = Depends(get_context),
    cache: CacheManager = Depends(get_cache),
) -> ApiResponse:
    """Current telemetry plus the batch size each toolchain would get now."""
    t0 = time.monotonic()
    cached = cache.get(_RESOURCES_KEY)
    if cached is not None:
        return ApiResponse.from_cached(cached, elapsed_ms=(time.monotonic() - t0) * 1000)

    resources = ctx.telemetry()
    recommended: Dict[str, Any] = {}
    for name in ctx.config.toolchains:
        parallelism, warnings = compute_parallelism(name, resources, ctx.config)
        recommended[name] = {"parallelism": parallelism, "warnings": warnings}
    data = {"resources": resources.to_dict(), "recommended": recommended}
    cache.set(_RESOURCES_KEY, data)
    return ApiResponse.success(data)


@router.get("/api/system/staleness")
async def build_staleness(
    ctx: JobContext = Depends(get_context),
    registry: JobRegistry = Depends(get_registry),
    changed: ChangedFilesProvider = Depends(get_changed_files),
) -> ApiResponse:
    """Which artifacts need a rebuild, and why."""
    backend_path = ctx.settings.backend_path
    artifacts = await ctx.discovery.discover(backend_path)
    records = await registry.get_build_records()
    repo_root = ctx.settings.resolve(".")
    files = await changed.changed_files(repo_root)
    reasons = stale_artifacts(artifacts, records, files, repo_root)
    return ApiResponse.success({
        "stale": {name: reason for name, reason in reasons.items() if reason},
        "up_to_date": sorted(name for name, reason in reasons.items() if not reason),
    })


@router.get("/api/config")
async def get_config(rc: RuntimeConfig = Depends(get_runtime_config)) -> ApiResponse:
    return ApiResponse.success(rc.get_adjustable())


@router.get("/api/config/validate")
async def validate_config_endpoint() -> ApiResponse:
    """Run config validation and return any issues found."""
    from ...config import validate_config

    issues = validate_config()
    return ApiResponse.success({
        "issues": issues,
        "count": len(issues),
        "errors": sum(1 for i in issues if i.get("level") == "ERROR"),
        "warnings": sum(1 for i in issues if i.get("level") == "WARNING"),
    })


@router.patch("/api/config")
async def patch_config(
    updates: dict = Body(...),
    rc: RuntimeConfig = Depends(get_runtime_config),
    cache: CacheManager = Depends(get_cache),
) -> ApiResponse:
    try:
        new_state = rc.patch(updates)
    except (KeyError, ValueError) as exc:
        raise ConfigValidationError(str(exc)) from exc
    # Recommendations depend on the throttle thresholds
    cache.invalidate(_RESOURCES_KEY)
    return ApiResponse.success(new_state)
