"""Frontend client build: dependency install when needed, then the build script."""
from __future__ import annotations

import os
from typing import Optional

from ..process import ProcessResult
from .base import JobContext, JobParams, JobStrategy

INSTALL_ARGV = ["yarn", "install", "--frozen-lockfile"]
BUILD_ARGV = ["yarn", "build"]

_ENV = {"NO_COLOR": "1", "FORCE_COLOR": "0", "NODE_OPTIONS": "--max-old-space-size=8192"}


async def build_client(ctx: JobContext, job_id: str, project_path: str) -> Optional[str]:
    """Install (if ``node_modules`` is missing) and build *project_path*.

    Returns None on success, otherwise the failure message.  Used by the
    frontend-build strategy and by the composite build-and-deploy.
    """
    runner = JobStrategy.run
    if not os.path.isdir(os.path.join(project_path, "node_modules")):
        result: ProcessResult = await runner(ctx, job_id, INSTALL_ARGV, cwd=project_path, env=_ENV)
        if not result.ok:
            return f"Dependency install failed with exit code {result.exit_code}"
        if await ctx.registry.is_finished(job_id):
            return None
    result = await runner(ctx, job_id, BUILD_ARGV, cwd=project_path, env=_ENV)
    if not result.ok:
        return f"Frontend build failed with exit code {result.exit_code}"
    return None


class FrontendBuildStrategy(JobStrategy):
    """``target`` names a client folder under ``clients_path``."""

    async def execute(self, job_id: str, params: JobParams, ctx: JobContext) -> None:
        clients_path = params.clients_path or ctx.settings.clients_path
        project_path = os.path.join(clients_path, params.target)
        if not os.path.isdir(project_path):
            await self.fail(ctx, job_id, f"Directory not found: {project_path}")
            return

        await self.start(ctx, job_id, f"Building frontend: {params.target}")
        await self.out(ctx, job_id, f"Path: {project_path}")
        error = await build_client(ctx, job_id, project_path)
        if await ctx.registry.is_finished(job_id):
            return
        if error:
            await self.fail(ctx, job_id, error)
        else:
            await ctx.registry.set_progress(job_id, 100)
            await self.complete(ctx, job_id, "Frontend build completed successfully")
