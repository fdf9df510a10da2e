"""Composite job: build everything, then run the approval-gated deploy."""
from __future__ import annotations

import os

from ....config import SEPARATOR
from ...services.infra import InfraConfigError
from ..approval import run_plan_apply
from .base import JobContext, JobParams, JobStrategy
from .frontend_build import build_client


class BuildDeployAllStrategy(JobStrategy):
    """``target`` is ``backend`` or ``frontend``.

    Each phase checks whether the job was cancelled or failed from outside
    before starting the next one.
    """

    async def execute(self, job_id: str, params: JobParams, ctx: JobContext) -> None:
        if params.target not in ("backend", "frontend"):
            await self.fail(ctx, job_id, f"Unknown build-deploy-all target: {params.target}")
            return
        protected = self.protected_error(ctx)
        if protected:
            await self.fail(ctx, job_id, protected)
            return

        infra_path = params.infra_path or ctx.settings.infra_path
        if params.target == "backend":
            built = await self._build_backend(job_id, params, ctx)
        else:
            built = await self._build_frontend(job_id, params, ctx)
        if not built:
            return

        await self.check_cancelled(ctx, job_id)
        try:
            stack = ctx.infra.stack_name(params.target)
            env = ctx.infra.env(params.target)
        except InfraConfigError as exc:
            await self.fail(ctx, job_id, str(exc))
            return

        await self.out(
            ctx, job_id,
            SEPARATOR,
            f"Deploying {stack}",
            f"Environment: {ctx.infra.environment}, Stage: {ctx.infra.stage}",
        )
        await run_plan_apply(
            job_id, ctx,
            plan_argv=ctx.infra.plan_argv(stack),
            apply_argv=ctx.infra.apply_argv(stack),
            cwd=infra_path,
            env=env,
            label="deploy",
        )

    async def _build_backend(self, job_id: str, params: JobParams, ctx: JobContext) -> bool:
        backend_path = params.backend_path or ctx.settings.backend_path
        await self.start(ctx, job_id, "Build & Deploy All (Backend)")
        await self.out(ctx, job_id, "Phase 1: Building all artifacts...")
        artifacts = await ctx.discovery.discover(backend_path)
        results = await ctx.orchestrator.build_all(
            artifacts, job_id, backend_path=backend_path, finalize=False,
        )
        ctx.discovery.invalidate(backend_path)
        if await ctx.registry.is_finished(job_id):
            return False
        failed = [r for r in results if not r.success]
        if failed:
            await self.fail(ctx, job_id, f"{len(failed)} artifacts failed to build")
            return False
        return True

    async def _build_frontend(self, job_id: str, params: JobParams, ctx: JobContext) -> bool:
        clients_path = params.clients_path or ctx.settings.clients_path
        web_path = os.path.join(clients_path, "web")
        if not os.path.isdir(web_path):
            await self.fail(ctx, job_id, f"Directory not found: {web_path}")
            return False
        await self.start(ctx, job_id, "Build & Deploy All (Frontend)")
        await self.out(ctx, job_id, "Phase 1: Building clients/web...")
        error = await build_client(ctx, job_id, web_path)
        if await ctx.registry.is_finished(job_id):
            return False
        if error:
            await self.fail(ctx, job_id, error)
            return False
        await self.out(ctx, job_id, "✓ Frontend build completed")
        return True
