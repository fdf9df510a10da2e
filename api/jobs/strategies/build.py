"""Direct artifact builds: everything, one toolchain, or one named artifact."""
from __future__ import annotations

from ..models import JobStatus
from .base import JobContext, JobParams, JobStrategy


class BuildStrategy(JobStrategy):
    """``target`` is ``all``, a toolchain name, or an artifact name."""

    async def execute(self, job_id: str, params: JobParams, ctx: JobContext) -> None:
        backend_path = params.backend_path or ctx.settings.backend_path
        artifacts = await ctx.discovery.discover(backend_path)
        try:
            await self._build(job_id, params.target, backend_path, artifacts, ctx)
        finally:
            # Package presence is part of every discovered artifact
            ctx.discovery.invalidate(backend_path)

    async def _build(self, job_id, target, backend_path, artifacts, ctx: JobContext) -> None:
        orchestrator = ctx.orchestrator

        if target == "all":
            await orchestrator.build_all(artifacts, job_id, backend_path=backend_path)
            return

        toolchains = {a.toolchain for a in artifacts} | set(ctx.config.toolchains)
        if target in toolchains:
            shared = backend_path if ctx.config.toolchain(target).shared_precompile else None
            await orchestrator.build_by_type(artifacts, target, job_id, backend_path=shared)
            return

        artifact = next((a for a in artifacts if a.name == target), None)
        if artifact is None:
            await self.fail(ctx, job_id, f'Artifact "{target}" not found')
            return

        await self.start(ctx, job_id, f"Building {artifact.name}")
        if ctx.config.toolchain(artifact.toolchain).shared_precompile:
            await orchestrator.build_shared(backend_path, job_id)
            await self.check_cancelled(ctx, job_id)

        result = await orchestrator.build_artifact(artifact, job_id)
        await ctx.registry.set_progress(job_id, 100)
        if result.success:
            await self.complete(ctx, job_id)
        elif not await ctx.registry.is_finished(job_id):
            await ctx.registry.set_status(job_id, JobStatus.failed, result.error)
