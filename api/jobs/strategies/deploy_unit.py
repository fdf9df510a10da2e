"""Single-artifact remote deploy: build, verify the package, push it."""
from __future__ import annotations

import os

from ...cache.invalidation import invalidate_on_deploy
from .base import JobContext, JobParams, JobStrategy


class DeployUnitStrategy(JobStrategy):
    """``target`` is the local artifact name; ``remote_name`` the deployed unit."""

    async def execute(self, job_id: str, params: JobParams, ctx: JobContext) -> None:
        remote = params.remote_name
        if not remote:
            await self.fail(ctx, job_id, "Missing remote unit name")
            return
        protected = self.protected_error(ctx)
        if protected:
            await self.fail(ctx, job_id, protected)
            return

        backend_path = params.backend_path or ctx.settings.backend_path
        await self.start(ctx, job_id, f"Deploy {params.target} -> {remote}")

        artifacts = await ctx.discovery.discover(backend_path)
        artifact = next((a for a in artifacts if a.name == params.target), None)
        if artifact is None:
            await self.fail(ctx, job_id, f'Artifact "{params.target}" not found locally')
            return

        if params.skip_build:
            await self.out(ctx, job_id, "[1/2] Skipping build")
        else:
            await self.out(ctx, job_id, f"[1/2] Building {artifact.name}...")
            result = await ctx.orchestrator.build_artifact(artifact, job_id)
            ctx.discovery.invalidate(backend_path)
            if not result.success:
                await self.fail(ctx, job_id, f"Build failed: {result.error}")
                return
            await self.out(ctx, job_id, "✓ Build completed")
        await ctx.registry.set_progress(job_id, 50)
        await self.check_cancelled(ctx, job_id)

        package = artifact.output_path
        if not package or not os.path.isfile(package):
            await self.fail(ctx, job_id, f"Deployment package not found at: {package}")
            return

        await self.out(ctx, job_id, f"[2/2] Deploying to {remote}...")
        result = await self.run(ctx, job_id, ctx.infra.push_argv(remote, package), cwd=backend_path)
        if await ctx.registry.is_finished(job_id):
            return
        if not result.ok:
            await self.fail(ctx, job_id, f"Push failed with exit code {result.exit_code}")
            return

        await ctx.registry.set_progress(job_id, 100)
        await self.complete(ctx, job_id, f"Successfully deployed {artifact.name} to {remote}")
        if ctx.cache is not None:
            invalidate_on_deploy(ctx.cache, ctx.infra.environment)
