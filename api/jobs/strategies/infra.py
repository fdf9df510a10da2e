"""Infrastructure jobs: non-interactive diff/synth and approval-gated deploy."""
from __future__ import annotations

import os

from ...services.infra import InfraConfigError
from ..approval import run_plan_apply
from .base import JobContext, JobParams, JobStrategy


class InfraStrategy(JobStrategy):
    def __init__(self, action: str) -> None:
        if action not in ("diff", "synth", "deploy"):
            raise ValueError(f"Unsupported infrastructure action: {action}")
        self.action = action

    async def execute(self, job_id: str, params: JobParams, ctx: JobContext) -> None:
        infra_path = params.infra_path or ctx.settings.infra_path
        if not os.path.isdir(infra_path):
            await self.fail(ctx, job_id, f"Infrastructure path not found: {infra_path}")
            return
        if self.action == "deploy":
            protected = self.protected_error(ctx)
            if protected:
                await self.fail(ctx, job_id, protected)
                return

        try:
            stack = ctx.infra.stack_name(params.target)
            env = ctx.infra.env(params.target)
        except InfraConfigError as exc:
            await self.fail(ctx, job_id, str(exc))
            return

        await self.start(ctx, job_id, f"Running {self.action} on {params.target}")
        await self.out(
            ctx, job_id,
            f"Infrastructure path: {infra_path}",
            f"Stack: {stack}",
            f"Environment: {ctx.infra.environment}",
            f"Stage: {ctx.infra.stage}",
        )

        if self.action == "deploy":
            await run_plan_apply(
                job_id, ctx,
                plan_argv=ctx.infra.plan_argv(stack),
                apply_argv=ctx.infra.apply_argv(stack),
                cwd=infra_path,
                env=env,
                label="deploy",
            )
            return

        result = await self.run(
            ctx, job_id, ctx.infra.action_argv(self.action, stack), cwd=infra_path, env=env,
        )
        if await ctx.registry.is_finished(job_id):
            return
        if result.ok:
            await self.complete(ctx, job_id, f"{self.action} completed successfully")
        else:
            await self.fail(ctx, job_id, f"{self.action} failed with exit code {result.exit_code}")
