"""Test-project runs: restore, a retried build, then the test command."""
from __future__ import annotations

import os
import re
from typing import List, Optional

from ....config import SEPARATOR
from ..process import stream_process
from .base import JobContext, JobParams, JobStrategy

RESULT_RE = re.compile(r"^[^A-Za-z]*(Passed|Failed|Skipped)\s+(.+?)(?:\s+\[(.+?)\])?\s*$")
SUMMARY_RE = re.compile(r"Failed:\s*(\d+).*?Passed:\s*(\d+).*?Skipped:\s*(\d+).*?Total:\s*(\d+)")

_ICONS = {"passed": "✓", "failed": "✗", "skipped": "⊘"}
_BUILD_TAIL = 15


def dotnet_restore_argv(project: str) -> List[str]:
    return ["dotnet", "restore", project, "--disable-parallel"]


def dotnet_build_argv(project: str) -> List[str]:
    return ["dotnet", "build", project, "--no-restore", "--nologo", "-v", "q"]


def dotnet_test_argv(project: str, test_names: List[str], integration: bool = False) -> List[str]:
    argv = ["dotnet", "test", project, "--no-build", "-v", "n"]
    clauses = [f"FullyQualifiedName~{name}" for name in test_names]
    filter_expr = "|".join(clauses)
    if not integration:
        category = "Category!=Integration"
        filter_expr = f"({filter_expr})&{category}" if filter_expr else category
    if filter_expr:
        argv += ["--filter", filter_expr]
    return argv


def parse_result_line(line: str) -> Optional[tuple]:
    """Return ``(status, test_name, duration)`` for a per-test result line."""
    m = RESULT_RE.match(line)
    if not m:
        return None
    duration = f"[{m.group(3)}]" if m.group(3) else ""
    return m.group(1).lower(), m.group(2).strip(), duration


class TestRunStrategy(JobStrategy):
    """``target`` is a display name; ``project_path`` selects the project."""

    __test__ = False

    async def execute(self, job_id: str, params: JobParams, ctx: JobContext) -> None:
        project = params.project_path or ctx.settings.resolve(ctx.settings.test_project_dir)
        if not os.path.exists(project):
            await self.fail(ctx, job_id, f"Test project not found: {project}")
            return

        await self.start(ctx, job_id, f"Test run: {params.target}")
        cwd = project if os.path.isdir(project) else os.path.dirname(project)

        if not await self._build(job_id, project, cwd, ctx):
            await self.fail(ctx, job_id, f"Build failed after {ctx.config.retry.build_attempts} attempts")
            return
        await ctx.registry.set_progress(job_id, 30)
        await self.check_cancelled(ctx, job_id)

        await self.out(ctx, job_id, "Running tests...", "")
        counts = {"passed": 0, "failed": 0, "skipped": 0}
        raw: List[str] = []
        failures: List[str] = []

        def on_line(line: str) -> None:
            raw.append(line)
            parsed = parse_result_line(line)
            if parsed is None:
                return
            status, name, duration = parsed
            counts[status] += 1
            if status == "failed":
                failures.append(f"  {_ICONS[status]} {name} {duration}".rstrip())

        argv = dotnet_test_argv(project, params.test_names, params.integration)
        await ctx.registry.append_output(job_id, "> " + " ".join(argv))
        result = await stream_process(argv, job_id, ctx.registry, cwd=cwd, on_line=on_line)
        if await ctx.registry.is_finished(job_id):
            return

        total = sum(counts.values())
        for line in raw:
            m = SUMMARY_RE.search(line)
            if m:
                counts["failed"], counts["passed"], counts["skipped"] = (
                    int(m.group(1)), int(m.group(2)), int(m.group(3)),
                )
                total = int(m.group(4))

        # Non-zero exit with nothing parsed means the runner itself broke
        if not result.ok and total == 0:
            await self.fail(ctx, job_id, f"Test command failed with exit code {result.exit_code}")
            return

        await self.out(
            ctx, job_id,
            "",
            SEPARATOR,
            f"{counts['passed']} passed, {counts['failed']} failed, "
            f"{counts['skipped']} skipped ({total} total)",
        )
        if failures:
            await self.out(ctx, job_id, "", "Failed tests:", *failures)
        await ctx.registry.set_progress(job_id, 100)
        if counts["failed"]:
            await self.fail(ctx, job_id, f"{counts['failed']} test(s) failed")
        else:
            await self.complete(ctx, job_id)

    async def _build(self, job_id: str, project: str, cwd: str, ctx: JobContext) -> bool:
        """Restore once, then build with up to ``retry.build_attempts`` tries.

        Every failure is treated as transient; attempts run back to back.
        """
        name = os.path.basename(project.rstrip(os.sep))
        await self.out(ctx, job_id, f"Restoring {name}...")
        restored = await self.run(ctx, job_id, dotnet_restore_argv(project), cwd=cwd)
        if await ctx.registry.is_finished(job_id):
            return False
        if not restored.ok:
            await self.out(
                ctx, job_id, f"Restore failed (exit {restored.exit_code}), attempting build anyway...",
            )

        await self.out(ctx, job_id, f"Building {name}...")
        attempts = max(1, ctx.config.retry.build_attempts)
        for attempt in range(1, attempts + 1):
            tail: List[str] = []
            await ctx.registry.append_output(job_id, "> " + " ".join(dotnet_build_argv(project)))
            result = await stream_process(
                dotnet_build_argv(project), job_id, ctx.registry, cwd=cwd, on_line=tail.append,
            )
            if await ctx.registry.is_finished(job_id):
                return False
            if result.ok:
                await self.out(ctx, job_id, "Build complete.")
                return True
            if attempt < attempts:
                await self.out(ctx, job_id, f"Build attempt {attempt} failed, retrying...")
            else:
                await self.out(ctx, job_id, f"Build failed after {attempts} attempts:", *tail[-_BUILD_TAIL:])
        return False
