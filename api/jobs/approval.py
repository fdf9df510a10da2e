"""Plan / approve / apply protocol for jobs that mutate shared infrastructure."""
from __future__ import annotations

import functools
import logging
import re
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from ...config import SEPARATOR
from ...config_structured import ApprovalConfig, get_config
from .models import JobStatus
from .process import stream_process

if TYPE_CHECKING:
    from .strategies.base import JobContext

logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=8)
def _marker_pattern(markers: Tuple[str, ...]) -> re.Pattern:
    return re.compile(r"^\s*(?:" + "|".join(re.escape(m) for m in markers) + ")")


def detect_changes(line: str, config: Optional[ApprovalConfig] = None) -> bool:
    """True if a plan output line reports a real change.

    A change is a line starting with an add/remove/modify marker, or any
    line naming a sensitive change category.
    """
    cfg = config or get_config().approval
    if _marker_pattern(tuple(cfg.change_markers)).match(line):
        return True
    return any(category in line for category in cfg.sensitive_categories)


async def run_plan_apply(
    job_id: str,
    ctx: "JobContext",
    plan_argv: List[str],
    apply_argv: List[str],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    label: str = "deploy",
) -> None:
    """Drive *job_id* through plan, approval and apply to a terminal state.

    The job must already be ``running``.  Plan exit codes outside the
    configured "ok" set fail the job; a clean plan with no changes
    completes it without asking for approval; otherwise the plan lines
    are parked on the registry until someone responds.
    """
    registry = ctx.registry
    cfg = ctx.config.approval
    plan_lines: List[str] = []
    state = {"changes": False}

    def on_line(line: str) -> None:
        plan_lines.append(line)
        if detect_changes(line, cfg):
            state["changes"] = True

    await registry.append_output(job_id, "Phase 1: Calculating changes...")
    await registry.append_output(job_id, "> " + " ".join(plan_argv))
    plan = await stream_process(plan_argv, job_id, registry, cwd=cwd, env=env, on_line=on_line)

    if await registry.is_finished(job_id):
        logger.info("Job %s finished during plan; skipping %s", job_id, label)
        return

    if plan.exit_code not in cfg.plan_ok_exit_codes:
        await registry.append_output(job_id, f"✗ Plan failed with exit code {plan.exit_code}")
        await registry.set_status(
            job_id, JobStatus.failed, f"Diff failed with exit code {plan.exit_code}",
        )
        return

    if plan.exit_code == 0 and not state["changes"]:
        await registry.append_output(job_id, f"✓ No changes to {label} - stack is up to date")
        await registry.set_status(job_id, JobStatus.completed)
        return

    await registry.append_output(job_id, SEPARATOR)
    await registry.append_output(job_id, "⏸️  Changes detected - waiting for approval...")
    await registry.append_output(job_id, SEPARATOR)
    if not await registry.set_awaiting_approval(job_id, plan_lines):
        logger.warning("Job %s could not enter awaiting_approval", job_id)
        return

    approved = await registry.wait_for_approval(job_id)
    if not approved:
        if not await registry.is_finished(job_id):
            await registry.append_output(job_id, f"⏹️  {label.capitalize()} rejected")
            await registry.set_status(job_id, JobStatus.cancelled, "Rejected")
        return

    if await registry.is_finished(job_id):
        return

    await registry.append_output(job_id, f"Phase 2: Applying changes ({label})...")
    await registry.append_output(job_id, "> " + " ".join(apply_argv))
    apply = await stream_process(apply_argv, job_id, registry, cwd=cwd, env=env)

    if await registry.is_finished(job_id):
        return
    if apply.ok:
        await registry.append_output(job_id, f"✓ {label.capitalize()} completed successfully")
        await registry.set_status(job_id, JobStatus.completed)
    else:
        await registry.append_output(job_id, f"✗ {label.capitalize()} failed with exit code {apply.exit_code}")
        await registry.set_status(job_id, JobStatus.failed, f"Exit code {apply.exit_code}")
