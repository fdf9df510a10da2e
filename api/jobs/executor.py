"""Dispatch a job to the strategy registered for its type."""
from __future__ import annotations

import logging
from typing import Mapping, Optional

from .models import JobStatus
from .strategies import get_strategy
from .strategies.base import JobContext, JobParams, JobStrategy

logger = logging.getLogger(__name__)


async def execute_job(
    job_id: str,
    job_type: str,
    params: JobParams,
    ctx: JobContext,
    strategies: Optional[Mapping[str, JobStrategy]] = None,
) -> None:
    """Run the strategy for *job_type*.

    *strategies* overrides the default table.  An unknown type fails the
    job immediately.  Otherwise the strategy owns every status change from
    here on; exceptions propagate to the runner.
    """
    job_type = getattr(job_type, "value", job_type)
    strategy = strategies.get(job_type) if strategies is not None else get_strategy(job_type)
    if strategy is None:
        message = f"Unknown job type: {job_type}"
        logger.warning("Job %s: %s", job_id, message)
        await ctx.registry.append_output(job_id, f"✗ {message}")
        await ctx.registry.set_status(job_id, JobStatus.failed, message)
        return

    logger.info("Job %s: executing %s on %s", job_id, job_type, params.target)
    await strategy.execute(job_id, params, ctx)
