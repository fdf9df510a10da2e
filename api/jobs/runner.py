"""Fire-and-forget job runner: one detached asyncio task per job."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from .models import Job, JobStatus
from .registry import JobRegistry

if TYPE_CHECKING:
    from .strategies.base import JobContext, JobStrategy

logger = logging.getLogger(__name__)


class JobCancelled(Exception):
    """Raised by strategies when cooperative cancellation is detected."""


class JobRunner:
    """Creates jobs and runs their strategies in the background.

    ``submit`` returns as soon as the job row exists; the caller observes
    progress through the registry.  The task wrapper guarantees that every
    job reaches a terminal state even when its strategy raises.
    """

    def __init__(
        self,
        registry: JobRegistry,
        context: "JobContext",
        strategies: Optional[Mapping[str, "JobStrategy"]] = None,
    ) -> None:
        from .strategies import STRATEGIES

        self._registry = registry
        self._context = context
        # Per-runner copy of the default table
        self._strategies: Dict[str, "JobStrategy"] = dict(
            STRATEGIES if strategies is None else strategies
        )
        self._active_tasks: Dict[str, asyncio.Task] = {}

    def register_strategy(self, job_type: str, strategy: "JobStrategy") -> None:
        """Bind (or rebind) *job_type* to *strategy* for this runner only."""
        self._strategies[getattr(job_type, "value", job_type)] = strategy

    @property
    def strategies(self) -> Mapping[str, "JobStrategy"]:
        return self._strategies

    @property
    def pending_count(self) -> int:
        """Number of job tasks still running."""
        return len(self._active_tasks)

    async def submit(
        self,
        job_type: str,
        target: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Create a job and spawn its strategy; returns the pending job.

        Raises ``pydantic.ValidationError`` for malformed *params* before any
        job is created.
        """
        from .strategies.base import JobParams

        job_params = JobParams(**{**(params or {}), "target": target})
        job = await self._registry.create(job_type, target)
        task = asyncio.create_task(self._run(job.id, job.type, job_params))
        self._active_tasks[job.id] = task
        return job

    async def wait(self, job_id: str) -> None:
        """Await the task of *job_id* if it is still running."""
        task = self._active_tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def _run(self, job_id: str, job_type: str, params) -> None:
        from .executor import execute_job

        try:
            await execute_job(job_id, job_type, params, self._context, self._strategies)
            if not await self._registry.is_finished(job_id):
                logger.warning("Job %s strategy returned without a terminal status", job_id)
                await self._fail(job_id, "Job ended without reporting a result")
        except (asyncio.CancelledError, JobCancelled):
            if not await self._registry.is_finished(job_id):
                await self._registry.set_status(job_id, JobStatus.cancelled, "Cancelled")
        except Exception as exc:
            tb = traceback.format_exc()
            logger.error("Job %s failed: %s\n%s", job_id, exc, tb)
            if not await self._registry.is_finished(job_id):
                await self._registry.append_output(job_id, f"✗ Error: {exc}")
                await self._fail(job_id, str(exc))
        finally:
            self._active_tasks.pop(job_id, None)

    async def _fail(self, job_id: str, message: str) -> None:
        # awaiting_approval cannot fail directly; it can only be cancelled
        if not await self._registry.set_status(job_id, JobStatus.failed, message):
            await self._registry.set_status(job_id, JobStatus.cancelled, message)

    async def shutdown(self) -> None:
        """Cancel every outstanding job task and wait for them to unwind."""
        tasks = list(self._active_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._active_tasks.clear()
