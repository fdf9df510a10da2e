"""Shared context, parameters and base class for job strategies."""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional

from pydantic import BaseModel, Field

from ....config_structured import SystemConfig, get_config
from ...services.telemetry import SystemResources, sample_resources
from ..models import JobStatus
from ..process import ProcessResult, stream_process
from ..registry import JobRegistry
from ..runner import JobCancelled

if TYPE_CHECKING:
    from ...cache.manager import CacheManager
    from ...config import ApiSettings
    from ...orchestrator import AdaptiveBuildOrchestrator
    from ...services.discovery import ArtifactDiscovery
    from ...services.infra import InfraCommands
    from ...services.logs import LogSource

logger = logging.getLogger(__name__)


class JobParams(BaseModel):
    """Request parameters handed to a strategy.  Paths default from settings."""

    target: str
    backend_path: Optional[str] = None
    infra_path: Optional[str] = None
    clients_path: Optional[str] = None
    remote_name: Optional[str] = None
    skip_build: bool = False
    project_path: Optional[str] = None
    test_names: List[str] = Field(default_factory=list)
    integration: bool = False


@dataclass
class JobContext:
    """Collaborators shared by every strategy; built once per process."""

    registry: JobRegistry
    settings: "ApiSettings"
    discovery: "ArtifactDiscovery"
    orchestrator: "AdaptiveBuildOrchestrator"
    infra: "InfraCommands"
    log_source: Optional["LogSource"] = None
    cache: Optional["CacheManager"] = None
    telemetry: Callable[[], SystemResources] = sample_resources
    config: SystemConfig = field(default_factory=get_config)


class JobStrategy(abc.ABC):
    """An execution routine bound to one job type.

    A strategy owns its job from ``pending`` to a terminal status: the
    dispatcher never changes status on its behalf.
    """

    @abc.abstractmethod
    async def execute(self, job_id: str, params: JobParams, ctx: JobContext) -> None:
        ...

    # ── Helpers shared by concrete strategies ────────────────────────

    @staticmethod
    async def out(ctx: JobContext, job_id: str, *lines: str) -> None:
        for line in lines:
            await ctx.registry.append_output(job_id, line)

    @staticmethod
    async def start(ctx: JobContext, job_id: str, banner: Optional[str] = None) -> None:
        await ctx.registry.set_status(job_id, JobStatus.running)
        if banner:
            await ctx.registry.append_output(job_id, f"=== {banner} ===")

    @staticmethod
    async def fail(ctx: JobContext, job_id: str, message: str) -> None:
        """Report *message* and fail the job (valid from pending or running)."""
        if await ctx.registry.is_finished(job_id):
            return
        await ctx.registry.append_output(job_id, f"✗ {message}")
        await ctx.registry.set_status(job_id, JobStatus.failed, message)

    @staticmethod
    async def complete(ctx: JobContext, job_id: str, message: Optional[str] = None) -> None:
        if await ctx.registry.is_finished(job_id):
            return
        if message:
            await ctx.registry.append_output(job_id, f"✓ {message}")
        await ctx.registry.set_status(job_id, JobStatus.completed)

    @staticmethod
    async def check_cancelled(ctx: JobContext, job_id: str) -> None:
        """Raise ``JobCancelled`` if the job was finished from outside."""
        if await ctx.registry.is_finished(job_id):
            raise JobCancelled(job_id)

    @staticmethod
    async def run(
        ctx: JobContext,
        job_id: str,
        argv: List[str],
        cwd: Optional[str] = None,
        env: Optional[dict] = None,
    ) -> ProcessResult:
        await ctx.registry.append_output(job_id, "> " + " ".join(argv))
        return await stream_process(argv, job_id, ctx.registry, cwd=cwd, env=env)

    @staticmethod
    def protected_error(ctx: JobContext) -> Optional[str]:
        """Message when the selected environment may not be mutated."""
        env = ctx.infra.environment
        if ctx.settings.is_protected(env):
            return f"Environment '{env}' is protected; deploys are disabled"
        return None
