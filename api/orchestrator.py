"""Adaptive build orchestrator: toolchain batches sized from live telemetry.

Flow of ``build_all``:

1. group artifacts by toolchain;
2. if a shared-precompile toolchain is present and a backend path is given,
   warm the shared projects once, sequentially (failures are warnings);
3. per group, repeatedly sample telemetry, derive a batch size, build the
   batch concurrently, record results and progress;
4. heavy toolchains wait (bounded) for resource relief before each batch
   and pause briefly between batches;
5. a cancelled job stops the loop between batches.
"""
from __future__ import annotations

import asyncio
import logging
import math
import os
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Tuple

from ..config_structured import SystemConfig, get_config
from .jobs.models import Artifact, BuildResult, JobStatus
from .jobs.registry import JobRegistry
from .services.telemetry import SystemResources, sample_resources
from .services.toolchains import ArtifactBuilder

logger = logging.getLogger(__name__)

TelemetryProvider = Callable[[], SystemResources]


def compute_parallelism(
    toolchain: str,
    resources: SystemResources,
    config: Optional[SystemConfig] = None,
) -> Tuple[int, List[str]]:
    """Derive a safe batch size for *toolchain* from one telemetry reading.

    Parameters
    ----------
    toolchain : str
        Toolchain name; unknown names use the default profile.
    resources : SystemResources
        Telemetry sample to judge pressure from.
    config : SystemConfig, optional
        Thresholds and per-toolchain profiles (defaults to the singleton).

    Returns
    -------
    tuple of (int, list of str)
        The parallelism level (never below 1, never above the toolchain
        base) and human-readable warnings describing any reduction.
    """
    cfg = config or get_config()
    profile = cfg.toolchain(toolchain)
    throttle = cfg.throttle
    base = profile.base_parallelism
    adjusted = base
    warnings: List[str] = []

    if resources.memory_usage_pct > throttle.very_high_memory_pct:
        adjusted = max(1, base // 4)
        warnings.append(
            f"⚠️ Very high memory usage ({resources.memory_usage_pct:.0f}%), "
            f"limiting to {adjusted} parallel build(s)"
        )
    elif resources.memory_usage_pct > throttle.high_memory_pct:
        adjusted = min(base, max(2, base // 2))

    if resources.load_per_cpu > throttle.high_load_per_cpu:
        adjusted = min(adjusted, max(2, adjusted // 2))
        warnings.append(
            f"⚠️ High CPU load ({resources.load_avg_1m:.1f}), "
            f"reducing to {adjusted} parallel build(s)"
        )

    per_unit = profile.min_memory_gb_per_unit
    if profile.heavy and per_unit > 0 and resources.free_memory_gb < adjusted * per_unit:
        adjusted = min(adjusted, max(2, math.floor(resources.free_memory_gb / per_unit)))
        if adjusted < base:
            warnings.append(
                f"⚠️ Limited memory ({resources.free_memory_gb:.1f}GB free), "
                f"running {adjusted} parallel build(s)"
            )

    return max(1, adjusted), warnings


class AdaptiveBuildOrchestrator:
    """Builds sets of artifacts with load-aware parallelism."""

    def __init__(
        self,
        registry: JobRegistry,
        builder: ArtifactBuilder,
        telemetry: TelemetryProvider = sample_resources,
        config: Optional[SystemConfig] = None,
    ) -> None:
        self.registry = registry
        self.builder = builder
        self.telemetry = telemetry
        self.config = config or get_config()

    async def _out(self, job_id: str, line: str) -> None:
        await self.registry.append_output(job_id, line)

    # ── Single units ─────────────────────────────────────────────────

    async def build_shared(self, backend_path: str, job_id: str) -> bool:
        """Warm shared projects once.  Returns False if any failed."""
        await self._out(job_id, "📦 Phase 1: Building shared projects")
        try:
            built, failed = await self.builder.build_shared(backend_path, job_id)
        except Exception as exc:
            logger.warning("Shared build for job %s raised: %s", job_id, exc)
            await self._out(job_id, f"⚠️ Shared project build failed: {exc}")
            return False
        if failed:
            await self._out(job_id, "⚠️ Some shared projects failed to build. Unit builds may still work.")
        return failed == 0

    async def build_artifact(self, artifact: Artifact, job_id: str) -> BuildResult:
        """Build one artifact and record the attempt; never raises."""
        started = time.monotonic()
        await self._out(job_id, f"=== Building {artifact.name} ({artifact.toolchain}) ===")
        try:
            await self.builder.build(artifact, job_id)
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            await self._out(job_id, f"✗ {artifact.name} failed: {exc}")
            await self.registry.record_build(artifact.name, artifact.toolchain, False, False)
            return BuildResult(name=artifact.name, success=False, error=str(exc), duration_ms=duration_ms)

        duration_ms = int((time.monotonic() - started) * 1000)
        await self._out(job_id, f"✓ {artifact.name} completed in {duration_ms / 1000:.1f}s")
        package_exists = bool(artifact.output_path) and os.path.isfile(artifact.output_path)
        await self.registry.record_build(artifact.name, artifact.toolchain, True, package_exists)
        return BuildResult(name=artifact.name, success=True, duration_ms=duration_ms)

    # ── Resource gating ──────────────────────────────────────────────

    async def wait_for_resources(self, job_id: str, min_free_gb: float = 1.0) -> bool:
        """Block until the host looks safe, bounded by the configured timeout.

        Returns True if resources became available, False when the wait
        timed out (the caller proceeds anyway).
        """
        throttle = self.config.throttle
        max_polls = max(1, int(throttle.resource_wait_timeout_s / max(throttle.resource_poll_interval_s, 1e-3)))
        waited = False
        for _ in range(max_polls):
            res = self.telemetry()
            if (
                res.free_memory_gb >= min_free_gb
                and res.memory_usage_pct < throttle.safe_memory_pct
                and res.load_per_cpu < throttle.safe_load_per_cpu
            ):
                if waited:
                    await self._out(
                        job_id,
                        f"✓ Resources available ({res.free_memory_gb:.1f}GB free, "
                        f"{res.memory_usage_pct:.0f}% used)",
                    )
                return True
            if not waited:
                await self._out(
                    job_id,
                    f"⏳ Waiting for resources ({res.free_memory_gb:.1f}GB free, "
                    f"{res.memory_usage_pct:.0f}% mem, load {res.load_avg_1m:.1f})...",
                )
                waited = True
            await asyncio.sleep(throttle.resource_poll_interval_s)

        await self._out(job_id, "⚠️ Timeout waiting for resources, proceeding anyway")
        return False

    # ── Batches ──────────────────────────────────────────────────────

    async def build_all(
        self,
        artifacts: List[Artifact],
        job_id: str,
        parallelism: Optional[int] = None,
        backend_path: Optional[str] = None,
        finalize: bool = True,
    ) -> List[BuildResult]:
        """Build *artifacts* in adaptive batches grouped by toolchain.

        With ``finalize`` the job is completed, or failed with a failure
        count; otherwise the terminal decision is left to the caller.
        """
        results: List[BuildResult] = []
        total = len(artifacts)
        completed = 0

        groups: Dict[str, List[Artifact]] = OrderedDict()
        for artifact in artifacts:
            groups.setdefault(artifact.toolchain, []).append(artifact)

        await self.registry.set_status(job_id, JobStatus.running)
        initial = self.telemetry()
        await self._out(job_id, f"Building {total} artifacts ({initial.cpu_count} CPUs available)")
        await self._out(
            job_id, "Types: " + ", ".join(f"{t}({len(g)})" for t, g in groups.items()),
        )
        await self._out(job_id, f"System: {initial.describe()}")

        shared = [t for t in groups if self.config.toolchain(t).shared_precompile]
        if shared and backend_path:
            await self.build_shared(backend_path, job_id)
            await self._out(job_id, "🔨 Phase 2: Building individual units in parallel")

        for toolchain, group in groups.items():
            profile = self.config.toolchain(toolchain)
            await self._out(job_id, f">>> Building {len(group)} {toolchain} artifacts")
            i = 0
            while i < len(group):
                if await self.registry.is_finished(job_id):
                    await self._out(job_id, "[Build cancelled]")
                    logger.info("Job %s stopped after %d/%d builds", job_id, completed, total)
                    return results

                if profile.heavy:
                    await self.wait_for_resources(job_id, profile.wait_min_free_gb)

                if parallelism is not None:
                    size = max(1, parallelism)
                else:
                    size, warnings = compute_parallelism(toolchain, self.telemetry(), self.config)
                    for warning in warnings:
                        await self._out(job_id, f"   {warning}")
                batch = group[i:i + size]
                logger.debug("Job %s: %s batch of %d", job_id, toolchain, len(batch))

                batch_results = await asyncio.gather(
                    *(self.build_artifact(a, job_id) for a in batch),
                    return_exceptions=True,
                )
                for artifact, outcome in zip(batch, batch_results):
                    if isinstance(outcome, BaseException):
                        outcome = BuildResult(name=artifact.name, success=False, error=str(outcome))
                    results.append(outcome)
                    completed += 1
                    await self.registry.set_progress(job_id, round(completed / total * 100))

                i += size
                if profile.heavy and i < len(group):
                    await asyncio.sleep(self.config.throttle.batch_pause_s)

        failed = [r for r in results if not r.success]
        await self._out(job_id, "=== Build Summary ===")
        await self._out(job_id, f"Total: {total}, Success: {total - len(failed)}, Failed: {len(failed)}")
        if failed:
            await self._out(job_id, "Failed artifacts:")
            for r in failed:
                await self._out(job_id, f"  - {r.name}: {r.error}")
        if total == 0:
            await self.registry.set_progress(job_id, 100)

        if finalize:
            if failed:
                await self.registry.set_status(
                    job_id, JobStatus.failed, f"{len(failed)} artifacts failed to build",
                )
            else:
                await self.registry.set_status(job_id, JobStatus.completed)
        return results

    async def build_by_type(
        self,
        artifacts: List[Artifact],
        toolchain: str,
        job_id: str,
        backend_path: Optional[str] = None,
        finalize: bool = True,
    ) -> List[BuildResult]:
        """Build only the artifacts of *toolchain*."""
        selected = [a for a in artifacts if a.toolchain == toolchain]
        return await self.build_all(selected, job_id, backend_path=backend_path, finalize=finalize)
