"""Shared test fixtures for the jobforge test suite."""
from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

import pytest

from jobforge.api.cache.manager import CacheManager
from jobforge.api.config import ApiSettings
from jobforge.api.jobs.models import Artifact, JobStatus
from jobforge.api.jobs.registry import JobRegistry
from jobforge.api.jobs.store import JobStore
from jobforge.api.jobs.strategies.base import JobContext
from jobforge.api.orchestrator import AdaptiveBuildOrchestrator
from jobforge.api.services.infra import InfraCommands
from jobforge.api.services.logs import LogEvent
from jobforge.api.services.telemetry import SystemResources
from jobforge.config_structured import SystemConfig


def pytest_sessionfinish(session, exitstatus):
    """Spawn a watchdog that force-exits if the process hangs at shutdown.

    aiosqlite worker threads left behind by a failed test can keep the
    interpreter alive after the run.
    """
    import os
    import threading
    import time

    def _watchdog():
        time.sleep(5)
        os._exit(exitstatus)

    t = threading.Thread(target=_watchdog, daemon=True)
    t.start()


# ── Fakes ────────────────────────────────────────────────────────────


class FakeTelemetry:
    """Telemetry provider returning scripted readings (the last one repeats)."""

    def __init__(self, *readings: SystemResources) -> None:
        self.readings = list(readings) or [SystemResources.from_values(16.0, 32.0, 0.5, 8)]
        self.calls = 0

    def __call__(self) -> SystemResources:
        idx = min(self.calls, len(self.readings) - 1)
        self.calls += 1
        return self.readings[idx]


class FakeBuilder:
    """ArtifactBuilder that sleeps briefly and tracks concurrency."""

    def __init__(self, fail: Optional[set] = None, delay: float = 0.01) -> None:
        self.fail = fail or set()
        self.delay = delay
        self.built: List[str] = []
        self.shared_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.batches: List[List[str]] = []
        self._current: List[str] = []

    async def build(self, artifact: Artifact, job_id: str) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self._current.append(artifact.name)
        try:
            await asyncio.sleep(self.delay)
            if artifact.name in self.fail:
                raise RuntimeError(f"{artifact.name} exploded")
            self.built.append(artifact.name)
        finally:
            self.in_flight -= 1
            if self.in_flight == 0:
                self.batches.append(self._current)
                self._current = []

    async def build_shared(self, backend_path: str, job_id: str):
        self.shared_calls += 1
        return 1, 0


class FakeDiscovery:
    def __init__(self, artifacts: Optional[List[Artifact]] = None) -> None:
        self.artifacts = artifacts or []
        self.invalidations = 0

    async def discover(self, backend_path: str) -> List[Artifact]:
        return list(self.artifacts)

    def invalidate(self, backend_path: Optional[str] = None) -> None:
        self.invalidations += 1


class FakeLogSource:
    """Yields scripted events once, then idles until stopped."""

    def __init__(self, events: Optional[List[LogEvent]] = None) -> None:
        self.events = list(events or [])
        self.calls = 0

    async def tail(self, name, start_time_ms, poll_interval_s, stop):
        self.calls += 1
        pending, self.events = self.events, []
        for event in pending:
            yield event
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), poll_interval_s)
            except asyncio.TimeoutError:
                return


def make_artifacts(count: int, toolchain: str = "js", tmp_path=None) -> List[Artifact]:
    artifacts = []
    for i in range(count):
        path = str(tmp_path / f"unit{i}") if tmp_path is not None else f"/nonexistent/unit{i}"
        artifacts.append(Artifact(
            name=f"{toolchain}-unit{i}",
            toolchain=toolchain,
            path=path,
            output_path=f"{path}/deployment.zip",
        ))
    return artifacts


async def wait_for_status(registry: JobRegistry, job_id: str, *statuses: JobStatus, timeout: float = 5.0):
    """Poll until the job reaches one of *statuses*; returns the job."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = await registry.get(job_id)
        if job is not None and job.status in statuses:
            return job
        if loop.time() > deadline:
            raise AssertionError(f"job {job_id} stuck in {job.status if job else None}")
        await asyncio.sleep(0.01)


# ── Engine fixtures ──────────────────────────────────────────────────


@pytest.fixture
def system_config() -> SystemConfig:
    """A private config with waits shrunk for fast tests."""
    cfg = SystemConfig()
    cfg.throttle.resource_wait_timeout_s = 0.05
    cfg.throttle.resource_poll_interval_s = 0.01
    cfg.throttle.batch_pause_s = 0.0
    cfg.tail.poll_interval_s = 0.01
    cfg.tail.idle_retry_s = 0.01
    return cfg


@pytest.fixture
async def store():
    s = JobStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
async def registry(store, system_config):
    return JobRegistry(store, system_config.registry)


@pytest.fixture
def telemetry() -> FakeTelemetry:
    return FakeTelemetry()


@pytest.fixture
def builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture
def orchestrator(registry, builder, telemetry, system_config):
    return AdaptiveBuildOrchestrator(registry, builder, telemetry=telemetry, config=system_config)


@pytest.fixture
def settings(tmp_path) -> ApiSettings:
    return ApiSettings(
        workspace_path=str(tmp_path),
        job_db_path=":memory:",
        environment="dev-test",
    )


@pytest.fixture
def ctx(registry, settings, orchestrator, telemetry, system_config) -> JobContext:
    return JobContext(
        registry=registry,
        settings=settings,
        discovery=FakeDiscovery(),
        orchestrator=orchestrator,
        infra=InfraCommands(command="echo", environment=settings.environment),
        log_source=FakeLogSource(),
        cache=CacheManager(),
        telemetry=telemetry,
        config=system_config,
    )


# ── API fixtures ─────────────────────────────────────────────────────


@pytest.fixture
async def app(ctx, registry, store):
    """Create a test FastAPI app wired to the per-test engine."""
    import jobforge.api.deps.providers as _prov
    from jobforge.api.jobs.runner import JobRunner
    from jobforge.api.main import create_app

    _prov.reset_providers()
    _prov._job_store = store
    _prov._registry = registry
    _prov._cache = ctx.cache
    _prov._discovery = ctx.discovery
    _prov._orchestrator = ctx.orchestrator
    _prov._infra = ctx.infra
    _prov._log_source = ctx.log_source
    _prov._context = ctx
    runner = JobRunner(registry, ctx)
    _prov._runner = runner

    application = create_app(ctx.settings)
    application.dependency_overrides[_prov.get_settings] = lambda: ctx.settings
    yield application

    await runner.shutdown()
    _prov.reset_providers()


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the test app."""
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac


@pytest.fixture
def runtime_overrides() -> Dict[str, object]:
    """Snapshot of the adjustable config, restored after the test."""
    from jobforge.api.config import RuntimeConfig

    rc = RuntimeConfig()
    before = rc.get_adjustable()
    yield before
    rc.patch(before)
