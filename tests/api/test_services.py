"""Tests for discovery, staleness, infrastructure commands, log sources and caching."""
import asyncio
import os
import zipfile
from pathlib import Path

import pytest

from jobforge.api.cache.invalidation import invalidate_on_build, invalidate_on_deploy
from jobforge.api.cache.manager import CacheManager
from jobforge.api.jobs.models import Artifact, BuildRecord, JobStatus
from jobforge.api.services.discovery import DirectoryDiscovery
from jobforge.api.services.infra import InfraCommands, InfraConfigError
from jobforge.api.services.logs import FileLogSource
from jobforge.api.services.staleness import parse_porcelain, stale_artifacts
from jobforge.api.services.telemetry import SystemResources, sample_resources
from jobforge.api.services.toolchains import (
    BuildError,
    CommandBuilder,
    ToolchainRecipe,
    zip_directory,
)


def _touch(path: Path, text: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


@pytest.fixture
def backend(tmp_path) -> Path:
    root = tmp_path / "backend"
    _touch(root / "Handlers" / "Orders" / "src" / "Orders" / "Orders.csproj")
    _touch(root / "Handlers" / "SMTP" / "src" / "SMTP" / "SMTP.csproj")
    _touch(root / "Handlers" / "Edge" / "tsconfig.json", "{}")
    _touch(root / "Handlers" / "Edge" / "package.json", "{}")
    _touch(root / "Handlers" / "Empty" / "README.md")
    _touch(root / "lambdas" / "js" / "mailer" / "package.json", "{}")
    _touch(root / "lambdas" / "js" / "mailer" / "deployment.zip", "PK")
    _touch(root / "lambdas" / "python" / "report" / "requirements.txt")
    _touch(root / "lambdas" / "python" / "notes" / "README.md")
    _touch(root / "Shared" / "Common" / "Common.csproj")
    _touch(root / "Shared" / "Common" / "bin" / "Stale.csproj")
    return root


# ── Discovery ────────────────────────────────────────────────────────


class TestDirectoryDiscovery:
    @pytest.mark.asyncio
    async def test_scan_classifies_and_orders(self, backend):
        artifacts = await DirectoryDiscovery().discover(str(backend))
        assert [(a.name, a.toolchain) for a in artifacts] == [
            ("Orders", "dotnet"),
            ("Edge", "typescript-edge"),
            ("mailer", "js"),
            ("report", "python"),
        ]
        by_name = {a.name: a for a in artifacts}
        assert by_name["mailer"].package_exists is True
        assert by_name["report"].package_exists is False
        assert by_name["Orders"].output_path.endswith(os.path.join("net8.0", "Orders.zip"))

    @pytest.mark.asyncio
    async def test_missing_backend_is_empty(self, tmp_path):
        assert await DirectoryDiscovery().discover(str(tmp_path / "nope")) == []

    @pytest.mark.asyncio
    async def test_results_cached_until_invalidated(self, backend):
        cache = CacheManager()
        discovery = DirectoryDiscovery(cache=cache)
        first = await discovery.discover(str(backend))
        _touch(backend / "lambdas" / "js" / "late" / "package.json", "{}")

        assert len(await discovery.discover(str(backend))) == len(first)
        discovery.invalidate(str(backend))
        assert len(await discovery.discover(str(backend))) == len(first) + 1

        _touch(backend / "lambdas" / "js" / "later" / "package.json", "{}")
        discovery.invalidate()
        assert len(await discovery.discover(str(backend))) == len(first) + 2

    def test_shared_projects(self, backend):
        projects = DirectoryDiscovery().shared_projects(backend)
        assert [p.name for p in projects] == ["Common", "SMTP"]


# ── Staleness ────────────────────────────────────────────────────────


def test_parse_porcelain():
    text = " M backend/a.py\n?? backend/new dir/b.txt\nR  old.py -> backend/new.py\n\n"
    assert parse_porcelain(text) == ["backend/a.py", "backend/new dir/b.txt", "backend/new.py"]


class TestStaleArtifacts:
    def _artifact(self, root: Path, name: str, package: bool = True) -> Artifact:
        unit = root / name
        output = unit / "deployment.zip"
        _touch(unit / "index.js")
        if package:
            _touch(output, "PK")
        return Artifact(name=name, toolchain="js", path=str(unit), output_path=str(output))

    def _record(self, name: str, status: str = "success", at: str = "2020-01-01T00:00:00+00:00"):
        return BuildRecord(name=name, type="js", last_built_at=at, last_build_status=status)

    def test_reasons(self, tmp_path):
        artifacts = [
            self._artifact(tmp_path, "never"),
            self._artifact(tmp_path, "failed"),
            self._artifact(tmp_path, "nopkg", package=False),
            self._artifact(tmp_path, "changed"),
            self._artifact(tmp_path, "deleted"),
            self._artifact(tmp_path, "clean"),
        ]
        records = [
            self._record("failed", status="failed"),
            self._record("nopkg"),
            self._record("changed"),
            self._record("deleted"),
            self._record("clean", at="2999-01-01T00:00:00+00:00"),
        ]
        changed = ["changed/index.js", "deleted/gone.js", "clean/index.js", "elsewhere/x.js"]

        reasons = stale_artifacts(artifacts, records, changed, str(tmp_path))

        assert reasons == {
            "never": "Never built",
            "failed": "Last build failed",
            "nopkg": "Package missing",
            "changed": "Source changed",
            "deleted": "Source deleted",
            "clean": None,
        }


# ── Infrastructure commands ──────────────────────────────────────────


class TestInfraCommands:
    def test_stack_names(self):
        infra = InfraCommands(environment="alice")
        assert infra.stack_name("api") == "api-alice"
        assert infra.stack_name("static-backend") == "backend"

    def test_missing_environment(self):
        infra = InfraCommands()
        with pytest.raises(InfraConfigError, match="No environment selected"):
            infra.stack_name("api")
        with pytest.raises(InfraConfigError):
            infra.env("api")
        # aliases need no environment
        assert infra.stack_name("beanstalk-backend") == "backend-beanstalk"

    def test_argv(self):
        infra = InfraCommands(environment="alice")
        assert infra.plan_argv("api-alice") == ["yarn", "cdk", "diff", "api-alice"]
        assert infra.apply_argv("api-alice") == [
            "yarn", "cdk", "deploy", "api-alice", "--require-approval", "never",
        ]
        assert infra.action_argv("synth", "api-alice") == ["yarn", "cdk", "synth", "api-alice"]

    def test_env(self):
        env = InfraCommands(environment="alice", stage="qa").env("api")
        assert env["STACK"] == "api"
        assert env["SUFFIX"] == "alice"
        assert env["INFRA_STAGE"] == "qa"

    def test_push_argv(self):
        argv = InfraCommands().push_argv("fn-a", "/tmp/pkg.zip")
        assert "--function-name" in argv
        assert argv[argv.index("--function-name") + 1] == "fn-a"
        assert "fileb:///tmp/pkg.zip" in argv


# ── Log source ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_file_log_source_follows_new_lines(tmp_path):
    log = _touch(tmp_path / "fn-a.log", "old line\n")
    source = FileLogSource(str(tmp_path))
    stop = asyncio.Event()
    agen = source.tail("fn-a", 0, 0.01, stop)

    first = asyncio.create_task(agen.__anext__())
    await asyncio.sleep(0.05)
    with log.open("a") as fh:
        fh.write("new line\npartial")

    event = await asyncio.wait_for(first, 5)
    assert event.message == "new line"
    assert event.timestamp_ms > 0

    with log.open("a") as fh:
        fh.write(" done\n")
    event = await asyncio.wait_for(agen.__anext__(), 5)
    assert event.message == "partial done"

    stop.set()
    await agen.aclose()


@pytest.mark.asyncio
async def test_file_log_source_stops_without_file(tmp_path):
    source = FileLogSource(str(tmp_path))
    stop = asyncio.Event()
    events = []

    async def consume():
        async for event in source.tail("missing", 0, 0.01, stop):
            events.append(event)

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.03)
    stop.set()
    await asyncio.wait_for(task, 5)
    assert events == []


@pytest.mark.asyncio
async def test_file_log_source_concurrent_tails_see_every_line(tmp_path):
    log = _touch(tmp_path / "svc.log", "before\n")
    source = FileLogSource(str(tmp_path))
    stop = asyncio.Event()
    seen = {"a": [], "b": []}

    async def consume(key):
        async for event in source.tail("svc", 0, 0.01, stop):
            seen[key].append(event.message)
            if len(seen[key]) == 6:
                return

    tasks = [asyncio.create_task(consume(key)) for key in seen]
    await asyncio.sleep(0.05)
    with log.open("a") as fh:
        for i in range(1, 7):
            fh.write(f"line{i}\n")
    await asyncio.wait_for(asyncio.gather(*tasks), 5)
    stop.set()

    expected = [f"line{i}" for i in range(1, 7)]
    assert seen == {"a": expected, "b": expected}


@pytest.mark.asyncio
async def test_file_log_source_new_tail_starts_at_current_end(tmp_path):
    log = _touch(tmp_path / "svc.log", "")
    source = FileLogSource(str(tmp_path))

    stop = asyncio.Event()
    first = source.tail("svc", 0, 0.01, stop)
    pending = asyncio.create_task(first.__anext__())
    await asyncio.sleep(0.03)
    with log.open("a") as fh:
        fh.write("seen by first\n")
    assert (await asyncio.wait_for(pending, 5)).message == "seen by first"
    stop.set()
    await first.aclose()

    with log.open("a") as fh:
        fh.write("written between tails\n")

    stop = asyncio.Event()
    second = source.tail("svc", 0, 0.01, stop)
    pending = asyncio.create_task(second.__anext__())
    await asyncio.sleep(0.03)
    with log.open("a") as fh:
        fh.write("seen by second\n")
    assert (await asyncio.wait_for(pending, 5)).message == "seen by second"
    stop.set()
    await second.aclose()


# ── Toolchains ───────────────────────────────────────────────────────


def test_zip_directory_excludes(tmp_path):
    src = tmp_path / "unit"
    _touch(src / "handler.py", "x")
    _touch(src / "lib" / "util.py", "y")
    _touch(src / "__pycache__" / "handler.cpython.pyc", "z")
    _touch(src / ".venv" / "bin" / "python", "")
    dest = src / "deployment.zip"

    count = zip_directory(src, dest, exclude=("__pycache__", ".venv", "deployment.zip"))

    assert count == 2
    with zipfile.ZipFile(dest) as zf:
        assert sorted(zf.namelist()) == ["handler.py", "lib/util.py"]


def test_zip_directory_missing_source(tmp_path):
    with pytest.raises(BuildError):
        zip_directory(tmp_path / "absent", tmp_path / "out.zip")


class TestCommandBuilder:
    async def _job(self, registry):
        job = await registry.create("build", "all")
        await registry.set_status(job.id, JobStatus.running)
        return job

    @pytest.mark.asyncio
    async def test_python_recipe_packages(self, registry, tmp_path):
        unit = tmp_path / "report"
        _touch(unit / "main.py", "print('hi')")
        _touch(unit / "requirements.txt", "")
        artifact = Artifact(
            name="report", toolchain="python", path=str(unit), output_path=str(unit / "deployment.zip"),
        )
        job = await self._job(registry)

        await CommandBuilder(registry).build(artifact, job.id)

        with zipfile.ZipFile(artifact.output_path) as zf:
            assert zf.namelist() == ["main.py"]
        output = (await registry.get(job.id)).output
        assert output[-1].startswith("> Package created:")

    @pytest.mark.asyncio
    async def test_failing_step_raises(self, registry, tmp_path):
        recipes = {"sh": ToolchainRecipe(steps=[["sh", "-c", "echo compiling; exit 3"]])}
        artifact = Artifact(name="u", toolchain="sh", path=str(tmp_path))
        job = await self._job(registry)

        with pytest.raises(BuildError, match="exit code 3"):
            await CommandBuilder(registry, recipes=recipes).build(artifact, job.id)
        assert "compiling" in (await registry.get(job.id)).output

    @pytest.mark.asyncio
    async def test_unknown_toolchain(self, registry, tmp_path):
        artifact = Artifact(name="u", toolchain="rust", path=str(tmp_path))
        job = await self._job(registry)
        with pytest.raises(BuildError, match="No build recipe"):
            await CommandBuilder(registry).build(artifact, job.id)

    @pytest.mark.asyncio
    async def test_cancel_kills_concurrent_builds(self, registry, tmp_path):
        recipes = {"slow": ToolchainRecipe(steps=[["sleep", "5"]])}
        builder = CommandBuilder(registry, recipes=recipes)
        artifacts = [Artifact(name=f"u{i}", toolchain="slow", path=str(tmp_path)) for i in range(2)]
        job = await self._job(registry)

        builds = [asyncio.create_task(builder.build(a, job.id)) for a in artifacts]
        for _ in range(200):
            if len(registry._processes.get(job.id, [])) == 2:
                break
            await asyncio.sleep(0.01)
        assert registry.has_process(job.id)

        started = asyncio.get_running_loop().time()
        assert await registry.cancel(job.id) is True
        results = await asyncio.wait_for(asyncio.gather(*builds, return_exceptions=True), 3)

        assert asyncio.get_running_loop().time() - started < 3
        assert all(isinstance(r, BuildError) for r in results)
        assert (await registry.get(job.id)).status == JobStatus.cancelled

    @pytest.mark.asyncio
    async def test_build_shared_without_projects(self, registry, tmp_path):
        job = await self._job(registry)
        assert await CommandBuilder(registry).build_shared(str(tmp_path), job.id) == (0, 0)


# ── Cache ────────────────────────────────────────────────────────────


class TestCacheManager:
    def test_get_set_and_copy(self):
        cache = CacheManager()
        cache.set("artifacts:/x", [{"name": "a"}])
        value = cache.get("artifacts:/x")
        value.append("mutated")
        assert cache.get("artifacts:/x") == [{"name": "a"}]
        assert cache.hits == 2

    def test_expiry(self):
        cache = CacheManager()
        cache.set("k", 1, ttl=-1)
        assert cache.get("k") is None
        assert cache.misses == 1

    def test_max_size_evicts_soonest_expiring(self):
        cache = CacheManager(max_size=2)
        cache.set("a", 1, ttl=10)
        cache.set("b", 2, ttl=100)
        cache.set("c", 3, ttl=100)
        assert cache.keys() == ["b", "c"]

    def test_invalidation_helpers(self):
        cache = CacheManager()
        cache.set("artifacts:/one", 1)
        cache.set("remote:alice:functions", 2)
        cache.set("remote:bob:functions", 3)
        cache.set("resources:sample", 4)

        invalidate_on_build(cache)
        assert cache.keys() == ["remote:alice:functions", "remote:bob:functions", "resources:sample"]

        invalidate_on_deploy(cache, "alice")
        assert cache.keys() == ["remote:bob:functions", "resources:sample"]

        invalidate_on_deploy(cache, None)
        assert cache.keys() == ["resources:sample"]


# ── Telemetry ────────────────────────────────────────────────────────


def test_from_values_derives_usage():
    res = SystemResources.from_values(8.0, 32.0, 4.0, 8)
    assert res.memory_usage_pct == pytest.approx(75.0)
    assert res.load_per_cpu == pytest.approx(0.5)
    assert res.to_dict()["load_per_cpu"] == 0.5
    assert SystemResources.from_values(0.0, 0.0).memory_usage_pct == 0.0


def test_sample_resources_reads_host():
    res = sample_resources()
    assert res.cpu_count >= 1
    assert res.total_memory_gb >= 0
    assert 0.0 <= res.memory_usage_pct <= 100.0
