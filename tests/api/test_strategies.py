"""Tests for the per-type job strategies, run directly against a test context."""
import asyncio
import os
import time
from datetime import datetime

import pytest

from jobforge.api.jobs.models import JobStatus
from jobforge.config import CANCELLED_MARKER
from jobforge.api.jobs.strategies import STRATEGIES, get_strategy
from jobforge.api.jobs.strategies.base import JobParams
from jobforge.api.jobs.strategies.testing import (
    dotnet_test_argv,
    parse_result_line,
)
from jobforge.api.services.logs import LogEvent

from conftest import FakeLogSource, make_artifacts, wait_for_status


async def _execute(ctx, job_type, target, **params):
    job = await ctx.registry.create(job_type, target)
    await get_strategy(job_type).execute(job.id, JobParams(target=target, **params), ctx)
    return await ctx.registry.get(job.id)


def _infra_dir(ctx):
    os.makedirs(ctx.settings.infra_path, exist_ok=True)


def test_table_covers_builtin_types():
    assert set(STRATEGIES) == {
        "build", "diff", "synth", "deploy", "deploy-unit", "tail-logs",
        "frontend-build", "build-deploy-all", "test-run",
    }
    assert get_strategy("ai-fix") is None


# ── build ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_build_all(ctx, builder):
    ctx.discovery.artifacts = make_artifacts(3, "js")
    job = await _execute(ctx, "build", "all")
    assert job.status == JobStatus.completed
    assert sorted(builder.built) == ["js-unit0", "js-unit1", "js-unit2"]
    assert ctx.discovery.invalidations == 1


@pytest.mark.asyncio
async def test_build_by_toolchain(ctx, builder):
    ctx.discovery.artifacts = make_artifacts(2, "js") + make_artifacts(2, "python")
    job = await _execute(ctx, "build", "python")
    assert job.status == JobStatus.completed
    assert sorted(builder.built) == ["python-unit0", "python-unit1"]


@pytest.mark.asyncio
async def test_build_single_artifact(ctx, builder):
    ctx.discovery.artifacts = make_artifacts(3, "js")
    job = await _execute(ctx, "build", "js-unit1")
    assert job.status == JobStatus.completed
    assert job.progress == 100
    assert builder.built == ["js-unit1"]
    assert job.output[0] == "=== Building js-unit1 ==="


@pytest.mark.asyncio
async def test_build_single_dotnet_warms_shared(ctx, builder):
    ctx.discovery.artifacts = make_artifacts(1, "dotnet")
    job = await _execute(ctx, "build", "dotnet-unit0")
    assert job.status == JobStatus.completed
    assert builder.shared_calls == 1


@pytest.mark.asyncio
async def test_build_single_failure(ctx):
    ctx.orchestrator.builder.fail = {"js-unit0"}
    ctx.discovery.artifacts = make_artifacts(1, "js")
    job = await _execute(ctx, "build", "js-unit0")
    assert job.status == JobStatus.failed
    assert job.error == "js-unit0 exploded"


@pytest.mark.asyncio
async def test_build_unknown_artifact(ctx):
    job = await _execute(ctx, "build", "nope")
    assert job.status == JobStatus.failed
    assert job.error == 'Artifact "nope" not found'
    assert ctx.discovery.invalidations == 1


# ── infrastructure ───────────────────────────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize("action", ["diff", "synth"])
async def test_diff_and_synth(ctx, action):
    _infra_dir(ctx)
    job = await _execute(ctx, action, "api")
    assert job.status == JobStatus.completed
    assert f"{action} api-dev-test" in job.output
    assert "Stack: api-dev-test" in job.output


@pytest.mark.asyncio
async def test_synth_failure_reports_exit_code(ctx):
    _infra_dir(ctx)
    ctx.infra.command = "false"
    job = await _execute(ctx, "synth", "api")
    assert job.status == JobStatus.failed
    assert job.error == "synth failed with exit code 1"


@pytest.mark.asyncio
async def test_stack_alias(ctx):
    _infra_dir(ctx)
    job = await _execute(ctx, "diff", "static-backend")
    assert "Stack: backend" in job.output


@pytest.mark.asyncio
async def test_infra_path_missing(ctx):
    job = await _execute(ctx, "diff", "api")
    assert job.status == JobStatus.failed
    assert job.error.startswith("Infrastructure path not found")


@pytest.mark.asyncio
async def test_infra_requires_environment(ctx):
    _infra_dir(ctx)
    ctx.infra.environment = None
    job = await _execute(ctx, "diff", "api")
    assert job.status == JobStatus.failed
    assert "No environment selected" in job.error


@pytest.mark.asyncio
async def test_deploy_without_changes_completes(ctx):
    _infra_dir(ctx)
    job = await _execute(ctx, "deploy", "api")
    assert job.status == JobStatus.completed
    assert any("No changes to deploy" in line for line in job.output)


@pytest.mark.asyncio
async def test_deploy_refused_for_protected_environment(ctx):
    _infra_dir(ctx)
    ctx.infra.environment = "prod"
    job = await _execute(ctx, "deploy", "api")
    assert job.status == JobStatus.failed
    assert job.error == "Environment 'prod' is protected; deploys are disabled"


@pytest.mark.asyncio
async def test_diff_allowed_for_protected_environment(ctx):
    _infra_dir(ctx)
    ctx.infra.environment = "prod"
    job = await _execute(ctx, "diff", "api")
    assert job.status == JobStatus.completed


# ── deploy-unit ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_deploy_unit_requires_remote(ctx):
    job = await _execute(ctx, "deploy-unit", "js-unit0")
    assert job.status == JobStatus.failed
    assert job.error == "Missing remote unit name"


@pytest.mark.asyncio
async def test_deploy_unit_missing_package(ctx, tmp_path, builder):
    ctx.discovery.artifacts = make_artifacts(1, "js", tmp_path=tmp_path)
    job = await _execute(ctx, "deploy-unit", "js-unit0", remote_name="fn-a")
    assert job.status == JobStatus.failed
    assert job.error.startswith("Deployment package not found at:")
    assert builder.built == ["js-unit0"]


@pytest.mark.asyncio
async def test_deploy_unit_skip_build_pushes(ctx, tmp_path, builder):
    artifact = make_artifacts(1, "js", tmp_path=tmp_path)[0]
    os.makedirs(artifact.path)
    with open(artifact.output_path, "wb") as fh:
        fh.write(b"PK")
    ctx.discovery.artifacts = [artifact]
    ctx.infra.push_command = "echo pushed {remote} {package}"
    ctx.cache.set("remote:dev-test:functions", ["fn-a"])

    job = await _execute(ctx, "deploy-unit", "js-unit0", remote_name="fn-a", skip_build=True)

    assert job.status == JobStatus.completed
    assert builder.built == []
    assert "[1/2] Skipping build" in job.output
    assert f"pushed fn-a {artifact.output_path}" in job.output
    assert job.output[-1] == "✓ Successfully deployed js-unit0 to fn-a"
    assert ctx.cache.get("remote:dev-test:functions") is None


@pytest.mark.asyncio
async def test_deploy_unit_unknown_artifact(ctx):
    job = await _execute(ctx, "deploy-unit", "ghost", remote_name="fn-a")
    assert job.status == JobStatus.failed
    assert job.error == 'Artifact "ghost" not found locally'


@pytest.mark.asyncio
async def test_deploy_unit_protected(ctx):
    ctx.infra.environment = "production"
    job = await _execute(ctx, "deploy-unit", "js-unit0", remote_name="fn-a")
    assert job.status == JobStatus.failed
    assert "protected" in job.error


# ── tail-logs ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_tail_logs_streams_until_cancelled(ctx):
    now_ms = int(time.time() * 1000)
    ctx.log_source = FakeLogSource([
        LogEvent(now_ms, "first event"),
        LogEvent(now_ms + 5, "   "),
        LogEvent(now_ms + 10, "second event\n"),
    ])
    job = await ctx.registry.create("tail-logs", "fn-a")
    task = asyncio.create_task(
        get_strategy("tail-logs").execute(job.id, JobParams(target="fn-a"), ctx),
    )

    for _ in range(300):
        current = await ctx.registry.get(job.id)
        if any("second event" in line for line in current.output):
            break
        await asyncio.sleep(0.01)

    assert await ctx.registry.cancel(job.id) is True
    await asyncio.wait_for(task, 5)

    final = await ctx.registry.get(job.id)
    assert final.status == JobStatus.cancelled
    stamp = datetime.fromtimestamp(now_ms / 1000).strftime("%H:%M:%S")
    assert f"[{stamp}] first event" in final.output
    assert final.output[-1] == CANCELLED_MARKER
    assert ctx.log_source.calls >= 1


@pytest.mark.asyncio
async def test_tail_logs_without_source(ctx):
    ctx.log_source = None
    job = await _execute(ctx, "tail-logs", "fn-a")
    assert job.status == JobStatus.failed


# ── frontend-build ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_frontend_build_missing_dir(ctx):
    job = await _execute(ctx, "frontend-build", "web")
    assert job.status == JobStatus.failed
    assert job.error.startswith("Directory not found:")


@pytest.mark.asyncio
async def test_frontend_build_reports_tool_failure(ctx):
    os.makedirs(os.path.join(ctx.settings.clients_path, "web", "node_modules"))
    job = await _execute(ctx, "frontend-build", "web")
    assert job.status == JobStatus.failed
    assert job.error.startswith("Frontend build failed with exit code")


# ── build-deploy-all ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_build_deploy_all_rejects_bad_target(ctx):
    job = await _execute(ctx, "build-deploy-all", "mobile")
    assert job.status == JobStatus.failed
    assert job.error == "Unknown build-deploy-all target: mobile"


@pytest.mark.asyncio
async def test_build_deploy_all_backend(ctx, builder):
    _infra_dir(ctx)
    ctx.discovery.artifacts = make_artifacts(2, "js")
    job = await _execute(ctx, "build-deploy-all", "backend")
    assert job.status == JobStatus.completed
    assert sorted(builder.built) == ["js-unit0", "js-unit1"]
    assert "Deploying backend-dev-test" in job.output


@pytest.mark.asyncio
async def test_build_deploy_all_stops_on_build_failure(ctx):
    ctx.orchestrator.builder.fail = {"js-unit1"}
    ctx.discovery.artifacts = make_artifacts(2, "js")
    job = await _execute(ctx, "build-deploy-all", "backend")
    assert job.status == JobStatus.failed
    assert job.error == "1 artifacts failed to build"
    assert not any(line.startswith("Deploying") for line in job.output)


@pytest.mark.asyncio
async def test_build_deploy_all_cancelled_during_build_never_deploys(ctx, builder):
    _infra_dir(ctx)
    builder.delay = 0.3
    ctx.discovery.artifacts = make_artifacts(2, "js")
    job = await ctx.registry.create("build-deploy-all", "backend")
    task = asyncio.create_task(
        get_strategy("build-deploy-all").execute(job.id, JobParams(target="backend"), ctx)
    )
    for _ in range(100):
        if builder.in_flight:
            break
        await asyncio.sleep(0.01)
    assert builder.in_flight

    assert await ctx.registry.cancel(job.id) is True
    await asyncio.wait_for(task, 5)

    done = await ctx.registry.get(job.id)
    assert done.status == JobStatus.cancelled
    assert CANCELLED_MARKER in done.output
    assert "Phase 1: Calculating changes..." not in done.output
    assert not any(line.startswith("Deploying") for line in done.output)


# ── test-run ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_test_run_missing_project(ctx):
    job = await _execute(ctx, "test-run", "unit", project_path="/nonexistent/project")
    assert job.status == JobStatus.failed
    assert job.error == "Test project not found: /nonexistent/project"


@pytest.mark.asyncio
async def test_test_run_build_retries_exhausted(ctx, tmp_path):
    ctx.config.retry.build_attempts = 2
    project = tmp_path / "Api.Tests"
    project.mkdir()
    job = await _execute(ctx, "test-run", "unit", project_path=str(project))
    assert job.status == JobStatus.failed
    assert job.error == "Build failed after 2 attempts"
    assert "Build attempt 1 failed, retrying..." in job.output


@pytest.mark.parametrize("line,expected", [
    ("  Passed Api.Tests.Orders.Creates [12 ms]", ("passed", "Api.Tests.Orders.Creates", "[12 ms]")),
    ("  ✗ Failed Api.Tests.Orders.Rejects [3 ms]", ("failed", "Api.Tests.Orders.Rejects", "[3 ms]")),
    ("Skipped Api.Tests.Slow", ("skipped", "Api.Tests.Slow", "")),
    ("Build succeeded.", None),
])
def test_parse_result_line(line, expected):
    assert parse_result_line(line) == expected


def test_test_argv_filters():
    argv = dotnet_test_argv("Api.Tests", ["Orders", "Users"])
    assert argv[:3] == ["dotnet", "test", "Api.Tests"]
    assert argv[-2:] == [
        "--filter",
        "(FullyQualifiedName~Orders|FullyQualifiedName~Users)&Category!=Integration",
    ]
    assert dotnet_test_argv("Api.Tests", [], integration=True)[-1] == "n"
    assert dotnet_test_argv("Api.Tests", [])[-1] == "Category!=Integration"
