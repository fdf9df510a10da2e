"""Default artifact builder: per-toolchain command recipes.

The orchestrator only needs the ``ArtifactBuilder`` protocol; this module is
the stock implementation that shells out through ``stream_process`` and
packages the result into a zip next to the unit.
"""
from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol, Sequence, Tuple

from ..jobs.models import Artifact
from ..jobs.process import stream_process

if TYPE_CHECKING:
    from ..jobs.registry import JobRegistry
    from .discovery import DirectoryDiscovery

logger = logging.getLogger(__name__)


class BuildError(RuntimeError):
    """A toolchain step exited non-zero or packaging failed."""


class ArtifactBuilder(Protocol):
    async def build(self, artifact: Artifact, job_id: str) -> None:
        """Build one artifact, raising on failure."""

    async def build_shared(self, backend_path: str, job_id: str) -> Tuple[int, int]:
        """Pre-compile shared projects; returns ``(built, failed)``."""


@dataclass
class ToolchainRecipe:
    steps: List[List[str]] = field(default_factory=list)
    # Directory (relative to the unit) zipped into ``artifact.output_path``
    package_dir: Optional[str] = None
    exclude: Tuple[str, ...] = ()


_COMMON_EXCLUDES = (".git", "__pycache__", "*.pyc", "deployment.zip", "packaged")

DEFAULT_RECIPES: Dict[str, ToolchainRecipe] = {
    "dotnet": ToolchainRecipe(steps=[["dotnet", "lambda", "package", "--framework", "net8.0"]]),
    "typescript-edge": ToolchainRecipe(
        steps=[["yarn", "install"], ["yarn", "tsc"]],
        package_dir="build",
    ),
    "js": ToolchainRecipe(
        steps=[["yarn", "install", "--frozen-lockfile"]],
        package_dir=".",
        exclude=_COMMON_EXCLUDES + ("*.ts", "temp_deploy"),
    ),
    "python": ToolchainRecipe(
        package_dir=".",
        exclude=_COMMON_EXCLUDES + (".stage", ".venv", "requirements.txt"),
    ),
}

SHARED_BUILD = ["dotnet", "build", "-c", "Release", "--no-restore"]
SHARED_BUILD_WITH_RESTORE = ["dotnet", "build", "-c", "Release"]


def _excluded(rel: Path, patterns: Sequence[str]) -> bool:
    return any(fnmatch.fnmatch(part, pat) for part in rel.parts for pat in patterns)


def zip_directory(source: Path, dest: Path, exclude: Sequence[str] = ()) -> int:
    """Zip *source* into *dest*, skipping any path component matching *exclude*.

    Returns the number of files written.
    """
    if not source.is_dir():
        raise BuildError(f"Nothing to package: {source} does not exist")
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_suffix(dest.suffix + ".tmp")
    count = 0
    with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(source.rglob("*")):
            rel = path.relative_to(source)
            if path.is_dir() or path == tmp or _excluded(rel, exclude):
                continue
            zf.write(path, rel.as_posix())
            count += 1
    os.replace(tmp, dest)
    return count


def build_env() -> Dict[str, str]:
    """Environment overrides shared by every toolchain step."""
    dotnet_tools = str(Path.home() / ".dotnet" / "tools")
    return {
        "PATH": f"{dotnet_tools}{os.pathsep}{os.environ.get('PATH', '')}",
        "NO_COLOR": "1",
        "FORCE_COLOR": "0",
    }


class CommandBuilder:
    """Runs a ``ToolchainRecipe`` per artifact, streaming into the job."""

    def __init__(
        self,
        registry: "JobRegistry",
        recipes: Optional[Dict[str, ToolchainRecipe]] = None,
        discovery: Optional["DirectoryDiscovery"] = None,
    ) -> None:
        self._registry = registry
        self._recipes = dict(DEFAULT_RECIPES if recipes is None else recipes)
        self._discovery = discovery

    async def _out(self, job_id: str, line: str) -> None:
        await self._registry.append_output(job_id, line)

    async def build(self, artifact: Artifact, job_id: str) -> None:
        recipe = self._recipes.get(artifact.toolchain)
        if recipe is None:
            raise BuildError(f"No build recipe for toolchain '{artifact.toolchain}'")
        env = build_env()
        for argv in recipe.steps:
            await self._out(job_id, "> " + " ".join(argv))
            result = await stream_process(
                argv, job_id, self._registry, cwd=artifact.path, env=env,
            )
            if not result.ok:
                raise BuildError(f"'{' '.join(argv[:2])}' failed with exit code {result.exit_code}")
        if recipe.package_dir is not None:
            source = Path(artifact.path) / recipe.package_dir
            dest = Path(artifact.output_path)
            await self._out(job_id, f"> Creating {dest.name}...")
            count = await asyncio.to_thread(zip_directory, source, dest, recipe.exclude)
            await self._out(job_id, f"> Package created: {dest} ({count} files)")

    async def build_shared(self, backend_path: str, job_id: str) -> Tuple[int, int]:
        if self._discovery is None:
            from .discovery import DirectoryDiscovery

            self._discovery = DirectoryDiscovery()
        projects = await asyncio.to_thread(self._discovery.shared_projects, Path(backend_path))
        if not projects:
            await self._out(job_id, f"No shared projects found in {backend_path}")
            return 0, 0

        await self._out(job_id, f"Found {len(projects)} shared projects:")
        for proj in projects:
            await self._out(job_id, f"  - {proj.name}")

        env = build_env()
        built = failed = 0
        started = time.monotonic()
        # Sequential: shared projects may reference each other
        for proj in projects:
            await self._out(job_id, f"Building {proj.name}...")
            result = await stream_process(
                SHARED_BUILD, job_id, self._registry, cwd=str(proj), env=env,
            )
            if not result.ok:
                await self._out(job_id, f"  Restoring packages for {proj.name}...")
                result = await stream_process(
                    SHARED_BUILD_WITH_RESTORE, job_id, self._registry,
                    cwd=str(proj), env=env,
                )
            if result.ok:
                built += 1
                await self._out(job_id, f"  ✓ {proj.name} built")
            else:
                failed += 1
                await self._out(job_id, f"  ✗ {proj.name} failed (exit code {result.exit_code})")

        await self._out(
            job_id,
            f"✓ Shared projects: {built} built, {failed} failed "
            f"({time.monotonic() - started:.1f}s)",
        )
        return built, failed
