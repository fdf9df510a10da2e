"""Artifact discovery: enumerate the buildable units under a backend tree."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Tuple

from ..cache.invalidation import invalidate_on_build
from ..cache.manager import CacheManager
from ..jobs.models import Artifact

logger = logging.getLogger(__name__)

TOOLCHAIN_ORDER = ["dotnet", "typescript-edge", "js", "python"]


class ArtifactDiscovery(Protocol):
    async def discover(self, backend_path: str) -> List[Artifact]:
        ...

    def invalidate(self, backend_path: Optional[str] = None) -> None:
        ...


@dataclass
class DiscoveryLayout:
    """Where each toolchain's units live, relative to the backend root."""

    handlers_dir: str = "Handlers"
    js_dir: str = "lambdas/js"
    python_dir: str = "lambdas/python"
    package_name: str = "deployment.zip"
    dotnet_framework: str = "net8.0"
    # Handler folders that are libraries referenced by other handlers, not units
    dependency_handlers: Tuple[str, ...] = field(default=("SMTP", "DataLayer", "PaymentGateway"))


def _sort_key(artifact: Artifact):
    try:
        rank = TOOLCHAIN_ORDER.index(artifact.toolchain)
    except ValueError:
        rank = len(TOOLCHAIN_ORDER)
    return (rank, artifact.name.lower())


class DirectoryDiscovery:
    """Scans the backend tree for marker files.

    * ``Handlers/<name>/src/<proj>/<proj>.csproj`` -> dotnet
    * ``Handlers/<name>`` with ``tsconfig.json`` and ``package.json`` -> typescript-edge
    * ``lambdas/js/<name>/package.json`` -> js
    * ``lambdas/python/<name>`` with ``requirements.txt`` or ``pyproject.toml`` -> python

    Results are cached per backend path until invalidated.
    """

    def __init__(
        self,
        cache: Optional[CacheManager] = None,
        layout: Optional[DiscoveryLayout] = None,
    ) -> None:
        self._cache = cache or CacheManager()
        self.layout = layout or DiscoveryLayout()

    @staticmethod
    def _key(backend_path: str) -> str:
        return f"artifacts:{Path(backend_path).resolve()}"

    async def discover(self, backend_path: str) -> List[Artifact]:
        key = self._key(backend_path)
        cached = self._cache.get(key)
        if cached is not None:
            return [Artifact(**a) for a in cached]
        artifacts = await asyncio.to_thread(self.scan, Path(backend_path))
        self._cache.set(key, [a.model_dump() for a in artifacts])
        logger.info("Discovered %d artifacts under %s", len(artifacts), backend_path)
        return artifacts

    def invalidate(self, backend_path: Optional[str] = None) -> None:
        if backend_path is None:
            invalidate_on_build(self._cache)
        else:
            self._cache.invalidate(self._key(backend_path))

    def scan(self, root: Path) -> List[Artifact]:
        found: List[Artifact] = []
        found.extend(self._scan_handlers(root / self.layout.handlers_dir))
        found.extend(self._scan_js(root / self.layout.js_dir))
        found.extend(self._scan_python(root / self.layout.python_dir))
        return sorted(found, key=_sort_key)

    def _artifact(self, name: str, toolchain: str, path: Path, output: Path) -> Artifact:
        return Artifact(
            name=name,
            toolchain=toolchain,
            path=str(path),
            output_path=str(output),
            package_exists=output.is_file(),
        )

    def _scan_handlers(self, handlers: Path) -> List[Artifact]:
        if not handlers.is_dir():
            return []
        out = []
        for handler in sorted(p for p in handlers.iterdir() if p.is_dir()):
            if handler.name in self.layout.dependency_handlers:
                continue
            if (handler / "tsconfig.json").is_file() and (handler / "package.json").is_file():
                output = handler / "packaged" / self.layout.package_name
                out.append(self._artifact(handler.name, "typescript-edge", handler, output))
                continue
            for csproj in sorted(handler.glob("src/*/*.csproj")):
                project_dir = csproj.parent
                output = (
                    project_dir / "bin" / "Release" / self.layout.dotnet_framework
                    / f"{csproj.stem}.zip"
                )
                out.append(self._artifact(handler.name, "dotnet", project_dir, output))
                break
        return out

    def _scan_js(self, base: Path) -> List[Artifact]:
        if not base.is_dir():
            return []
        return [
            self._artifact(p.parent.name, "js", p.parent, p.parent / self.layout.package_name)
            for p in sorted(base.glob("*/package.json"))
        ]

    def _scan_python(self, base: Path) -> List[Artifact]:
        if not base.is_dir():
            return []
        out = []
        for unit in sorted(p for p in base.iterdir() if p.is_dir()):
            if (unit / "requirements.txt").is_file() or (unit / "pyproject.toml").is_file():
                out.append(self._artifact(unit.name, "python", unit, unit / self.layout.package_name))
        return out

    def shared_projects(self, root: Path) -> List[Path]:
        """Project directories compiled once before per-unit dotnet builds."""
        projects: List[Path] = []
        shared = root / "Shared"
        if shared.is_dir():
            for csproj in sorted(shared.rglob("*.csproj")):
                if {"bin", "obj"} & set(csproj.relative_to(shared).parts):
                    continue
                projects.append(csproj.parent)
        handlers = root / self.layout.handlers_dir
        for name in self.layout.dependency_handlers:
            src = handlers / name / "src" / name
            if (src / f"{name}.csproj").is_file():
                projects.append(src)
        return projects
