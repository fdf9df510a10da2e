"""Build staleness: which artifacts need rebuilding given what changed."""
from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from ..jobs.models import Artifact, BuildRecord

logger = logging.getLogger(__name__)


class ChangedFilesProvider(Protocol):
    async def changed_files(self, repo_root: str) -> List[str]:
        """Paths (relative to *repo_root*) with uncommitted changes."""


def parse_porcelain(text: str) -> List[str]:
    """Extract paths from ``git status --porcelain`` output.

    Renames (``R  old -> new``) report the new path.
    """
    files: List[str] = []
    for line in text.splitlines():
        if len(line) < 4 or not line.strip():
            continue
        path = line[3:].split(" -> ")[-1].strip().strip('"')
        if path:
            files.append(path)
    return files


class GitChangedFiles:
    """Changed files from ``git status --porcelain``."""

    async def changed_files(self, repo_root: str) -> List[str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                "git", "status", "--porcelain",
                cwd=repo_root,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.warning("git unavailable for %s: %s", repo_root, exc)
            return []
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            logger.warning(
                "git status failed in %s: %s", repo_root, stderr.decode(errors="replace").strip(),
            )
            return []
        return parse_porcelain(stdout.decode("utf-8", errors="replace"))


def _parse_ts(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value).timestamp()
    except ValueError:
        return None


def _within(path: Path, directory: Path) -> bool:
    return path == directory or directory in path.parents


def stale_artifacts(
    artifacts: Iterable[Artifact],
    records: Iterable[BuildRecord],
    changed_files: Iterable[str],
    repo_root: str,
) -> Dict[str, Optional[str]]:
    """Map each artifact name to a staleness reason, or None when up to date.

    An artifact is stale when it was never built, its last build failed,
    its package is missing, or a changed file under its directory was
    modified after the last build (deleted files always count).
    """
    by_name = {r.name: r for r in records}
    root = Path(repo_root).resolve()
    changed = [(root / f).resolve() for f in changed_files]
    result: Dict[str, Optional[str]] = {}

    for artifact in artifacts:
        record = by_name.get(artifact.name)
        built_at = _parse_ts(record.last_built_at) if record else None
        if record is None or built_at is None:
            result[artifact.name] = "Never built"
            continue
        if record.last_build_status != "success":
            result[artifact.name] = "Last build failed"
            continue
        if artifact.output_path and not os.path.isfile(artifact.output_path):
            result[artifact.name] = "Package missing"
            continue

        unit_dir = Path(artifact.path).resolve()
        reason = None
        for path in changed:
            if not _within(path, unit_dir):
                continue
            try:
                modified = path.stat().st_mtime
            except OSError:
                reason = "Source deleted"
                break
            if modified > built_at:
                reason = "Source changed"
                break
        result[artifact.name] = reason
    return result
