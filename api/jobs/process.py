"""Subprocess execution with line-by-line output streaming into a job."""
from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from .registry import JobRegistry

logger = logging.getLogger(__name__)

ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

# Shell convention for "command not found"
EXIT_NOT_FOUND = 127

_STREAM_LIMIT = 1024 * 1024


def strip_ansi(text: str) -> str:
    """Remove terminal colour and cursor escape sequences."""
    return ANSI_ESCAPE.sub("", text)


@dataclass
class ProcessResult:
    exit_code: int
    output: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


async def _pump(
    stream: asyncio.StreamReader,
    job_id: str,
    registry: "JobRegistry",
    on_line: Optional[Callable[[str], None]],
    collected: Optional[List[str]],
) -> None:
    while True:
        raw = await stream.readline()
        if not raw:
            break
        line = strip_ansi(raw.decode("utf-8", errors="replace")).rstrip()
        if not line.strip():
            continue
        if collected is not None:
            collected.append(line)
        if on_line is not None:
            on_line(line)
        await registry.append_output(job_id, line)


async def stream_process(
    argv: Sequence[str],
    job_id: str,
    registry: "JobRegistry",
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    on_line: Optional[Callable[[str], None]] = None,
    collect_output: bool = False,
    register: bool = True,
    interactive: bool = False,
) -> ProcessResult:
    """Run *argv*, appending every non-blank stdout/stderr line to the job.

    Parameters
    ----------
    argv : sequence of str
        Program and arguments; no shell is involved.
    on_line : callable, optional
        Invoked with each cleaned line before it is appended.
    collect_output : bool
        Also return the cleaned lines in ``ProcessResult.output``.
    register : bool
        Register the process among the job's cancellation handles so that
        ``JobRegistry.cancel`` kills it alongside any sibling processes.
    interactive : bool
        Open stdin and register a writer so ``JobRegistry.send_input`` can
        reach the process.

    Returns
    -------
    ProcessResult
        The exit code (``127`` when the executable cannot be started) and
        the collected lines.
    """
    argv = [str(a) for a in argv]
    full_env = {**os.environ, **env} if env else None
    logger.info("Job %s: running %s", job_id, " ".join(argv)[:200])

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=full_env,
            stdin=asyncio.subprocess.PIPE if interactive else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_STREAM_LIMIT,
        )
    except OSError as exc:
        logger.error("Job %s: could not start %s: %s", job_id, argv[0], exc)
        await registry.append_output(job_id, f"Failed to start {argv[0]}: {exc}")
        return ProcessResult(EXIT_NOT_FOUND)

    if register:
        registry.register_process(job_id, proc)
    if interactive:
        def write(data: str) -> None:
            proc.stdin.write(data.encode("utf-8"))

        registry.register_stdin_writer(job_id, write)

    collected: Optional[List[str]] = [] if collect_output else None
    try:
        await asyncio.gather(
            _pump(proc.stdout, job_id, registry, on_line, collected),
            _pump(proc.stderr, job_id, registry, on_line, collected),
        )
        exit_code = await proc.wait()
    finally:
        if register:
            registry.unregister_process(job_id, proc)
        if interactive:
            registry.unregister_stdin_writer(job_id)
        if proc.returncode is None:
            proc.kill()
            await proc.wait()

    logger.debug("Job %s: %s exited with %s", job_id, argv[0], exit_code)
    return ProcessResult(exit_code, collected or [])
