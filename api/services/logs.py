"""Log sources consumed by the tail-logs strategy."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List, Protocol, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogEvent:
    timestamp_ms: int
    message: str


class LogSource(Protocol):
    def tail(
        self,
        name: str,
        start_time_ms: int,
        poll_interval_s: float,
        stop: asyncio.Event,
    ) -> AsyncIterator[LogEvent]:
        """Yield events newer than *start_time_ms* until *stop* is set."""


async def _sleep_or_stop(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), seconds)
    except asyncio.TimeoutError:
        pass


class FileLogSource:
    """Follows ``<directory>/<name>.log``, starting at its current end.

    Lines carry no timestamps of their own, so each event is stamped with
    the time it was read.  Every ``tail`` call keeps its own read offset,
    so concurrent tails of one log each see every new line.
    """

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)

    def path_for(self, name: str) -> Path:
        return self.directory / f"{name}.log"

    async def tail(
        self,
        name: str,
        start_time_ms: int,
        poll_interval_s: float,
        stop: asyncio.Event,
    ) -> AsyncIterator[LogEvent]:
        path = self.path_for(name)
        offset = path.stat().st_size if path.exists() else 0
        while not stop.is_set():
            offset, lines = await asyncio.to_thread(self._read_new, path, offset)
            for line in lines:
                yield LogEvent(max(start_time_ms, int(time.time() * 1000)), line)
                if stop.is_set():
                    return
            await _sleep_or_stop(stop, poll_interval_s)

    @staticmethod
    def _read_new(path: Path, offset: int) -> Tuple[int, List[str]]:
        """Return the new offset and the complete lines written past *offset*."""
        if not path.exists():
            return offset, []
        size = path.stat().st_size
        if size < offset:
            logger.info("Log %s was truncated, restarting from the top", path)
            offset = 0
        with path.open("rb") as fh:
            fh.seek(offset)
            data = fh.read()
        # Keep a trailing partial line for the next poll
        cut = data.rfind(b"\n") + 1
        return offset + cut, data[:cut].decode("utf-8", errors="replace").splitlines()
