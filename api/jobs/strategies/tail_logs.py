"""Live log tailing: an unbounded polling loop that ends only on cancellation."""
from __future__ import annotations

import asyncio
import time
from datetime import datetime

from ..models import JobStatus
from .base import JobContext, JobParams, JobStrategy


class _StopHandle:
    """Cancellation handle for loops that own no subprocess."""

    def __init__(self) -> None:
        self.event = asyncio.Event()

    def kill(self) -> None:
        self.event.set()


class TailLogsStrategy(JobStrategy):
    async def execute(self, job_id: str, params: JobParams, ctx: JobContext) -> None:
        source = ctx.log_source
        if source is None:
            await self.fail(ctx, job_id, "No log source configured")
            return

        tail_cfg = ctx.config.tail
        name = params.remote_name or params.target
        await self.start(ctx, job_id, f"Tailing Logs: {name}")
        await self.out(ctx, job_id, "Waiting for new log events...")

        handle = _StopHandle()
        ctx.registry.register_process(job_id, handle)
        stop = handle.event
        last_ts = int(time.time() * 1000)
        try:
            while not stop.is_set():
                count = 0
                async for event in source.tail(name, last_ts, tail_cfg.poll_interval_s, stop):
                    if stop.is_set():
                        break
                    message = event.message.strip()
                    if not message:
                        continue
                    stamp = datetime.fromtimestamp(event.timestamp_ms / 1000).strftime("%H:%M:%S")
                    await ctx.registry.append_output(job_id, f"[{stamp}] {message}")
                    count += 1
                    # +1ms so a reconnect does not replay the last event
                    last_ts = max(last_ts, event.timestamp_ms + 1)
                    if count >= tail_cfg.events_per_batch:
                        await self.out(
                            ctx, job_id,
                            f"--- Reconnecting to continue streaming ({count} events processed) ---",
                        )
                        break
                if stop.is_set():
                    break
                if count < tail_cfg.events_per_batch:
                    try:
                        await asyncio.wait_for(stop.wait(), tail_cfg.idle_retry_s)
                    except asyncio.TimeoutError:
                        pass
        finally:
            ctx.registry.unregister_process(job_id, handle)

        if not await ctx.registry.is_finished(job_id):
            await self.out(ctx, job_id, "--- Log tailing stopped ---")
            await ctx.registry.set_status(job_id, JobStatus.cancelled, "Log tailing stopped")
