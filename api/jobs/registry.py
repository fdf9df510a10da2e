"""Job registry: state machine, output fan-out and the approval gate.

The registry is the only component allowed to mutate a job.  It owns two
storage tiers:

* the persisted tier (``JobStore``): status, progress, output buffer,
  build records and saved logs;
* the volatile tier (instance dictionaries below): output subscribers,
  cancellation handles, stdin writers, plan diffs and approval waiters.

All mutations run under one ``asyncio.Lock`` so that an observer never sees
an appended line before it is persisted, or a status change without its
``completed_at``.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import AsyncGenerator, Callable, Dict, List, Optional

from ...config import (
    APPROVED_MARKER,
    CANCELLED_MARKER,
    FORCE_KILLED_MARKER,
    REJECTED_MARKER,
)
from ...config_structured import RegistryConfig, get_config
from .models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    BuildRecord,
    Job,
    JobStatus,
    SavedLog,
    utcnow_iso,
)
from .store import JobStore

logger = logging.getLogger(__name__)

OutputListener = Callable[[str], None]

_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.pending: frozenset({JobStatus.running, JobStatus.failed, JobStatus.cancelled}),
    JobStatus.running: frozenset({
        JobStatus.awaiting_approval,
        JobStatus.completed,
        JobStatus.failed,
        JobStatus.cancelled,
    }),
    JobStatus.awaiting_approval: frozenset({JobStatus.running, JobStatus.cancelled}),
}


def is_valid_transition(current: JobStatus, new: JobStatus) -> bool:
    """Return True if *current* -> *new* is an allowed job transition."""
    if current == new == JobStatus.running:
        return True
    return new in _TRANSITIONS.get(current, frozenset())


@dataclass
class _Subscription:
    listener: OutputListener
    on_finish: Optional[Callable[[], None]] = None


@dataclass
class _ApprovalWaiter:
    event: asyncio.Event
    approved: bool = False


def _kill(handle) -> None:
    """Invoke a cancellation handle: a callable or an object with kill()/abort()."""
    if hasattr(handle, "kill"):
        handle.kill()
    elif hasattr(handle, "abort"):
        handle.abort()
    elif callable(handle):
        handle()
    else:
        raise TypeError(f"Unsupported cancellation handle: {handle!r}")


class JobRegistry:
    """Owns job records and every per-job volatile table."""

    def __init__(self, store: JobStore, config: Optional[RegistryConfig] = None) -> None:
        self._store = store
        self._cfg = config or get_config().registry
        self._lock = asyncio.Lock()
        self._live: Dict[str, Job] = {}
        self._subscribers: Dict[str, List[_Subscription]] = {}
        self._processes: Dict[str, List[object]] = {}
        self._stdin_writers: Dict[str, Callable[[str], None]] = {}
        self._diffs: Dict[str, List[str]] = {}
        self._approvals: Dict[str, _ApprovalWaiter] = {}

    @property
    def store(self) -> JobStore:
        return self._store

    async def initialize(self) -> None:
        await self._store.initialize()

    async def close(self) -> None:
        await self._store.close()

    # ── Lookup ───────────────────────────────────────────────────────

    async def _load(self, job_id: str) -> Optional[Job]:
        job = self._live.get(job_id)
        if job is not None:
            return job
        job = await self._store.get_job(job_id)
        if job is not None and not job.is_terminal:
            self._live[job_id] = job
        return job

    def _with_volatile(self, job: Job) -> Job:
        out = job.model_copy(deep=True)
        diff = self._diffs.get(job.id)
        out.awaiting_approval = job.status == JobStatus.awaiting_approval
        out.diff_output = list(diff) if diff is not None else None
        return out

    async def get(self, job_id: str) -> Optional[Job]:
        """Return a snapshot of the job, or None if unknown."""
        job = await self._load(job_id)
        return self._with_volatile(job) if job is not None else None

    async def list_active(self) -> List[Job]:
        return [self._with_volatile(j) for j in await self._store.list_active()]

    async def list_recent(self, limit: Optional[int] = None) -> List[Job]:
        limit = limit if limit is not None else self._cfg.recent_jobs_default
        return [self._with_volatile(j) for j in await self._store.list_recent(limit)]

    async def is_cancelled(self, job_id: str) -> bool:
        job = await self._load(job_id)
        return job is not None and job.status == JobStatus.cancelled

    async def is_finished(self, job_id: str) -> bool:
        """True when the job is unknown or has reached a terminal state."""
        job = await self._load(job_id)
        return job is None or job.is_terminal

    # ── Creation & state machine ─────────────────────────────────────

    async def create(self, job_type: str, target: str) -> Job:
        """Create and persist a new ``pending`` job."""
        job = Job(id=uuid.uuid4().hex[:12], type=getattr(job_type, "value", job_type), target=target)
        async with self._lock:
            await self._store.insert_job(job)
            self._live[job.id] = job
        logger.info("Created job %s (%s -> %s)", job.id, job.type, job.target)
        return self._with_volatile(job)

    async def set_status(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> bool:
        """Transition *job_id* to *status*.  Invalid transitions are ignored."""
        async with self._lock:
            return await self._transition(job_id, JobStatus(status), error)

    async def _transition(self, job_id: str, status: JobStatus, error: Optional[str]) -> bool:
        job = await self._load(job_id)
        if job is None:
            logger.warning("Status change for unknown job %s ignored", job_id)
            return False
        if not is_valid_transition(job.status, status):
            logger.warning(
                "Invalid transition for job %s: %s -> %s",
                job_id, job.status.value, status.value,
            )
            return False
        if job.status == status:
            return True

        job.status = status
        if error is not None:
            job.error = error
        if status in TERMINAL_STATUSES:
            job.completed_at = utcnow_iso()
        await self._store.update_status(
            job_id, status, completed_at=job.completed_at, error=error,
        )
        if status != JobStatus.awaiting_approval:
            self._diffs.pop(job_id, None)
        if status in TERMINAL_STATUSES:
            self._finish(job_id)
        logger.info("Job %s -> %s", job_id, status.value)
        return True

    def _finish(self, job_id: str) -> None:
        """Release every volatile resource of a job that just became terminal."""
        self._live.pop(job_id, None)
        self._processes.pop(job_id, None)
        self._stdin_writers.pop(job_id, None)
        self._release_waiter(job_id, approved=False)
        self._approvals.pop(job_id, None)
        for sub in self._subscribers.pop(job_id, []):
            if sub.on_finish is None:
                continue
            try:
                sub.on_finish()
            except Exception:
                logger.warning("Finish callback for job %s raised", job_id, exc_info=True)

    async def set_progress(self, job_id: str, value: int) -> None:
        value = max(0, min(100, int(value)))
        async with self._lock:
            job = await self._load(job_id)
            if job is None or job.is_terminal:
                return
            job.progress = value
            await self._store.update_progress(job_id, value)

    # ── Output ───────────────────────────────────────────────────────

    async def append_output(self, job_id: str, line: str) -> bool:
        """Append one line, persist it, then notify current subscribers."""
        async with self._lock:
            return await self._append(job_id, line)

    async def _append(self, job_id: str, line: str) -> bool:
        job = await self._load(job_id)
        if job is None or job.is_terminal:
            logger.debug("Dropping output for finished or unknown job %s", job_id)
            return False
        job.output.append(line)
        overflow = len(job.output) - self._cfg.max_output_lines
        if overflow > 0:
            del job.output[:overflow]
        await self._store.write_output(job_id, job.output)
        for sub in list(self._subscribers.get(job_id, [])):
            try:
                sub.listener(line)
            except Exception:
                logger.warning("Output listener for job %s raised", job_id, exc_info=True)
        return True

    def subscribe(
        self,
        job_id: str,
        listener: OutputListener,
        on_finish: Optional[Callable[[], None]] = None,
    ) -> Callable[[], None]:
        """Register *listener* for lines appended from now on.

        There is no replay: read ``job.output`` first for the backlog.
        ``on_finish`` fires once when the job reaches a terminal state.
        Returns an idempotent unsubscribe callable.
        """
        sub = _Subscription(listener, on_finish)
        self._subscribers.setdefault(job_id, []).append(sub)

        def unsubscribe() -> None:
            subs = self._subscribers.get(job_id)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    del self._subscribers[job_id]

        return unsubscribe

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, []))

    async def stream_output(self, job_id: str) -> AsyncGenerator[str, None]:
        """Yield the backlog, then live lines, until the job is terminal."""
        queue: asyncio.Queue = asyncio.Queue()
        async with self._lock:
            job = await self._load(job_id)
            if job is None:
                return
            backlog = list(job.output)
            finished = job.is_terminal
            unsubscribe = None
            if not finished:
                unsubscribe = self.subscribe(
                    job_id, queue.put_nowait, on_finish=lambda: queue.put_nowait(None),
                )
        try:
            for line in backlog:
                yield line
            if finished:
                return
            while True:
                line = await queue.get()
                if line is None:
                    break
                yield line
        finally:
            if unsubscribe is not None:
                unsubscribe()

    # ── Cancellation handles & stdin ─────────────────────────────────

    def register_process(self, job_id: str, handle) -> None:
        """Associate a cancellable resource with a job.

        A job may hold several live handles at once (parallel toolchain
        builds); cancelling the job kills all of them.
        """
        self._processes.setdefault(job_id, []).append(handle)

    def unregister_process(self, job_id: str, handle=None) -> None:
        """Drop *handle* from the job, or every handle when *handle* is None."""
        if handle is None:
            self._processes.pop(job_id, None)
            return
        handles = self._processes.get(job_id)
        if not handles:
            return
        self._processes[job_id] = [h for h in handles if h is not handle]
        if not self._processes[job_id]:
            del self._processes[job_id]

    def has_process(self, job_id: str) -> bool:
        return bool(self._processes.get(job_id))

    def register_stdin_writer(self, job_id: str, writer: Callable[[str], None]) -> None:
        self._stdin_writers[job_id] = writer

    def unregister_stdin_writer(self, job_id: str) -> None:
        self._stdin_writers.pop(job_id, None)

    def send_input(self, job_id: str, data: str) -> bool:
        """Forward *data* to the interactive process of *job_id*, if any."""
        writer = self._stdin_writers.get(job_id)
        if writer is None:
            return False
        writer(data)
        return True

    def _kill_handle(self, job_id: str) -> None:
        for handle in self._processes.pop(job_id, []):
            try:
                _kill(handle)
            except Exception:
                logger.warning("Cancellation handle for job %s raised", job_id, exc_info=True)

    async def cancel(self, job_id: str) -> bool:
        """Cancel a running or awaiting-approval job."""
        async with self._lock:
            job = await self._load(job_id)
            if job is None or job.status not in (JobStatus.running, JobStatus.awaiting_approval):
                return False
            self._kill_handle(job_id)
            await self._append(job_id, CANCELLED_MARKER)
            await self._transition(job_id, JobStatus.cancelled, "Cancelled by user")
        return True

    async def force_kill_all(self) -> int:
        """Kill every handle, cancel every active job and clear all volatile tables.

        Returns the number of jobs cancelled.  Never raises.
        """
        killed = 0
        async with self._lock:
            for job_id in list(self._processes):
                self._kill_handle(job_id)
            try:
                active = await self._store.list_active()
            except Exception:
                logger.exception("Could not list active jobs during force-kill")
                active = list(self._live.values())
            for stale in active:
                try:
                    await self._append(stale.id, FORCE_KILLED_MARKER)
                    if await self._transition(stale.id, JobStatus.cancelled, "Force-killed"):
                        killed += 1
                except Exception:
                    logger.exception("Force-kill of job %s failed", stale.id)
            for job_id in list(self._approvals):
                self._release_waiter(job_id, approved=False)
            self._approvals.clear()
            self._subscribers.clear()
            self._processes.clear()
            self._stdin_writers.clear()
            self._diffs.clear()
            self._live.clear()
        logger.warning("Force-killed %d active jobs", killed)
        return killed

    # ── Approval gate ────────────────────────────────────────────────

    async def set_awaiting_approval(self, job_id: str, diff_lines: List[str]) -> bool:
        """Park the job in ``awaiting_approval`` holding *diff_lines* in memory."""
        async with self._lock:
            if not await self._transition(job_id, JobStatus.awaiting_approval, None):
                return False
            self._diffs[job_id] = list(diff_lines)
            self._approvals[job_id] = _ApprovalWaiter(asyncio.Event())
        return True

    def get_diff_output(self, job_id: str) -> Optional[List[str]]:
        diff = self._diffs.get(job_id)
        return list(diff) if diff is not None else None

    def pending_approval_count(self) -> int:
        return sum(1 for w in self._approvals.values() if not w.event.is_set())

    async def send_approval_response(self, job_id: str, approved: bool) -> bool:
        """Resolve a pending approval.  False if the job was not awaiting one."""
        async with self._lock:
            job = await self._load(job_id)
            if job is None or job.status != JobStatus.awaiting_approval:
                return False
            if approved:
                await self._append(job_id, APPROVED_MARKER)
                await self._transition(job_id, JobStatus.running, None)
            else:
                await self._append(job_id, REJECTED_MARKER)
                await self._transition(job_id, JobStatus.cancelled, "Rejected by user")
            self._diffs.pop(job_id, None)
            self._release_waiter(job_id, approved=approved)
        return True

    def _release_waiter(self, job_id: str, approved: bool) -> None:
        waiter = self._approvals.get(job_id)
        if waiter is not None and not waiter.event.is_set():
            waiter.approved = approved
            waiter.event.set()

    async def wait_for_approval(
        self,
        job_id: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> bool:
        """Suspend until the approval for *job_id* is resolved.

        Returns True only when approved.  Rejection, cancellation,
        force-kill and timeout all return False.  With ``poll_interval`` the
        job status is polled instead of waiting on the response event.
        """
        if poll_interval is not None:
            return await self._poll_for_approval(job_id, timeout, poll_interval)

        waiter = self._approvals.get(job_id)
        if waiter is None:
            job = await self._load(job_id)
            return job is not None and job.status == JobStatus.running
        try:
            await asyncio.wait_for(waiter.event.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Approval wait for job %s timed out after %ss", job_id, timeout)
            return False
        if self._approvals.get(job_id) is waiter:
            del self._approvals[job_id]
        return waiter.approved

    async def _poll_for_approval(
        self, job_id: str, timeout: Optional[float], poll_interval: float
    ) -> bool:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            job = await self._load(job_id)
            if job is None or job.is_terminal:
                self._approvals.pop(job_id, None)
                return False
            if job.status == JobStatus.running:
                self._approvals.pop(job_id, None)
                return True
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(poll_interval)

    # ── Build records & saved logs ───────────────────────────────────

    async def record_build(
        self, name: str, toolchain: str, success: bool, package_exists: bool
    ) -> BuildRecord:
        record = BuildRecord(
            name=name,
            type=toolchain,
            last_built_at=utcnow_iso(),
            last_build_status="success" if success else "failed",
            package_exists=package_exists,
        )
        await self._store.upsert_build(record)
        return record

    async def get_build_records(self) -> List[BuildRecord]:
        return await self._store.list_builds()

    async def save_log(self, artifact_name: str, name: str, content: str) -> SavedLog:
        log = SavedLog(id=uuid.uuid4().hex[:12], artifact_name=artifact_name, name=name, content=content)
        await self._store.save_log(log)
        return log

    async def list_saved_logs(self, artifact_name: str) -> List[SavedLog]:
        return await self._store.list_saved_logs(artifact_name)

    async def get_saved_log(self, log_id: str) -> Optional[SavedLog]:
        return await self._store.get_saved_log(log_id)

    async def delete_saved_log(self, log_id: str) -> bool:
        return await self._store.delete_saved_log(log_id)
