"""SQLite-backed persistence for job records, build records and saved logs."""
from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional

import aiosqlite

from .models import ACTIVE_STATUSES, BuildRecord, Job, JobStatus, SavedLog

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    target TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    progress INTEGER DEFAULT 0,
    output TEXT DEFAULT '[]',
    started_at TEXT NOT NULL,
    completed_at TEXT,
    error TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);

CREATE TABLE IF NOT EXISTS artifact_builds (
    name TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    last_built_at TEXT,
    last_build_status TEXT,
    package_exists INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS saved_logs (
    id TEXT PRIMARY KEY,
    artifact_name TEXT NOT NULL,
    name TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_saved_logs_artifact ON saved_logs(artifact_name);
"""


class JobStore:
    """Async SQLite store for the persisted tier of the job registry.

    Only ``JobRegistry`` writes through this class; the diff cache and the
    subscriber / process tables never reach the database.
    """

    def __init__(self, db_path: str = "jobs.db", retained_jobs: int = 50) -> None:
        self.db_path = db_path
        self.retained_jobs = retained_jobs
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Create the schema and apply the retention policy."""
        if self.db_path != ":memory:":
            Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.executescript(_SCHEMA)
        await self._db.execute(
            "DELETE FROM jobs WHERE id NOT IN "
            "(SELECT id FROM jobs ORDER BY started_at DESC LIMIT ?)",
            (self.retained_jobs,),
        )
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db

    # ── Jobs ─────────────────────────────────────────────────────────

    async def insert_job(self, job: Job) -> None:
        db = await self._conn()
        await db.execute(
            "INSERT INTO jobs (id, type, target, status, progress, output, started_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (
                job.id, job.type, job.target, job.status.value, job.progress,
                json.dumps(job.output), job.started_at,
            ),
        )
        await db.commit()

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Fetch a single job by ID."""
        db = await self._conn()
        async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            return None
        return self._row_to_job(row, desc)

    async def list_active(self) -> List[Job]:
        """Jobs in a non-terminal state, newest first."""
        db = await self._conn()
        statuses = [s.value for s in ACTIVE_STATUSES]
        placeholders = ",".join("?" * len(statuses))
        async with db.execute(
            f"SELECT * FROM jobs WHERE status IN ({placeholders}) ORDER BY started_at DESC",
            statuses,
        ) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_job(r, desc) for r in rows]

    async def list_recent(self, limit: int = 20) -> List[Job]:
        """List jobs ordered by start time (newest first)."""
        db = await self._conn()
        async with db.execute(
            "SELECT * FROM jobs ORDER BY started_at DESC LIMIT ?", (limit,)
        ) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_job(r, desc) for r in rows]

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        completed_at: str | None = None,
        error: str | None = None,
    ) -> None:
        sets = ["status = ?"]
        vals: list = [status.value]
        if completed_at is not None:
            sets.append("completed_at = ?")
            vals.append(completed_at)
        if error is not None:
            sets.append("error = ?")
            vals.append(error)
        vals.append(job_id)
        db = await self._conn()
        await db.execute(f"UPDATE jobs SET {', '.join(sets)} WHERE id = ?", vals)
        await db.commit()

    async def update_progress(self, job_id: str, progress: int) -> None:
        db = await self._conn()
        await db.execute("UPDATE jobs SET progress = ? WHERE id = ?", (progress, job_id))
        await db.commit()

    async def write_output(self, job_id: str, lines: List[str]) -> None:
        """Replace the persisted output buffer for *job_id*."""
        db = await self._conn()
        await db.execute(
            "UPDATE jobs SET output = ? WHERE id = ?", (json.dumps(lines), job_id)
        )
        await db.commit()

    # ── Build records ────────────────────────────────────────────────

    async def upsert_build(self, record: BuildRecord) -> None:
        db = await self._conn()
        await db.execute(
            """
            INSERT INTO artifact_builds (name, type, last_built_at, last_build_status, package_exists)
            VALUES (?,?,?,?,?)
            ON CONFLICT(name) DO UPDATE SET
                type = excluded.type,
                last_built_at = excluded.last_built_at,
                last_build_status = excluded.last_build_status,
                package_exists = excluded.package_exists
            """,
            (
                record.name, record.type, record.last_built_at,
                record.last_build_status, 1 if record.package_exists else 0,
            ),
        )
        await db.commit()

    async def get_build(self, name: str) -> Optional[BuildRecord]:
        db = await self._conn()
        async with db.execute("SELECT * FROM artifact_builds WHERE name = ?", (name,)) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            return None
        return self._row_to_build(row, desc)

    async def list_builds(self) -> List[BuildRecord]:
        db = await self._conn()
        async with db.execute("SELECT * FROM artifact_builds ORDER BY name") as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_build(r, desc) for r in rows]

    # ── Saved logs ───────────────────────────────────────────────────

    async def save_log(self, log: SavedLog) -> None:
        db = await self._conn()
        await db.execute(
            "INSERT INTO saved_logs (id, artifact_name, name, content, created_at) VALUES (?,?,?,?,?)",
            (log.id, log.artifact_name, log.name, log.content, log.created_at),
        )
        await db.commit()

    async def list_saved_logs(self, artifact_name: str) -> List[SavedLog]:
        db = await self._conn()
        async with db.execute(
            "SELECT * FROM saved_logs WHERE artifact_name = ? ORDER BY created_at DESC",
            (artifact_name,),
        ) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [SavedLog(**dict(zip([d[0] for d in desc], r))) for r in rows]

    async def get_saved_log(self, log_id: str) -> Optional[SavedLog]:
        db = await self._conn()
        async with db.execute("SELECT * FROM saved_logs WHERE id = ?", (log_id,)) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            return None
        return SavedLog(**dict(zip([d[0] for d in desc], row)))

    async def delete_saved_log(self, log_id: str) -> bool:
        db = await self._conn()
        cur = await db.execute("DELETE FROM saved_logs WHERE id = ?", (log_id,))
        await db.commit()
        return cur.rowcount > 0

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _row_to_job(row, description) -> Job:
        cols = [d[0] for d in description]
        d = dict(zip(cols, row))
        d["output"] = json.loads(d.get("output") or "[]")
        return Job(**d)

    @staticmethod
    def _row_to_build(row, description) -> BuildRecord:
        cols = [d[0] for d in description]
        d = dict(zip(cols, row))
        d["package_exists"] = bool(d.get("package_exists"))
        return BuildRecord(**d)
