# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Job Repository - Persistence for job records.

The lifecycle talks to a JobRepository and never to a shared global, so
the SQLite store used in production and the in-memory store used in
tests are interchangeable.
"""

import copy
import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Protocol

import aiosqlite
import structlog

from sitekeeper.exceptions import DataIOError, JobNotFoundError
from sitekeeper.jobs.models import Job, JobKind, JobResult, JobStatus

logger = structlog.get_logger()


class JobRepository(Protocol):
    async def create(self, job: Job) -> None: ...

    async def get(self, job_id: str) -> Job | None: ...

    async def update(self, job: Job) -> None: ...

    async def delete(self, job_id: str) -> bool: ...

    async def list_jobs(self, status: JobStatus | None = None) -> List[Job]: ...

    async def list_completed(self) -> List[Job]: ...

    async def delete_finished_before(self, cutoff: datetime) -> int: ...


class InMemoryJobRepository:
    """Jobs in a dict; each read returns a copy."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}

    async def create(self, job: Job) -> None:
        self._jobs[job.job_id] = copy.deepcopy(job)

    async def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def update(self, job: Job) -> None:
        if job.job_id not in self._jobs:
            raise JobNotFoundError(f"Job not found: {job.job_id}")
        self._jobs[job.job_id] = copy.deepcopy(job)

    async def delete(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None

    async def list_jobs(self, status: JobStatus | None = None) -> List[Job]:
        jobs = [copy.deepcopy(j) for j in self._jobs.values() if status is None or j.status == status]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    async def list_completed(self) -> List[Job]:
        return await self.list_jobs(JobStatus.COMPLETED)

    async def delete_finished_before(self, cutoff: datetime) -> int:
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status.is_terminal and (job.completed_at or job.created_at) < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        return len(expired)


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_job(row: aiosqlite.Row) -> Job:
    result = json.loads(row["result"]) if row["result"] else None
    return Job(
        job_id=row["id"],
        kind=JobKind(row["kind"]),
        status=JobStatus(row["status"]),
        progress=row["progress"],
        message=row["message"] or "",
        created_at=datetime.fromisoformat(row["created_at"]),
        started_at=_parse_time(row["started_at"]),
        completed_at=_parse_time(row["completed_at"]),
        result=JobResult.from_dict(result) if result else None,
        cancel_requested=bool(row["cancel_requested"]),
    )


class SqliteJobRepository:
    """
    Jobs in a SQLite table.

    Each call opens its own connection, so the repository can be shared
    by concurrent tasks.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    async def initialize(self) -> None:
        """Create the jobs table if it doesn't exist. Idempotent."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS jobs (
                        id TEXT PRIMARY KEY,
                        kind TEXT NOT NULL,
                        status TEXT NOT NULL,
                        progress INTEGER NOT NULL DEFAULT 0,
                        message TEXT,
                        created_at TEXT NOT NULL,
                        started_at TEXT,
                        completed_at TEXT,
                        result TEXT,
                        cancel_requested INTEGER NOT NULL DEFAULT 0
                    )
                """)

                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_jobs_status
                    ON jobs(status)
                """)

                await db.commit()
        except (aiosqlite.Error, OSError) as e:
            raise DataIOError(
                f"Failed to initialize job database: {e}",
                details={"db_path": str(self.db_path)},
            ) from e

        logger.info("job_db_initialized", db_path=str(self.db_path))

    @staticmethod
    def _values(job: Job) -> tuple:
        return (
            job.kind.value,
            job.status.value,
            job.progress,
            job.message,
            job.created_at.isoformat(),
            job.started_at.isoformat() if job.started_at else None,
            job.completed_at.isoformat() if job.completed_at else None,
            json.dumps(job.result.to_dict()) if job.result else None,
            int(job.cancel_requested),
        )

    async def create(self, job: Job) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO jobs (kind, status, progress, message, created_at,
                                  started_at, completed_at, result, cancel_requested, id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (*self._values(job), job.job_id),
            )
            await db.commit()

    async def get(self, job_id: str) -> Job | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cursor:
                row = await cursor.fetchone()
        return _row_to_job(row) if row else None

    async def update(self, job: Job) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET kind = ?, status = ?, progress = ?, message = ?, created_at = ?,
                    started_at = ?, completed_at = ?, result = ?, cancel_requested = ?
                WHERE id = ?
                """,
                (*self._values(job), job.job_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise JobNotFoundError(f"Job not found: {job.job_id}")

    async def delete(self, job_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def list_jobs(self, status: JobStatus | None = None) -> List[Job]:
        query = "SELECT * FROM jobs"
        params: tuple = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY created_at DESC"

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_job(row) for row in rows]

    async def list_completed(self) -> List[Job]:
        return await self.list_jobs(JobStatus.COMPLETED)

    async def delete_finished_before(self, cutoff: datetime) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                DELETE FROM jobs
                WHERE status IN (?, ?)
                AND COALESCE(completed_at, created_at) < ?
                """,
                (JobStatus.COMPLETED.value, JobStatus.FAILED.value, cutoff.isoformat()),
            )
            await db.commit()
            return cursor.rowcount
