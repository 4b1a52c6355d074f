# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Job Lifecycle - The pending -> processing -> completed|failed state machine.

Every change is validated against TRANSITIONS and persisted through the
injected repository. Cancellation is cooperative: request_cancel() only
sets a flag, and the job's owner calls checkpoint() at each step boundary
to observe it.
"""

import asyncio
from datetime import timedelta
from typing import Awaitable, Callable, List

import structlog

from sitekeeper.exceptions import InvalidTransitionError, JobCancelledError, JobNotFoundError
from sitekeeper.jobs.models import (
    TRANSITIONS,
    Job,
    JobKind,
    JobResult,
    JobStatus,
    JobStatusView,
    utcnow,
)
from sitekeeper.jobs.repository import JobRepository

logger = structlog.get_logger()


class JobLifecycle:
    """
    Create and advance jobs.

    Args:
        repository: Where job records live
    """

    def __init__(self, repository: JobRepository):
        self.repository = repository
        self._lock = asyncio.Lock()

    async def _load(self, job_id: str) -> Job:
        job = await self.repository.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}", details={"job_id": job_id})
        return job

    def _check(self, job: Job, target: JobStatus) -> None:
        if target not in TRANSITIONS[job.status]:
            raise InvalidTransitionError(
                f"Cannot move job from {job.status.value} to {target.value}",
                details={"job_id": job.job_id},
            )

    async def create(self, kind: JobKind) -> Job:
        job = Job.new(kind)
        await self.repository.create(job)
        logger.info("job_created", job_id=job.job_id, kind=job.kind.value)
        return job

    async def start(self, job_id: str, message: str = "Starting") -> Job:
        async with self._lock:
            job = await self._load(job_id)
            self._check(job, JobStatus.PROCESSING)
            job.status = JobStatus.PROCESSING
            job.started_at = job.started_at or utcnow()
            job.message = message
            await self.repository.update(job)
        logger.info("job_started", job_id=job_id)
        return job

    async def progress(self, job_id: str, percent: int, message: str = "") -> Job:
        """
        Record progress on a running job.

        Progress is clamped to 0..100 and never moves backwards.

        Raises:
            InvalidTransitionError: If the job is not processing
        """
        async with self._lock:
            job = await self._load(job_id)
            if job.status is not JobStatus.PROCESSING:
                raise InvalidTransitionError(
                    f"Cannot report progress on a {job.status.value} job",
                    details={"job_id": job_id},
                )
            job.progress = max(job.progress, max(0, min(100, int(percent))))
            if message:
                job.message = message
            await self.repository.update(job)
        logger.debug("job_progress", job_id=job_id, progress=job.progress, message=message)
        return job

    async def complete(self, job_id: str, result: JobResult | None = None, message: str = "Completed") -> Job:
        async with self._lock:
            job = await self._load(job_id)
            self._check(job, JobStatus.COMPLETED)
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.result = result
            job.message = message
            job.completed_at = utcnow()
            await self.repository.update(job)
        logger.info("job_completed", job_id=job_id)
        return job

    async def fail(self, job_id: str, message: str) -> Job:
        async with self._lock:
            job = await self._load(job_id)
            self._check(job, JobStatus.FAILED)
            job.status = JobStatus.FAILED
            job.message = message
            job.completed_at = utcnow()
            await self.repository.update(job)
        logger.error("job_failed", job_id=job_id, message=message)
        return job

    async def get_status(self, job_id: str) -> JobStatusView | None:
        job = await self.repository.get(job_id)
        return JobStatusView.of(job) if job else None

    async def request_cancel(self, job_id: str) -> bool:
        """
        Ask a running job to stop at its next checkpoint.

        Returns:
            False if the job has already finished
        """
        async with self._lock:
            job = await self._load(job_id)
            if job.status.is_terminal:
                return False
            job.cancel_requested = True
            await self.repository.update(job)
        logger.info("job_cancel_requested", job_id=job_id)
        return True

    async def checkpoint(self, job_id: str) -> None:
        """
        Step boundary: stop here if cancellation was requested.

        Raises:
            JobCancelledError: If request_cancel() was called for the job
        """
        job = await self._load(job_id)
        if job.cancel_requested:
            raise JobCancelledError("Job cancelled by request", details={"job_id": job_id})

    def checkpoint_for(self, job_id: str) -> Callable[[], Awaitable[None]]:
        """checkpoint() bound to one job, for engines that take a no-argument callback."""

        async def _checkpoint() -> None:
            await self.checkpoint(job_id)

        return _checkpoint

    async def list_jobs(self, status: JobStatus | None = None) -> List[JobStatusView]:
        return [JobStatusView.of(job) for job in await self.repository.list_jobs(status)]

    async def clear_finished(self, max_age: float = 86400) -> int:
        """Delete completed and failed jobs that finished more than max_age seconds ago."""
        removed = await self.repository.delete_finished_before(utcnow() - timedelta(seconds=max_age))
        if removed:
            logger.info("finished_jobs_cleared", count=removed)
        return removed
