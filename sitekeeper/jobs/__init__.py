# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Jobs - Lifecycle state machine, persistence and recurring schedules.
"""

from sitekeeper.jobs.lifecycle import JobLifecycle
from sitekeeper.jobs.models import Job, JobKind, JobResult, JobStatus, JobStatusView
from sitekeeper.jobs.repository import InMemoryJobRepository, JobRepository, SqliteJobRepository
from sitekeeper.jobs.scheduler import (
    InMemoryScheduleRepository,
    Schedule,
    ScheduleRepository,
    Scheduler,
    SqliteScheduleRepository,
    compute_next_run,
)

__all__ = [
    # Models
    "Job",
    "JobKind",
    "JobResult",
    "JobStatus",
    "JobStatusView",
    # Persistence
    "JobRepository",
    "InMemoryJobRepository",
    "SqliteJobRepository",
    # Lifecycle
    "JobLifecycle",
    # Scheduling
    "Schedule",
    "ScheduleRepository",
    "InMemoryScheduleRepository",
    "SqliteScheduleRepository",
    "Scheduler",
    "compute_next_run",
]
