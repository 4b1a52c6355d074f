# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Core - Builds the runtime state from a configuration.

Everything a host needs (repositories, storage registry, backup,
restore and migration managers, scheduler) is created here once and
handed around as a SitekeeperState.
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, TypedDict

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from sitekeeper.archiver import Archiver
from sitekeeper.backup.manager import BackupManager
from sitekeeper.backup.restore import RestoreManager
from sitekeeper.config import SitekeeperConfig
from sitekeeper.database import DatabaseConnection
from sitekeeper.jobs.lifecycle import JobLifecycle
from sitekeeper.jobs.models import JobStatus, utcnow
from sitekeeper.jobs.repository import InMemoryJobRepository, JobRepository, SqliteJobRepository
from sitekeeper.jobs.scheduler import (
    InMemoryScheduleRepository,
    ScheduleRepository,
    Scheduler,
    SqliteScheduleRepository,
)
from sitekeeper.migration.migrator import Migrator
from sitekeeper.storage.base import Cipher, JsonSettingsStore, SettingsStore
from sitekeeper.storage.manager import StorageManager, create_storage_manager

logger = structlog.get_logger()


class SitekeeperState(TypedDict):
    """Runtime state shared by the managers and the host integration."""

    config: SitekeeperConfig
    job_repository: JobRepository
    schedule_repository: ScheduleRepository
    lifecycle: JobLifecycle
    archiver: Archiver
    storage: StorageManager
    backup_manager: BackupManager
    restore_manager: RestoreManager
    migrator: Migrator
    scheduler: Scheduler
    job_runner: AsyncIOScheduler | None
    started_at: datetime


async def initialize_state(
    config: SitekeeperConfig,
    *,
    in_memory: bool = False,
    settings_store: SettingsStore | None = None,
    cipher: Cipher | None = None,
    s3_client_factory: Any = None,
    database_factory: Callable[[], Awaitable[DatabaseConnection]] | None = None,
) -> SitekeeperState:
    """
    Initialize runtime state.

    Creates the working directories and the job/schedule tables, then
    wires every manager together.

    Args:
        config: Sitekeeper configuration
        in_memory: Keep jobs and schedules in memory instead of SQLite
        settings_store: Adapter settings store (default: JSON file in work_dir)
        cipher: Encrypts secret adapter settings at rest
        s3_client_factory: Replaces aiobotocore client creation (tests)
        database_factory: Replaces opening config.database_url

    Returns:
        Initialized SitekeeperState
    """
    for directory in (config.work_dir, config.backups_dir, config.temp_dir):
        directory.mkdir(parents=True, exist_ok=True)

    if in_memory:
        job_repository: JobRepository = InMemoryJobRepository()
        schedule_repository: ScheduleRepository = InMemoryScheduleRepository()
    else:
        sqlite_jobs = SqliteJobRepository(config.resolved_state_db_path)
        sqlite_schedules = SqliteScheduleRepository(config.resolved_state_db_path)
        await sqlite_jobs.initialize()
        await sqlite_schedules.initialize()
        job_repository, schedule_repository = sqlite_jobs, sqlite_schedules

    archiver = Archiver(
        config.compression_level,
        site_url=config.site_url,
        home_url=config.home_url or "",
        table_prefix=config.table_prefix,
    )
    storage = create_storage_manager(
        config,
        archiver,
        settings_store or JsonSettingsStore(config.work_dir / "settings.json"),
        cipher,
        s3_client_factory,
    )
    for adapter in storage.adapters.values():
        await adapter.load_settings()

    lifecycle = JobLifecycle(job_repository)
    backup_manager = BackupManager(config, lifecycle, storage, archiver, database_factory)
    restore_manager = RestoreManager(config, storage, archiver, database_factory)
    migrator = Migrator(config, lifecycle, restore_manager, backup_manager, database_factory)

    logger.info(
        "sitekeeper_state_initialized",
        site_root=str(config.site_root),
        destinations=[d.value for d in config.destinations],
        in_memory=in_memory,
    )

    return SitekeeperState(
        config=config,
        job_repository=job_repository,
        schedule_repository=schedule_repository,
        lifecycle=lifecycle,
        archiver=archiver,
        storage=storage,
        backup_manager=backup_manager,
        restore_manager=restore_manager,
        migrator=migrator,
        scheduler=Scheduler(schedule_repository, backup_manager),
        job_runner=None,
        started_at=utcnow(),
    )


def start_scheduler(state: SitekeeperState, interval: float = 60.0) -> AsyncIOScheduler:
    """
    Tick the schedule table every interval seconds with APScheduler.

    Must be called from within a running event loop. Calling it again
    returns the runner that is already started.
    """
    runner = state["job_runner"]
    if runner is not None and runner.running:
        return runner

    runner = AsyncIOScheduler()
    runner.add_job(
        state["scheduler"].tick,
        trigger=IntervalTrigger(seconds=interval),
        id="sitekeeper_schedules",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    runner.start()
    state["job_runner"] = runner

    logger.info(
        "scheduler_started",
        interval=interval,
        next_run=runner.get_job("sitekeeper_schedules").next_run_time.isoformat(),
    )
    return runner


async def get_summary(state: SitekeeperState) -> Dict[str, Any]:
    """Job counts and the most recent backup."""
    counts = {status.value: 0 for status in JobStatus}
    for job in await state["job_repository"].list_jobs():
        counts[job.status.value] += 1

    backups = await state["backup_manager"].list_backups(limit=1)
    runner = state["job_runner"]
    return {
        "jobs": counts,
        "last_backup": backups[0] if backups else None,
        "scheduler_running": runner is not None and runner.running,
        "started_at": state["started_at"].isoformat(),
    }


async def shutdown_state(state: SitekeeperState) -> None:
    """Stop the schedule runner; a tick already in progress is not awaited."""
    runner = state["job_runner"]
    if runner is not None and runner.running:
        runner.shutdown(wait=False)
        logger.info("scheduler_stopped")
    state["job_runner"] = None

    logger.info("sitekeeper_state_shutdown_complete")
