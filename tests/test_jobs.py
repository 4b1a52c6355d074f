# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for the job lifecycle, job persistence and the scheduler.
"""

from datetime import datetime, timedelta, UTC
from pathlib import Path

import pytest

from sitekeeper.config import AdapterKind, BackupKind, Frequency
from sitekeeper.exceptions import (
    BackupError,
    DataIOError,
    InvalidTransitionError,
    JobCancelledError,
    JobNotFoundError,
    ValidationError,
)
from sitekeeper.jobs import (
    InMemoryJobRepository,
    InMemoryScheduleRepository,
    JobKind,
    JobLifecycle,
    JobResult,
    JobStatus,
    Scheduler,
    SqliteJobRepository,
    SqliteScheduleRepository,
    compute_next_run,
)
from sitekeeper.jobs.scheduler import Schedule, add_month

NOW = datetime(2024, 1, 31, 12, 0, tzinfo=UTC)


@pytest.fixture
def lifecycle() -> JobLifecycle:
    return JobLifecycle(InMemoryJobRepository())


class FakeBackupManager:
    """Records what the scheduler asks for."""

    def __init__(self, fail: bool = False, on_call=None):
        self.calls = []
        self.retention = []
        self.fail = fail
        self.on_call = on_call

    async def _backup(self, kind: str, options) -> JobResult:
        self.calls.append((kind, options))
        if self.on_call:
            self.on_call()
        if self.fail:
            raise BackupError("disk full")
        return JobResult(filename=f"{kind}.zip")

    async def create_full_backup(self, options):
        return await self._backup("full", options)

    async def create_database_backup(self, options):
        return await self._backup("database", options)

    async def create_files_backup(self, options):
        return await self._backup("files", options)

    async def apply_retention_policy(self, keep):
        self.retention.append(keep)
        return 0


# ============================================================================
# Lifecycle
# ============================================================================


@pytest.mark.asyncio
async def test_job_moves_through_lifecycle(lifecycle: JobLifecycle):
    job = await lifecycle.create(JobKind.FULL)
    assert job.status is JobStatus.PENDING
    assert job.progress == 0

    await lifecycle.start(job.job_id)
    await lifecycle.progress(job.job_id, 40, "Backing up files...")
    done = await lifecycle.complete(job.job_id, JobResult(filename="x.zip", size=10))

    assert done.status is JobStatus.COMPLETED
    assert done.progress == 100
    assert done.started_at is not None
    assert done.completed_at >= done.started_at

    view = await lifecycle.get_status(job.job_id)
    assert view.status == "completed"
    assert view.result["filename"] == "x.zip"


@pytest.mark.asyncio
async def test_status_exposes_output_only_after_completion(lifecycle: JobLifecycle):
    job = await lifecycle.create(JobKind.FULL)
    await lifecycle.start(job.job_id)

    running = await lifecycle.get_status(job.job_id)
    assert running.output_path is None
    assert running.output_size is None

    await lifecycle.complete(job.job_id, JobResult(filename="x.zip", path="/backups/x.zip", size=10))
    done = await lifecycle.get_status(job.job_id)
    assert done.output_path == "/backups/x.zip"
    assert done.output_size == 10


@pytest.mark.asyncio
async def test_failed_job_has_no_output(lifecycle: JobLifecycle):
    job = await lifecycle.create(JobKind.RESTORE)
    await lifecycle.start(job.job_id)
    await lifecycle.fail(job.job_id, "disk full")

    view = await lifecycle.get_status(job.job_id)
    assert view.status == "failed"
    assert view.output_path is None
    assert view.output_size is None


@pytest.mark.asyncio
async def test_progress_never_moves_backwards(lifecycle: JobLifecycle):
    job = await lifecycle.create(JobKind.DATABASE)
    await lifecycle.start(job.job_id)

    await lifecycle.progress(job.job_id, 60)
    later = await lifecycle.progress(job.job_id, 30, "late report")
    assert later.progress == 60
    assert later.message == "late report"

    clamped = await lifecycle.progress(job.job_id, 250)
    assert clamped.progress == 100


@pytest.mark.asyncio
async def test_terminal_jobs_reject_transitions(lifecycle: JobLifecycle):
    job = await lifecycle.create(JobKind.FILES)
    await lifecycle.start(job.job_id)
    await lifecycle.fail(job.job_id, "boom")

    with pytest.raises(InvalidTransitionError):
        await lifecycle.complete(job.job_id)
    with pytest.raises(InvalidTransitionError):
        await lifecycle.start(job.job_id)
    with pytest.raises(InvalidTransitionError):
        await lifecycle.progress(job.job_id, 50)

    view = await lifecycle.get_status(job.job_id)
    assert view.status == "failed"
    assert view.message == "boom"


@pytest.mark.asyncio
async def test_pending_job_cannot_complete(lifecycle: JobLifecycle):
    job = await lifecycle.create(JobKind.RESTORE)
    with pytest.raises(InvalidTransitionError):
        await lifecycle.complete(job.job_id)
    await lifecycle.fail(job.job_id, "never started")


@pytest.mark.asyncio
async def test_unknown_job(lifecycle: JobLifecycle):
    assert await lifecycle.get_status("missing") is None
    with pytest.raises(JobNotFoundError):
        await lifecycle.start("missing")


@pytest.mark.asyncio
async def test_cancellation_is_observed_at_checkpoint(lifecycle: JobLifecycle):
    job = await lifecycle.create(JobKind.FULL)
    await lifecycle.start(job.job_id)
    checkpoint = lifecycle.checkpoint_for(job.job_id)

    await checkpoint()
    assert await lifecycle.request_cancel(job.job_id)
    with pytest.raises(JobCancelledError):
        await checkpoint()

    await lifecycle.fail(job.job_id, "Cancelled")
    assert not await lifecycle.request_cancel(job.job_id)


@pytest.mark.asyncio
async def test_clear_finished(lifecycle: JobLifecycle):
    finished = await lifecycle.create(JobKind.FULL)
    await lifecycle.start(finished.job_id)
    await lifecycle.complete(finished.job_id)
    running = await lifecycle.create(JobKind.FULL)
    await lifecycle.start(running.job_id)

    assert await lifecycle.clear_finished(max_age=3600) == 0
    assert await lifecycle.clear_finished(max_age=-1) == 1
    assert [j.job_id for j in await lifecycle.list_jobs()] == [running.job_id]


@pytest.mark.asyncio
async def test_sqlite_job_repository_round_trip(temp_dir: Path):
    repository = SqliteJobRepository(temp_dir / "state.db")
    await repository.initialize()
    await repository.initialize()
    lifecycle = JobLifecycle(repository)

    job = await lifecycle.create(JobKind.FULL)
    await lifecycle.start(job.job_id)
    await lifecycle.progress(job.job_id, 45, "halfway")
    result = JobResult(
        filename="a.zip",
        size=5,
        checksum="abc",
        destinations={"local": {"success": True, "error": None, "remote_paths": ["a.zip"]}},
    )
    await lifecycle.complete(job.job_id, result)

    loaded = await repository.get(job.job_id)
    assert loaded.status is JobStatus.COMPLETED
    assert loaded.kind is JobKind.FULL
    assert loaded.result == result
    assert loaded.created_at == job.created_at

    completed = await repository.list_completed()
    assert [j.job_id for j in completed] == [job.job_id]
    assert await repository.delete(job.job_id)
    assert await repository.get(job.job_id) is None


# ============================================================================
# Schedule arithmetic
# ============================================================================


def test_compute_next_run_fixed_intervals():
    assert compute_next_run(Frequency.HOURLY, NOW) == NOW + timedelta(hours=1)
    assert compute_next_run(Frequency.TWICE_DAILY, NOW) == NOW + timedelta(hours=12)
    assert compute_next_run(Frequency.DAILY, NOW) == NOW + timedelta(days=1)
    assert compute_next_run(Frequency.WEEKLY, NOW) == NOW + timedelta(days=7)


def test_monthly_clamps_to_last_day():
    assert compute_next_run(Frequency.MONTHLY, NOW) == datetime(2024, 2, 29, 12, 0, tzinfo=UTC)
    assert add_month(datetime(2023, 12, 15, tzinfo=UTC)) == datetime(2024, 1, 15, tzinfo=UTC)
    assert add_month(datetime(2023, 1, 31, tzinfo=UTC)) == datetime(2023, 2, 28, tzinfo=UTC)


# ============================================================================
# Scheduler
# ============================================================================


@pytest.mark.asyncio
async def test_create_schedule_first_run_is_one_interval_away():
    scheduler = Scheduler(InMemoryScheduleRepository(), FakeBackupManager())
    schedule = await scheduler.create_schedule("nightly", Frequency.DAILY, now=NOW)

    assert schedule.schedule_id == 1
    assert schedule.next_run == NOW + timedelta(days=1)
    assert schedule.destinations == [AdapterKind.LOCAL]
    assert await scheduler.next_due(NOW) is None
    assert (await scheduler.next_due(NOW + timedelta(days=1))).schedule_id == 1


@pytest.mark.asyncio
async def test_create_schedule_validation():
    scheduler = Scheduler(InMemoryScheduleRepository(), FakeBackupManager())
    with pytest.raises(ValidationError):
        await scheduler.create_schedule("  ")
    with pytest.raises(ValidationError):
        await scheduler.create_schedule("nightly", retention_count=0)
    with pytest.raises(ValidationError):
        await scheduler.create_schedule("nightly", options={"typo_option": True})
    assert await scheduler.list_schedules() == []


@pytest.mark.asyncio
async def test_update_schedule_rejects_unknown_options():
    scheduler = Scheduler(InMemoryScheduleRepository(), FakeBackupManager())
    await scheduler.create_schedule("nightly", options={"uploads": False}, now=NOW)

    with pytest.raises(ValidationError):
        await scheduler.update_schedule(1, options={"uplaods": False})

    assert (await scheduler.get_schedule(1)).options == {"uploads": False}


@pytest.mark.asyncio
async def test_schedule_with_stale_options_does_not_block_others():
    manager = FakeBackupManager()
    repository = InMemoryScheduleRepository()
    scheduler = Scheduler(repository, manager)
    # Stored before option names were checked
    await repository.create(
        Schedule(
            schedule_id=None,
            name="stale",
            frequency=Frequency.DAILY,
            next_run=NOW,
            options={"typo_option": True},
        )
    )
    await scheduler.create_schedule("good", Frequency.HOURLY, now=NOW)

    later = NOW + timedelta(hours=2)
    assert await scheduler.run_due(later) is None
    stale = await scheduler.get_schedule(1)
    assert stale.next_run == later + timedelta(days=1)
    assert stale.last_run == later
    assert manager.retention == [5]

    result = await scheduler.run_due(later)
    assert result.filename == "full.zip"
    assert [kind for kind, _ in manager.calls] == ["full"]


@pytest.mark.asyncio
async def test_run_due_dispatches_on_backup_kind():
    manager = FakeBackupManager()
    scheduler = Scheduler(InMemoryScheduleRepository(), manager)
    await scheduler.create_schedule(
        "db",
        Frequency.HOURLY,
        BackupKind.DATABASE,
        destinations=[AdapterKind.LOCAL],
        retention_count=3,
        options={"rows_per_batch": 50},
        now=NOW,
    )

    due = NOW + timedelta(hours=2)
    result = await scheduler.run_due(due)

    assert result.filename == "database.zip"
    kind, options = manager.calls[0]
    assert kind == "database"
    assert options.rows_per_batch == 50
    assert options.destinations == [AdapterKind.LOCAL]
    assert manager.retention == [3]

    schedule = await scheduler.get_schedule(1)
    assert schedule.last_run == due
    assert schedule.next_run == due + timedelta(hours=1)


@pytest.mark.asyncio
async def test_run_due_runs_only_earliest_schedule():
    manager = FakeBackupManager()
    scheduler = Scheduler(InMemoryScheduleRepository(), manager)
    await scheduler.create_schedule("weekly files", Frequency.WEEKLY, BackupKind.FILES, now=NOW)
    await scheduler.create_schedule("hourly full", Frequency.HOURLY, BackupKind.FULL, now=NOW)

    await scheduler.run_due(NOW + timedelta(weeks=2))

    assert [kind for kind, _ in manager.calls] == ["full"]


@pytest.mark.asyncio
async def test_failed_backup_still_reschedules_and_prunes():
    manager = FakeBackupManager(fail=True)
    scheduler = Scheduler(InMemoryScheduleRepository(), manager)
    await scheduler.create_schedule("nightly", Frequency.DAILY, retention_count=2, now=NOW)

    due = NOW + timedelta(days=1)
    assert await scheduler.run_due(due) is None

    schedule = await scheduler.get_schedule(1)
    assert schedule.next_run == due + timedelta(days=1)
    assert manager.retention == [2]


@pytest.mark.asyncio
async def test_inactive_schedules_never_fire():
    manager = FakeBackupManager()
    scheduler = Scheduler(InMemoryScheduleRepository(), manager)
    await scheduler.create_schedule("nightly", Frequency.DAILY, now=NOW)

    assert await scheduler.toggle_schedule(1, now=NOW) is False
    assert await scheduler.run_due(NOW + timedelta(days=3)) is None
    assert manager.calls == []


@pytest.mark.asyncio
async def test_reactivated_schedule_moves_past_next_run_forward():
    scheduler = Scheduler(InMemoryScheduleRepository(), FakeBackupManager())
    await scheduler.create_schedule("nightly", Frequency.DAILY, now=NOW)
    await scheduler.toggle_schedule(1, now=NOW)

    later = NOW + timedelta(days=5)
    assert await scheduler.toggle_schedule(1, now=later) is True
    assert (await scheduler.get_schedule(1)).next_run == later + timedelta(days=1)


@pytest.mark.asyncio
async def test_update_schedule():
    scheduler = Scheduler(InMemoryScheduleRepository(), FakeBackupManager())
    await scheduler.create_schedule("nightly", Frequency.DAILY, now=NOW)

    updated = await scheduler.update_schedule(1, now=NOW, frequency="weekly", retention_count=0, name=" renamed ")

    assert updated.frequency is Frequency.WEEKLY
    assert updated.next_run == NOW + timedelta(weeks=1)
    assert updated.retention_count == 1
    assert updated.name == "renamed"

    with pytest.raises(ValidationError):
        await scheduler.update_schedule(1, colour="blue")
    with pytest.raises(ValidationError):
        await scheduler.update_schedule(99, name="ghost")

    assert await scheduler.delete_schedule(1)
    assert not await scheduler.delete_schedule(1)


@pytest.mark.asyncio
async def test_sqlite_schedule_repository_round_trip(temp_dir: Path):
    repository = SqliteScheduleRepository(temp_dir / "state.db")
    await repository.initialize()
    scheduler = Scheduler(repository, FakeBackupManager())

    created = await scheduler.create_schedule(
        "offsite",
        Frequency.MONTHLY,
        BackupKind.FULL,
        destinations=[AdapterKind.LOCAL, AdapterKind.S3],
        options={"uploads": False},
        now=NOW,
    )

    loaded = await scheduler.get_schedule(created.schedule_id)
    assert loaded == created
    assert [s.name for s in await scheduler.list_schedules()] == ["offsite"]


@pytest.mark.asyncio
async def test_tick_runs_overdue_schedules():
    manager = FakeBackupManager()
    scheduler = Scheduler(InMemoryScheduleRepository(), manager)
    past = datetime.now(UTC) - timedelta(days=2)
    await scheduler.create_schedule("overdue", Frequency.DAILY, now=past)

    await scheduler.tick()

    assert len(manager.calls) == 1
    schedule = await scheduler.get_schedule(1)
    assert schedule.next_run > datetime.now(UTC)


class BrokenScheduleRepository(InMemoryScheduleRepository):
    async def list(self):
        raise DataIOError("state database is locked")


@pytest.mark.asyncio
async def test_tick_logs_storage_errors_instead_of_raising():
    manager = FakeBackupManager()
    scheduler = Scheduler(BrokenScheduleRepository(), manager)

    await scheduler.tick()

    assert manager.calls == []
