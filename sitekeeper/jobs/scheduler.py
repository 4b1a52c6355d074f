# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Scheduler - Recurring backups.

A schedule fires when it is active and its next_run has passed. Each
tick runs at most one schedule (the one due earliest), dispatches on its
backup kind, moves next_run forward by the schedule's frequency and then
applies the schedule's retention count.
"""

import calendar
import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Protocol

import aiosqlite
import structlog

from sitekeeper.config import AdapterKind, BackupKind, Frequency
from sitekeeper.exceptions import DataIOError, SitekeeperError, ValidationError
from sitekeeper.jobs.models import JobResult, utcnow

if TYPE_CHECKING:
    from sitekeeper.backup.manager import BackupManager, BackupOptions

logger = structlog.get_logger()

FIXED_INTERVALS = {
    Frequency.HOURLY: timedelta(hours=1),
    Frequency.TWICE_DAILY: timedelta(hours=12),
    Frequency.DAILY: timedelta(days=1),
    Frequency.WEEKLY: timedelta(weeks=1),
}

UPDATABLE_FIELDS = {
    "name",
    "frequency",
    "backup_kind",
    "destinations",
    "retention_count",
    "is_active",
    "options",
}


def add_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the last day of a shorter month."""
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def compute_next_run(frequency: Frequency, from_time: datetime) -> datetime:
    frequency = Frequency(frequency)
    if frequency is Frequency.MONTHLY:
        return add_month(from_time)
    return from_time + FIXED_INTERVALS[frequency]


def parse_schedule_options(
    options: Dict[str, Any] | None, destinations: List[AdapterKind]
) -> "BackupOptions":
    """
    Backup options a schedule runs with.

    Raises:
        ValidationError: On unknown option keys or values of the wrong kind
    """
    from sitekeeper.backup.manager import BackupOptions

    try:
        return BackupOptions.from_dict({**(options or {}), "destinations": destinations})
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid backup options: {e}", details={"options": options}) from e


@dataclass
class Schedule:
    """A recurring backup definition."""

    schedule_id: int | None
    name: str
    frequency: Frequency
    backup_kind: BackupKind = BackupKind.FULL
    destinations: List[AdapterKind] = field(default_factory=lambda: [AdapterKind.LOCAL])
    retention_count: int = 5
    next_run: datetime = field(default_factory=utcnow)
    last_run: datetime | None = None
    is_active: bool = True
    options: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def is_due(self, now: datetime) -> bool:
        return self.is_active and self.next_run <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "name": self.name,
            "frequency": self.frequency.value,
            "backup_kind": self.backup_kind.value,
            "destinations": [d.value for d in self.destinations],
            "retention_count": self.retention_count,
            "next_run": self.next_run.isoformat(),
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "is_active": self.is_active,
            "options": dict(self.options),
            "created_at": self.created_at.isoformat(),
        }


class ScheduleRepository(Protocol):
    async def create(self, schedule: Schedule) -> Schedule: ...

    async def get(self, schedule_id: int) -> Schedule | None: ...

    async def update(self, schedule: Schedule) -> None: ...

    async def delete(self, schedule_id: int) -> bool: ...

    async def list(self) -> List[Schedule]: ...


class InMemoryScheduleRepository:
    def __init__(self) -> None:
        self._schedules: Dict[int, Schedule] = {}
        self._next_id = 1

    async def create(self, schedule: Schedule) -> Schedule:
        schedule = copy.deepcopy(schedule)
        schedule.schedule_id = self._next_id
        self._next_id += 1
        self._schedules[schedule.schedule_id] = schedule
        return copy.deepcopy(schedule)

    async def get(self, schedule_id: int) -> Schedule | None:
        schedule = self._schedules.get(schedule_id)
        return copy.deepcopy(schedule) if schedule else None

    async def update(self, schedule: Schedule) -> None:
        self._schedules[schedule.schedule_id] = copy.deepcopy(schedule)

    async def delete(self, schedule_id: int) -> bool:
        return self._schedules.pop(schedule_id, None) is not None

    async def list(self) -> List[Schedule]:
        return [copy.deepcopy(s) for s in sorted(self._schedules.values(), key=lambda s: s.schedule_id)]


def _row_to_schedule(row: aiosqlite.Row) -> Schedule:
    return Schedule(
        schedule_id=row["id"],
        name=row["name"],
        frequency=Frequency(row["frequency"]),
        backup_kind=BackupKind(row["backup_kind"]),
        destinations=[AdapterKind(d) for d in json.loads(row["destinations"])],
        retention_count=row["retention_count"],
        next_run=datetime.fromisoformat(row["next_run"]),
        last_run=datetime.fromisoformat(row["last_run"]) if row["last_run"] else None,
        is_active=bool(row["is_active"]),
        options=json.loads(row["options"] or "{}"),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class SqliteScheduleRepository:
    """Schedules in a SQLite table next to the jobs table."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    async def initialize(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS schedules (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        frequency TEXT NOT NULL,
                        backup_kind TEXT NOT NULL,
                        destinations TEXT NOT NULL,
                        retention_count INTEGER NOT NULL,
                        next_run TEXT NOT NULL,
                        last_run TEXT,
                        is_active INTEGER NOT NULL DEFAULT 1,
                        options TEXT,
                        created_at TEXT NOT NULL
                    )
                """)

                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_schedules_next_run
                    ON schedules(is_active, next_run)
                """)

                await db.commit()
        except (aiosqlite.Error, OSError) as e:
            raise DataIOError(
                f"Failed to initialize schedule database: {e}",
                details={"db_path": str(self.db_path)},
            ) from e

    @staticmethod
    def _values(schedule: Schedule) -> tuple:
        return (
            schedule.name,
            schedule.frequency.value,
            schedule.backup_kind.value,
            json.dumps([d.value for d in schedule.destinations]),
            schedule.retention_count,
            schedule.next_run.isoformat(),
            schedule.last_run.isoformat() if schedule.last_run else None,
            int(schedule.is_active),
            json.dumps(schedule.options),
            schedule.created_at.isoformat(),
        )

    async def create(self, schedule: Schedule) -> Schedule:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO schedules (name, frequency, backup_kind, destinations,
                                       retention_count, next_run, last_run, is_active,
                                       options, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._values(schedule),
            )
            await db.commit()
            schedule_id = cursor.lastrowid

        created = copy.deepcopy(schedule)
        created.schedule_id = schedule_id
        return created

    async def get(self, schedule_id: int) -> Schedule | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM schedules WHERE id = ?", (schedule_id,)) as cursor:
                row = await cursor.fetchone()
        return _row_to_schedule(row) if row else None

    async def update(self, schedule: Schedule) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE schedules
                SET name = ?, frequency = ?, backup_kind = ?, destinations = ?,
                    retention_count = ?, next_run = ?, last_run = ?, is_active = ?,
                    options = ?, created_at = ?
                WHERE id = ?
                """,
                (*self._values(schedule), schedule.schedule_id),
            )
            await db.commit()

    async def delete(self, schedule_id: int) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def list(self) -> List[Schedule]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM schedules ORDER BY id") as cursor:
                rows = await cursor.fetchall()
        return [_row_to_schedule(row) for row in rows]


class Scheduler:
    """
    Manage schedules and run the due ones.

    Args:
        repository: Where schedules live
        backup_manager: Runs the backups a schedule asks for
    """

    def __init__(self, repository: ScheduleRepository, backup_manager: "BackupManager"):
        self.repository = repository
        self.backup_manager = backup_manager

    async def create_schedule(
        self,
        name: str,
        frequency: Frequency = Frequency.DAILY,
        backup_kind: BackupKind = BackupKind.FULL,
        destinations: List[AdapterKind] | None = None,
        retention_count: int = 5,
        options: Dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Schedule:
        """
        Create an active schedule whose first run is one interval from now.

        Raises:
            ValidationError: On an empty name, retention_count < 1 or
                options that are not backup options
        """
        if not name.strip():
            raise ValidationError("Schedule name cannot be empty")
        if retention_count < 1:
            raise ValidationError("retention_count must be >= 1", details={"retention_count": retention_count})
        destinations = [AdapterKind(d) for d in (destinations or [AdapterKind.LOCAL])]
        parse_schedule_options(options, destinations)

        now = now or utcnow()
        schedule = await self.repository.create(
            Schedule(
                schedule_id=None,
                name=name.strip(),
                frequency=Frequency(frequency),
                backup_kind=BackupKind(backup_kind),
                destinations=destinations,
                retention_count=retention_count,
                next_run=compute_next_run(frequency, now),
                options=dict(options or {}),
                created_at=now,
            )
        )

        logger.info("schedule_created", schedule_id=schedule.schedule_id, name=schedule.name)
        return schedule

    async def get_schedule(self, schedule_id: int) -> Schedule | None:
        return await self.repository.get(schedule_id)

    async def list_schedules(self) -> List[Schedule]:
        return await self.repository.list()

    async def _require(self, schedule_id: int) -> Schedule:
        schedule = await self.repository.get(schedule_id)
        if schedule is None:
            raise ValidationError(f"Schedule not found: {schedule_id}", details={"schedule_id": schedule_id})
        return schedule

    async def update_schedule(self, schedule_id: int, now: datetime | None = None, **changes: Any) -> Schedule:
        """
        Change schedule fields. A new frequency also moves next_run.

        Raises:
            ValidationError: On unknown fields, invalid options or a
                missing schedule
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError("Unknown schedule fields", details={"fields": sorted(unknown)})

        schedule = await self._require(schedule_id)

        if "name" in changes:
            schedule.name = str(changes["name"]).strip()
        if "frequency" in changes:
            schedule.frequency = Frequency(changes["frequency"])
            schedule.next_run = compute_next_run(schedule.frequency, now or utcnow())
        if "backup_kind" in changes:
            schedule.backup_kind = BackupKind(changes["backup_kind"])
        if "destinations" in changes:
            schedule.destinations = [AdapterKind(d) for d in changes["destinations"]]
        if "retention_count" in changes:
            schedule.retention_count = max(1, int(changes["retention_count"]))
        if "is_active" in changes:
            schedule.is_active = bool(changes["is_active"])
        if "options" in changes:
            schedule.options = dict(changes["options"] or {})
        parse_schedule_options(schedule.options, schedule.destinations)

        await self.repository.update(schedule)
        logger.info("schedule_updated", schedule_id=schedule_id, fields=sorted(changes))
        return schedule

    async def delete_schedule(self, schedule_id: int) -> bool:
        deleted = await self.repository.delete(schedule_id)
        if deleted:
            logger.info("schedule_deleted", schedule_id=schedule_id)
        return deleted

    async def toggle_schedule(self, schedule_id: int, now: datetime | None = None) -> bool:
        """
        Flip is_active and return the new value.

        A reactivated schedule whose next_run already passed is moved one
        interval forward from now instead of firing at once.
        """
        schedule = await self._require(schedule_id)
        now = now or utcnow()
        schedule.is_active = not schedule.is_active
        if schedule.is_active and schedule.next_run <= now:
            schedule.next_run = compute_next_run(schedule.frequency, now)
        await self.repository.update(schedule)
        logger.info("schedule_toggled", schedule_id=schedule_id, is_active=schedule.is_active)
        return schedule.is_active

    async def next_due(self, now: datetime | None = None) -> Schedule | None:
        now = now or utcnow()
        due = [s for s in await self.repository.list() if s.is_due(now)]
        return min(due, key=lambda s: s.next_run) if due else None

    async def run_due(self, now: datetime | None = None) -> JobResult | None:
        """Run the earliest due schedule, if any."""
        now = now or utcnow()
        schedule = await self.next_due(now)
        if schedule is None:
            return None
        return await self.run_schedule(schedule, now)

    async def tick(self) -> None:
        """
        One periodic pass, driven by the host's job runner.

        Storage or database errors are logged so the next tick still runs.
        """
        try:
            await self.run_due()
        except SitekeeperError as e:
            logger.error("scheduler_tick_failed", error=str(e))

    async def run_schedule(self, schedule: Schedule, now: datetime | None = None) -> JobResult | None:
        """
        Run one schedule now.

        The schedule is rescheduled and retention applied even when the
        backup fails. A backup failure is already recorded on its job,
        and options that no longer parse are logged.

        Returns:
            The backup's JobResult, or None if the backup failed
        """
        now = now or utcnow()

        logger.info(
            "scheduled_backup_starting",
            schedule_id=schedule.schedule_id,
            name=schedule.name,
            kind=schedule.backup_kind.value,
        )

        result: JobResult | None = None
        try:
            options = parse_schedule_options(schedule.options, schedule.destinations)
            if schedule.backup_kind is BackupKind.DATABASE:
                result = await self.backup_manager.create_database_backup(options)
            elif schedule.backup_kind is BackupKind.FILES:
                result = await self.backup_manager.create_files_backup(options)
            else:
                result = await self.backup_manager.create_full_backup(options)
        except SitekeeperError as e:
            logger.error("scheduled_backup_failed", schedule_id=schedule.schedule_id, error=str(e))

        schedule.last_run = now
        schedule.next_run = compute_next_run(schedule.frequency, now)
        await self.repository.update(schedule)

        await self.backup_manager.apply_retention_policy(schedule.retention_count)

        return result

