# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Backup Manager - Drives a backup job from dump to upload.

A backup runs these steps, each reported on its job:

    10  dump the database to database.sql
    30  scan the file tree
    40  archive files into files.zip, chunk by chunk
    80  pack the payloads and a manifest into the container
    90  upload the container to every destination
   100  done

The size ceiling is checked twice: once against the uncompressed
estimate before any files are archived, and once against the finished
container. Runs against the same site are serialized by a per-site lock.
The job's scratch directory is removed whatever the outcome.
"""

import asyncio
import re
import shutil
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List
from urllib.parse import urlparse

import structlog
from structlog.contextvars import bound_contextvars

from sitekeeper.archiver import DATABASE_ENTRY, FILES_ENTRY, ArchiveEntry, Archiver
from sitekeeper.config import AdapterKind, BackupKind, SitekeeperConfig
from sitekeeper.database import DatabaseConnection, DatabaseDumper, open_database, verify_dump
from sitekeeper.exceptions import (
    BackupError,
    ConfigurationError,
    JobCancelledError,
    SitekeeperError,
    SizeLimitExceeded,
    ValidationError,
)
from sitekeeper.files import FileArchiver, FileList, FileScanner, FileSelection, stage_special_files
from sitekeeper.jobs.lifecycle import JobLifecycle
from sitekeeper.jobs.models import Job, JobKind, JobResult, JobStatusView
from sitekeeper.storage.manager import StorageManager

logger = structlog.get_logger()

DatabaseFactory = Callable[[], Awaitable[DatabaseConnection]]

BACKUP_KINDS = {JobKind.FULL, JobKind.DATABASE, JobKind.FILES}


@dataclass
class BackupOptions:
    """Per-run choices; unset values fall back to the config."""

    backup_database: bool = True
    backup_files: bool = True
    include_config: bool = True
    destinations: List[AdapterKind] | None = None
    core: bool = False
    plugins: bool = True
    themes: bool = True
    uploads: bool = True
    custom: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    rows_per_batch: int | None = None
    files_per_batch: int | None = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "BackupOptions":
        """
        Raises:
            ValidationError: On keys that are not backup options
        """
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValidationError("Unknown backup options", details={"options": sorted(unknown)})
        if data.get("destinations") is not None:
            data["destinations"] = [AdapterKind(d) for d in data["destinations"]]
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.destinations is not None:
            data["destinations"] = [d.value for d in self.destinations]
        return data

    def selection(self, include_core: bool = False) -> FileSelection:
        return FileSelection(
            core=self.core or include_core,
            plugins=self.plugins,
            themes=self.themes,
            uploads=self.uploads,
            custom=tuple(self.custom),
            exclude=tuple(self.exclude),
        )


def backup_filename(site_url: str, kind: BackupKind, moment: datetime | None = None) -> str:
    """{host}-{kind}-{YYYY-mm-dd-HHMMSS}.zip"""
    host = urlparse(site_url).hostname or "site"
    host = re.sub(r"[^A-Za-z0-9.-]+", "-", host).strip("-") or "site"
    stamp = (moment or datetime.now(UTC)).strftime("%Y-%m-%d-%H%M%S")
    return f"{host}-{BackupKind(kind).value}-{stamp}.zip"


class BackupManager:
    """
    Create, list, delete and prune backups.

    Args:
        config: Site configuration
        lifecycle: Job state machine the runs report to
        storage: Destination registry
        archiver: Container writer (default: built from config)
        database_factory: Opens the site database (default: config.database_url)
    """

    def __init__(
        self,
        config: SitekeeperConfig,
        lifecycle: JobLifecycle,
        storage: StorageManager,
        archiver: Archiver | None = None,
        database_factory: DatabaseFactory | None = None,
    ):
        self.config = config
        self.lifecycle = lifecycle
        self.storage = storage
        self.archiver = archiver or Archiver(
            config.compression_level,
            site_url=config.site_url,
            home_url=config.home_url or "",
            table_prefix=config.table_prefix,
        )
        self._database_factory = database_factory
        self._locks: Dict[str, asyncio.Lock] = {}

    async def open_database(self) -> DatabaseConnection:
        if self._database_factory:
            return await self._database_factory()
        if not self.config.database_url:
            raise ConfigurationError("No database configured (set database_url)")
        return await open_database(self.config.database_url)

    def _lock(self) -> asyncio.Lock:
        key = str(Path(self.config.site_root).resolve())
        return self._locks.setdefault(key, asyncio.Lock())

    async def create_full_backup(self, options: BackupOptions | None = None) -> JobResult:
        """
        Back up the database and the file tree into one container.

        Raises:
            SizeLimitExceeded: If the container would exceed the ceiling
            BackupError: If any step fails; the job is marked failed first
        """
        return await self._run(BackupKind.FULL, options or BackupOptions())

    async def create_database_backup(self, options: BackupOptions | None = None) -> JobResult:
        options = options or BackupOptions()
        options.backup_database, options.backup_files = True, False
        return await self._run(BackupKind.DATABASE, options)

    async def create_files_backup(self, options: BackupOptions | None = None) -> JobResult:
        options = options or BackupOptions()
        options.backup_database, options.backup_files = False, True
        return await self._run(BackupKind.FILES, options)

    async def _run(self, kind: BackupKind, options: BackupOptions) -> JobResult:
        if not options.backup_database and not options.backup_files:
            raise ValidationError("Nothing to back up: database and files are both disabled")

        async with self._lock():
            job = await self.lifecycle.create(JobKind(kind.value))
            with bound_contextvars(job_id=job.job_id):
                return await self._execute(job, kind, options)

    async def _execute(self, job: Job, kind: BackupKind, options: BackupOptions) -> JobResult:
        job_id = job.job_id
        temp_dir = self.config.temp_dir / job_id
        checkpoint = self.lifecycle.checkpoint_for(job_id)
        destinations = list(options.destinations or self.config.destinations)
        output: Path | None = None

        logger.info("backup_started", kind=kind.value, options=options.to_dict())

        try:
            await self.lifecycle.start(job_id, "Starting backup")
            temp_dir.mkdir(parents=True, exist_ok=True)

            entries: List[ArchiveEntry] = []
            metadata: Dict[str, Any] = {
                "job_id": job_id,
                "type": kind.value,
                "options": options.to_dict(),
                "file_count": 0,
                "total_size": 0,
            }
            database_version = ""

            if options.backup_database:
                await self.lifecycle.progress(job_id, 10, "Backing up database...")
                database_version, tables = await self._dump_database(
                    job_id, temp_dir / DATABASE_ENTRY, options, checkpoint
                )
                entries.append(ArchiveEntry(temp_dir / DATABASE_ENTRY, DATABASE_ENTRY))
                metadata["tables"] = tables

            if options.backup_files:
                await checkpoint()
                await self.lifecycle.progress(job_id, 30, "Preparing file list...")
                file_list = self._scanner(options).prepare_file_list(
                    options.selection(self.config.include_core)
                )
                metadata["file_count"] = file_list.count
                metadata["total_size"] = file_list.total_size

                self._precheck_size(entries, file_list)

                if file_list.files:
                    await self.lifecycle.progress(job_id, 40, "Backing up files...")
                    skipped = await self._archive_files(
                        job_id, file_list, temp_dir / FILES_ENTRY, options, checkpoint
                    )
                    entries.append(ArchiveEntry(temp_dir / FILES_ENTRY, FILES_ENTRY))
                    metadata["skipped_files"] = skipped

                if options.include_config:
                    entries.extend(self._special_entries(temp_dir / "special"))

            await checkpoint()
            await self.lifecycle.progress(job_id, 80, "Creating archive...")
            filename = self._unique_filename(kind, job_id)
            output = self.config.backups_dir / filename
            manifest = await self.archiver.create_archive(entries, output, metadata, database_version)

            size = output.stat().st_size
            self._check_size(size)
            checksum = await self.archiver.calculate_checksum(output)

            await checkpoint()
            await self.lifecycle.progress(job_id, 90, "Uploading to storage...")
            outcomes = await self.storage.upload_to_destinations(output, filename, destinations)
            failed = [kind_.value for kind_, outcome in outcomes.items() if not outcome.success]

            result = JobResult(
                filename=filename,
                path=str(output),
                size=size,
                checksum=checksum,
                destinations={k.value: asdict(o) for k, o in outcomes.items()},
                manifest=manifest.to_dict(),
                details={"file_count": metadata["file_count"], "total_size": metadata["total_size"]},
            )
            message = f"Completed with upload errors: {', '.join(failed)}" if failed else "Backup completed"
            await self.lifecycle.complete(job_id, result, message)

            logger.info("backup_completed", filename=filename, size=size, failed_destinations=failed)
            return result

        except SitekeeperError as e:
            if output is not None:
                output.unlink(missing_ok=True)
            await self._fail(job_id, e)
            if isinstance(e, (SizeLimitExceeded, JobCancelledError, BackupError)):
                raise
            raise BackupError(f"Backup failed: {e.message}", details={"job_id": job_id, **e.details}) from e
        except OSError as e:
            if output is not None:
                output.unlink(missing_ok=True)
            error = BackupError(f"Backup failed: {e}", details={"job_id": job_id})
            await self._fail(job_id, error)
            raise error from e
        except Exception as e:
            if output is not None:
                output.unlink(missing_ok=True)
            logger.exception("backup_unexpected_error", error=str(e))
            error = BackupError(f"Backup failed: {e}", details={"job_id": job_id, "error_type": type(e).__name__})
            await self._fail(job_id, error)
            raise error from e
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    async def _fail(self, job_id: str, error: SitekeeperError) -> None:
        message = "Cancelled" if isinstance(error, JobCancelledError) else error.message
        await self.lifecycle.fail(job_id, message)

    async def _dump_database(
        self,
        job_id: str,
        output: Path,
        options: BackupOptions,
        checkpoint: Callable[[], Awaitable[None]],
    ) -> tuple[str, List[str]]:
        async def report(percent: int, table: str, index: int, total: int) -> None:
            await self.lifecycle.progress(job_id, 10 + percent * 19 // 100, f"Backing up table {table}")

        db = await self.open_database()
        async with db:
            dumper = DatabaseDumper(
                db,
                rows_per_batch=options.rows_per_batch or self.config.rows_per_batch,
                exclude_tables=self.config.exclude_tables,
                site_url=self.config.site_url,
                table_prefix=self.config.table_prefix,
            )
            version = await db.server_version()
            result = await dumper.dump(output, report, checkpoint)

        if not await verify_dump(output):
            raise BackupError("Database dump is incomplete", details={"path": str(output)})
        return version, result.tables

    def _scanner(self, options: BackupOptions) -> FileScanner:
        return FileScanner(
            self.config.site_root,
            exclude_patterns=self.config.exclude_patterns,
            max_file_size=self.config.max_file_size,
            output_dir=self.config.work_dir,
        )

    async def _archive_files(
        self,
        job_id: str,
        file_list: FileList,
        output: Path,
        options: BackupOptions,
        checkpoint: Callable[[], Awaitable[None]],
    ) -> int:
        """Archive chunk by chunk, checking for cancellation between chunks."""
        archiver = FileArchiver(self.config.compression_level)
        chunk_size = options.files_per_batch or self.config.files_per_batch
        chunk_index = 0
        skipped = 0

        while True:
            await checkpoint()
            step = await archiver.backup_chunk(file_list.files, output, chunk_index, chunk_size)
            skipped += len(step.skipped)
            percent = 40 + 35 * step.processed // max(file_list.count, 1)
            await self.lifecycle.progress(job_id, percent, f"Archived {step.processed} of {file_list.count} files")
            if step.completed:
                break
            chunk_index = step.next_chunk

        return skipped

    def _special_entries(self, staging: Path) -> List[ArchiveEntry]:
        staged = stage_special_files(
            Path(self.config.site_root),
            staging,
            self.config.config_files,
            self.config.sensitive_keys,
            self.config.webserver_files,
        )
        return [ArchiveEntry(path, path.relative_to(staging).as_posix()) for path in staged]

    def _precheck_size(self, entries: List[ArchiveEntry], file_list: FileList) -> None:
        limit = self.config.size_limit
        if not limit or not self.config.size_precheck:
            return
        estimate = sum(e.path.stat().st_size for e in entries) + file_list.total_size
        if estimate > limit:
            raise SizeLimitExceeded(
                "Backup would exceed the size limit",
                details={"estimated_size": estimate, "size_limit": limit},
            )

    def _check_size(self, size: int) -> None:
        limit = self.config.size_limit
        if limit and size > limit:
            raise SizeLimitExceeded(
                "Backup exceeds the size limit",
                details={"size": size, "size_limit": limit},
            )

    def _unique_filename(self, kind: BackupKind, job_id: str) -> str:
        filename = backup_filename(self.config.site_url, kind)
        if (self.config.backups_dir / filename).exists():
            filename = filename[: -len(".zip")] + f"-{job_id[-6:].lower()}.zip"
        return filename

    async def list_backups(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Completed backups, newest first."""
        backups: List[Dict[str, Any]] = []
        for job in await self.lifecycle.repository.list_completed():
            if job.kind not in BACKUP_KINDS or job.result is None:
                continue
            backups.append(
                {
                    "job_id": job.job_id,
                    "kind": job.kind.value,
                    "filename": job.result.filename,
                    "path": job.result.path,
                    "size": job.result.size,
                    "checksum": job.result.checksum,
                    "destinations": job.result.destinations,
                    "created_at": job.created_at.isoformat(),
                    "completed_at": job.completed_at.isoformat() if job.completed_at else None,
                }
            )
            if len(backups) >= limit:
                break
        return backups

    async def get_backup(self, job_id: str) -> Job | None:
        job = await self.lifecycle.repository.get(job_id)
        if job is None or job.kind not in BACKUP_KINDS:
            return None
        return job

    async def delete_backup(self, job_id: str) -> bool:
        """
        Delete a backup from every destination it reached, the local
        container and the job record.

        Returns:
            False if no such backup exists
        """
        job = await self.get_backup(job_id)
        if job is None:
            return False

        if job.result is not None:
            for name, outcome in job.result.destinations.items():
                if not outcome.get("success"):
                    continue
                paths = outcome.get("remote_paths") or [job.result.filename]
                await self.storage.delete_from_destinations(paths, [AdapterKind(name)])

            if job.result.path:
                Path(job.result.path).unlink(missing_ok=True)

        await self.lifecycle.repository.delete(job_id)
        logger.info("backup_deleted", job_id=job_id)
        return True

    async def apply_retention_policy(self, keep: int | None = None) -> int:
        """
        Keep the newest keep completed backups and delete the rest.

        Returns:
            Number of backups deleted
        """
        keep = self.config.retention_count if keep is None else max(1, keep)
        backups = await self.list_backups(limit=10_000)
        deleted = 0

        for backup in backups[keep:]:
            if await self.delete_backup(backup["job_id"]):
                deleted += 1

        logger.info("retention_policy_applied", keep=keep, deleted=deleted)
        return deleted

    async def get_job_status(self, job_id: str) -> JobStatusView | None:
        return await self.lifecycle.get_status(job_id)
