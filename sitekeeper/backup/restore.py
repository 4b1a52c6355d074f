# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Restore Manager - Puts a container back onto a site.

Restores always go through the manifest gate: a container whose
manifest is missing or malformed is rejected before anything is
extracted. Work happens in a per-run scratch directory that is removed
on success and on failure alike.
"""

import asyncio
import re
import shutil
import zipfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List

import structlog
from structlog.contextvars import bound_contextvars
from ulid import ULID

from sitekeeper.archiver import DATABASE_ENTRY, FILES_ENTRY, Archiver, extract_zip_sync
from sitekeeper.config import AdapterKind, SitekeeperConfig
from sitekeeper.database import DatabaseConnection, DatabaseRestorer, driver_errors, open_database
from sitekeeper.exceptions import (
    ConfigurationError,
    DataIOError,
    IntegrityError,
    JobCancelledError,
    RestoreError,
    SitekeeperError,
    TransferError,
)
from sitekeeper.jobs.lifecycle import JobLifecycle
from sitekeeper.jobs.models import JobKind, JobResult
from sitekeeper.storage.manager import StorageManager

logger = structlog.get_logger()

RESTORED_SUFFIX = ".restored"

# (percent, message)
RestoreProgress = Callable[[int, str], Awaitable[None]]
Checkpoint = Callable[[], Awaitable[None]]
DatabaseFactory = Callable[[], Awaitable[DatabaseConnection]]


@dataclass
class RestoreOptions:
    restore_database: bool = True
    restore_files: bool = True
    # Sanitized config copies land next to the live file as <name>.restored
    restore_config: bool = False
    restore_webserver_config: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "RestoreOptions":
        data = data or {}
        return cls(**{k: bool(v) for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class RestoreReport:
    """What a restore put back."""

    container: str
    manifest: Dict[str, Any]
    statements: int = 0
    failed_statements: int = 0
    tables: List[str] = field(default_factory=list)
    files_restored: int = 0
    config_files: List[str] = field(default_factory=list)
    webserver_files: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RestoreManager:
    """
    Restore containers and fetch them back from storage.

    Args:
        config: Site configuration (site root, database, replay policy)
        storage: Adapter registry used by download_from_storage()
        archiver: Container reader (default: plain Archiver)
        database_factory: Opens the target database (default: config.database_url)
    """

    def __init__(
        self,
        config: SitekeeperConfig,
        storage: StorageManager,
        archiver: Archiver | None = None,
        database_factory: DatabaseFactory | None = None,
    ):
        self.config = config
        self.storage = storage
        self.archiver = archiver or Archiver()
        self._database_factory = database_factory

    async def open_database(self) -> DatabaseConnection:
        if self._database_factory:
            return await self._database_factory()
        if not self.config.database_url:
            raise ConfigurationError("No database configured (set database_url)")
        return await open_database(self.config.database_url)

    async def restore(
        self,
        container: Path,
        options: RestoreOptions | None = None,
        progress: RestoreProgress | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> RestoreReport:
        """
        Restore a container onto the configured site.

        Steps: verify, extract into a scratch directory, read the
        manifest, replay database.sql, unpack files.zip over the site
        root, stage config copies, copy web-server files.

        Args:
            container: Container path
            options: Which parts to restore
            progress: Awaited with (percent, message) between steps
            checkpoint: Awaited between steps; raise to stop

        Returns:
            RestoreReport

        Raises:
            IntegrityError: If the container fails verification
            ReplayError: On a failed statement under the strict policy
            RestoreError: If extraction or copying fails
        """
        options = options or RestoreOptions()
        container = Path(container)
        site_root = Path(self.config.site_root)

        async def step(percent: int, message: str) -> None:
            if checkpoint:
                await checkpoint()
            if progress:
                await progress(percent, message)

        logger.info("restore_started", container=str(container), options=asdict(options))

        await step(5, "Verifying backup...")
        if not await self.archiver.verify_archive(container):
            raise IntegrityError("Backup verification failed", details={"container": str(container)})

        extract_dir = self.config.temp_dir / f"restore-{str(ULID()).lower()}"
        try:
            await step(10, "Extracting backup...")
            manifest = await self.archiver.extract(container, extract_dir)
            report = RestoreReport(container=str(container), manifest=manifest.to_dict())

            sql_path = extract_dir / DATABASE_ENTRY
            if options.restore_database and sql_path.is_file():
                await step(20, "Restoring database...")
                await self._restore_database(sql_path, report, progress, checkpoint)

            files_zip = extract_dir / FILES_ENTRY
            if options.restore_files and files_zip.is_file():
                await step(70, "Restoring files...")
                report.files_restored = await self._restore_files(files_zip, site_root)

            if options.restore_config:
                await step(90, "Staging configuration...")
                report.config_files = self._stage_config(extract_dir / "config", site_root)

            if options.restore_webserver_config:
                await step(95, "Restoring web server configuration...")
                report.webserver_files = self._copy_webserver(extract_dir / "webserver", site_root)

        except OSError as e:
            raise RestoreError(f"Restore failed: {e}", details={"container": str(container)}) from e
        except (zipfile.BadZipFile, *driver_errors()) as e:
            raise DataIOError(f"Unreadable backup data: {e}", details={"container": str(container)}) from e
        finally:
            shutil.rmtree(extract_dir, ignore_errors=True)

        if progress:
            await progress(100, "Restore completed")

        logger.info(
            "restore_completed",
            container=str(container),
            tables=len(report.tables),
            files=report.files_restored,
            failed_statements=report.failed_statements,
        )
        return report

    async def _restore_database(
        self,
        sql_path: Path,
        report: RestoreReport,
        progress: RestoreProgress | None,
        checkpoint: Checkpoint | None,
    ) -> None:
        async def table_progress(percent: int, table: str, index: int, total: int) -> None:
            if progress:
                await progress(20 + percent * 49 // 100, f"Restored table {table}")

        db = await self.open_database()
        async with db:
            restorer = DatabaseRestorer(db, self.config.replay_policy)
            result = await restorer.restore(sql_path, table_progress, checkpoint)

        report.statements = result.statements
        report.failed_statements = result.failed
        report.tables = result.tables
        report.errors.extend(result.errors)

    async def _restore_files(self, files_zip: Path, site_root: Path) -> int:
        loop = asyncio.get_running_loop()
        names = await loop.run_in_executor(None, extract_zip_sync, files_zip, site_root)
        return len(names)

    def _stage_config(self, source_dir: Path, site_root: Path) -> List[str]:
        staged: List[str] = []
        if not source_dir.is_dir():
            return staged
        for source in sorted(source_dir.iterdir()):
            if not source.is_file():
                continue
            target = site_root / (source.name + RESTORED_SUFFIX)
            shutil.copyfile(source, target)
            staged.append(target.name)
            logger.warning("config_staged", file=target.name, note="credentials must be reviewed")
        return staged

    def _copy_webserver(self, source_dir: Path, site_root: Path) -> List[str]:
        copied: List[str] = []
        if not source_dir.is_dir():
            return copied
        for source in sorted(source_dir.iterdir()):
            if source.is_file():
                shutil.copyfile(source, site_root / source.name)
                copied.append(source.name)
        return copied

    async def run_restore_job(
        self,
        lifecycle: JobLifecycle,
        container: Path,
        options: RestoreOptions | None = None,
    ) -> RestoreReport:
        """
        Run restore() as a job of kind restore.

        Raises:
            RestoreError: Wrapping any failure after the job is marked failed
        """
        job = await lifecycle.create(JobKind.RESTORE)
        job_id = job.job_id

        async def report_progress(percent: int, message: str) -> None:
            await lifecycle.progress(job_id, percent, message)

        with bound_contextvars(job_id=job_id):
            await lifecycle.start(job_id, "Starting restore")
            try:
                report = await self.restore(
                    container, options, report_progress, lifecycle.checkpoint_for(job_id)
                )
            except SitekeeperError as e:
                await lifecycle.fail(job_id, "Cancelled" if isinstance(e, JobCancelledError) else e.message)
                if isinstance(e, (RestoreError, JobCancelledError)):
                    raise
                raise RestoreError(f"Restore failed: {e.message}", details={"job_id": job_id}) from e
            except Exception as e:
                logger.exception("restore_unexpected_error", error=str(e))
                await lifecycle.fail(job_id, f"Restore failed: {e}")
                raise RestoreError(
                    f"Restore failed: {e}", details={"job_id": job_id, "error_type": type(e).__name__}
                ) from e

            result = JobResult(
                filename=Path(container).name,
                path=str(container),
                size=Path(container).stat().st_size,
                manifest=report.manifest,
                details={k: v for k, v in report.to_dict().items() if k != "manifest"},
            )
            await lifecycle.complete(job_id, result, "Restore completed")
        return report

    async def get_backup_info(self, container: Path) -> Dict[str, Any] | None:
        """Manifest plus file_size and filename, or None for an unreadable container."""
        container = Path(container)
        if not container.is_file():
            return None
        try:
            manifest = await self.archiver.read_manifest(container)
        except (IntegrityError, DataIOError) as e:
            logger.warning("backup_info_unavailable", container=str(container), error=e.message)
            return None

        info = manifest.to_dict()
        info["file_size"] = container.stat().st_size
        info["filename"] = container.name
        return info

    async def download_from_storage(
        self,
        name: str,
        adapter_kind: AdapterKind = AdapterKind.LOCAL,
        dest_dir: Path | None = None,
    ) -> Path:
        """
        Fetch a container from a destination into dest_dir.

        When the whole object is absent, its .partNNN pieces are
        downloaded and joined instead.

        Raises:
            TransferError: If neither the container nor its parts exist
        """
        adapter = self.storage.get(adapter_kind)
        dest_dir = Path(dest_dir or self.config.temp_dir / "downloads")
        dest_dir.mkdir(parents=True, exist_ok=True)
        local_path = dest_dir / Path(name).name

        if await adapter.exists(name):
            await adapter.download(name, local_path)
            logger.info("backup_downloaded", name=name, destination=AdapterKind(adapter_kind).value)
            return local_path

        directory, _, filename = name.rpartition("/")
        stem = filename[: -len(".zip")] if filename.endswith(".zip") else filename
        pattern = re.compile(re.escape(stem) + r"\.part\d{3}$")
        remote_parts = sorted(
            (f for f in await adapter.list(directory) if not f.is_dir and pattern.match(f.name)),
            key=lambda f: f.name,
        )
        if not remote_parts:
            raise TransferError(f"Backup not found: {name}", details={"adapter": AdapterKind(adapter_kind).value})

        local_parts: List[Path] = []
        try:
            for remote in remote_parts:
                part_path = dest_dir / remote.name
                await adapter.download(remote.path, part_path)
                local_parts.append(part_path)
            await self.archiver.join(local_parts, local_path)
        finally:
            for part in local_parts:
                part.unlink(missing_ok=True)

        logger.info("backup_downloaded", name=name, parts=len(remote_parts))
        return local_path
