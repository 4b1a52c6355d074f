# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Migrator - Move a site between URLs.

A migration imports a container (optionally taking a safety backup of
the current site first), restores it, and rewrites every stored
reference to the old URL. The rewrite expands one URL change into the
variants stored data may hold, plus a path-only pair when the site moves
between sub-directories.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Sequence
from urllib.parse import urlparse

import structlog
from structlog.contextvars import bound_contextvars

from sitekeeper import __version__
from sitekeeper.backup.manager import BackupManager, BackupOptions
from sitekeeper.backup.restore import RestoreManager, RestoreOptions
from sitekeeper.config import MB, AdapterKind, SitekeeperConfig
from sitekeeper.database import DatabaseConnection, open_database
from sitekeeper.exceptions import (
    ConfigurationError,
    JobCancelledError,
    RestoreError,
    SitekeeperError,
    ValidationError,
)
from sitekeeper.jobs.lifecycle import JobLifecycle
from sitekeeper.jobs.models import JobKind, JobResult
from sitekeeper.migration.search_replace import (
    DryRunResult,
    SearchReplaceEngine,
    SearchReplaceResult,
    generate_url_replacements,
    url_path,
)

logger = structlog.get_logger()

LARGE_BACKUP_SIZE = 500 * MB
URL_OPTIONS = ("siteurl", "home")

DatabaseFactory = Callable[[], Awaitable[DatabaseConnection]]


@dataclass
class MigrateOptions:
    """
    Options for import_and_migrate().

    old_url defaults to the site_url recorded in the container's
    manifest and new_url to the configured site_url.
    """

    old_url: str | None = None
    new_url: str | None = None
    create_backup: bool = True
    restore_database: bool = True
    restore_files: bool = True
    restore_config: bool = False
    tables: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "MigrateOptions":
        data = data or {}
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class MigrationResult:
    backup_info: Dict[str, Any]
    restore: Dict[str, Any]
    pre_migration_backup: str | None = None
    url_replacement: Dict[str, Any] | None = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _is_valid_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _version_tuple(version: str) -> tuple:
    parts = []
    for piece in version.split("."):
        digits = "".join(ch for ch in piece if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


class Migrator:
    """
    Import containers onto a new URL and rewrite stored URLs.

    Args:
        config: Target site configuration
        lifecycle: Job state machine migrate jobs report to
        restore_manager: Restores the imported container
        backup_manager: Takes the pre-migration safety backup
        database_factory: Opens the target database (default: config.database_url)
    """

    def __init__(
        self,
        config: SitekeeperConfig,
        lifecycle: JobLifecycle,
        restore_manager: RestoreManager,
        backup_manager: BackupManager | None = None,
        database_factory: DatabaseFactory | None = None,
    ):
        self.config = config
        self.lifecycle = lifecycle
        self.restore_manager = restore_manager
        self.backup_manager = backup_manager
        self._database_factory = database_factory

    async def open_database(self) -> DatabaseConnection:
        if self._database_factory:
            return await self._database_factory()
        if not self.config.database_url:
            raise ConfigurationError("No database configured (set database_url)")
        return await open_database(self.config.database_url)

    def _engine(self, db: DatabaseConnection) -> SearchReplaceEngine:
        return SearchReplaceEngine(
            db,
            rows_per_batch=self.config.replace_rows_per_batch,
            exclude_tables=self.config.exclude_tables,
        )

    async def import_and_migrate(self, container: Path, options: MigrateOptions | None = None) -> MigrationResult:
        """
        Restore a container and rewrite its URLs, as a job of kind migrate.

        Raises:
            ValidationError: If the container has no readable manifest
            SitekeeperError: Whatever failed; the job is marked failed first
        """
        options = options or MigrateOptions()
        container = Path(container)
        job = await self.lifecycle.create(JobKind.MIGRATE)
        job_id = job.job_id
        checkpoint = self.lifecycle.checkpoint_for(job_id)

        with bound_contextvars(job_id=job_id):
            await self.lifecycle.start(job_id, "Starting migration")
            try:
                info = await self.restore_manager.get_backup_info(container)
                if info is None:
                    raise ValidationError("Invalid backup file", details={"container": str(container)})

                pre_backup: str | None = None
                if options.create_backup and self.backup_manager is not None:
                    await self.lifecycle.progress(job_id, 5, "Creating pre-migration backup...")
                    backup = await self.backup_manager.create_full_backup(
                        BackupOptions(destinations=[AdapterKind.LOCAL])
                    )
                    pre_backup = backup.filename

                async def restore_progress(percent: int, message: str) -> None:
                    await self.lifecycle.progress(job_id, 10 + percent * 70 // 100, message)

                report = await self.restore_manager.restore(
                    container,
                    RestoreOptions(
                        restore_database=options.restore_database,
                        restore_files=options.restore_files,
                        restore_config=options.restore_config,
                    ),
                    restore_progress,
                    checkpoint,
                )

                old_url = (options.old_url or info.get("site_url") or "").rstrip("/")
                new_url = (options.new_url or self.config.site_url or "").rstrip("/")

                replacement: SearchReplaceResult | None = None
                if old_url and new_url and old_url != new_url:
                    await checkpoint()
                    await self.lifecycle.progress(job_id, 85, "Replacing URLs...")
                    replacement = await self.replace_urls(old_url, new_url, options.tables or None)

                result = MigrationResult(
                    backup_info=info,
                    restore=report.to_dict(),
                    pre_migration_backup=pre_backup,
                    url_replacement=asdict(replacement) if replacement else None,
                )
            except SitekeeperError as e:
                await self.lifecycle.fail(job_id, "Cancelled" if isinstance(e, JobCancelledError) else e.message)
                raise
            except Exception as e:
                logger.exception("migration_unexpected_error", error=str(e))
                await self.lifecycle.fail(job_id, f"Migration failed: {e}")
                raise RestoreError(
                    f"Migration failed: {e}", details={"job_id": job_id, "error_type": type(e).__name__}
                ) from e

            await self.lifecycle.complete(
                job_id,
                JobResult(
                    filename=container.name,
                    path=str(container),
                    size=info["file_size"],
                    manifest=report.manifest,
                    details=result.to_dict(),
                ),
                "Migration completed",
            )

        logger.info("migration_completed", container=str(container), url_changed=replacement is not None)
        return result

    async def replace_urls(
        self,
        old_url: str,
        new_url: str,
        tables: Sequence[str] | None = None,
    ) -> SearchReplaceResult:
        """
        Rewrite every stored form of old_url to new_url.

        Trailing slashes are trimmed. A path-only pair is added when the
        URL paths differ, and the siteurl/home option rows are set to
        new_url afterwards.

        Raises:
            ValidationError: If either URL is empty
        """
        old_url = old_url.rstrip("/")
        new_url = new_url.rstrip("/")
        if not old_url or not new_url:
            raise ValidationError("Both old and new URLs are required")

        replacements = generate_url_replacements(old_url, new_url)
        old_path, new_path = url_path(old_url), url_path(new_url)
        if old_path and old_path != new_path:
            replacements[old_path] = new_path

        logger.info("url_replacement_started", old_url=old_url, new_url=new_url, pairs=len(replacements))

        db = await self.open_database()
        async with db:
            result = await self._engine(db).run_multiple(replacements, tables)
            await self._update_url_options(db, new_url)

        logger.info(
            "url_replacement_completed",
            rows=result.rows_processed,
            replacements=result.replacements_made,
        )
        return result

    async def _update_url_options(self, db: DatabaseConnection, new_url: str) -> None:
        table = f"{self.config.table_prefix}options"
        if table not in await db.list_tables():
            return
        q = db.dialect.quote_identifier
        p = db.dialect.placeholder
        for name in URL_OPTIONS:
            await db.execute(
                f"UPDATE {q(table)} SET {q('option_value')} = {p} WHERE {q('option_name')} = {p}",
                [new_url, name],
            )
        await db.commit()

    async def preview_url_replacement(self, old_url: str, new_url: str, limit: int = 50) -> DryRunResult:
        return await self.preview_search_replace(old_url.rstrip("/"), new_url.rstrip("/"), None, limit)

    async def preview_search_replace(
        self,
        search: str,
        replace: str,
        tables: Sequence[str] | None = None,
        limit: int = 50,
    ) -> DryRunResult:
        db = await self.open_database()
        async with db:
            return await self._engine(db).dry_run(search, replace, tables, limit)

    async def custom_search_replace(
        self,
        search: str,
        replace: str,
        tables: Sequence[str] | None = None,
    ) -> SearchReplaceResult:
        logger.info("custom_search_replace_started", search_length=len(search))
        db = await self.open_database()
        async with db:
            return await self._engine(db).run(search, replace, tables)

    async def analyze_backup(self, container: Path) -> Dict[str, Any] | None:
        """
        Describe what importing a container would do.

        Returns:
            The backup info, whether the URL changes, and warnings and
            recommendations; None if the container is unreadable
        """
        info = await self.restore_manager.get_backup_info(container)
        if info is None:
            return None

        backup_url = info.get("site_url") or ""
        current_url = self.config.site_url
        analysis: Dict[str, Any] = {
            "backup": info,
            "current_site": {"url": current_url, "home_url": self.config.home_url or current_url},
            "backup_url": backup_url,
            "url_change": backup_url.rstrip("/") != current_url.rstrip("/"),
            "warnings": [],
            "recommendations": [],
        }

        backup_version = (info.get("platform") or {}).get("sitekeeper") or info.get("version", "")
        if backup_version and _version_tuple(backup_version) > _version_tuple(__version__):
            analysis["warnings"].append(
                f"Backup was made by sitekeeper {backup_version}, but this is {__version__}. Consider upgrading first."
            )

        if analysis["url_change"]:
            analysis["recommendations"].append("URL replacement will be performed to update all references.")

        if info.get("file_size", 0) > LARGE_BACKUP_SIZE:
            analysis["warnings"].append("Large backup file. Import may take some time.")

        return analysis

    def validate_settings(self, settings: Dict[str, Any]) -> Dict[str, Any]:
        errors: List[str] = []
        warnings: List[str] = []
        old_url = settings.get("old_url") or ""
        new_url = settings.get("new_url") or ""

        if old_url and not _is_valid_url(old_url):
            errors.append("Old URL is not valid.")
        if new_url and not _is_valid_url(new_url):
            errors.append("New URL is not valid.")
        if old_url and new_url and old_url.rstrip("/") == new_url.rstrip("/"):
            warnings.append("Old and new URLs are the same. No URL replacement will be performed.")

        return {"valid": not errors, "errors": errors, "warnings": warnings}
