# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation to prevent
accidental modification while a backup or restore job is running.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List
from urllib.parse import urlparse

MB = 1024 * 1024


class BackupKind(str, Enum):
    """What a backup captures."""

    FULL = "full"  # Database + files
    DATABASE = "database"
    FILES = "files"


class Frequency(str, Enum):
    """How often a schedule fires."""

    HOURLY = "hourly"
    TWICE_DAILY = "twice_daily"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ReplayPolicy(str, Enum):
    """How a restore reacts to a failed dump statement."""

    STRICT = "strict"  # Abort on the first failure
    LENIENT = "lenient"  # Log a warning and keep replaying


class AdapterKind(str, Enum):
    """Storage backends available as backup destinations."""

    LOCAL = "local"
    S3 = "s3"


DEFAULT_SENSITIVE_KEYS = [
    "DB_NAME",
    "DB_USER",
    "DB_PASSWORD",
    "DB_HOST",
    "AUTH_KEY",
    "SECURE_AUTH_KEY",
    "LOGGED_IN_KEY",
    "NONCE_KEY",
    "AUTH_SALT",
    "SECURE_AUTH_SALT",
    "LOGGED_IN_SALT",
    "NONCE_SALT",
]


def _validate_url(url: str) -> bool:
    """Check for an absolute http(s) URL with a host."""
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


@dataclass(frozen=True)
class SitekeeperConfig:
    """
    Immutable configuration for backup, restore and migration.

    This configuration is frozen after creation so that a job started
    with one set of options sees the same options until it finishes.
    """

    # Required: root directory of the site's file tree
    site_root: Path

    # Canonical site URL (used in manifests and URL migration)
    site_url: str = ""

    # Public home URL when it differs from site_url
    home_url: str | None = None

    # Prefix shared by the site's database tables
    table_prefix: str = ""

    # Database to dump/restore: mysql://... or sqlite:///...
    database_url: str | None = None

    # Working directory for local backups, temp files and state
    work_dir: Path = field(default_factory=lambda: Path("./sitekeeper_work"))

    # Job/schedule database (default: <work_dir>/state.db)
    state_db_path: Path | None = None

    # Tables never dumped
    exclude_tables: List[str] = field(default_factory=list)

    # Extra file exclusion patterns on top of the defaults
    exclude_patterns: List[str] = field(default_factory=list)

    # Include the platform's core installation files
    include_core: bool = False

    # Files larger than this are skipped by the file archive
    max_file_size: int = 500 * MB

    # Files per chunk for stepwise archiving (clamped to 25..500)
    files_per_batch: int = 100

    # Rows per dump batch / multi-row insert
    rows_per_batch: int = 1000

    # Rows per search-and-replace page
    replace_rows_per_batch: int = 500

    # Zip deflate level 0-9
    compression_level: int = 6

    # Maximum container size in bytes (None: unlimited)
    size_limit: int | None = None

    # Reject early when the uncompressed estimate already exceeds size_limit
    size_precheck: bool = True

    # Part size used when a destination needs split containers
    split_size: int = 100 * MB

    # Failed-statement handling during database restore
    replay_policy: ReplayPolicy = ReplayPolicy.LENIENT

    # Where finished containers are uploaded
    destinations: List[AdapterKind] = field(default_factory=lambda: [AdapterKind.LOCAL])

    # Completed backups kept by the default retention policy
    retention_count: int = 5

    # Local destination directory (default: <work_dir>/storage)
    local_storage_path: Path | None = None

    # S3 destination
    s3_bucket: str | None = None
    s3_region: str = "us-east-1"
    s3_prefix: str = ""
    s3_endpoint_url: str | None = None

    # Single-request uploads up to this size, multipart above
    multipart_threshold: int = 100 * MB

    # Part size for multipart uploads
    multipart_chunk_size: int = 10 * MB

    # Site config files copied with secrets redacted
    config_files: List[str] = field(default_factory=lambda: ["wp-config.php"])

    # Keys whose values are redacted from config copies
    sensitive_keys: List[str] = field(default_factory=lambda: list(DEFAULT_SENSITIVE_KEYS))

    # Web-server config files copied verbatim
    webserver_files: List[str] = field(default_factory=lambda: [".htaccess", "robots.txt"])

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not str(self.site_root):
            errors.append("site_root is required")

        if self.site_url and not _validate_url(self.site_url):
            errors.append(f"Invalid site_url: {self.site_url}")

        if self.home_url and not _validate_url(self.home_url):
            errors.append(f"Invalid home_url: {self.home_url}")

        if self.rows_per_batch < 1:
            errors.append(f"rows_per_batch must be >= 1, got {self.rows_per_batch}")

        if self.replace_rows_per_batch < 1:
            errors.append(
                f"replace_rows_per_batch must be >= 1, got {self.replace_rows_per_batch}"
            )

        if self.files_per_batch < 1:
            errors.append(f"files_per_batch must be >= 1, got {self.files_per_batch}")

        if not 0 <= self.compression_level <= 9:
            errors.append(f"compression_level must be 0-9, got {self.compression_level}")

        if self.size_limit is not None and self.size_limit <= 0:
            errors.append(f"size_limit must be > 0, got {self.size_limit}")

        if self.split_size <= 0:
            errors.append(f"split_size must be > 0, got {self.split_size}")

        if self.max_file_size < 0:
            errors.append(f"max_file_size must be >= 0, got {self.max_file_size}")

        if self.retention_count < 1:
            errors.append(f"retention_count must be >= 1, got {self.retention_count}")

        # S3 requires parts of at least 5 MB except the last one
        if self.multipart_chunk_size < 5 * MB:
            errors.append(
                f"multipart_chunk_size must be >= 5MB, got {self.multipart_chunk_size}"
            )

        if not self.destinations:
            errors.append("At least one destination is required")

        if AdapterKind.S3 in self.destinations and not self.s3_bucket:
            errors.append("s3_bucket required when the s3 destination is enabled")

        if errors:
            from sitekeeper.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def backups_dir(self) -> Path:
        """Directory holding finished local containers."""
        return self.work_dir / "backups"

    @property
    def temp_dir(self) -> Path:
        """Directory for per-job scratch space."""
        return self.work_dir / "tmp"

    @property
    def resolved_state_db_path(self) -> Path:
        return self.state_db_path or self.work_dir / "state.db"

    @property
    def resolved_local_storage_path(self) -> Path:
        return self.local_storage_path or self.work_dir / "storage"

    def with_updates(self, **kwargs) -> "SitekeeperConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return SitekeeperConfig(**current)
