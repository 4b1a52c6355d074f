# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper File Scanner - Builds the filtered list of files to archive.
"""

import os
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, List, Sequence

import structlog

from sitekeeper.config import MB

logger = structlog.get_logger()

DEFAULT_EXCLUDES = [
    "*.log",
    "*.tmp",
    "*.swp",
    ".git",
    ".svn",
    "node_modules",
    "vendor",
    "wp-content/cache",
    "wp-content/debug.log",
    "error_log",
]

# Platform core installation, matched at the top of the site root only
CORE_PATTERNS = [
    "wp-admin",
    "wp-includes",
    "index.php",
    "license.txt",
    "readme.html",
    "wp-activate.php",
    "wp-blog-header.php",
    "wp-comments-post.php",
    "wp-config-sample.php",
    "wp-cron.php",
    "wp-links-opml.php",
    "wp-load.php",
    "wp-login.php",
    "wp-mail.php",
    "wp-settings.php",
    "wp-signup.php",
    "wp-trackback.php",
    "xmlrpc.php",
]

# Standard content directories relative to the site root
CONTENT_DIRECTORIES = {
    "plugins": "wp-content/plugins",
    "themes": "wp-content/themes",
    "uploads": "wp-content/uploads",
}


@dataclass(frozen=True)
class FileEntry:
    """A file selected for archiving."""

    path: str  # Absolute path on disk
    relative: str  # Archive name, relative to the site root
    size: int
    modified: float  # mtime, seconds since epoch


@dataclass
class FileList:
    """Output of a scan."""

    files: List[FileEntry] = field(default_factory=list)
    directories: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.files)

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)


@dataclass(frozen=True)
class FileSelection:
    """Which parts of the site a files backup covers."""

    core: bool = False
    plugins: bool = True
    themes: bool = True
    uploads: bool = True
    custom: Sequence[str] = ()
    exclude: Sequence[str] = ()


def matches_pattern(relative: str, pattern: str) -> bool:
    """
    Match a site-relative path against one exclusion pattern.

    Patterns containing "/" match that path or anything below it.
    Other patterns match any single path component by glob.
    """
    pattern = pattern.strip("/")
    if not pattern:
        return False
    if "/" in pattern:
        return relative == pattern or relative.startswith(pattern + "/") or fnmatch(relative, pattern)
    return any(fnmatch(part, pattern) for part in relative.split("/"))


class FileScanner:
    """
    Walk directories and keep the files that survive exclusion.

    Args:
        site_root: Root the archive names are relative to
        exclude_patterns: Added to DEFAULT_EXCLUDES
        include_core: Keep the platform's core installation files
        max_file_size: Skip files larger than this (0 disables the ceiling)
        output_dir: Backup output directory, always excluded
        core_patterns: Override for CORE_PATTERNS
    """

    def __init__(
        self,
        site_root: Path,
        *,
        exclude_patterns: Iterable[str] = (),
        include_core: bool = False,
        max_file_size: int = 500 * MB,
        output_dir: Path | None = None,
        core_patterns: Sequence[str] | None = None,
    ):
        self.site_root = Path(site_root).resolve()
        self.exclude_patterns = list(DEFAULT_EXCLUDES) + list(exclude_patterns)
        self.include_core = include_core
        self.max_file_size = max_file_size
        self.output_dir = Path(output_dir).resolve() if output_dir else None
        self.core_patterns = list(core_patterns if core_patterns is not None else CORE_PATTERNS)

    def backup_directories(self, selection: FileSelection) -> List[Path]:
        """
        Resolve the root directories a selection covers.

        Missing directories are dropped. The core flag selects the whole
        site root.
        """
        directories: List[Path] = []
        if selection.core:
            directories.append(self.site_root)
        for name, relative in CONTENT_DIRECTORIES.items():
            if getattr(selection, name):
                directories.append(self.site_root / relative)
        for custom in selection.custom:
            custom_path = Path(custom)
            directories.append(custom_path if custom_path.is_absolute() else self.site_root / custom_path)

        unique: List[Path] = []
        for directory in directories:
            if directory.is_dir() and directory not in unique:
                unique.append(directory)
        return unique

    def prepare_file_list(self, selection: FileSelection | None = None) -> FileList:
        """
        Scan the directories of a selection.

        Args:
            selection: Parts of the site to cover (default: FileSelection())

        Returns:
            FileList with files, count, total size and scanned directories
        """
        selection = selection or FileSelection()
        patterns = self.exclude_patterns + [p for p in selection.exclude if p not in self.exclude_patterns]
        directories = self.backup_directories(selection)
        file_list = self.get_file_list(
            directories,
            exclude_patterns=patterns,
            include_core=self.include_core or selection.core,
        )

        logger.info(
            "file_list_prepared",
            files=file_list.count,
            total_size=file_list.total_size,
            directories=len(directories),
        )

        return file_list

    def get_file_list(
        self,
        directories: Iterable[Path],
        *,
        exclude_patterns: Sequence[str] | None = None,
        include_core: bool | None = None,
    ) -> FileList:
        """Walk directories. Keyword arguments override the scanner's settings for this call."""
        patterns = self.exclude_patterns if exclude_patterns is None else list(exclude_patterns)
        core = self.include_core if include_core is None else include_core
        file_list = FileList()
        seen: set = set()

        for directory in directories:
            directory = Path(directory).resolve()
            file_list.directories.append(str(directory))

            for current, dirnames, filenames in os.walk(directory):
                current_path = Path(current)
                dirnames[:] = sorted(
                    d for d in dirnames
                    if not (current_path / d).is_symlink()
                    and not self.should_exclude(current_path / d, patterns, core)
                )

                for filename in sorted(filenames):
                    path = current_path / filename
                    if path.is_symlink() or str(path) in seen:
                        continue
                    if self.should_exclude(path, patterns, core):
                        continue

                    try:
                        stat = path.stat()
                    except OSError as e:
                        logger.warning("file_stat_failed", path=str(path), error=str(e))
                        continue

                    if self.max_file_size and stat.st_size > self.max_file_size:
                        logger.warning("large_file_skipped", path=str(path), size=stat.st_size)
                        continue

                    seen.add(str(path))
                    file_list.files.append(
                        FileEntry(
                            path=str(path),
                            relative=self.relative_path(path),
                            size=stat.st_size,
                            modified=stat.st_mtime,
                        )
                    )

        return file_list

    def should_exclude(
        self,
        path: Path,
        exclude_patterns: Sequence[str] | None = None,
        include_core: bool | None = None,
    ) -> bool:
        patterns = self.exclude_patterns if exclude_patterns is None else exclude_patterns
        core = self.include_core if include_core is None else include_core
        if self.output_dir and (path == self.output_dir or self.output_dir in path.parents):
            return True

        relative = self.relative_path(path)

        if not core and self._is_site_child(path):
            top = relative.split("/", 1)[0]
            if any(fnmatch(top, pattern) for pattern in self.core_patterns):
                return True

        return any(matches_pattern(relative, pattern) for pattern in patterns)

    def relative_path(self, path: Path) -> str:
        """Archive name for path: relative to the site root, else its basename."""
        if self._is_site_child(path):
            return path.relative_to(self.site_root).as_posix()
        return path.name

    def _is_site_child(self, path: Path) -> bool:
        return self.site_root in path.parents
