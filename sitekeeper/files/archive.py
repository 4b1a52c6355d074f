# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper File Archive - Packs a file list into a zip container.

Two modes are offered:
1. backup() - one call, periodically closing and reopening the zip so
   the in-memory central directory and buffers stay small
2. backup_chunk() - one bounded step per call, so an external loop can
   interleave archiving with other work and resume after interruption

Zip writing is CPU-bound and runs in a thread pool.
"""

import asyncio
import re
import shutil
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Sequence

import structlog

from sitekeeper.exceptions import DataIOError
from sitekeeper.files.scanner import FileEntry

logger = structlog.get_logger()

# Thread pool for zip writing
_executor = ThreadPoolExecutor(max_workers=2)

REOPEN_EVERY = 500
PROGRESS_EVERY = 50
MIN_CHUNK_SIZE = 25
MAX_CHUNK_SIZE = 500
REDACTED = "REPLACE_ME"

# (percent, relative name, processed, total)
ArchiveProgress = Callable[[int, str, int, int], Awaitable[None]]


@dataclass
class ArchiveResult:
    """Result of a one-shot file archive."""

    path: Path
    added: int = 0
    skipped: List[str] = field(default_factory=list)
    size: int = 0


@dataclass
class ChunkResult:
    """Result of one chunked archiving step."""

    completed: bool
    next_chunk: int | None
    total_chunks: int
    processed: int
    skipped: List[str] = field(default_factory=list)


def clamp_chunk_size(chunk_size: int) -> int:
    return max(MIN_CHUNK_SIZE, min(MAX_CHUNK_SIZE, chunk_size))


def _add_files(
    output: Path,
    files: Sequence[FileEntry],
    mode: str,
    compression_level: int,
) -> List[str]:
    """Write files into a zip opened with mode; return names that failed."""
    skipped: List[str] = []
    with zipfile.ZipFile(
        output,
        mode,
        compression=zipfile.ZIP_DEFLATED,
        compresslevel=compression_level,
        allowZip64=True,
    ) as zf:
        for entry in files:
            try:
                zf.write(entry.path, entry.relative)
            except OSError as e:
                skipped.append(entry.relative)
                logger.warning("archive_add_failed", file=entry.path, error=str(e))
    return skipped


class FileArchiver:
    """
    Archive FileEntry lists into zip files.

    Args:
        compression_level: Deflate level 0-9
        reopen_every: Entries written before the zip is closed and reopened
    """

    def __init__(self, compression_level: int = 6, reopen_every: int = REOPEN_EVERY):
        self.compression_level = compression_level
        self.reopen_every = max(1, reopen_every)

    async def backup(
        self,
        files: Sequence[FileEntry],
        output: Path,
        progress: ArchiveProgress | None = None,
    ) -> ArchiveResult:
        """
        Archive every file into a new zip at output.

        Unreadable files are logged and skipped; the archive still
        completes with the rest.

        Args:
            files: Files to archive
            output: Zip path, overwritten if present
            progress: Awaited every PROGRESS_EVERY files

        Returns:
            ArchiveResult with counts and final size
        """
        loop = asyncio.get_running_loop()
        result = ArchiveResult(path=output)
        total = len(files)

        logger.info("file_archive_started", files=total, output=str(output))

        try:
            output.parent.mkdir(parents=True, exist_ok=True)
            # Create (or truncate) so every batch below can append
            await loop.run_in_executor(
                _executor, _add_files, output, [], "w", self.compression_level
            )

            processed = 0
            for start in range(0, total, self.reopen_every):
                batch = list(files[start:start + self.reopen_every])
                skipped = await loop.run_in_executor(
                    _executor, _add_files, output, batch, "a", self.compression_level
                )
                result.skipped.extend(skipped)

                for entry in batch:
                    processed += 1
                    if progress and processed % PROGRESS_EVERY == 0:
                        await progress(int(processed / total * 100), entry.relative, processed, total)

        except (OSError, zipfile.BadZipFile) as e:
            raise DataIOError(
                f"Failed to create file archive: {e}",
                details={"output": str(output)},
            ) from e

        result.added = total - len(result.skipped)
        result.size = output.stat().st_size

        logger.info(
            "file_archive_completed",
            files=result.added,
            skipped=len(result.skipped),
            size=result.size,
        )

        return result

    async def backup_chunk(
        self,
        files: Sequence[FileEntry],
        output: Path,
        chunk_index: int = 0,
        chunk_size: int = 100,
    ) -> ChunkResult:
        """
        Archive one chunk of files.

        Chunk 0 creates (or truncates) the zip; later chunks append to it.
        Running chunks 0..total_chunks-1 in order yields the same entry
        list as backup() over the same files.

        Args:
            files: The full file list (the same list on every call)
            output: Zip path
            chunk_index: Chunk to write
            chunk_size: Files per chunk, clamped to 25..500

        Returns:
            ChunkResult telling the caller whether to continue

        Raises:
            DataIOError: If the zip cannot be opened or written
        """
        chunk_size = clamp_chunk_size(chunk_size)
        total = len(files)
        total_chunks = -(-total // chunk_size)
        start = chunk_index * chunk_size
        chunk = list(files[start:start + chunk_size])

        if not chunk and chunk_index > 0:
            return ChunkResult(
                completed=True,
                next_chunk=None,
                total_chunks=total_chunks,
                processed=total,
            )

        mode = "w" if chunk_index == 0 else "a"
        loop = asyncio.get_running_loop()

        try:
            output.parent.mkdir(parents=True, exist_ok=True)
            skipped = await loop.run_in_executor(
                _executor, _add_files, output, chunk, mode, self.compression_level
            )
        except (OSError, zipfile.BadZipFile) as e:
            logger.error("chunk_archive_failed", chunk=chunk_index, error=str(e))
            raise DataIOError(
                f"Failed to archive chunk {chunk_index}: {e}",
                details={"output": str(output), "chunk_index": chunk_index},
            ) from e

        next_chunk = chunk_index + 1
        completed = next_chunk >= total_chunks

        logger.debug(
            "chunk_archived",
            chunk=chunk_index,
            total_chunks=total_chunks,
            files=len(chunk),
        )

        return ChunkResult(
            completed=completed,
            next_chunk=None if completed else next_chunk,
            total_chunks=total_chunks,
            processed=min(start + chunk_size, total),
            skipped=skipped,
        )


def sanitize_config(content: str, sensitive_keys: Sequence[str]) -> str:
    """
    Redact secret values from a site config file.

    Handles PHP define('KEY', 'value'); constants and KEY=value lines.
    """
    for key in sensitive_keys:
        name = re.escape(key)
        content = re.sub(
            r"define\s*\(\s*['\"]" + name + r"['\"]\s*,\s*(['\"]).*?\1\s*\)\s*;",
            f"define( '{key}', '{REDACTED}' );",
            content,
            flags=re.DOTALL,
        )
        content = re.sub(
            r"^(\s*(?:export\s+)?" + name + r"\s*=).*$",
            r"\g<1>" + REDACTED,
            content,
            flags=re.MULTILINE,
        )
    return content


def stage_special_files(
    site_root: Path,
    dest: Path,
    config_files: Sequence[str],
    sensitive_keys: Sequence[str],
    webserver_files: Sequence[str],
) -> List[Path]:
    """
    Copy config and web-server files that live outside the content tree.

    Config files get their secrets replaced with REPLACE_ME; web-server
    files are copied verbatim.

    Args:
        site_root: Site root holding the files
        dest: Staging directory
        config_files: Names of config files to sanitize
        sensitive_keys: Keys to redact
        webserver_files: Names of files to copy as-is

    Returns:
        Paths of the staged copies
    """
    staged: List[Path] = []

    for name in config_files:
        source = site_root / name
        if not source.is_file():
            continue
        target = dest / "config" / name
        target.parent.mkdir(parents=True, exist_ok=True)
        content = source.read_text(encoding="utf-8", errors="replace")
        target.write_text(sanitize_config(content, sensitive_keys), encoding="utf-8")
        staged.append(target)

    for name in webserver_files:
        source = site_root / name
        if not source.is_file():
            continue
        target = dest / "webserver" / name
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
        staged.append(target)

    logger.debug("special_files_staged", count=len(staged))
    return staged
