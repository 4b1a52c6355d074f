# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
File Archive Engine - Filtered scanning and chunked zip archiving.
"""

from sitekeeper.files.archive import (
    ArchiveResult,
    ChunkResult,
    FileArchiver,
    sanitize_config,
    stage_special_files,
)
from sitekeeper.files.scanner import (
    FileEntry,
    FileList,
    FileScanner,
    FileSelection,
)

__all__ = [
    # Scanner
    "FileEntry",
    "FileList",
    "FileScanner",
    "FileSelection",
    # Archive
    "ArchiveResult",
    "ChunkResult",
    "FileArchiver",
    "sanitize_config",
    "stage_special_files",
]
