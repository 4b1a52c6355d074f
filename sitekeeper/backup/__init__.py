# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup - Job-driven backup orchestration and restore.
"""

from sitekeeper.backup.manager import BackupManager, BackupOptions, backup_filename
from sitekeeper.backup.restore import RestoreManager, RestoreOptions, RestoreReport

__all__ = [
    "BackupManager",
    "BackupOptions",
    "backup_filename",
    "RestoreManager",
    "RestoreOptions",
    "RestoreReport",
]
