# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Migration - Serialization-aware search and replace, and URL migration.
"""

from sitekeeper.migration.migrator import MigrateOptions, MigrationResult, Migrator
from sitekeeper.migration.search_replace import (
    DryRunResult,
    PreviewMatch,
    SearchReplaceEngine,
    SearchReplaceResult,
    TableReport,
    generate_url_replacements,
)
from sitekeeper.migration.serialized import (
    SerializedFormatError,
    dumps,
    is_serialized,
    loads,
    parse,
    recursive_rewrite,
)

__all__ = [
    # Codec
    "SerializedFormatError",
    "loads",
    "parse",
    "dumps",
    "is_serialized",
    "recursive_rewrite",
    # Engine
    "SearchReplaceEngine",
    "SearchReplaceResult",
    "TableReport",
    "DryRunResult",
    "PreviewMatch",
    "generate_url_replacements",
    # Migration
    "Migrator",
    "MigrateOptions",
    "MigrationResult",
]
