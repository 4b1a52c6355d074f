# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Database Engine - Chunked dump and line-oriented replay.
"""

from sitekeeper.database.connection import (
    ColumnInfo,
    DatabaseConnection,
    MySQLConnection,
    SQLiteConnection,
    driver_errors,
    open_database,
)
from sitekeeper.database.dump import DatabaseDumper, DumpResult, verify_dump
from sitekeeper.database.restore import (
    DatabaseRestorer,
    ReplayResult,
    StatementReader,
)

__all__ = [
    # Connections
    "ColumnInfo",
    "DatabaseConnection",
    "MySQLConnection",
    "SQLiteConnection",
    "driver_errors",
    "open_database",
    # Dump
    "DatabaseDumper",
    "DumpResult",
    "verify_dump",
    # Restore
    "DatabaseRestorer",
    "ReplayResult",
    "StatementReader",
]
