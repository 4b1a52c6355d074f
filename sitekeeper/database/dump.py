# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Database Dump - Streams a full relational dump to a text file.

Tables are written one at a time and their rows fetched in fixed-size
batches, so memory use is bounded by one batch regardless of table size.
Each batch becomes a single multi-row INSERT statement.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Sequence

import aiofiles
import structlog

from sitekeeper import __version__
from sitekeeper.database.connection import ColumnInfo, DatabaseConnection, driver_errors
from sitekeeper.exceptions import DataIOError, SitekeeperError

logger = structlog.get_logger()

ROWS_PER_BATCH = 1000
HEADER_MARKER = "-- Sitekeeper Database Backup"
END_MARKER = "-- End of backup"
TABLE_MARKER = "-- Table structure for table "

# (percent, table, index, total)
DumpProgress = Callable[[int, str, int, int], Awaitable[None]]
Checkpoint = Callable[[], Awaitable[None]]


@dataclass
class DumpResult:
    """Result of a database dump."""

    path: Path
    size: int
    tables: List[str] = field(default_factory=list)
    rows: int = 0


class DatabaseDumper:
    """
    Write a replayable SQL dump of every table in a database.

    Args:
        db: Source database
        rows_per_batch: Rows fetched and written per INSERT
        exclude_tables: Tables to leave out
        site_url: Recorded in the header for reference
        table_prefix: Recorded in the header for reference
    """

    def __init__(
        self,
        db: DatabaseConnection,
        *,
        rows_per_batch: int = ROWS_PER_BATCH,
        exclude_tables: Sequence[str] = (),
        site_url: str = "",
        table_prefix: str = "",
    ):
        self._db = db
        self._rows_per_batch = max(1, rows_per_batch)
        self._exclude = set(exclude_tables)
        self._site_url = site_url
        self._table_prefix = table_prefix

    async def tables(self) -> List[str]:
        return [t for t in await self._db.list_tables() if t not in self._exclude]

    async def dump(
        self,
        output: Path,
        progress: DumpProgress | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> DumpResult:
        """
        Dump all tables to output.

        The file is written to a temp path and renamed into place, so a
        failed dump never leaves a truncated file at output.

        Args:
            output: Destination .sql file
            progress: Awaited after each table
            checkpoint: Awaited before each batch; raise to stop the dump

        Returns:
            DumpResult with table names, row count and file size
        """
        output.parent.mkdir(parents=True, exist_ok=True)
        temp_path = output.with_name(output.name + ".tmp")
        result = DumpResult(path=output, size=0)

        try:
            tables = await self.tables()
            logger.info("database_dump_started", tables=len(tables), output=str(output))

            async with aiofiles.open(temp_path, "w", encoding="utf-8", newline="\n") as out:
                await out.write(await self._header())

                for index, table in enumerate(tables, start=1):
                    result.rows += await self._dump_table(out, table, checkpoint)
                    result.tables.append(table)

                    if progress:
                        percent = int(index / len(tables) * 100)
                        await progress(percent, table, index, len(tables))

                await out.write(self._footer())

            temp_path.replace(output)

        except SitekeeperError:
            temp_path.unlink(missing_ok=True)
            raise
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise DataIOError(
                f"Failed to write database dump: {e}",
                details={"output": str(output)},
            ) from e
        except driver_errors() as e:
            temp_path.unlink(missing_ok=True)
            raise DataIOError(
                f"Database read failed during dump: {e}",
                details={"output": str(output)},
            ) from e

        result.size = output.stat().st_size

        logger.info(
            "database_dump_completed",
            tables=len(result.tables),
            rows=result.rows,
            size=result.size,
        )

        return result

    async def _header(self) -> str:
        dialect = self._db.dialect
        lines = [
            HEADER_MARKER,
            f"-- Generated: {datetime.now(UTC).strftime('%Y-%m-%d %H:%M:%S')} UTC",
            f"-- Sitekeeper Version: {__version__}",
            f"-- Server Version: {await self._db.server_version()}",
            f"-- Site URL: {self._site_url}",
            f"-- Table Prefix: {self._table_prefix}",
            "",
            *dialect.header_statements,
            "",
            "",
        ]
        return "\n".join(lines)

    def _footer(self) -> str:
        lines = ["", *self._db.dialect.footer_statements, "", END_MARKER, ""]
        return "\n".join(lines)

    async def _dump_table(self, out: Any, table: str, checkpoint: Checkpoint | None) -> int:
        dialect = self._db.dialect
        q = dialect.quote_identifier
        create = (await self._db.create_statement(table)).strip().rstrip(";")

        await out.write(
            "--\n"
            f"{TABLE_MARKER}{q(table)}\n"
            "--\n\n"
            f"DROP TABLE IF EXISTS {q(table)};\n"
            f"{create};\n\n"
        )

        columns = await self._db.columns(table)
        order_by = await self._db.primary_key(table)
        total_rows = 0
        offset = 0
        wrote_data_header = False

        while True:
            if checkpoint:
                await checkpoint()

            rows = await self._db.fetch_batch(table, self._rows_per_batch, offset, order_by)
            if not rows:
                break

            if not wrote_data_header:
                await out.write(f"--\n-- Dumping data for table {q(table)}\n--\n\n")
                if dialect.key_toggles:
                    await out.write(f"/*!40000 ALTER TABLE {q(table)} DISABLE KEYS */;\n")
                wrote_data_header = True

            await out.write(self._insert_statement(table, columns, rows))

            total_rows += len(rows)
            offset += len(rows)
            if len(rows) < self._rows_per_batch:
                break

        if wrote_data_header and dialect.key_toggles:
            await out.write(f"/*!40000 ALTER TABLE {q(table)} ENABLE KEYS */;\n")

        for statement in await self._db.extra_statements(table):
            await out.write(statement.strip().rstrip(";") + ";\n")

        await out.write("\n")

        logger.debug("table_dumped", table=table, rows=total_rows)
        return total_rows

    def _insert_statement(
        self,
        table: str,
        columns: List[ColumnInfo],
        rows: List[Dict[str, Any]],
    ) -> str:
        dialect = self._db.dialect
        q = dialect.quote_identifier
        column_list = ", ".join(q(c.name) for c in columns)
        values = []
        for row in rows:
            rendered = ", ".join(dialect.literal(row.get(c.name), c.is_numeric) for c in columns)
            values.append(f"({rendered})")
        return f"INSERT INTO {q(table)} ({column_list}) VALUES\n" + ",\n".join(values) + ";\n"


async def verify_dump(path: Path) -> bool:
    """
    Check that a dump file has the header marker and was written to the end.

    Args:
        path: Dump file

    Returns:
        True if both the header and the end-of-backup marker are present
    """
    if not path.exists():
        return False

    async with aiofiles.open(path, "rb") as f:
        head = await f.read(len(HEADER_MARKER) + 16)
        size = path.stat().st_size
        await f.seek(max(0, size - 64))
        tail = await f.read()

    return head.startswith(HEADER_MARKER.encode()) and END_MARKER.encode() in tail
