# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Database Restore - Replays a dump file statement by statement.

The dump is read line by line. Lines accumulate into a candidate
statement until a line outside any quoted literal ends with the ";"
terminator, and the statement is then executed. Comment lines are
skipped unless they fall inside a multi-line string literal.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List

import aiofiles
import structlog

from sitekeeper.config import ReplayPolicy
from sitekeeper.database.connection import DatabaseConnection
from sitekeeper.database.dump import TABLE_MARKER
from sitekeeper.exceptions import DataIOError, ReplayError

logger = structlog.get_logger()

MAX_RECORDED_ERRORS = 50
STATEMENT_PREVIEW = 100

_TABLE_MARKER_RE = re.compile(re.escape(TABLE_MARKER) + r"`((?:[^`]|``)+)`")

# (percent, table, index, total)
RestoreProgress = Callable[[int, str, int, int], Awaitable[None]]
Checkpoint = Callable[[], Awaitable[None]]


@dataclass
class ReplayResult:
    """Result of replaying a dump file."""

    statements: int = 0
    failed: int = 0
    tables: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class StatementReader:
    """
    Incremental splitter turning dump lines into complete statements.

    Tracks quote state across lines so a ";" or "--" inside a string
    literal never ends or drops part of a statement.
    """

    def __init__(self, backslash_escapes: bool = True):
        self._backslash = backslash_escapes
        self._parts: List[str] = []
        self._quote: str | None = None

    @property
    def in_literal(self) -> bool:
        return self._quote is not None

    @property
    def pending(self) -> str:
        return "".join(self._parts).strip()

    def feed(self, line: str) -> str | None:
        """
        Consume one line.

        Returns:
            The completed statement, or None if more lines are needed
        """
        if self._quote is None:
            stripped = line.strip()
            if not stripped or stripped.startswith(("--", "#")):
                return None
            if stripped.startswith("/*!") and "*/" not in stripped:
                return None

        self._parts.append(line)
        self._scan(line)

        if self._quote is None and line.rstrip().endswith(";"):
            statement = "".join(self._parts).strip()
            self._parts = []
            return statement
        return None

    def _scan(self, line: str) -> None:
        i = 0
        length = len(line)
        while i < length:
            ch = line[i]
            if self._quote is not None:
                if self._backslash and ch == "\\":
                    i += 2
                    continue
                if ch == self._quote:
                    if i + 1 < length and line[i + 1] == self._quote:
                        i += 2
                        continue
                    self._quote = None
            elif ch in ("'", '"', "`"):
                self._quote = ch
            i += 1


async def count_dump_tables(path: Path) -> int:
    """Count table sections in a dump file without executing anything."""
    count = 0
    async with aiofiles.open(path, "r", encoding="utf-8", newline="") as handle:
        async for line in handle:
            if line.startswith(TABLE_MARKER):
                count += 1
    return count


class DatabaseRestorer:
    """
    Replay a dump file into a database.

    Args:
        db: Target database
        policy: LENIENT logs failed statements and continues,
                STRICT raises ReplayError on the first failure
    """

    def __init__(self, db: DatabaseConnection, policy: ReplayPolicy = ReplayPolicy.LENIENT):
        self._db = db
        self._policy = policy

    async def restore(
        self,
        path: Path,
        progress: RestoreProgress | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> ReplayResult:
        """
        Replay path into the database.

        Referential checks are disabled for the duration of the replay and
        re-enabled afterwards, whatever the outcome.

        Args:
            path: Dump file written by DatabaseDumper
            progress: Awaited after each table section is replayed
            checkpoint: Awaited at each table boundary; raise to stop

        Returns:
            ReplayResult with executed and failed statement counts

        Raises:
            DataIOError: If the dump cannot be read
            ReplayError: On a failed statement under the STRICT policy
        """
        if not path.is_file():
            raise DataIOError(f"Dump file not found: {path}", details={"path": str(path)})

        dialect = self._db.dialect
        reader = StatementReader(backslash_escapes=dialect.backslash_escapes)
        result = ReplayResult()
        total_tables = await count_dump_tables(path)
        current: str | None = None

        logger.info("database_restore_started", path=str(path), tables=total_tables)

        await self._db.execute(dialect.disable_constraints)
        try:
            try:
                async with aiofiles.open(path, "r", encoding="utf-8", newline="") as handle:
                    async for line in handle:
                        if not reader.in_literal:
                            match = _TABLE_MARKER_RE.match(line)
                            if match:
                                if current is not None:
                                    await self._table_done(current, result, total_tables, progress)
                                if checkpoint:
                                    await checkpoint()
                                current = match.group(1).replace("``", "`")

                        statement = reader.feed(line)
                        if statement is not None:
                            await self._execute(statement, result)
            except (OSError, UnicodeDecodeError) as e:
                raise DataIOError(
                    f"Failed to read dump file: {e}",
                    details={"path": str(path)},
                ) from e

            if reader.pending:
                await self._execute(reader.pending, result)

            if current is not None:
                await self._table_done(current, result, total_tables, progress)

            await self._db.commit()

        finally:
            try:
                await self._db.execute(dialect.enable_constraints)
            except Exception as e:
                logger.warning("restore_constraints_not_reenabled", error=str(e))

        logger.info(
            "database_restore_completed",
            statements=result.statements,
            failed=result.failed,
            tables=len(result.tables),
        )

        return result

    async def _table_done(
        self,
        table: str,
        result: ReplayResult,
        total: int,
        progress: RestoreProgress | None,
    ) -> None:
        result.tables.append(table)
        if progress:
            index = len(result.tables)
            await progress(int(index / max(total, 1) * 100), table, index, total)

    async def _execute(self, statement: str, result: ReplayResult) -> None:
        try:
            await self._db.execute(statement)
            result.statements += 1
        except Exception as e:
            result.failed += 1
            preview = statement[:STATEMENT_PREVIEW]

            if self._policy is ReplayPolicy.STRICT:
                raise ReplayError(
                    f"Statement failed during restore: {e}",
                    details={"statement": preview},
                ) from e

            logger.warning("restore_statement_failed", statement=preview, error=str(e))
            if len(result.errors) < MAX_RECORDED_ERRORS:
                result.errors.append(f"{preview}: {e}")
