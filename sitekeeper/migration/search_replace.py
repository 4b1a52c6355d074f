# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Search and Replace - Rewrites text columns across tables.

For each table the engine resolves the primary key and the text columns,
pages through rows in fixed batches ordered by the key, and applies the
recursive rewrite to every value that contains the search string. A row
with at least one changed column is written back with a single UPDATE.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Sequence
from urllib.parse import quote_plus, urlparse

import structlog

from sitekeeper.database.connection import DatabaseConnection
from sitekeeper.exceptions import ValidationError
from sitekeeper.migration.serialized import recursive_rewrite

logger = structlog.get_logger()

ROWS_PER_BATCH = 500
PREVIEW_LENGTH = 200
LIKE_ESCAPE = "!"

# (percent, table, index, total)
ReplaceProgress = Callable[[int, str, int, int], Awaitable[None]]


@dataclass
class TableReport:
    """Counts for one table."""

    rows: int = 0  # Rows scanned
    changes: int = 0  # Columns rewritten
    skipped: str | None = None  # Reason the table was not processed


@dataclass
class SearchReplaceResult:
    """Aggregate counts of a search-and-replace run."""

    rows_processed: int = 0
    replacements_made: int = 0
    tables: Dict[str, TableReport] = field(default_factory=dict)

    def add(self, table: str, report: TableReport) -> None:
        self.rows_processed += report.rows
        self.replacements_made += report.changes
        existing = self.tables.get(table)
        if existing is None:
            self.tables[table] = TableReport(report.rows, report.changes, report.skipped)
        else:
            existing.rows += report.rows
            existing.changes += report.changes


@dataclass
class PreviewMatch:
    table: str
    column: str
    row_id: Any
    before: str
    after: str


@dataclass
class DryRunResult:
    total_matches: int = 0
    preview: List[PreviewMatch] = field(default_factory=list)
    truncated: bool = False


def _truncate(value: str, length: int = PREVIEW_LENGTH) -> str:
    if len(value) <= length:
        return value
    return value[:length] + "..."


def _escape_like(value: str) -> str:
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def generate_url_replacements(old_url: str, new_url: str) -> Dict[str, str]:
    """
    Expand one URL change into the literal pairs stored data may contain.

    Covers the bare URL, the protocol-stripped form, the JSON-escaped
    ("\\/") form, the URL-encoded form, and the www/non-www variant.

    Args:
        old_url: URL being replaced
        new_url: Replacement URL

    Returns:
        Ordered mapping of search string to replacement
    """
    replacements: Dict[str, str] = {}
    replacements[old_url] = new_url

    old_bare = _strip_protocol(old_url)
    new_bare = _strip_protocol(new_url)
    replacements[old_bare] = new_bare

    replacements[old_url.replace("/", "\\/")] = new_url.replace("/", "\\/")
    replacements[quote_plus(old_url, safe="")] = quote_plus(new_url, safe="")

    old_with_www = _with_www(old_url)
    old_without_www = _without_www(old_url)
    if old_with_www != old_url:
        replacements[old_with_www] = _with_www(new_url)
    if old_without_www != old_url:
        replacements[old_without_www] = _without_www(new_url)

    return replacements


def _strip_protocol(url: str) -> str:
    for prefix in ("https://", "http://"):
        if url.startswith(prefix):
            return url[len(prefix):]
    return url


def _with_www(url: str) -> str:
    for prefix in ("https://", "http://"):
        if url.startswith(prefix) and not url.startswith(prefix + "www."):
            return prefix + "www." + url[len(prefix):]
    return url


def _without_www(url: str) -> str:
    for prefix in ("https://", "http://"):
        if url.startswith(prefix + "www."):
            return prefix + url[len(prefix) + 4:]
    return url


def url_path(url: str) -> str:
    return urlparse(url).path or ""


class SearchReplaceEngine:
    """
    Serialization-aware search and replace over a database.

    Args:
        db: Database to rewrite
        rows_per_batch: Rows fetched per page
        exclude_tables: Tables never touched
    """

    def __init__(
        self,
        db: DatabaseConnection,
        rows_per_batch: int = ROWS_PER_BATCH,
        exclude_tables: Sequence[str] = (),
    ):
        self._db = db
        self._rows_per_batch = max(1, rows_per_batch)
        self._exclude = set(exclude_tables)

    async def _tables(self, tables: Sequence[str] | None) -> List[str]:
        available = await self._db.list_tables()
        if tables:
            unknown = [t for t in tables if t not in available]
            if unknown:
                logger.warning("search_replace_unknown_tables", tables=unknown)
            return [t for t in tables if t in available and t not in self._exclude]
        return [t for t in available if t not in self._exclude]

    async def _layout(self, table: str) -> tuple[str | None, List[str], str | None]:
        """Primary key, rewritable text columns, and a skip reason."""
        primary_key = await self._db.primary_key(table)
        if not primary_key:
            return None, [], "no single-column primary key"
        text_columns = [
            c.name for c in await self._db.columns(table)
            if c.is_text and c.name != primary_key
        ]
        if not text_columns:
            return primary_key, [], "no text columns"
        return primary_key, text_columns, None

    async def run(
        self,
        search: str,
        replace: str,
        tables: Sequence[str] | None = None,
        progress: ReplaceProgress | None = None,
    ) -> SearchReplaceResult:
        """
        Replace search with replace in every text column.

        Args:
            search: Literal search string (must be non-empty)
            replace: Literal replacement
            tables: Restrict to these tables (default: all)
            progress: Awaited after each table

        Returns:
            SearchReplaceResult with per-table and aggregate counts

        Raises:
            ValidationError: If search is empty
        """
        if not search:
            raise ValidationError("Search string cannot be empty")

        result = SearchReplaceResult()
        table_names = await self._tables(tables)

        logger.info("search_replace_started", tables=len(table_names), search_length=len(search))

        for index, table in enumerate(table_names, start=1):
            report = await self.process_table(table, search, replace)
            result.add(table, report)
            if progress:
                await progress(int(index / len(table_names) * 100), table, index, len(table_names))

        await self._db.commit()

        logger.info(
            "search_replace_completed",
            rows=result.rows_processed,
            replacements=result.replacements_made,
        )

        return result

    async def run_multiple(
        self,
        replacements: Dict[str, str],
        tables: Sequence[str] | None = None,
        progress: ReplaceProgress | None = None,
    ) -> SearchReplaceResult:
        """
        Run an ordered replacement set, one pass per pair.

        Pairs with an empty search string or identical sides are skipped.
        """
        total = SearchReplaceResult()
        applied: List[str] = []

        for search, replace in replacements.items():
            if not search or search == replace:
                continue
            if any(search in earlier for earlier in applied):
                logger.warning("search_replace_overlapping_pair", search=search)

            result = await self.run(search, replace, tables, progress)
            for table, report in result.tables.items():
                total.add(table, report)
            applied.append(replace)

        return total

    async def process_table(self, table: str, search: str, replace: str) -> TableReport:
        """Scan one table page by page and persist changed rows."""
        primary_key, text_columns, skipped = await self._layout(table)
        report = TableReport(skipped=skipped)
        if skipped:
            logger.debug("search_replace_table_skipped", table=table, reason=skipped)
            return report

        q = self._db.dialect.quote_identifier
        placeholder = self._db.dialect.placeholder
        offset = 0

        while True:
            rows = await self._db.fetch_batch(
                table,
                self._rows_per_batch,
                offset,
                order_by=primary_key,
                columns=[primary_key, *text_columns],
            )
            if not rows:
                break

            for row in rows:
                report.rows += 1
                changes: Dict[str, str] = {}
                for column in text_columns:
                    value = row.get(column)
                    if not isinstance(value, str) or search not in value:
                        continue
                    rewritten = recursive_rewrite(value, search, replace)
                    if rewritten != value:
                        changes[column] = rewritten

                if changes:
                    assignments = ", ".join(f"{q(c)} = {placeholder}" for c in changes)
                    await self._db.execute(
                        f"UPDATE {q(table)} SET {assignments} WHERE {q(primary_key)} = {placeholder}",
                        [*changes.values(), row[primary_key]],
                    )
                    report.changes += len(changes)

            offset += len(rows)
            if len(rows) < self._rows_per_batch:
                break

        logger.debug("search_replace_table_done", table=table, rows=report.rows, changes=report.changes)
        return report

    async def dry_run(
        self,
        search: str,
        replace: str,
        tables: Sequence[str] | None = None,
        limit: int = 50,
    ) -> DryRunResult:
        """
        Preview a replacement without writing anything.

        Args:
            search: Literal search string (must be non-empty)
            replace: Literal replacement
            tables: Restrict to these tables (default: all)
            limit: Maximum previews returned

        Returns:
            DryRunResult with the number of matching values, up to limit
            before/after previews, and whether previews were truncated

        Raises:
            ValidationError: If search is empty
        """
        if not search:
            raise ValidationError("Search string cannot be empty")

        result = DryRunResult()
        q = self._db.dialect.quote_identifier
        placeholder = self._db.dialect.placeholder
        pattern = "%" + _escape_like(search) + "%"

        for table in await self._tables(tables):
            primary_key, text_columns, skipped = await self._layout(table)
            if skipped:
                continue

            where = " OR ".join(
                f"{q(c)} LIKE {placeholder} ESCAPE '{LIKE_ESCAPE}'" for c in text_columns
            )
            selected = ", ".join(q(c) for c in [primary_key, *text_columns])
            offset = 0

            while True:
                rows = await self._db.fetch_all(
                    f"SELECT {selected} FROM {q(table)} WHERE {where} "
                    f"ORDER BY {q(primary_key)} LIMIT {self._rows_per_batch} OFFSET {offset}",
                    [pattern] * len(text_columns),
                )
                if not rows:
                    break

                for row in rows:
                    for column in text_columns:
                        value = row.get(column)
                        # LIKE may be case-insensitive; the rewrite is not
                        if not isinstance(value, str) or search not in value:
                            continue
                        result.total_matches += 1
                        if len(result.preview) < limit:
                            result.preview.append(
                                PreviewMatch(
                                    table=table,
                                    column=column,
                                    row_id=row[primary_key],
                                    before=_truncate(value),
                                    after=_truncate(recursive_rewrite(value, search, replace)),
                                )
                            )

                offset += len(rows)
                if len(rows) < self._rows_per_batch:
                    break

        result.truncated = result.total_matches > len(result.preview)
        return result
