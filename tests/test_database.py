# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for the database dump and replay engine.
"""

from pathlib import Path

import pytest

from sitekeeper.config import ReplayPolicy
from sitekeeper.database import (
    DatabaseDumper,
    DatabaseRestorer,
    StatementReader,
    open_database,
    verify_dump,
)
from sitekeeper.database.connection import MYSQL, SQLITE
from sitekeeper.database.dump import END_MARKER, HEADER_MARKER
from sitekeeper.exceptions import (
    ConfigurationError,
    DataIOError,
    JobCancelledError,
    ReplayError,
)

from tests.conftest import OLD_URL, read_rows


async def dump_to(db_path: Path, output: Path, **kwargs):
    db = await open_database(f"sqlite:///{db_path}")
    async with db:
        return await DatabaseDumper(db, **kwargs).dump(output)


# ============================================================================
# Dump
# ============================================================================


@pytest.mark.asyncio
async def test_dump_writes_header_tables_and_end_marker(site_db: Path, temp_dir: Path):
    """A dump starts with the header and ends with the end marker."""
    output = temp_dir / "database.sql"
    result = await dump_to(site_db, output, site_url=OLD_URL, table_prefix="wp_")

    assert result.tables == ["wp_options", "wp_posts"]
    assert result.rows == 7
    assert result.size == output.stat().st_size

    content = output.read_text()
    assert content.startswith(HEADER_MARKER)
    assert END_MARKER in content
    assert f"-- Site URL: {OLD_URL}" in content
    assert "DROP TABLE IF EXISTS `wp_posts`;" in content
    assert "CREATE INDEX idx_posts_title" in content
    assert await verify_dump(output)


@pytest.mark.asyncio
async def test_dump_respects_excluded_tables(site_db: Path, temp_dir: Path):
    result = await dump_to(site_db, temp_dir / "out.sql", exclude_tables=["wp_posts"])
    assert result.tables == ["wp_options"]
    assert "wp_posts" not in (temp_dir / "out.sql").read_text()


@pytest.mark.asyncio
async def test_dump_in_small_batches(site_db: Path, temp_dir: Path):
    """Every batch becomes its own INSERT statement."""
    output = temp_dir / "out.sql"
    await dump_to(site_db, output, rows_per_batch=2)
    assert output.read_text().count("INSERT INTO `wp_options`") == 2


@pytest.mark.asyncio
async def test_dump_progress_reports_each_table(site_db: Path, temp_dir: Path):
    calls = []

    async def progress(percent, table, index, total):
        calls.append((percent, table, index, total))

    db = await open_database(f"sqlite:///{site_db}")
    async with db:
        await DatabaseDumper(db).dump(temp_dir / "out.sql", progress)

    assert calls == [(50, "wp_options", 1, 2), (100, "wp_posts", 2, 2)]


@pytest.mark.asyncio
async def test_dump_checkpoint_stops_without_leaving_output(site_db: Path, temp_dir: Path):
    output = temp_dir / "out.sql"

    async def cancel():
        raise JobCancelledError("Job cancelled by request")

    db = await open_database(f"sqlite:///{site_db}")
    async with db:
        with pytest.raises(JobCancelledError):
            await DatabaseDumper(db).dump(output, checkpoint=cancel)

    assert not output.exists()
    assert not (temp_dir / "out.sql.tmp").exists()


@pytest.mark.asyncio
async def test_dump_of_unreadable_database_raises_data_io_error(temp_dir: Path):
    broken = temp_dir / "broken.db"
    broken.write_bytes(b"this is not a sqlite file" * 64)
    output = temp_dir / "dump.sql"

    with pytest.raises(DataIOError):
        await dump_to(broken, output)

    assert not output.exists()
    assert not output.with_name("dump.sql.tmp").exists()


@pytest.mark.asyncio
async def test_verify_dump_rejects_truncated_file(temp_dir: Path):
    truncated = temp_dir / "truncated.sql"
    truncated.write_text(HEADER_MARKER + "\nCREATE TABLE t (id INTEGER);\n")
    assert not await verify_dump(truncated)
    assert not await verify_dump(temp_dir / "missing.sql")


# ============================================================================
# Replay
# ============================================================================


@pytest.mark.asyncio
async def test_dump_then_restore_reproduces_rows(site_db: Path, temp_dir: Path):
    """Replaying a dump into an empty database gives identical rows."""
    output = temp_dir / "database.sql"
    await dump_to(site_db, output, rows_per_batch=2)

    target = temp_dir / "target.db"
    db = await open_database(f"sqlite:///{target}")
    async with db:
        result = await DatabaseRestorer(db).restore(output)

    assert result.failed == 0
    assert result.tables == ["wp_options", "wp_posts"]
    for table in ("wp_options", "wp_posts"):
        assert read_rows(target, table) == read_rows(site_db, table)


@pytest.mark.asyncio
async def test_restore_replaces_existing_tables(site_db: Path, temp_dir: Path):
    output = temp_dir / "database.sql"
    await dump_to(site_db, output)

    db = await open_database(f"sqlite:///{site_db}")
    async with db:
        await db.execute("DELETE FROM wp_posts")
        await db.commit()
        await DatabaseRestorer(db).restore(output)

    assert len(read_rows(site_db, "wp_posts")) == 3


@pytest.mark.asyncio
async def test_restore_progress_and_checkpoint_per_table(site_db: Path, temp_dir: Path):
    output = temp_dir / "database.sql"
    await dump_to(site_db, output)
    tables = []
    checkpoints = []

    async def progress(percent, table, index, total):
        tables.append((table, index, total))

    async def checkpoint():
        checkpoints.append(True)

    db = await open_database(f"sqlite:///{temp_dir / 'target.db'}")
    async with db:
        await DatabaseRestorer(db).restore(output, progress, checkpoint)

    assert tables == [("wp_options", 1, 2), ("wp_posts", 2, 2)]
    assert len(checkpoints) == 2


@pytest.mark.asyncio
async def test_lenient_policy_records_failures_and_continues(temp_dir: Path):
    dump = temp_dir / "broken.sql"
    dump.write_text(
        "CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT);\n"
        "INSERT INTO missing_table VALUES (1);\n"
        "INSERT INTO t VALUES (1, 'kept');\n"
    )

    target = temp_dir / "target.db"
    db = await open_database(f"sqlite:///{target}")
    async with db:
        result = await DatabaseRestorer(db, ReplayPolicy.LENIENT).restore(dump)

    assert result.statements == 2
    assert result.failed == 1
    assert len(result.errors) == 1
    assert read_rows(target, "t") == [(1, "kept")]


@pytest.mark.asyncio
async def test_strict_policy_raises_on_first_failure(temp_dir: Path):
    dump = temp_dir / "broken.sql"
    dump.write_text("INSERT INTO missing_table VALUES (1);\nCREATE TABLE t (id INTEGER);\n")

    db = await open_database(f"sqlite:///{temp_dir / 'target.db'}")
    async with db:
        with pytest.raises(ReplayError):
            await DatabaseRestorer(db, ReplayPolicy.STRICT).restore(dump)


@pytest.mark.asyncio
async def test_restore_missing_dump_raises(temp_dir: Path):
    db = await open_database(f"sqlite:///{temp_dir / 'target.db'}")
    async with db:
        with pytest.raises(DataIOError):
            await DatabaseRestorer(db).restore(temp_dir / "nope.sql")


# ============================================================================
# Statement splitting
# ============================================================================


def test_statement_reader_keeps_semicolons_inside_literals():
    reader = StatementReader(backslash_escapes=False)
    lines = [
        "-- comment line\n",
        "INSERT INTO t VALUES (1, 'a;\n",
        "-- still inside the literal;\n",
        "end');\n",
    ]
    statements = [s for s in (reader.feed(line) for line in lines) if s]

    assert statements == ["INSERT INTO t VALUES (1, 'a;\n-- still inside the literal;\nend');"]
    assert not reader.in_literal


def test_statement_reader_backslash_escaped_quote():
    reader = StatementReader(backslash_escapes=True)
    assert reader.feed("INSERT INTO t VALUES ('it\\'s;');\n") == "INSERT INTO t VALUES ('it\\'s;');"


def test_statement_reader_doubled_quote():
    reader = StatementReader(backslash_escapes=False)
    assert reader.feed("INSERT INTO t VALUES ('it''s;');\n") == "INSERT INTO t VALUES ('it''s;');"


def test_statement_reader_skips_conditional_comment_openers():
    reader = StatementReader()
    assert reader.feed("/*!40101 SET NAMES utf8 */;\n") == "/*!40101 SET NAMES utf8 */;"
    assert reader.feed("\n") is None
    assert reader.pending == ""


# ============================================================================
# Dialects and connections
# ============================================================================


def test_literal_rendering():
    assert SQLITE.literal(None) == "NULL"
    assert SQLITE.literal(5) == "5"
    assert MYSQL.literal(5) == "'5'"
    assert MYSQL.literal(5, numeric=True) == "5"
    assert SQLITE.literal(b"\x00\xff") == "X'00ff'"
    assert SQLITE.literal("it's") == "'it''s'"
    assert MYSQL.literal("it's\n") == "'it\\'s\\n'"


@pytest.mark.asyncio
async def test_open_database_rejects_unknown_scheme():
    with pytest.raises(ConfigurationError):
        await open_database("postgres://localhost/site")


@pytest.mark.asyncio
async def test_sqlite_connection_introspection(site_db: Path):
    db = await open_database(f"sqlite:///{site_db}")
    async with db:
        assert await db.list_tables() == ["wp_options", "wp_posts"]
        assert await db.primary_key("wp_posts") == "ID"
        columns = {c.name: c for c in await db.columns("wp_posts")}
        assert columns["post_content"].is_text
        assert not columns["ID"].is_text
        rows = await db.fetch_batch("wp_options", 2, 2, "option_id")
        assert [r["option_id"] for r in rows] == [3, 4]


@pytest.mark.asyncio
async def test_sqlite_table_sizes_share_the_file_size(site_db: Path):
    db = await open_database(f"sqlite:///{site_db}")
    async with db:
        sizes = await db.table_sizes()
        assert set(sizes) == {"wp_options", "wp_posts"}
        assert list(sizes.values()) == sorted(sizes.values(), reverse=True)
        assert sum(sizes.values()) <= await db.database_size()
