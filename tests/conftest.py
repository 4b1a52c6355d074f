# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for Sitekeeper tests.

Provides a small site tree, a SQLite site database, a moto-served S3
bucket and configuration helpers.
"""

import os
import sqlite3
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Generator, List

import httpx
import pytest
import pytest_asyncio
from aiobotocore.config import AioConfig
from aiobotocore.session import get_session
from botocore.exceptions import ClientError
from moto.server import ThreadedMotoServer

# Set test environment variables
os.environ["SITEKEEPER_ADMIN_API_KEY"] = "test-api-key-12345"

OLD_URL = "https://old.example"
SERIALIZED_VALUE = 'a:1:{s:3:"url";s:19:"https://old.example";}'


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def site_root(temp_dir: Path) -> Path:
    """A site tree with content directories and config files."""
    root = temp_dir / "site"
    files = {
        "wp-content/plugins/hello/hello.php": "<?php // hello plugin",
        "wp-content/plugins/hello/readme.txt": "Hello plugin readme",
        "wp-content/themes/plain/style.css": "body { color: black; }",
        "wp-content/uploads/2024/01/photo.txt": "not really a photo",
        "wp-content/uploads/debug.log": "log noise",
        "wp-includes/version.php": "<?php $version = '6.5';",
        "index.php": "<?php require 'wp-blog-header.php';",
        "wp-config.php": (
            "<?php\n"
            "define( 'DB_NAME', 'site_db' );\n"
            "define( 'DB_PASSWORD', 'hunter2' );\n"
            "define( 'WP_DEBUG', false );\n"
        ),
        ".htaccess": "RewriteEngine On\n",
    }
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


def create_site_database(path: Path, site_url: str = OLD_URL) -> Path:
    """Create a SQLite site database with options and posts tables."""
    conn = sqlite3.connect(path)
    try:
        conn.executescript(
            """
            CREATE TABLE wp_options (
                option_id INTEGER PRIMARY KEY,
                option_name TEXT NOT NULL,
                option_value TEXT
            );
            CREATE TABLE wp_posts (
                ID INTEGER PRIMARY KEY,
                post_title TEXT,
                post_content TEXT,
                guid TEXT
            );
            CREATE INDEX idx_posts_title ON wp_posts (post_title);
            """
        )
        conn.executemany(
            "INSERT INTO wp_options (option_id, option_name, option_value) VALUES (?, ?, ?)",
            [
                (1, "siteurl", site_url),
                (2, "home", site_url),
                (3, "widget_links", SERIALIZED_VALUE.replace(OLD_URL, site_url)),
                (4, "blogname", "It's a site; really"),
            ],
        )
        conn.executemany(
            "INSERT INTO wp_posts (ID, post_title, post_content, guid) VALUES (?, ?, ?, ?)",
            [
                (1, "Hello", f'See <a href="{site_url}/about">about</a>', f"{site_url}/?p=1"),
                (2, "Multi\nline", "-- not a comment\nsecond line;", f"{site_url}/?p=2"),
                (3, "Empty", None, f"{site_url}/?p=3"),
            ],
        )
        conn.commit()
    finally:
        conn.close()
    return path


def read_rows(path: Path, table: str) -> List[tuple]:
    conn = sqlite3.connect(path)
    try:
        return conn.execute(f"SELECT * FROM {table} ORDER BY 1").fetchall()
    finally:
        conn.close()


@pytest.fixture
def site_db(temp_dir: Path) -> Path:
    """A file-based SQLite site database."""
    return create_site_database(temp_dir / "site.db")


@pytest.fixture
def config(temp_dir: Path, site_root: Path, site_db: Path):
    """Configuration for the test site, storing backups locally."""
    from sitekeeper.config import SitekeeperConfig

    return SitekeeperConfig(
        site_root=site_root,
        site_url=OLD_URL,
        table_prefix="wp_",
        database_url=f"sqlite:///{site_db}",
        work_dir=temp_dir / "work",
    )


# ============================================================================
# S3 (moto server)
# ============================================================================

S3_BUCKET = "test-bucket"
S3_REGION = "us-east-1"

# Client methods the recorder logs; everything else passes straight through
RECORDED_CALLS = frozenset({
    "head_bucket",
    "put_object",
    "create_multipart_upload",
    "upload_part",
    "complete_multipart_upload",
    "abort_multipart_upload",
    "get_object",
    "head_object",
    "delete_object",
})


def _injected_failure(operation: str) -> ClientError:
    return ClientError({"Error": {"Code": "InternalError", "Message": "Injected failure"}}, operation)


class RecordingS3Client:
    """Real aiobotocore client that records calls and can fail chosen ones."""

    def __init__(self, client: Any, recorder: "MotoS3"):
        self._client = client
        self._recorder = recorder

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._client, name)
        if name not in RECORDED_CALLS:
            return attr

        async def call(**kwargs: Any) -> Any:
            self._recorder.record(name, kwargs)
            if name == "upload_part" and kwargs["PartNumber"] in self._recorder.failing_parts:
                raise _injected_failure("UploadPart")
            if name == "complete_multipart_upload" and self._recorder.failing_complete:
                raise _injected_failure("CompleteMultipartUpload")
            return await attr(**kwargs)

        return call


class MotoS3:
    """
    Bucket served by moto; pass factory as client_factory.

    Calls made through factory() are recorded in calls. Objects are read
    back with a separate, unrecorded client.
    """

    def __init__(self, endpoint_url: str):
        self.endpoint_url = endpoint_url
        self.session = get_session()
        self.calls: List[tuple] = []
        self.failing_parts: set = set()
        self.failing_complete = False

    def _create_client(self) -> Any:
        return self.session.create_client(
            "s3",
            region_name=S3_REGION,
            endpoint_url=self.endpoint_url,
            aws_access_key_id="testing",
            aws_secret_access_key="testing",
            config=AioConfig(s3={"addressing_style": "path"}),
        )

    @asynccontextmanager
    async def factory(self) -> AsyncIterator[RecordingS3Client]:
        async with self._create_client() as client:
            yield RecordingS3Client(client, self)

    def record(self, name: str, kwargs: Dict[str, Any]) -> None:
        entry = {k: v for k, v in kwargs.items() if k != "Body"}
        if "Body" in kwargs:
            entry["size"] = len(kwargs["Body"])
        self.calls.append((name, entry))

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    async def create_bucket(self) -> None:
        async with self._create_client() as client:
            await client.create_bucket(Bucket=S3_BUCKET)

    async def read(self, key: str) -> bytes | None:
        async with self._create_client() as client:
            try:
                response = await client.get_object(Bucket=S3_BUCKET, Key=key)
            except ClientError as e:
                if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                    return None
                raise
            async with response["Body"] as stream:
                return await stream.read()

    async def pending_uploads(self) -> List[str]:
        async with self._create_client() as client:
            response = await client.list_multipart_uploads(Bucket=S3_BUCKET)
        return [upload["Key"] for upload in response.get("Uploads", [])]


@pytest.fixture(scope="session")
def moto_server() -> Generator[str, None, None]:
    """One moto S3 server for the session; yields its endpoint URL."""
    server = ThreadedMotoServer(ip_address="127.0.0.1", port=0, verbose=False)
    server.start()
    host, port = server.get_host_and_port()
    yield f"http://{host}:{port}"
    server.stop()


@pytest_asyncio.fixture
async def moto_s3(moto_server: str) -> AsyncIterator[MotoS3]:
    """Fresh moto state with an empty test bucket."""
    httpx.post(f"{moto_server}/moto-api/reset").raise_for_status()
    s3 = MotoS3(moto_server)
    await s3.create_bucket()
    yield s3


@pytest_asyncio.fixture
async def state(config):
    """Runtime state backed by SQLite job/schedule tables."""
    from sitekeeper.core import initialize_state, shutdown_state

    state = await initialize_state(config)
    yield state
    await shutdown_state(state)
