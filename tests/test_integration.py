# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Integration Tests for Sitekeeper.

These tests verify the integration between components:
- Configuration builders and environment loading
- FastAPI endpoints
- Lifespan management
"""

import sqlite3
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from sitekeeper import create_config, create_config_from_env, shared_hosting, strict_restore
from sitekeeper.builder import (
    build_from_steps,
    exclude_tables,
    keep_backups,
    pipe,
    store_in_s3,
    with_database,
    with_site,
)
from sitekeeper.config import MB, AdapterKind, ReplayPolicy
from sitekeeper.core import get_summary, initialize_state, shutdown_state, start_scheduler
from sitekeeper.exceptions import ConfigurationError
from sitekeeper.integrations.fastapi import (
    get_sitekeeper_state,
    register_sitekeeper_routes,
    setup_sitekeeper_plugin,
)

from tests.conftest import OLD_URL, read_rows

API = "/admin/sitekeeper"
HEADERS = {"Authorization": "Bearer test-api-key-12345"}


@pytest_asyncio.fixture
async def client(config):
    app = FastAPI()
    state = await initialize_state(config, in_memory=True)
    register_sitekeeper_routes(app, config, state)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    await shutdown_state(state)


# ============================================================================
# Configuration
# ============================================================================


def test_create_config_defaults(temp_dir: Path):
    config = create_config(temp_dir, site_url=OLD_URL, database_url="sqlite:///site.db")

    assert config.site_root == temp_dir
    assert config.destinations == [AdapterKind.LOCAL]
    assert config.replay_policy is ReplayPolicy.LENIENT
    assert config.retention_count == 5
    assert config.resolved_state_db_path == config.work_dir / "state.db"


def test_create_config_with_s3_and_extras(temp_dir: Path):
    config = create_config(
        temp_dir,
        destinations=["local", "s3"],
        s3_bucket="site-backups",
        s3_prefix="prod",
        replay_policy="strict",
        rows_per_batch=200,
        not_a_field=True,
    )

    assert config.destinations == [AdapterKind.LOCAL, AdapterKind.S3]
    assert config.s3_bucket == "site-backups"
    assert config.s3_prefix == "prod"
    assert config.replay_policy is ReplayPolicy.STRICT
    assert config.rows_per_batch == 200


def test_invalid_config_is_rejected(temp_dir: Path):
    with pytest.raises(ConfigurationError):
        create_config(temp_dir, site_url="not a url")
    with pytest.raises(ConfigurationError):
        create_config(temp_dir, destinations=["s3"])
    with pytest.raises(ConfigurationError):
        create_config(temp_dir, rows_per_batch=0)


def test_builder_steps(temp_dir: Path):
    configure = pipe(
        lambda c: with_site(c, temp_dir, OLD_URL, "wp_"),
        lambda c: with_database(c, "sqlite:///site.db"),
        lambda c: exclude_tables(c, ["wp_sessions"]),
    )
    config = build_from_steps(
        configure,
        lambda c: store_in_s3(c, "bucket", prefix="site"),
        lambda c: keep_backups(c, 3),
    )

    assert config.table_prefix == "wp_"
    assert config.exclude_tables == ["wp_sessions"]
    assert config.destinations == [AdapterKind.LOCAL, AdapterKind.S3]
    assert config.retention_count == 3


def test_config_is_frozen(temp_dir: Path):
    config = create_config(temp_dir)
    with pytest.raises(AttributeError):
        config.site_url = OLD_URL

    updated = config.with_updates(site_url=OLD_URL)
    assert updated.site_url == OLD_URL
    assert config.site_url == ""


def test_profiles(temp_dir: Path):
    config = create_config(temp_dir)

    hosted = shared_hosting(config)
    assert hosted.rows_per_batch == 250
    assert hosted.files_per_batch == 25
    assert hosted.compression_level == 3

    strict = strict_restore(config)
    assert strict.replay_policy is ReplayPolicy.STRICT
    assert strict.size_precheck


def test_create_config_from_env(temp_dir: Path, monkeypatch):
    monkeypatch.setenv("SITEKEEPER_SITE_ROOT", str(temp_dir))
    monkeypatch.setenv("SITEKEEPER_SITE_URL", OLD_URL)
    monkeypatch.setenv("SITEKEEPER_DESTINATIONS", "local, s3, local")
    monkeypatch.setenv("S3_BUCKET", "env-bucket")
    monkeypatch.setenv("SITEKEEPER_SIZE_LIMIT", "2GB")
    monkeypatch.setenv("SITEKEEPER_RETENTION_COUNT", "7")
    monkeypatch.setenv("SITEKEEPER_EXCLUDE_TABLES", "wp_sessions, wp_cache")

    config = create_config_from_env()

    assert config.site_url == OLD_URL
    assert config.destinations == [AdapterKind.LOCAL, AdapterKind.S3]
    assert config.s3_bucket == "env-bucket"
    assert config.size_limit == 2048 * MB
    assert config.retention_count == 7
    assert config.exclude_tables == ["wp_sessions", "wp_cache"]


@pytest.mark.parametrize(
    "name, value, message",
    [
        ("SITEKEEPER_SIZE_LIMIT", "lots", "SITEKEEPER_SIZE_LIMIT"),
        ("SITEKEEPER_DESTINATIONS", "ftp", "ftp"),
        ("SITEKEEPER_REPLAY_POLICY", "sometimes", "sometimes"),
        ("SITEKEEPER_RETENTION_COUNT", "0", "0"),
    ],
)
def test_create_config_from_env_rejects_bad_values(temp_dir: Path, monkeypatch, name, value, message):
    monkeypatch.setenv("SITEKEEPER_SITE_ROOT", str(temp_dir))
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError) as excinfo:
        create_config_from_env()
    assert message in str(excinfo.value)


def test_create_config_from_env_requires_site_root(monkeypatch):
    monkeypatch.delenv("SITEKEEPER_SITE_ROOT", raising=False)
    with pytest.raises(ConfigurationError):
        create_config_from_env()


def test_create_config_from_env_s3_needs_bucket(temp_dir: Path, monkeypatch):
    monkeypatch.setenv("SITEKEEPER_SITE_ROOT", str(temp_dir))
    monkeypatch.setenv("SITEKEEPER_DESTINATIONS", "s3")
    monkeypatch.delenv("S3_BUCKET", raising=False)
    with pytest.raises(ConfigurationError):
        create_config_from_env()


# ============================================================================
# FastAPI Authentication
# ============================================================================


@pytest.mark.asyncio
async def test_fastapi_health_endpoint(client: AsyncClient):
    response = await client.get(f"{API}/health", headers=HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["work_dir_accessible"] is True
    assert data["destinations"] == {"local": {"connected": True, "error": None}}
    assert data["jobs"]["completed"] == 0


@pytest.mark.asyncio
async def test_fastapi_unauthorized_access(client: AsyncClient):
    response = await client.get(f"{API}/health")
    assert response.status_code == 401

    response = await client.get(f"{API}/health", headers={"Authorization": "Bearer wrong-key"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_fastapi_missing_server_key(client: AsyncClient, monkeypatch):
    monkeypatch.delenv("SITEKEEPER_ADMIN_API_KEY")
    response = await client.get(f"{API}/health", headers=HEADERS)
    assert response.status_code == 500


# ============================================================================
# FastAPI Backups and Jobs
# ============================================================================


@pytest.mark.asyncio
async def test_fastapi_backup_lifecycle(client: AsyncClient):
    response = await client.post(f"{API}/backups", json={"kind": "database"}, headers=HEADERS)
    assert response.status_code == 200
    created = response.json()
    assert created["filename"].startswith("old.example-database-")
    assert created["destinations"]["local"]["success"] is True

    response = await client.get(f"{API}/backups", headers=HEADERS)
    [backup] = response.json()
    assert backup["filename"] == created["filename"]

    response = await client.get(f"{API}/jobs/{backup['job_id']}", headers=HEADERS)
    assert response.status_code == 200
    job = response.json()
    assert job["status"] == "completed"
    assert job["progress"] == 100
    assert job["output_path"] == created["path"]
    assert job["output_size"] == created["size"]

    response = await client.post(f"{API}/jobs/{backup['job_id']}/cancel", headers=HEADERS)
    assert response.json() == {"job_id": backup["job_id"], "cancel_requested": False}

    response = await client.delete(f"{API}/backups/{backup['job_id']}", headers=HEADERS)
    assert response.status_code == 200
    response = await client.delete(f"{API}/backups/{backup['job_id']}", headers=HEADERS)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_fastapi_backup_rejects_unknown_options(client: AsyncClient):
    response = await client.post(
        f"{API}/backups",
        json={"kind": "full", "options": {"colour": "blue"}},
        headers=HEADERS,
    )
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "Unknown backup options"


@pytest.mark.asyncio
async def test_fastapi_unknown_job(client: AsyncClient):
    response = await client.get(f"{API}/jobs/missing", headers=HEADERS)
    assert response.status_code == 404

    response = await client.post(f"{API}/jobs/missing/cancel", headers=HEADERS)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_fastapi_retention(client: AsyncClient):
    for _ in range(2):
        await client.post(f"{API}/backups", json={"kind": "database"}, headers=HEADERS)

    response = await client.post(f"{API}/retention", json={"keep": 1}, headers=HEADERS)
    assert response.json() == {"deleted": 1}

    response = await client.post(f"{API}/retention", json={"keep": 0}, headers=HEADERS)
    assert response.status_code == 422


# ============================================================================
# FastAPI Restore and Search-Replace
# ============================================================================


@pytest.mark.asyncio
async def test_fastapi_restore(client: AsyncClient, site_db: Path):
    created = (await client.post(f"{API}/backups", json={"kind": "database"}, headers=HEADERS)).json()

    conn = sqlite3.connect(site_db)
    conn.execute("DELETE FROM wp_posts")
    conn.commit()
    conn.close()

    response = await client.post(f"{API}/restore", json={"filename": created["filename"]}, headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["tables"] == ["wp_options", "wp_posts"]
    assert len(read_rows(site_db, "wp_posts")) == 3


@pytest.mark.asyncio
async def test_fastapi_restore_missing_backup(client: AsyncClient):
    response = await client.post(f"{API}/restore", json={"filename": "missing.zip"}, headers=HEADERS)
    assert response.status_code == 502


@pytest.mark.asyncio
async def test_fastapi_search_replace(client: AsyncClient, site_db: Path):
    body = {"search": OLD_URL, "replace": "https://new.example"}

    response = await client.post(f"{API}/search-replace/preview?limit=3", json=body, headers=HEADERS)
    assert response.status_code == 200
    preview = response.json()
    assert preview["total_matches"] == 7
    assert len(preview["preview"]) == 3
    assert read_rows(site_db, "wp_options")[0][2] == OLD_URL

    response = await client.post(f"{API}/search-replace", json=body, headers=HEADERS)
    assert response.json()["replacements_made"] == 7
    assert read_rows(site_db, "wp_options")[0][2] == "https://new.example"

    response = await client.post(
        f"{API}/search-replace", json={"search": "", "replace": "x"}, headers=HEADERS
    )
    assert response.status_code == 400


# ============================================================================
# FastAPI Schedules
# ============================================================================


@pytest.mark.asyncio
async def test_fastapi_schedules(client: AsyncClient):
    response = await client.post(
        f"{API}/schedules",
        json={"name": "weekly offsite", "frequency": "weekly", "backup_kind": "database", "retention_count": 2},
        headers=HEADERS,
    )
    assert response.status_code == 200
    created = response.json()
    assert created["frequency"] == "weekly"
    assert created["is_active"] is True

    response = await client.get(f"{API}/schedules", headers=HEADERS)
    assert [s["name"] for s in response.json()] == ["weekly offsite"]

    response = await client.post(f"{API}/schedules", json={"name": "  "}, headers=HEADERS)
    assert response.status_code == 400


# ============================================================================
# Lifespan
# ============================================================================


@pytest.mark.asyncio
async def test_setup_plugin_wraps_lifespan(config):
    app = FastAPI()
    setup_sitekeeper_plugin(app, config, scheduler_interval=None)

    with pytest.raises(RuntimeError):
        get_sitekeeper_state(app)

    async with app.router.lifespan_context(app):
        state = get_sitekeeper_state(app)
        assert state["config"] is config
        assert state["job_runner"] is None

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http:
            response = await http.get(f"{API}/health", headers=HEADERS)
            assert response.status_code == 200


@pytest.mark.asyncio
async def test_start_scheduler_runs_until_shutdown(config):
    state = await initialize_state(config, in_memory=True)

    runner = start_scheduler(state, interval=3600)
    assert runner.running
    assert start_scheduler(state, interval=3600) is runner
    assert runner.get_job("sitekeeper_schedules") is not None

    summary = await get_summary(state)
    assert summary["scheduler_running"] is True

    await shutdown_state(state)
    assert state["job_runner"] is None
    assert (await get_summary(state))["scheduler_running"] is False
