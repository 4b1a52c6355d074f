# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper FastAPI Integration - Plugin for FastAPI applications.

This module provides a complete integration with FastAPI including:
- Lifespan management (startup/shutdown)
- Protected admin endpoints
- A periodic scheduler tick
- Health checks
"""

import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from sitekeeper.backup.manager import BackupOptions
from sitekeeper.backup.restore import RestoreOptions
from sitekeeper.config import AdapterKind, BackupKind, Frequency, SitekeeperConfig
from sitekeeper.core import (
    SitekeeperState,
    get_summary,
    initialize_state,
    shutdown_state,
    start_scheduler,
)
from sitekeeper.exceptions import (
    IntegrityError,
    JobNotFoundError,
    SitekeeperError,
    SizeLimitExceeded,
    TransferError,
    ValidationError,
)

logger = structlog.get_logger()

API_KEY_ENV = "SITEKEEPER_ADMIN_API_KEY"
DEFAULT_PREFIX = "/admin/sitekeeper"

# Security
security = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the SITEKEEPER_ADMIN_API_KEY environment
    variable. Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv(API_KEY_ENV)

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail=f"{API_KEY_ENV} environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


class BackupRequest(BaseModel):
    kind: BackupKind = BackupKind.FULL
    options: Dict[str, Any] = Field(default_factory=dict)


class RestoreRequest(BaseModel):
    filename: str
    adapter: AdapterKind = AdapterKind.LOCAL
    options: Dict[str, bool] = Field(default_factory=dict)


class SearchReplaceRequest(BaseModel):
    search: str
    replace: str
    tables: List[str] | None = None


class RetentionRequest(BaseModel):
    keep: int | None = Field(default=None, ge=1)


class ScheduleRequest(BaseModel):
    name: str
    frequency: Frequency = Frequency.DAILY
    backup_kind: BackupKind = BackupKind.FULL
    destinations: List[AdapterKind] = Field(default_factory=lambda: [AdapterKind.LOCAL])
    retention_count: int = Field(default=5, ge=1)
    options: Dict[str, Any] = Field(default_factory=dict)


def _http_error(error: SitekeeperError) -> HTTPException:
    """Map a domain error onto an HTTP status."""
    if isinstance(error, JobNotFoundError):
        status = 404
    elif isinstance(error, ValidationError):
        status = 400
    elif isinstance(error, SizeLimitExceeded):
        status = 413
    elif isinstance(error, IntegrityError):
        status = 422
    elif isinstance(error, TransferError):
        status = 502
    else:
        status = 500
    return HTTPException(status_code=status, detail={"error": error.message, "details": error.details})


def register_sitekeeper_routes(
    app: FastAPI,
    config: SitekeeperConfig,
    state: SitekeeperState,
    prefix: str = DEFAULT_PREFIX,
) -> None:
    """
    Register Sitekeeper admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        config: Sitekeeper configuration
        state: Runtime state
        prefix: URL prefix for endpoints (default: /admin/sitekeeper)
    """

    @app.post(f"{prefix}/backups", dependencies=[Depends(verify_api_key)])
    async def create_backup(request: BackupRequest) -> dict:
        """
        Run a backup and return its result.
        """
        manager = state["backup_manager"]
        try:
            options = BackupOptions.from_dict(request.options)
            if request.kind is BackupKind.DATABASE:
                result = await manager.create_database_backup(options)
            elif request.kind is BackupKind.FILES:
                result = await manager.create_files_backup(options)
            else:
                result = await manager.create_full_backup(options)
        except SitekeeperError as e:
            raise _http_error(e) from e
        return result.to_dict()

    @app.get(f"{prefix}/backups", dependencies=[Depends(verify_api_key)])
    async def list_backups(limit: int = 50) -> list:
        """
        List completed backups, newest first.
        """
        return await state["backup_manager"].list_backups(limit)

    @app.delete(f"{prefix}/backups/{{job_id}}", dependencies=[Depends(verify_api_key)])
    async def delete_backup(job_id: str) -> dict:
        if not await state["backup_manager"].delete_backup(job_id):
            raise HTTPException(status_code=404, detail="Backup not found")
        return {"deleted": job_id}

    @app.get(f"{prefix}/jobs/{{job_id}}", dependencies=[Depends(verify_api_key)])
    async def get_job(job_id: str) -> dict:
        view = await state["lifecycle"].get_status(job_id)
        if view is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return asdict(view)

    @app.post(f"{prefix}/jobs/{{job_id}}/cancel", dependencies=[Depends(verify_api_key)])
    async def cancel_job(job_id: str) -> dict:
        """
        Ask a running job to stop at its next step boundary.
        """
        try:
            requested = await state["lifecycle"].request_cancel(job_id)
        except SitekeeperError as e:
            raise _http_error(e) from e
        return {"job_id": job_id, "cancel_requested": requested}

    @app.post(f"{prefix}/restore", dependencies=[Depends(verify_api_key)])
    async def restore_backup(request: RestoreRequest) -> dict:
        """
        Fetch a container from a destination and restore it.
        """
        restore_manager = state["restore_manager"]
        local_path: Path | None = None
        try:
            local_path = await restore_manager.download_from_storage(request.filename, request.adapter)
            report = await restore_manager.run_restore_job(
                state["lifecycle"], local_path, RestoreOptions.from_dict(request.options)
            )
        except SitekeeperError as e:
            raise _http_error(e) from e
        finally:
            if local_path is not None:
                local_path.unlink(missing_ok=True)
        return report.to_dict()

    @app.post(f"{prefix}/search-replace", dependencies=[Depends(verify_api_key)])
    async def search_replace(request: SearchReplaceRequest) -> dict:
        try:
            result = await state["migrator"].custom_search_replace(
                request.search, request.replace, request.tables
            )
        except SitekeeperError as e:
            raise _http_error(e) from e
        return asdict(result)

    @app.post(f"{prefix}/search-replace/preview", dependencies=[Depends(verify_api_key)])
    async def search_replace_preview(request: SearchReplaceRequest, limit: int = 50) -> dict:
        """
        Show what a search and replace would change, without writing.
        """
        try:
            result = await state["migrator"].preview_search_replace(
                request.search, request.replace, request.tables, limit
            )
        except SitekeeperError as e:
            raise _http_error(e) from e
        return asdict(result)

    @app.post(f"{prefix}/retention", dependencies=[Depends(verify_api_key)])
    async def apply_retention(request: RetentionRequest) -> dict:
        deleted = await state["backup_manager"].apply_retention_policy(request.keep)
        return {"deleted": deleted}

    @app.get(f"{prefix}/schedules", dependencies=[Depends(verify_api_key)])
    async def list_schedules() -> list:
        return [s.to_dict() for s in await state["scheduler"].list_schedules()]

    @app.post(f"{prefix}/schedules", dependencies=[Depends(verify_api_key)])
    async def create_schedule(request: ScheduleRequest) -> dict:
        try:
            schedule = await state["scheduler"].create_schedule(
                request.name,
                request.frequency,
                request.backup_kind,
                request.destinations,
                request.retention_count,
                request.options,
            )
        except SitekeeperError as e:
            raise _http_error(e) from e
        return schedule.to_dict()

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> dict:
        """
        Health check endpoint.

        Verifies the working directory and each configured destination.
        """
        work_ok = config.work_dir.is_dir()

        destinations: Dict[str, Any] = {}
        for kind in config.destinations:
            if not state["storage"].has(kind):
                destinations[kind.value] = {"connected": False, "error": "Adapter not registered"}
                continue
            try:
                connected = await state["storage"].get(kind).connect()
                destinations[kind.value] = {"connected": connected, "error": None}
            except SitekeeperError as e:
                destinations[kind.value] = {"connected": False, "error": e.message}

        reachable = [d["connected"] for d in destinations.values()]
        status = "healthy"
        if not work_ok or not all(reachable):
            status = "degraded"
        if not work_ok and not any(reachable):
            status = "unhealthy"

        return {
            "status": status,
            "work_dir_accessible": work_ok,
            "destinations": destinations,
            **await get_summary(state),
            "timestamp": datetime.now(UTC).isoformat(),
        }


@asynccontextmanager
async def sitekeeper_lifespan(
    app: FastAPI,
    config: SitekeeperConfig,
    prefix: str = DEFAULT_PREFIX,
    scheduler_interval: float | None = 60.0,
    **state_options: Any,
):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: sitekeeper_lifespan(app, config))

    Args:
        app: FastAPI application
        config: Sitekeeper configuration
        prefix: URL prefix for admin endpoints
        scheduler_interval: Seconds between scheduler ticks; None disables it
        **state_options: Passed to initialize_state()
    """
    logger.info("sitekeeper_lifespan_starting", site_root=str(config.site_root))

    state = await initialize_state(config, **state_options)
    app.state.sitekeeper_state = state
    app.state.sitekeeper_config = config

    register_sitekeeper_routes(app, config, state, prefix)

    if scheduler_interval:
        start_scheduler(state, scheduler_interval)

    logger.info("sitekeeper_lifespan_started")

    try:
        yield
    finally:
        logger.info("sitekeeper_lifespan_stopping")
        await shutdown_state(state)
        logger.info("sitekeeper_lifespan_stopped")


def setup_sitekeeper_plugin(
    app: FastAPI,
    config: SitekeeperConfig,
    prefix: str = DEFAULT_PREFIX,
    scheduler_interval: float | None = 60.0,
) -> None:
    """
    Set up Sitekeeper on an existing app, keeping its own lifespan.

    The app's lifespan is wrapped so Sitekeeper starts before it and
    stops after it.

    Args:
        app: FastAPI application
        config: Sitekeeper configuration
        prefix: URL prefix for admin endpoints
        scheduler_interval: Seconds between scheduler ticks; None disables it
    """
    app.state.sitekeeper_config = config
    app.state.sitekeeper_state = None
    previous = app.router.lifespan_context

    @asynccontextmanager
    async def lifespan(app_: FastAPI):
        async with sitekeeper_lifespan(app_, config, prefix, scheduler_interval):
            async with previous(app_) as inner:
                yield inner

    app.router.lifespan_context = lifespan


def get_sitekeeper_state(app: FastAPI) -> SitekeeperState:
    """
    Get Sitekeeper state from a FastAPI app.

    Raises:
        RuntimeError: If Sitekeeper is not initialized
    """
    state = getattr(app.state, "sitekeeper_state", None)
    if not state:
        raise RuntimeError("Sitekeeper not initialized. Call setup_sitekeeper_plugin first.")
    return state


def get_sitekeeper_config(app: FastAPI) -> SitekeeperConfig:
    """
    Get Sitekeeper config from a FastAPI app.

    Raises:
        RuntimeError: If Sitekeeper is not initialized
    """
    config = getattr(app.state, "sitekeeper_config", None)
    if not config:
        raise RuntimeError("Sitekeeper not initialized. Call setup_sitekeeper_plugin first.")
    return config
