# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with Sitekeeper Integration.

This example demonstrates how to add backups, restores and URL migration
to a FastAPI application, with scheduled backups sent to local storage
and S3.

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables:
    SITE_ROOT: Root directory of the site's files
    SITE_URL: Canonical site URL
    DATABASE_URL: mysql://... or sqlite:///... database to back up
    S3_BUCKET: Optional bucket for offsite copies
    SITEKEEPER_ADMIN_API_KEY: API key for admin endpoints
"""

import os
from pathlib import Path

import structlog
from fastapi import FastAPI
from pydantic import BaseModel

from sitekeeper.builder import (
    build_config,
    create_empty_config,
    exclude_files,
    exclude_tables,
    keep_backups,
    limit_size,
    store_in_s3,
    with_database,
    with_site,
    with_work_dir,
)
from sitekeeper.config import MB
from sitekeeper.exceptions import ConfigurationError
from sitekeeper.integrations.fastapi import get_sitekeeper_state, setup_sitekeeper_plugin

logger = structlog.get_logger()

# Create FastAPI app
app = FastAPI(
    title="My Site with Sitekeeper",
    description="Example application demonstrating site backup and migration",
    version="1.0.0",
)


def create_sitekeeper_config():
    """
    Create Sitekeeper configuration from environment variables.

    This uses the functional builder pattern for clean, composable configuration.
    """
    site_root = Path(os.getenv("SITE_ROOT", "/var/www/html"))
    site_url = os.getenv("SITE_URL", "https://example.com")
    database_url = os.getenv("DATABASE_URL", "sqlite:///./site.db")
    bucket = os.getenv("S3_BUCKET")

    config = create_empty_config()
    config = with_site(config, site_root, site_url, table_prefix="wp_")
    config = with_database(config, database_url)
    config = with_work_dir(config, os.getenv("SITEKEEPER_WORK_DIR", "/var/lib/sitekeeper"))

    # Sessions and caches are rebuilt by the site itself
    config = exclude_tables(config, ["wp_sessions"])
    config = exclude_files(config, ["wp-content/cache", "*.bak"])

    # Refuse containers above 2 GB
    config = limit_size(config, 2048 * MB)
    config = keep_backups(config, 7)

    if bucket:
        config = store_in_s3(config, bucket, os.getenv("AWS_REGION", "us-east-1"), prefix="sites")

    return build_config(config)


# Initialize configuration
try:
    sitekeeper_config = create_sitekeeper_config()
except ConfigurationError as e:
    logger.warning("sitekeeper_config_fallback", error=str(e))
    # Use minimal config for development
    sitekeeper_config = build_config(
        with_work_dir(
            with_site(create_empty_config(), Path("."), "http://localhost:8000"),
            Path("./sitekeeper_work"),
        )
    )

# Setup Sitekeeper plugin (scheduler ticks every minute)
setup_sitekeeper_plugin(app, sitekeeper_config, scheduler_interval=60.0)


# ============================================================================
# Application Routes
# ============================================================================


class NightlySchedule(BaseModel):
    """Example request to enable nightly backups."""

    offsite: bool = False


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Welcome to My Site with Sitekeeper",
        "docs": "/docs",
        "sitekeeper_admin": "/admin/sitekeeper/health",
    }


@app.post("/setup/nightly")
async def enable_nightly_backups(request: NightlySchedule):
    """Create a daily full backup schedule."""
    state = get_sitekeeper_state(app)
    destinations = ["local", "s3"] if request.offsite else ["local"]
    schedule = await state["scheduler"].create_schedule(
        "nightly",
        "daily",
        "full",
        destinations,
        retention_count=sitekeeper_config.retention_count,
    )
    return schedule.to_dict()


# ============================================================================
# Sitekeeper Admin Endpoints (auto-registered by plugin)
# ============================================================================
#
# The following endpoints are automatically registered by setup_sitekeeper_plugin:
#
# GET    /admin/sitekeeper/health                 - Health check and job summary
# POST   /admin/sitekeeper/backups                - Run a full/database/files backup
# GET    /admin/sitekeeper/backups                - List completed backups
# DELETE /admin/sitekeeper/backups/{job_id}       - Delete a backup everywhere
# GET    /admin/sitekeeper/jobs/{job_id}          - Job status
# POST   /admin/sitekeeper/jobs/{job_id}/cancel   - Cancel a running job
# POST   /admin/sitekeeper/restore                - Restore a stored backup
# POST   /admin/sitekeeper/search-replace         - Serialization-aware search and replace
# POST   /admin/sitekeeper/search-replace/preview - Preview a search and replace
# POST   /admin/sitekeeper/retention              - Prune old backups
# GET    /admin/sitekeeper/schedules              - List schedules
# POST   /admin/sitekeeper/schedules              - Create a schedule
#
# All admin endpoints require: Authorization: Bearer <SITEKEEPER_ADMIN_API_KEY>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
