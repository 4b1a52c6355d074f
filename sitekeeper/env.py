# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers and host profiles.

These helpers are small, convenient wrappers around create_config() and
SitekeeperConfig.with_updates(). They make it easy to:

- Build a configuration from environment variables
- Apply ready-made profiles for constrained or strict environments
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import List

from sitekeeper.builder import create_config
from sitekeeper.config import AdapterKind, ReplayPolicy, SitekeeperConfig
from sitekeeper.errors import (
    explain_invalid_destinations_env,
    explain_invalid_replay_policy_env,
    explain_invalid_retention_count_env,
    explain_invalid_size_env,
    explain_missing_s3_bucket,
    explain_missing_site_root_env,
)
from sitekeeper.exceptions import ConfigurationError

_SIZE_UNITS = {"": 1, "B": 1, "KB": 1024, "MB": 1024**2, "GB": 1024**3, "TB": 1024**4}
_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMGT]?B?)\s*$", re.IGNORECASE)


def _parse_size(name: str, value: str | None) -> int | None:
    if not value:
        return None
    match = _SIZE_RE.match(value)
    if not match:
        raise ConfigurationError(explain_invalid_size_env(name, value))
    number, unit = match.groups()
    unit = unit.upper()
    if unit and not unit.endswith("B"):
        unit += "B"
    size = int(number) * _SIZE_UNITS[unit]
    if size <= 0:
        raise ConfigurationError(explain_invalid_size_env(name, value))
    return size


def _parse_replay_policy(value: str | None) -> ReplayPolicy:
    if not value:
        return ReplayPolicy.LENIENT
    try:
        return ReplayPolicy(value.lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_replay_policy_env(value)) from exc


def _parse_destinations(value: str | None) -> List[AdapterKind]:
    if not value:
        return [AdapterKind.LOCAL]
    kinds: List[AdapterKind] = []
    for item in value.split(","):
        item = item.strip().lower()
        if not item:
            continue
        try:
            kind = AdapterKind(item)
        except ValueError as exc:
            raise ConfigurationError(explain_invalid_destinations_env(value)) from exc
        if kind not in kinds:
            kinds.append(kind)
    if not kinds:
        raise ConfigurationError(explain_invalid_destinations_env(value))
    return kinds


def _parse_retention_count(value: str | None) -> int:
    if not value:
        return 5
    try:
        count = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_retention_count_env(value)) from exc
    if count < 1:
        raise ConfigurationError(explain_invalid_retention_count_env(value))
    return count


def _parse_list(value: str | None) -> List[str]:
    if not value:
        return []
    return [p.strip() for p in value.split(",") if p.strip()]


def create_config_from_env() -> SitekeeperConfig:
    """
    Create a SitekeeperConfig from environment variables.

    Required:
        - SITEKEEPER_SITE_ROOT: Root directory of the site's files

    Optional environment variables:
        - SITEKEEPER_SITE_URL: Canonical site URL
        - SITEKEEPER_TABLE_PREFIX: Table-name prefix (e.g. "wp_")
        - DATABASE_URL: mysql://... or sqlite:///... database to back up
        - SITEKEEPER_WORK_DIR: Working directory (default: ./sitekeeper_work)
        - SITEKEEPER_DESTINATIONS: Comma-separated, e.g. "local,s3" (default: local)
        - SITEKEEPER_SIZE_LIMIT: Container ceiling, e.g. "2GB"
        - SITEKEEPER_REPLAY_POLICY: 'strict' | 'lenient' (default: lenient)
        - SITEKEEPER_RETENTION_COUNT: Backups to keep (default: 5)
        - SITEKEEPER_EXCLUDE_TABLES: Comma-separated table names
        - SITEKEEPER_EXCLUDE_FILES: Comma-separated file patterns
        - S3_BUCKET, AWS_REGION, SITEKEEPER_S3_PREFIX, S3_ENDPOINT_URL
    """

    site_root = os.getenv("SITEKEEPER_SITE_ROOT")
    if not site_root:
        raise ConfigurationError(explain_missing_site_root_env())

    destinations = _parse_destinations(os.getenv("SITEKEEPER_DESTINATIONS"))
    bucket = os.getenv("S3_BUCKET")
    if AdapterKind.S3 in destinations and not bucket:
        raise ConfigurationError(explain_missing_s3_bucket())

    work_dir_env = os.getenv("SITEKEEPER_WORK_DIR")

    return create_config(
        Path(site_root),
        site_url=os.getenv("SITEKEEPER_SITE_URL", ""),
        table_prefix=os.getenv("SITEKEEPER_TABLE_PREFIX", ""),
        database_url=os.getenv("DATABASE_URL"),
        work_dir=Path(work_dir_env) if work_dir_env else None,
        destinations=destinations,
        s3_bucket=bucket,
        s3_region=os.getenv("AWS_REGION", "us-east-1"),
        s3_prefix=os.getenv("SITEKEEPER_S3_PREFIX", ""),
        size_limit=_parse_size("SITEKEEPER_SIZE_LIMIT", os.getenv("SITEKEEPER_SIZE_LIMIT")),
        replay_policy=_parse_replay_policy(os.getenv("SITEKEEPER_REPLAY_POLICY")),
        retention_count=_parse_retention_count(os.getenv("SITEKEEPER_RETENTION_COUNT")),
        exclude_tables=_parse_list(os.getenv("SITEKEEPER_EXCLUDE_TABLES")),
        exclude_patterns=_parse_list(os.getenv("SITEKEEPER_EXCLUDE_FILES")),
        s3_endpoint_url=os.getenv("S3_ENDPOINT_URL"),
    )


# ============================================================================
# Profiles
# ============================================================================

def shared_hosting(config: SitekeeperConfig) -> SitekeeperConfig:
    """
    Apply a profile for hosts with tight memory and execution-time limits.

    - Smaller dump and search-and-replace batches
    - Minimum archive chunk size
    - Lower compression level to save CPU
    """

    return config.with_updates(
        rows_per_batch=min(config.rows_per_batch, 250),
        replace_rows_per_batch=min(config.replace_rows_per_batch, 100),
        files_per_batch=25,
        compression_level=min(config.compression_level, 3),
    )


def strict_restore(config: SitekeeperConfig) -> SitekeeperConfig:
    """
    Apply a profile for restores that must not silently drop statements.

    - STRICT replay policy
    - Container size pre-check enabled
    """

    return config.with_updates(
        replay_policy=ReplayPolicy.STRICT,
        size_precheck=True,
    )
