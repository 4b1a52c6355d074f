# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper - Backup, restore and migration for database-backed sites.

Snapshots a relational database and a file tree into an
integrity-checked container, sends it to local or S3 storage, and
restores or migrates it onto a target installation, rewriting stored
URLs without breaking length-prefixed serialized values.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from sitekeeper.builder import create_config

# Core functions
from sitekeeper.core import (
    SitekeeperState,
    get_summary,
    initialize_state,
    shutdown_state,
    start_scheduler,
)

# Environment-based configuration and profiles (additional helpers)
from sitekeeper.env import (
    create_config_from_env,
    shared_hosting,
    strict_restore,
)

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    "shared_hosting",
    "strict_restore",
    # Runtime state
    "SitekeeperState",
    "initialize_state",
    "start_scheduler",
    "get_summary",
    "shutdown_state",
]
