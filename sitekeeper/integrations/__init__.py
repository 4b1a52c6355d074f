# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI plugin and other framework integrations.
"""

from sitekeeper.integrations.fastapi import (
    get_sitekeeper_config,
    get_sitekeeper_state,
    register_sitekeeper_routes,
    setup_sitekeeper_plugin,
    sitekeeper_lifespan,
    verify_api_key,
)

__all__ = [
    "setup_sitekeeper_plugin",
    "sitekeeper_lifespan",
    "register_sitekeeper_routes",
    "get_sitekeeper_state",
    "get_sitekeeper_config",
    "verify_api_key",
]
