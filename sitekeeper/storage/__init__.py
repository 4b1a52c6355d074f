# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage Adapters - Backup destinations behind one contract.
"""

from sitekeeper.storage.base import (
    Cipher,
    JsonSettingsStore,
    MemorySettingsStore,
    RemoteFile,
    RemoteMetadata,
    SettingsField,
    SettingsStore,
    StorageAdapter,
    StorageInfo,
)
from sitekeeper.storage.local import LocalAdapter
from sitekeeper.storage.manager import DestinationOutcome, StorageManager, create_storage_manager
from sitekeeper.storage.s3 import S3Adapter

__all__ = [
    # Contract
    "Cipher",
    "RemoteFile",
    "RemoteMetadata",
    "SettingsField",
    "SettingsStore",
    "StorageAdapter",
    "StorageInfo",
    "JsonSettingsStore",
    "MemorySettingsStore",
    # Adapters
    "LocalAdapter",
    "S3Adapter",
    # Registry
    "DestinationOutcome",
    "StorageManager",
    "create_storage_manager",
]
