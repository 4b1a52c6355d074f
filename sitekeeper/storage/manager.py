# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Storage Manager - Typed adapter registry and destination fan-out.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List

import structlog

from sitekeeper.archiver import Archiver
from sitekeeper.config import AdapterKind, SitekeeperConfig
from sitekeeper.exceptions import SitekeeperError, TransferError
from sitekeeper.storage.base import Cipher, SettingsStore, StorageAdapter, StorageInfo
from sitekeeper.storage.local import LocalAdapter
from sitekeeper.storage.s3 import S3Adapter

logger = structlog.get_logger()


@dataclass
class DestinationOutcome:
    """Result of sending one container to one destination."""

    success: bool
    error: str | None = None
    remote_paths: List[str] = field(default_factory=list)


class StorageManager:
    """
    Registry of adapters keyed by AdapterKind.

    Uploads to several destinations are independent: a failing
    destination is recorded and the others still run.
    """

    def __init__(self, archiver: Archiver | None = None, split_size: int | None = None):
        self._adapters: Dict[AdapterKind, StorageAdapter] = {}
        self._archiver = archiver or Archiver()
        self._split_size = split_size

    def register(self, adapter: StorageAdapter) -> "StorageManager":
        self._adapters[adapter.kind] = adapter
        return self

    def get(self, kind: AdapterKind) -> StorageAdapter:
        """
        Raises:
            TransferError: If no adapter is registered for kind
        """
        adapter = self._adapters.get(AdapterKind(kind))
        if adapter is None:
            raise TransferError(f"Storage adapter not registered: {AdapterKind(kind).value}")
        return adapter

    def has(self, kind: AdapterKind) -> bool:
        return AdapterKind(kind) in self._adapters

    @property
    def adapters(self) -> Dict[AdapterKind, StorageAdapter]:
        return dict(self._adapters)

    def configured(self) -> Dict[AdapterKind, StorageAdapter]:
        return {kind: a for kind, a in self._adapters.items() if a.is_configured()}

    async def upload_to_destinations(
        self,
        local_path: Path,
        remote_path: str,
        destinations: Iterable[AdapterKind],
    ) -> Dict[AdapterKind, DestinationOutcome]:
        """
        Upload one container to every destination.

        A container larger than an adapter's max_file_size is split into
        parts (see Archiver.split) and each part uploaded under its own
        name next to remote_path.

        Returns:
            Outcome per destination
        """
        results: Dict[AdapterKind, DestinationOutcome] = {}
        size = local_path.stat().st_size

        for destination in destinations:
            kind = AdapterKind(destination)
            adapter = self._adapters.get(kind)
            if adapter is None:
                results[kind] = DestinationOutcome(False, "Adapter not registered")
                continue
            if not adapter.is_configured():
                results[kind] = DestinationOutcome(False, "Adapter not configured")
                continue

            try:
                if adapter.max_file_size and size > adapter.max_file_size:
                    uploaded = await self._upload_split(adapter, local_path, remote_path)
                else:
                    await adapter.upload(local_path, remote_path)
                    uploaded = [remote_path]
                results[kind] = DestinationOutcome(True, None, uploaded)
            except SitekeeperError as e:
                logger.error("destination_upload_failed", destination=kind.value, error=str(e))
                results[kind] = DestinationOutcome(False, e.message)

        return results

    async def _upload_split(
        self,
        adapter: StorageAdapter,
        local_path: Path,
        remote_path: str,
    ) -> List[str]:
        part_size = min(self._split_size or adapter.max_file_size, adapter.max_file_size)
        parts = await self._archiver.split(local_path, part_size)
        directory = remote_path.rsplit("/", 1)[0] + "/" if "/" in remote_path else ""
        uploaded: List[str] = []
        try:
            for part in parts:
                target = directory + part.name
                await adapter.upload(part, target)
                uploaded.append(target)
        finally:
            for part in parts:
                if part != local_path:
                    part.unlink(missing_ok=True)

        logger.info("split_upload_completed", destination=adapter.kind.value, parts=len(uploaded))
        return uploaded

    async def delete_from_destinations(
        self,
        remote_paths: Iterable[str],
        destinations: Iterable[AdapterKind],
    ) -> Dict[AdapterKind, bool]:
        """Delete every remote path from every destination; True when all deletes succeeded."""
        paths = list(remote_paths)
        results: Dict[AdapterKind, bool] = {}

        for destination in destinations:
            kind = AdapterKind(destination)
            adapter = self._adapters.get(kind)
            if adapter is None:
                results[kind] = False
                continue
            ok = True
            for path in paths:
                try:
                    ok = await adapter.delete(path) and ok
                except SitekeeperError as e:
                    logger.error("destination_delete_failed", destination=kind.value, path=path, error=str(e))
                    ok = False
            results[kind] = ok

        return results

    async def adapters_info(self) -> List[Dict[str, Any]]:
        info: List[Dict[str, Any]] = []
        for kind, adapter in self._adapters.items():
            configured = adapter.is_configured()
            storage = await adapter.get_storage_info() if configured else StorageInfo()
            info.append(
                {
                    "id": kind.value,
                    "name": adapter.name,
                    "configured": configured,
                    "connected": await adapter.connect() if configured else False,
                    "used": storage.used,
                    "total": storage.total,
                }
            )
        return info


def create_storage_manager(
    config: SitekeeperConfig,
    archiver: Archiver | None = None,
    settings_store: SettingsStore | None = None,
    cipher: Cipher | None = None,
    s3_client_factory: Any = None,
) -> StorageManager:
    """
    Build the registry for the destinations a config enables.

    The local adapter is always registered, since restores and downloads
    stage containers through it.
    """
    manager = StorageManager(archiver, split_size=config.split_size)
    manager.register(
        LocalAdapter(config.resolved_local_storage_path, settings_store=settings_store, cipher=cipher)
    )

    if AdapterKind.S3 in config.destinations or config.s3_bucket:
        manager.register(
            S3Adapter(
                bucket=config.s3_bucket,
                region=config.s3_region,
                prefix=config.s3_prefix,
                endpoint_url=config.s3_endpoint_url,
                multipart_threshold=config.multipart_threshold,
                chunk_size=config.multipart_chunk_size,
                client_factory=s3_client_factory,
                settings_store=settings_store,
                cipher=cipher,
            )
        )

    return manager
