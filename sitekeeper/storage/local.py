# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Local filesystem storage adapter.
"""

import hashlib
import shutil
from pathlib import Path
from typing import Any, Dict, List

import aiofiles
import structlog

from sitekeeper.config import AdapterKind
from sitekeeper.exceptions import TransferError
from sitekeeper.storage.base import (
    DEFAULT_CHUNK_SIZE,
    Cipher,
    RemoteFile,
    RemoteMetadata,
    SettingsField,
    SettingsStore,
    StorageAdapter,
    StorageInfo,
    TransferProgress,
    normalize_remote_path,
)

logger = structlog.get_logger()


class LocalAdapter(StorageAdapter):
    """
    Store containers in a directory on this machine.

    Args:
        root: Directory that remote paths are relative to
    """

    kind = AdapterKind.LOCAL
    name = "Local Storage"

    def __init__(
        self,
        root: Path,
        settings_store: SettingsStore | None = None,
        cipher: Cipher | None = None,
    ):
        super().__init__(settings_store, cipher)
        self.root = Path(root)

    def full_path(self, remote_path: str) -> Path:
        """Resolve remote_path under root, refusing paths that escape it."""
        relative = normalize_remote_path(remote_path)
        root = self.root.resolve()
        target = (root / relative).resolve()
        if target != root and root not in target.parents:
            raise TransferError(
                "Remote path escapes the storage root",
                details={"remote_path": remote_path},
            )
        return target

    def is_configured(self) -> bool:
        return bool(str(self.root))

    async def connect(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("local_storage_unavailable", path=str(self.root), error=str(e))
            return False
        return self.root.is_dir()

    async def upload(self, local_path: Path, remote_path: str) -> bool:
        return await self.upload_chunked(local_path, remote_path)

    async def upload_chunked(
        self,
        local_path: Path,
        remote_path: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_progress: TransferProgress | None = None,
    ) -> bool:
        """Copy local_path in chunk_size blocks, reporting each block."""
        local_path = Path(local_path)
        if not local_path.is_file():
            raise TransferError(
                "Source file does not exist",
                details={"path": str(local_path)},
            )

        destination = self.full_path(remote_path)
        temp_path = destination.with_name(destination.name + ".part")
        size = local_path.stat().st_size
        total_chunks = max(1, -(-size // chunk_size))
        chunk_num = 0

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(local_path, "rb") as src, aiofiles.open(temp_path, "wb") as dst:
                while True:
                    chunk = await src.read(chunk_size)
                    if not chunk:
                        break
                    await dst.write(chunk)
                    chunk_num += 1
                    if on_progress:
                        await on_progress(min(100, int(chunk_num / total_chunks * 100)), chunk_num, total_chunks)
            temp_path.replace(destination)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise TransferError(
                f"Failed to copy file to local storage: {e}",
                details={"source": str(local_path), "destination": str(destination)},
            ) from e

        logger.info(
            "local_upload_completed",
            destination=str(destination),
            size=size,
            chunks=chunk_num,
        )
        return True

    async def download(self, remote_path: str, local_path: Path) -> bool:
        source = self.full_path(remote_path)
        if not source.is_file():
            raise TransferError(
                "Stored file does not exist",
                details={"path": str(source)},
            )
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, local_path)
        except OSError as e:
            raise TransferError(
                f"Failed to copy file from local storage: {e}",
                details={"source": str(source), "destination": str(local_path)},
            ) from e
        return True

    async def delete(self, remote_path: str) -> bool:
        path = self.full_path(remote_path)
        if not path.exists():
            return True
        try:
            path.unlink()
        except OSError as e:
            logger.error("local_delete_failed", path=str(path), error=str(e))
            return False
        logger.info("local_file_deleted", path=str(path))
        return True

    async def list(self, path: str = "") -> List[RemoteFile]:
        directory = self.full_path(path)
        if not directory.is_dir():
            return []

        prefix = normalize_remote_path(path)
        entries: List[RemoteFile] = []
        for child in directory.iterdir():
            if child.name.endswith(".part"):
                continue
            stat = child.stat()
            entries.append(
                RemoteFile(
                    name=child.name,
                    path=f"{prefix}/{child.name}" if prefix else child.name,
                    size=stat.st_size if child.is_file() else 0,
                    modified=stat.st_mtime,
                    is_dir=child.is_dir(),
                )
            )

        entries.sort(key=lambda e: e.modified, reverse=True)
        return entries

    async def get_metadata(self, remote_path: str) -> RemoteMetadata | None:
        path = self.full_path(remote_path)
        if not path.is_file():
            return None

        digest = hashlib.md5()
        async with aiofiles.open(path, "rb") as f:
            while True:
                block = await f.read(DEFAULT_CHUNK_SIZE)
                if not block:
                    break
                digest.update(block)

        stat = path.stat()
        return RemoteMetadata(
            name=path.name,
            size=stat.st_size,
            modified=stat.st_mtime,
            checksum=digest.hexdigest(),
        )

    async def get_download_url(self, remote_path: str, expiry: int = 3600) -> str | None:
        path = self.full_path(remote_path)
        return path.as_uri() if path.is_file() else None

    async def get_storage_info(self) -> StorageInfo:
        if not self.root.is_dir():
            return StorageInfo()
        used = sum(p.stat().st_size for p in self.root.rglob("*") if p.is_file())
        return StorageInfo(used=used, total=shutil.disk_usage(self.root).total)

    def settings_fields(self) -> List[SettingsField]:
        return [
            SettingsField(name="path", label="Backup Directory", required=False, default=str(self.root)),
        ]

    def apply_settings(self, values: Dict[str, Any]) -> None:
        if values.get("path"):
            self.root = Path(values["path"])
