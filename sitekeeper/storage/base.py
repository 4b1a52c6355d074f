# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Storage Contract - The interface every backup destination implements.

Adapters move finished containers between the local work directory and
a backend. Transfer operations (upload, upload_chunked, download) return
True on success and raise TransferError with a human-readable cause on
failure. Lookups (exists, get_metadata, list) never raise for a missing
object.

Adapter settings persist through a SettingsStore. Fields flagged secret
pass through an optional Cipher before they are stored.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Protocol

import aiofiles
import structlog

from sitekeeper.config import AdapterKind
from sitekeeper.exceptions import DataIOError, ValidationError

logger = structlog.get_logger()

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024

# (percent, chunk number, total chunks)
TransferProgress = Callable[[int, int, int], Awaitable[None]]


@dataclass
class RemoteFile:
    """One listing entry."""

    name: str
    path: str  # Path relative to the adapter root
    size: int
    modified: float  # Seconds since epoch
    is_dir: bool = False


@dataclass
class RemoteMetadata:
    name: str
    size: int
    modified: float
    checksum: str | None = None


@dataclass
class StorageInfo:
    """Space used and available; None when the backend does not report it."""

    used: int | None = None
    total: int | None = None


@dataclass(frozen=True)
class SettingsField:
    """Schema entry for one adapter setting."""

    name: str
    label: str
    type: str = "text"  # text, number, checkbox, password, select
    required: bool = False
    default: Any = None
    secret: bool = False
    options: Dict[str, str] = field(default_factory=dict)


class Cipher(Protocol):
    """Credential encryption supplied by the host application."""

    def encrypt(self, value: str) -> str: ...

    def decrypt(self, value: str) -> str: ...


class SettingsStore(Protocol):
    async def load(self, key: str) -> Dict[str, Any]: ...

    async def save(self, key: str, values: Dict[str, Any]) -> None: ...


class MemorySettingsStore:
    """Settings kept in a dict for the lifetime of the process."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}

    async def load(self, key: str) -> Dict[str, Any]:
        return dict(self._data.get(key, {}))

    async def save(self, key: str, values: Dict[str, Any]) -> None:
        self._data[key] = dict(values)


class JsonSettingsStore:
    """
    Settings persisted as one JSON document keyed by adapter.

    Writes go to a temp file that is then renamed over the document.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    async def _read_all(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                content = await f.read()
        except OSError as e:
            raise DataIOError(
                f"Failed to read settings: {e}",
                details={"path": str(self.path)},
            ) from e
        if not content.strip():
            return {}
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise DataIOError(
                f"Settings file is not valid JSON: {e}",
                details={"path": str(self.path)},
            ) from e
        return data if isinstance(data, dict) else {}

    async def load(self, key: str) -> Dict[str, Any]:
        return dict((await self._read_all()).get(key, {}))

    async def save(self, key: str, values: Dict[str, Any]) -> None:
        data = await self._read_all()
        data[key] = values
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(data, indent=2, sort_keys=True))
            temp_path.replace(self.path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise DataIOError(
                f"Failed to write settings: {e}",
                details={"path": str(self.path)},
            ) from e


def normalize_remote_path(path: str) -> str:
    """Strip leading/trailing slashes and use forward slashes."""
    return path.replace("\\", "/").strip("/")


class StorageAdapter(ABC):
    """
    Base class for backup destinations.

    Args:
        settings_store: Where adapter settings persist (default: in memory)
        cipher: Encrypts secret settings before they are stored
    """

    kind: AdapterKind
    name: str = ""

    # Largest single object the backend accepts; None means no limit
    max_file_size: int | None = None

    def __init__(
        self,
        settings_store: SettingsStore | None = None,
        cipher: Cipher | None = None,
    ):
        self._settings_store = settings_store or MemorySettingsStore()
        self._cipher = cipher

    def identify(self) -> tuple[str, str]:
        """(id, display name) of the adapter."""
        return self.kind.value, self.name

    @property
    def settings_key(self) -> str:
        return f"storage_{self.kind.value}"

    @abstractmethod
    def is_configured(self) -> bool:
        """True when the adapter has what it needs to attempt a connection."""

    @abstractmethod
    async def connect(self) -> bool:
        """Check the backend is reachable and writable."""

    @abstractmethod
    async def upload(self, local_path: Path, remote_path: str) -> bool:
        """Store local_path at remote_path."""

    async def upload_chunked(
        self,
        local_path: Path,
        remote_path: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_progress: TransferProgress | None = None,
    ) -> bool:
        """Upload in bounded pieces; backends without a chunked protocol use upload()."""
        return await self.upload(local_path, remote_path)

    @abstractmethod
    async def download(self, remote_path: str, local_path: Path) -> bool:
        """Fetch remote_path into local_path."""

    @abstractmethod
    async def delete(self, remote_path: str) -> bool:
        """Remove remote_path; a missing object counts as deleted."""

    @abstractmethod
    async def list(self, path: str = "") -> List[RemoteFile]:
        """Entries under path, newest first."""

    @abstractmethod
    async def get_metadata(self, remote_path: str) -> RemoteMetadata | None:
        """Metadata for remote_path, or None when it does not exist."""

    async def exists(self, remote_path: str) -> bool:
        return await self.get_metadata(remote_path) is not None

    async def get_download_url(self, remote_path: str, expiry: int = 3600) -> str | None:
        """Time-limited URL for remote_path; None when unsupported."""
        return None

    async def get_storage_info(self) -> StorageInfo:
        return StorageInfo()

    @abstractmethod
    def settings_fields(self) -> List[SettingsField]:
        """Schema of the settings this adapter accepts."""

    def apply_settings(self, values: Dict[str, Any]) -> None:
        """Apply loaded settings to the adapter instance."""

    async def load_settings(self) -> Dict[str, Any]:
        """
        Load stored settings, decrypt secret fields and apply them.

        Returns:
            The decrypted settings
        """
        values = await self._settings_store.load(self.settings_key)
        if self._cipher:
            for f in self.settings_fields():
                if f.secret and values.get(f.name):
                    values[f.name] = self._cipher.decrypt(values[f.name])
        self.apply_settings(values)
        return values

    async def save_settings(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate, encrypt and persist settings, then apply them.

        Unknown keys are dropped. Values are coerced to the field type.

        Returns:
            The sanitized settings (before encryption)

        Raises:
            ValidationError: If a required field is missing
        """
        sanitized: Dict[str, Any] = {}
        missing: List[str] = []

        for f in self.settings_fields():
            value = values.get(f.name, f.default)
            if value is None or value == "":
                if f.required:
                    missing.append(f.name)
                continue
            if f.type == "checkbox":
                sanitized[f.name] = bool(value)
            elif f.type == "number":
                sanitized[f.name] = int(value)
            else:
                sanitized[f.name] = str(value).strip()

        if missing:
            raise ValidationError(
                f"Missing required settings for {self.name}",
                details={"fields": missing},
            )

        stored = dict(sanitized)
        if self._cipher:
            for f in self.settings_fields():
                if f.secret and stored.get(f.name):
                    stored[f.name] = self._cipher.encrypt(stored[f.name])

        await self._settings_store.save(self.settings_key, stored)
        self.apply_settings(sanitized)

        logger.info("storage_settings_saved", adapter=self.kind.value)
        return sanitized
