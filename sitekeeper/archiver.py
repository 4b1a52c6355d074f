# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Archiver - Backup containers with an embedded manifest.

A container is a zip holding named payload entries (database.sql,
files.zip, sanitized config copies) plus manifest.json. The manifest
lists every payload entry with its size and SHA-256 checksum and is the
only basis for restore and migration decisions. A container whose
manifest is missing, unparseable or lacks a version is rejected before
anything is extracted.
"""

import asyncio
import hashlib
import hmac
import json
import platform
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, Sequence

import structlog

from sitekeeper import __version__
from sitekeeper.config import MB
from sitekeeper.exceptions import DataIOError, IntegrityError

logger = structlog.get_logger()

# Thread pool for hashing and zip I/O
_executor = ThreadPoolExecutor(max_workers=2)

MANIFEST_NAME = "manifest.json"
DATABASE_ENTRY = "database.sql"
FILES_ENTRY = "files.zip"
DEFAULT_PART_SIZE = 100 * MB
READ_BLOCK = 1024 * 1024


@dataclass(frozen=True)
class ArchiveEntry:
    """A local file to place in a container under name."""

    path: Path
    name: str


@dataclass
class ManifestFile:
    name: str
    size: int
    checksum: str


@dataclass
class Manifest:
    """Metadata record embedded in every container."""

    version: str
    created_at: str
    platform: Dict[str, str] = field(default_factory=dict)
    site_url: str = ""
    home_url: str = ""
    table_prefix: str = ""
    files: List[ManifestFile] = field(default_factory=list)
    file_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def entry_names(self) -> List[str]:
        return [f.name for f in self.files]

    @classmethod
    def from_dict(cls, data: Any) -> "Manifest":
        """
        Build a Manifest from parsed JSON.

        Raises:
            IntegrityError: If data is not an object, has no version, or
                has malformed fields
        """
        if not isinstance(data, dict):
            raise IntegrityError("Manifest is not a JSON object")

        version = data.get("version")
        if not isinstance(version, str) or not version:
            raise IntegrityError("Manifest is missing the version field")

        raw_files = data.get("files", [])
        if not isinstance(raw_files, list):
            raise IntegrityError("Manifest files field must be a list")

        files: List[ManifestFile] = []
        for item in raw_files:
            if not isinstance(item, dict) or "name" not in item:
                raise IntegrityError("Manifest file record is malformed", details={"record": item})
            files.append(
                ManifestFile(
                    name=str(item["name"]),
                    size=_manifest_int(item.get("size", 0), "size"),
                    checksum=str(item.get("checksum", "")),
                )
            )

        metadata = data.get("metadata", {})
        if not isinstance(metadata, dict):
            raise IntegrityError("Manifest metadata field must be an object")

        platform = data.get("platform") or {}
        if not isinstance(platform, dict):
            raise IntegrityError("Manifest platform field must be an object")

        return cls(
            version=version,
            created_at=str(data.get("created_at", "")),
            platform={str(k): str(v) for k, v in platform.items()},
            site_url=str(data.get("site_url") or ""),
            home_url=str(data.get("home_url") or ""),
            table_prefix=str(data.get("table_prefix") or ""),
            files=files,
            file_count=_manifest_int(data.get("file_count", len(files)), "file_count"),
            metadata=metadata,
        )


def _manifest_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise IntegrityError(f"Manifest {name} must be an integer", details={name: value})
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise IntegrityError(f"Manifest {name} must be an integer", details={name: value}) from e
    if number < 0:
        raise IntegrityError(f"Manifest {name} must not be negative", details={name: value})
    return number


def _hash_file_sync(path: Path, algorithm: str = "sha256") -> str:
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(READ_BLOCK), b""):
            digest.update(block)
    return digest.hexdigest()


def _write_container_sync(
    output: Path,
    entries: Sequence[ArchiveEntry],
    manifest: Manifest,
    compression_level: int,
) -> None:
    with zipfile.ZipFile(
        output,
        "w",
        compression=zipfile.ZIP_DEFLATED,
        compresslevel=compression_level,
        allowZip64=True,
    ) as zf:
        for entry in entries:
            # Nested zips are already compressed
            compress_type = zipfile.ZIP_STORED if entry.name.endswith(".zip") else zipfile.ZIP_DEFLATED
            zf.write(entry.path, entry.name, compress_type=compress_type)
        zf.writestr(MANIFEST_NAME, json.dumps(manifest.to_dict(), indent=2))


def _read_manifest_sync(path: Path) -> Manifest:
    try:
        with zipfile.ZipFile(path) as zf:
            try:
                raw = zf.read(MANIFEST_NAME)
            except KeyError:
                raise IntegrityError(
                    "Container has no manifest",
                    details={"path": str(path)},
                )
    except zipfile.BadZipFile as e:
        raise IntegrityError(f"Container is not readable: {e}", details={"path": str(path)}) from e
    except OSError as e:
        raise DataIOError(f"Failed to open container: {e}", details={"path": str(path)}) from e

    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise IntegrityError(f"Manifest is not valid JSON: {e}", details={"path": str(path)}) from e

    return Manifest.from_dict(data)


def _verify_container_sync(path: Path) -> bool:
    try:
        with zipfile.ZipFile(path) as zf:
            bad = zf.testzip()
            if bad is not None:
                logger.warning("container_entry_corrupt", path=str(path), entry=bad)
                return False
            if MANIFEST_NAME not in zf.namelist():
                logger.warning("container_manifest_missing", path=str(path))
                return False
        _read_manifest_sync(path)
        return True
    except (IntegrityError, DataIOError, zipfile.BadZipFile, OSError) as e:
        logger.warning("container_verification_failed", path=str(path), error=str(e))
        return False


def _safe_members(zf: zipfile.ZipFile, source: Path) -> List[zipfile.ZipInfo]:
    """Reject absolute or parent-relative names (path traversal)."""
    members = zf.infolist()
    for member in members:
        name = member.filename.replace("\\", "/")
        if name.startswith("/") or ".." in name.split("/") or (len(name) > 1 and name[1] == ":"):
            raise IntegrityError(
                f"Unsafe path in archive: {member.filename}",
                details={"path": str(source)},
            )
    return members


def extract_zip_sync(path: Path, dest: Path) -> List[str]:
    """Extract every member of a zip into dest after the traversal check."""
    with zipfile.ZipFile(path) as zf:
        members = _safe_members(zf, path)
        dest.mkdir(parents=True, exist_ok=True)
        zf.extractall(dest, members=members)
        return [m.filename for m in members]


def _split_sync(path: Path, part_size: int) -> List[Path]:
    parts: List[Path] = []
    base = path.with_suffix("") if path.suffix == ".zip" else path
    with open(path, "rb") as source:
        index = 1
        while True:
            remaining = part_size
            part_path = base.with_name(f"{base.name}.part{index:03d}")
            wrote = False
            with open(part_path, "wb") as part:
                while remaining > 0:
                    block = source.read(min(READ_BLOCK, remaining))
                    if not block:
                        break
                    part.write(block)
                    remaining -= len(block)
                    wrote = True
            if not wrote:
                part_path.unlink()
                break
            parts.append(part_path)
            index += 1
    return parts


def _join_sync(parts: Sequence[Path], output: Path) -> None:
    with open(output, "wb") as out:
        for part in parts:
            with open(part, "rb") as source:
                for block in iter(lambda: source.read(READ_BLOCK), b""):
                    out.write(block)


class Archiver:
    """
    Create, verify, checksum, split and join backup containers.

    Args:
        compression_level: Deflate level 0-9 for payload entries
        site_url: Canonical site URL recorded in manifests
        home_url: Home URL recorded in manifests
        table_prefix: Table prefix recorded in manifests
    """

    def __init__(
        self,
        compression_level: int = 6,
        *,
        site_url: str = "",
        home_url: str = "",
        table_prefix: str = "",
    ):
        self.compression_level = max(0, min(9, compression_level))
        self.site_url = site_url
        self.home_url = home_url or site_url
        self.table_prefix = table_prefix

    async def build_manifest(
        self,
        entries: Sequence[ArchiveEntry],
        metadata: Dict[str, Any] | None = None,
        database_version: str = "",
    ) -> Manifest:
        """Hash every entry and assemble the manifest record."""
        loop = asyncio.get_running_loop()
        files: List[ManifestFile] = []
        for entry in entries:
            checksum = await loop.run_in_executor(_executor, _hash_file_sync, entry.path, "sha256")
            files.append(
                ManifestFile(name=entry.name, size=entry.path.stat().st_size, checksum=checksum)
            )

        return Manifest(
            version=__version__,
            created_at=datetime.now(UTC).isoformat(),
            platform={
                "python": platform.python_version(),
                "sitekeeper": __version__,
                "database": database_version,
                "system": platform.system(),
            },
            site_url=self.site_url,
            home_url=self.home_url,
            table_prefix=self.table_prefix,
            files=files,
            file_count=len(files),
            metadata=dict(metadata or {}),
        )

    async def create_archive(
        self,
        entries: Sequence[ArchiveEntry],
        output: Path,
        metadata: Dict[str, Any] | None = None,
        database_version: str = "",
    ) -> Manifest:
        """
        Write entries and a manifest into a new container.

        The container is written to a temp path, re-opened and verified,
        and only then renamed to output.

        Args:
            entries: Payload files and their names inside the container
            output: Container path
            metadata: Free-form options recorded in the manifest
            database_version: Database server version for the manifest

        Returns:
            The embedded Manifest

        Raises:
            IntegrityError: If the written container fails verification
            DataIOError: If an entry cannot be read or the container written
        """
        names = [e.name for e in entries]
        if MANIFEST_NAME in names or len(set(names)) != len(names):
            raise IntegrityError("Duplicate or reserved entry name", details={"entries": names})

        output.parent.mkdir(parents=True, exist_ok=True)
        temp_path = output.with_name(output.name + ".tmp")
        loop = asyncio.get_running_loop()

        try:
            manifest = await self.build_manifest(entries, metadata, database_version)
            await loop.run_in_executor(
                _executor,
                _write_container_sync,
                temp_path,
                list(entries),
                manifest,
                self.compression_level,
            )
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise DataIOError(
                f"Failed to create container: {e}",
                details={"output": str(output)},
            ) from e

        if not await self.verify_archive(temp_path):
            temp_path.unlink(missing_ok=True)
            raise IntegrityError(
                "Container verification failed after creation",
                details={"output": str(output)},
            )

        temp_path.replace(output)

        logger.info(
            "container_created",
            output=str(output),
            entries=manifest.file_count,
            size=output.stat().st_size,
        )

        return manifest

    async def verify_archive(self, path: Path) -> bool:
        """
        Check that every entry is readable and the manifest is valid.

        Returns:
            True only if all entries pass CRC checks and the manifest
            parses with a version field
        """
        if not path.is_file():
            return False
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_executor, _verify_container_sync, path)

    async def read_manifest(self, path: Path) -> Manifest:
        """
        Read the manifest of a container.

        Raises:
            IntegrityError: If the manifest is missing or invalid
            DataIOError: If the container cannot be opened
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_executor, _read_manifest_sync, path)

    async def list_contents(self, path: Path) -> List[Dict[str, Any]]:
        def _list() -> List[Dict[str, Any]]:
            with zipfile.ZipFile(path) as zf:
                return [
                    {
                        "name": info.filename,
                        "size": info.file_size,
                        "compressed_size": info.compress_size,
                    }
                    for info in zf.infolist()
                ]

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(_executor, _list)
        except zipfile.BadZipFile as e:
            raise IntegrityError(f"Container is not readable: {e}", details={"path": str(path)}) from e

    async def extract(self, path: Path, dest: Path) -> Manifest:
        """
        Extract a container after passing the manifest gate.

        Args:
            path: Container path
            dest: Directory to extract into

        Returns:
            The container's manifest

        Raises:
            IntegrityError: On a missing/invalid manifest or unsafe entry names
        """
        manifest = await self.read_manifest(path)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(_executor, extract_zip_sync, path, dest)
        except OSError as e:
            raise DataIOError(f"Failed to extract container: {e}", details={"path": str(path)}) from e

        logger.info("container_extracted", path=str(path), dest=str(dest))
        return manifest

    async def calculate_checksum(self, path: Path, algorithm: str = "sha256") -> str:
        """Content hash over the whole container file."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(_executor, _hash_file_sync, path, algorithm)
        except OSError as e:
            raise DataIOError(f"Failed to hash file: {e}", details={"path": str(path)}) from e

    async def verify_checksum(self, path: Path, expected: str, algorithm: str = "sha256") -> bool:
        actual = await self.calculate_checksum(path, algorithm)
        return hmac.compare_digest(actual, expected.lower())

    async def split(self, path: Path, part_size: int = DEFAULT_PART_SIZE) -> List[Path]:
        """
        Partition a container into part_size pieces named <base>.partNNN.

        Returns [path] unchanged when the file already fits in one part.
        """
        if part_size <= 0:
            raise IntegrityError("part_size must be positive", details={"part_size": part_size})
        if path.stat().st_size <= part_size:
            return [path]

        loop = asyncio.get_running_loop()
        try:
            parts = await loop.run_in_executor(_executor, _split_sync, path, part_size)
        except OSError as e:
            raise DataIOError(f"Failed to split container: {e}", details={"path": str(path)}) from e

        logger.info("container_split", path=str(path), parts=len(parts))
        return parts

    async def join(self, parts: Sequence[Path], output: Path, verify: bool = True) -> Path:
        """
        Reassemble parts (sorted by name) into output.

        Raises:
            IntegrityError: If verify is set and the joined container is invalid
        """
        if not parts:
            raise IntegrityError("No parts to join")

        ordered = sorted(parts, key=lambda p: p.name)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(_executor, _join_sync, ordered, output)
        except OSError as e:
            raise DataIOError(f"Failed to join parts: {e}", details={"output": str(output)}) from e

        if verify and not await self.verify_archive(output):
            output.unlink(missing_ok=True)
            raise IntegrityError("Joined container failed verification", details={"output": str(output)})

        logger.info("container_joined", output=str(output), parts=len(ordered))
        return output
