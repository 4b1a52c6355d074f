# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Job records shared by the lifecycle, the repositories and the orchestrators.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict

from ulid import ULID


class JobKind(str, Enum):
    FULL = "full"
    DATABASE = "database"
    FILES = "files"
    RESTORE = "restore"
    MIGRATE = "migrate"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Allowed status changes; terminal states have none
TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


@dataclass
class JobResult:
    """What a finished job produced."""

    filename: str | None = None
    path: str | None = None
    size: int = 0
    checksum: str | None = None
    # Per destination: {"success": bool, "error": str | None, "remote_paths": [...]}
    destinations: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    manifest: Dict[str, Any] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobResult":
        return cls(
            filename=data.get("filename"),
            path=data.get("path"),
            size=int(data.get("size") or 0),
            checksum=data.get("checksum"),
            destinations=dict(data.get("destinations") or {}),
            manifest=dict(data.get("manifest") or {}),
            details=dict(data.get("details") or {}),
        )


def new_job_id() -> str:
    return str(ULID())


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Job:
    """
    One backup, restore or migrate run.

    Only the lifecycle that owns a job changes its status; other callers
    may set cancel_requested and nothing else.
    """

    job_id: str
    kind: JobKind
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    message: str = ""
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: JobResult | None = None
    cancel_requested: bool = False

    @classmethod
    def new(cls, kind: JobKind) -> "Job":
        return cls(job_id=new_job_id(), kind=JobKind(kind))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "result": self.result.to_dict() if self.result else None,
            "cancel_requested": self.cancel_requested,
        }


@dataclass(frozen=True)
class JobStatusView:
    """Read-only snapshot returned to status queries."""

    job_id: str
    kind: str
    status: str
    progress: int
    message: str
    created_at: str
    started_at: str | None
    completed_at: str | None
    result: Dict[str, Any] | None
    cancel_requested: bool
    output_path: str | None = None
    output_size: int | None = None

    @classmethod
    def of(cls, job: Job) -> "JobStatusView":
        done = job.status is JobStatus.COMPLETED and job.result is not None
        return cls(
            **job.to_dict(),
            output_path=job.result.path if done else None,
            output_size=job.result.size if done else None,
        )
