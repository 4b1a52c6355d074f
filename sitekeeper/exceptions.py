# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Sitekeeper Exceptions - Custom exceptions for the sitekeeper package.
"""


class SitekeeperError(Exception):
    """Base exception for all Sitekeeper errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(SitekeeperError):
    """Raised when configuration is invalid."""

    pass


class ValidationError(SitekeeperError):
    """Raised on malformed caller input, e.g. an empty search string."""

    pass


class IntegrityError(SitekeeperError):
    """Raised when a manifest is missing or invalid, or a checksum mismatches."""

    pass


class DataIOError(SitekeeperError):
    """Raised when a local file or network read/write fails."""

    pass


class TransferError(SitekeeperError):
    """Raised when a storage adapter upload, download or session fails."""

    pass


class SizeLimitExceeded(SitekeeperError):
    """Raised when an archive exceeds the configured size ceiling."""

    pass


class ReplayError(SitekeeperError):
    """Raised when a dump statement fails during a strict restore."""

    pass


class BackupError(SitekeeperError):
    """Raised when a backup job cannot be completed."""

    pass


class RestoreError(SitekeeperError):
    """Raised when a restore job cannot be completed."""

    pass


class JobNotFoundError(SitekeeperError):
    """Raised when a job ID does not exist in the repository."""

    pass


class InvalidTransitionError(SitekeeperError):
    """Raised when a job status change breaks the lifecycle order."""

    pass


class JobCancelledError(SitekeeperError):
    """Raised at a step boundary when cancellation was requested."""

    pass
