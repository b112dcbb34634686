"""Error taxonomy shared by every sync component.

Routine outcomes (conflicts, trust checks) are reported as result objects.
The exceptions below are raised at component boundaries and caught where a
component can turn them into item status or a ``success: False`` result.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class SyncError(Exception):
    code = "sync_error"
    retryable = False

    def __init__(self, message: str = "", **detail: Any):
        super().__init__(message or self.code)
        self.detail = detail


class NetworkError(SyncError):
    code = "network_error"
    retryable = True


class VersionConflictError(SyncError):
    code = "version_conflict"

    def __init__(self, message: str = "", current: Optional[dict] = None, **detail: Any):
        super().__init__(message, **detail)
        self.current = current


class TrustInsufficientError(SyncError):
    code = "trust_insufficient"


class EncryptionError(SyncError):
    code = "encryption_error"


class ValidationError(SyncError):
    code = "validation_error"


class QueueExhaustedError(SyncError):
    code = "queue_exhausted"


class AuthorizationError(SyncError):
    code = "authorization_error"


class StorageUnavailableError(SyncError):
    code = "storage_unavailable"


@dataclass
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[SyncError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: SyncError) -> "Result[T]":
        return cls(error=error)
