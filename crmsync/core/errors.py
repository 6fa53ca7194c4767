from __future__ import annotations

from enum import Enum


class CrmSyncError(Exception):
    """Base error for crmsync."""


class SyncErrorType(str, Enum):
    AUTH_ERROR = "AUTH_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @property
    def retryable(self) -> bool:
        return self not in (SyncErrorType.AUTH_ERROR, SyncErrorType.VALIDATION_ERROR)


class SyncError(CrmSyncError):
    """Sync failure carrying an explicit classification."""

    error_type: SyncErrorType = SyncErrorType.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        *,
        error_type: SyncErrorType | None = None,
        original: BaseException | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        if error_type is not None:
            self.error_type = error_type
        self.original = original
        self.status_code = status_code


class WrapperAuthError(SyncError):
    """Wrapper API rejected the bearer token."""

    error_type = SyncErrorType.AUTH_ERROR


class WrapperNetworkError(SyncError):
    """Wrapper API unreachable or timed out."""

    error_type = SyncErrorType.NETWORK_ERROR


class WrapperResponseError(SyncError):
    """Wrapper API returned a non-200 status or success=false."""

    error_type = SyncErrorType.UNKNOWN_ERROR


class SyncValidationError(SyncError):
    """Upstream or local data failed validation."""

    error_type = SyncErrorType.VALIDATION_ERROR


class EventPayloadError(CrmSyncError):
    """Stream message could not be decoded into a known assignment event."""
