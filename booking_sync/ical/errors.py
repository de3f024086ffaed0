from __future__ import annotations


class SyncError(RuntimeError):
    """Raised when a sync run cannot complete."""


class ConfigNotFoundError(SyncError):
    """Raised when the requested sync configuration does not exist."""

    def __init__(self, configuration_id: str):
        self.configuration_id = configuration_id
        super().__init__(f"Sync configuration not found: {configuration_id}")


class FeedUnreachableError(SyncError):
    """Raised when the feed cannot be fetched (transport error or non-2xx)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
    ):
        self.status_code = status_code
        self.reason = reason
        super().__init__(message)


class ReconcileFailureError(SyncError):
    """Raised when replacing stored external bookings fails."""


class SyncInProgressError(SyncError):
    """Raised when another run holds the configuration's sync lock."""

    def __init__(self, configuration_id: str, *, retry_after: int | None = None):
        self.configuration_id = configuration_id
        self.retry_after = retry_after
        super().__init__(f"Sync already running for configuration {configuration_id}")


class SyncCancelledError(SyncError):
    """Raised when a run is cancelled before its bookings are replaced."""


class SyncLockUnavailableError(SyncError):
    """Raised when the lock backend cannot be reached to take the sync lock."""


class SyncStateError(SyncError):
    """Raised when bookings were stored but the run could not be recorded."""


__all__ = [
    "ConfigNotFoundError",
    "FeedUnreachableError",
    "ReconcileFailureError",
    "SyncCancelledError",
    "SyncError",
    "SyncInProgressError",
    "SyncLockUnavailableError",
    "SyncStateError",
]
