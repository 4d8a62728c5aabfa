"""Exception hierarchy for calendar sync operations."""


class CalendarSyncError(Exception):
    """Base exception for calendar sync operations."""

    pass


class TransportError(CalendarSyncError):
    """Feed could not be fetched or the server returned a non-success status."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class SyncNotFoundError(CalendarSyncError):
    """Calendar sync configuration not found."""

    pass


class SyncInactiveError(CalendarSyncError):
    """Calendar sync configuration is disabled."""

    pass


class ConcurrencyConflictError(CalendarSyncError):
    """A sync run is already in progress for this configuration."""

    pass


class NoRunningSyncError(CalendarSyncError):
    """Cancel requested while no sync is running."""

    pass


class SyncCancelledError(CalendarSyncError):
    """The running sync was cancelled by an operator."""

    pass


class PermissionDeniedError(CalendarSyncError):
    """Caller is not an admin of the owning group."""

    pass
