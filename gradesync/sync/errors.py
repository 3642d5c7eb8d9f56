"""Exception types raised by the sync subsystem."""


class SyncError(Exception):
    """Base class for sync errors."""

    status_code = 500


class ValidationError(SyncError):
    """A request or change record has the wrong shape."""

    status_code = 400


class AuthError(SyncError):
    """The push token did not match the configured secret."""

    status_code = 403


class ApplyError(SyncError):
    """A single change could not be applied.

    Reported inline in the batch result, never raised to the HTTP layer.
    """

    def __init__(self, change_id: str, message: str):
        super().__init__(message)
        self.change_id = change_id


class StoreError(SyncError):
    """The record store or change log could not be read or written."""

    status_code = 500


class StoreBusyError(StoreError):
    """A store call did not finish within the request timeout."""

    status_code = 503
