"""Error taxonomy for the sync engine."""
from typing import Optional


class SyncError(Exception):
    """Base class for failures raised while applying a queued mutation."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetryableSyncError(SyncError):
    """Transient failure (network, timeout, 5xx, expired session).

    The item goes back to pending and is tried again on the next drain.
    """


class TerminalSyncError(SyncError):
    """The backend deterministically rejected the mutation (validation, conflict).

    Retrying the same payload cannot succeed, so the item is parked as failed.
    """
