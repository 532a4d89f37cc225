"""
Exceptions for sync operations.
"""


class SyncError(Exception):
    """
    Base exception for sync operations.

    Fatal errors carry the account name and the last committed token so
    a later run can resume from a known-good checkpoint.
    """

    def __init__(self, message: str = "", account: str | None = None, last_token: str | None = None):
        super().__init__(message)
        self.account = account
        self.last_token = last_token


class SyncAbortedError(SyncError):
    """Sync was aborted (e.g., account disabled, credentials missing)."""

    pass


class SyncLockedError(SyncAbortedError):
    """Another pass holds the account lock."""

    pass


class SyncCancelledError(SyncError):
    """The pass was cancelled between units; nothing was committed."""

    pass


class TransientRemoteError(SyncError):
    """Network or rate-limit failure talking to the remote mailbox."""

    pass


class TokenInvalidated(SyncError):
    """The remote can no longer resume from the stored state token."""

    pass


class ObjectWriteFailure(SyncError):
    """A single object could not be archived after all retries."""

    def __init__(self, message: str = "", remote_id: str = "", attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.remote_id = remote_id
        self.attempts = attempts


class StateStoreCorruption(SyncError):
    """A commit would violate the manifest's invariants. Needs manual repair."""

    pass
