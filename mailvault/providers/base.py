"""
Remote mailbox contract consumed by the sync engine.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class RemoteError(Exception):
    """Base exception for remote mailbox operations."""

    pass


class TransportError(RemoteError):
    """Network failure, rate limiting or a server-side error. Retryable."""

    pass


class CannotCalculateChangesError(RemoteError):
    """The server can no longer compute changes since the given state token."""

    pass


class ObjectNotFoundError(RemoteError):
    """The requested object no longer exists on the server."""

    pass


class ChangeKind(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    DESTROYED = "destroyed"


@dataclass(frozen=True)
class ChangeRecord:
    """One reported change for a remote object."""

    remote_id: str
    change_kind: ChangeKind


@dataclass
class ChangePage:
    """A single response from the remote change feed."""

    records: list[ChangeRecord] = field(default_factory=list)
    next_token: str = ""
    has_more: bool = False


@dataclass
class RemoteObject:
    """Raw message bytes plus the metadata the server reported with them."""

    data: bytes
    metadata: dict = field(default_factory=dict)


class RemoteMailbox:
    """
    Source of change feeds, message bodies and mailbox (folder) listings.

    get_changes() must raise CannotCalculateChangesError for an expired
    token and TransportError for anything that is worth retrying.
    An empty state token asks for every object currently on the server.
    """

    def get_changes(self, state_token: str, max_page_size: int) -> ChangePage:
        raise NotImplementedError

    def fetch_message(self, remote_id: str) -> RemoteObject:
        raise NotImplementedError

    def fetch_object(self, remote_id: str) -> bytes:
        return self.fetch_message(remote_id).data

    def get_mailboxes(self) -> list[dict]:
        """Every mailbox on the server, as the server describes it."""
        raise NotImplementedError
