"""
Persistent per-account sync state.

Holds the last acknowledged state token, the manifest of archived objects
and the queue of objects still waiting to be archived. A commit replaces
the token and appends to the manifest in a single transaction; load()
never observes a half-applied commit.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable, Iterator

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from mailvault.models import ManifestEntry, PendingObject, PendingStatus, SyncState
from mailvault.storage import parse_digest
from mailvault.sync.exceptions import StateStoreCorruption, SyncLockedError

if TYPE_CHECKING:
    from mailvault.models import Account

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManifestRecord:
    """An archived object as seen by the engine."""

    remote_id: str
    content_key: str
    size: int
    archived_at: datetime


@dataclass(frozen=True)
class PendingRecord:
    """A previously failed unit waiting for another attempt."""

    remote_id: str
    attempts: int
    last_error: str = ""


@dataclass
class SyncStateSnapshot:
    """Everything a pass needs to know about what is already archived."""

    state_token: str = ""
    manifest_version: int = 0
    last_committed_at: datetime | None = None
    manifest: dict[str, ManifestRecord] = field(default_factory=dict)
    pending: list[PendingRecord] = field(default_factory=list)

    @property
    def is_initial(self) -> bool:
        return not self.state_token


class SyncStateStore:
    """Loads and atomically commits SyncState and manifest rows."""

    def load(self, account: Account) -> SyncStateSnapshot:
        """
        Load the committed state for an account.

        Returns an empty snapshot when the account has never been synced.
        """
        state = SyncState.objects.filter(account=account).first()
        if state is None:
            return SyncStateSnapshot()

        manifest = {
            entry.remote_id: ManifestRecord(
                remote_id=entry.remote_id,
                content_key=entry.content_key,
                size=entry.size_bytes,
                archived_at=entry.archived_at,
            )
            for entry in ManifestEntry.objects.filter(account=account)
        }
        pending = [
            PendingRecord(p.remote_id, p.attempts, p.last_error)
            for p in PendingObject.objects.filter(
                account=account, status=PendingStatus.PENDING
            )
        ]

        return SyncStateSnapshot(
            state_token=state.state_token,
            manifest_version=state.manifest_version,
            last_committed_at=state.last_committed_at,
            manifest=manifest,
            pending=pending,
        )

    def commit(
        self,
        account: Account,
        expected_version: int,
        new_token: str,
        new_entries: Iterable[ManifestRecord] = (),
        failed: Iterable[PendingRecord] = (),
        resolved: Iterable[str] = (),
        max_object_retries: int | None = None,
    ) -> int:
        """
        Atomically advance the token and append manifest entries.

        Args:
            account: Account being synced
            expected_version: manifest_version the pass started from
            new_token: Token to persist
            new_entries: Entries confirmed durable in the object store
            failed: Units that failed this pass, with total attempts so far
            resolved: Remote ids whose pending rows are no longer needed
            max_object_retries: Attempts after which a pending unit is failed

        Returns:
            The new manifest_version

        Raises:
            StateStoreCorruption: If the state moved under us or an entry
                would rewrite an existing content key
        """
        if max_object_retries is None:
            max_object_retries = getattr(settings, "MAILVAULT_MAX_OBJECT_RETRIES", 5)

        with transaction.atomic():
            state, _ = SyncState.objects.select_for_update().get_or_create(account=account)

            if state.manifest_version != expected_version:
                raise StateStoreCorruption(
                    f"Manifest version moved from {expected_version} to "
                    f"{state.manifest_version} during the pass",
                    account=account.name,
                    last_token=state.state_token,
                )

            new_version = state.manifest_version + 1
            appended = self._append_entries(account, state, new_entries, new_version)
            self._record_failures(account, failed, max_object_retries)

            resolved = set(resolved) | appended
            if resolved:
                PendingObject.objects.filter(
                    account=account, remote_id__in=resolved
                ).delete()

            state.state_token = new_token
            state.manifest_version = new_version
            state.last_committed_at = timezone.now()
            state.save(update_fields=["state_token", "manifest_version", "last_committed_at"])

        logger.info(
            f"Committed {account.name} v{new_version}: {len(appended)} new entries, "
            f"token {new_token[:20]}..."
        )
        return new_version

    def _append_entries(
        self,
        account: Account,
        state: SyncState,
        entries: Iterable[ManifestRecord],
        version: int,
    ) -> set[str]:
        appended = set()
        for record in entries:
            try:
                parse_digest(record.content_key)
            except ValueError as e:
                raise StateStoreCorruption(
                    f"Refusing malformed content key for {record.remote_id}: {e}",
                    account=account.name,
                    last_token=state.state_token,
                ) from e

            existing = ManifestEntry.objects.filter(
                account=account, remote_id=record.remote_id
            ).first()
            if existing is not None:
                if existing.content_key != record.content_key:
                    raise StateStoreCorruption(
                        f"Entry {record.remote_id} is archived as {existing.content_key}, "
                        f"refusing to rewrite it as {record.content_key}",
                        account=account.name,
                        last_token=state.state_token,
                    )
                continue

            ManifestEntry.objects.create(
                account=account,
                remote_id=record.remote_id,
                content_key=record.content_key,
                size_bytes=record.size,
                archived_at=record.archived_at,
                manifest_version=version,
            )
            appended.add(record.remote_id)
        return appended

    def _record_failures(
        self,
        account: Account,
        failed: Iterable[PendingRecord],
        max_object_retries: int,
    ) -> None:
        for record in failed:
            status = (
                PendingStatus.FAILED
                if record.attempts >= max_object_retries
                else PendingStatus.PENDING
            )
            PendingObject.objects.update_or_create(
                account=account,
                remote_id=record.remote_id,
                defaults={
                    "attempts": record.attempts,
                    "last_error": record.last_error,
                    "status": status,
                },
            )
            if status == PendingStatus.FAILED:
                logger.warning(
                    f"Giving up on {record.remote_id} after {record.attempts} attempts: "
                    f"{record.last_error}"
                )

    def acquire_lock(self, account: Account, owner: str, ttl: int | None = None) -> bool:
        """
        Take the single-writer lease for an account.

        A lease older than its TTL is considered abandoned and can be taken
        over.
        """
        if ttl is None:
            ttl = getattr(settings, "MAILVAULT_LOCK_TTL_SECONDS", 3600)

        state, _ = SyncState.objects.get_or_create(account=account)
        now = timezone.now()
        taken = (
            SyncState.objects.filter(pk=state.pk)
            .filter(Q(lock_owner="") | Q(lock_expires_at__lt=now) | Q(lock_owner=owner))
            .update(lock_owner=owner, lock_expires_at=now + timedelta(seconds=ttl))
        )
        return taken == 1

    def release_lock(self, account: Account, owner: str) -> None:
        SyncState.objects.filter(account=account, lock_owner=owner).update(
            lock_owner="", lock_expires_at=None
        )

    @contextmanager
    def account_lock(self, account: Account) -> Iterator[str]:
        """
        Hold the account lock for the duration of the block.

        Raises:
            SyncLockedError: If another pass holds the lock
        """
        owner = uuid.uuid4().hex
        if not self.acquire_lock(account, owner):
            raise SyncLockedError(
                f"Account {account.name} is being synced by another pass",
                account=account.name,
            )
        try:
            yield owner
        finally:
            self.release_lock(account, owner)
