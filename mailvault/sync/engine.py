"""
Core sync engine for mailbox archiving.

Runs passes of fetch -> reconcile -> write -> commit -> notify for one
account. State between passes lives only in the state store, so resuming
after a crash is a matter of loading it again.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from django.conf import settings
from django.utils import timezone

if TYPE_CHECKING:
    from mailvault.models import Account
    from mailvault.providers.base import RemoteMailbox
    from mailvault.storage import ObjectStore

from mailvault.providers.base import RemoteError
from mailvault.storage import ObjectStoreError
from mailvault.sync.committer import CheckpointCommitter, CommitResult, PassResult
from mailvault.sync.exceptions import (
    ObjectWriteFailure,
    SyncAbortedError,
    SyncCancelledError,
    SyncLockedError,
    TokenInvalidated,
    TransientRemoteError,
)
from mailvault.sync.fetcher import ChangeFetcher
from mailvault.sync.mailboxes import MailboxSnapshotter
from mailvault.sync.models import SyncEvent, SyncSession
from mailvault.sync.notifier import ArchivedObject, IndexNotifier, NullNotifier
from mailvault.sync.reconciler import ReconcileStats, reconcile
from mailvault.sync.state_store import SyncStateStore
from mailvault.sync.writer import ArchiveWriter, WriteOutcome

logger = logging.getLogger(__name__)


class PassState(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    WRITING = "writing"
    COMMITTING = "committing"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Result of a sync run."""

    passes: int = 0
    objects_archived: int = 0
    objects_written: int = 0
    objects_skipped: int = 0
    objects_destroyed: int = 0
    objects_failed: int = 0
    bytes_archived: int = 0
    full_resync: bool = False
    final_token: str = ""
    manifest_version: int = 0
    mailboxes_seen: int = 0
    mailboxes_archived: int = 0
    errors: list[Exception] = field(default_factory=list)


@dataclass
class PassOutcome:
    """Result of a single committed pass."""

    more_available: bool
    commit: CommitResult
    stats: ReconcileStats
    new_token: str


class SyncEngine:
    """
    Incremental sync engine for one account.

    Handles incremental passes from the committed state token, falls back
    to a full resynchronization when the remote expires the token, and
    retries transient failures with bounded backoff.
    """

    def __init__(
        self,
        account: Account,
        store: ObjectStore,
        client: RemoteMailbox,
        notifier: IndexNotifier | None = None,
        state_store: SyncStateStore | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
        concurrency: int | None = None,
        max_unit_attempts: int | None = None,
        pass_retries: int | None = None,
        backoff_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: threading.Event | None = None,
    ):
        self.account = account
        self.store = store
        self.client = client
        self.notifier = notifier or NullNotifier()
        self.state_store = state_store or SyncStateStore()

        self.pass_retries = _setting(pass_retries, "MAILVAULT_PASS_RETRIES", 3)
        self.backoff_seconds = _setting(backoff_seconds, "MAILVAULT_BACKOFF_SECONDS", 2)
        self.backoff_max_seconds = _setting(backoff_max_seconds, "MAILVAULT_BACKOFF_MAX_SECONDS", 60)
        self.sleep = sleep
        self.cancel_event = cancel_event or threading.Event()

        self.fetcher = ChangeFetcher(
            client,
            page_size=_setting(page_size, "MAILVAULT_PAGE_SIZE", 50),
            max_pages=_setting(max_pages, "MAILVAULT_MAX_PAGES", 20),
        )
        self.writer = ArchiveWriter(
            client,
            store,
            concurrency=_setting(concurrency, "MAILVAULT_WRITE_CONCURRENCY", 8),
            max_attempts=_setting(max_unit_attempts, "MAILVAULT_MAX_UNIT_ATTEMPTS", 3),
            retry_delay=self.backoff_seconds,
            retry_delay_max=self.backoff_max_seconds,
            sleep=sleep,
        )
        self.committer = CheckpointCommitter(self.state_store, store)
        self.mailboxes = MailboxSnapshotter(client, store)

        self.state = PassState.IDLE
        self.session: SyncSession | None = None
        self.lock_owner: str | None = None
        self._finished_units = 0

    def _transition(self, state: PassState) -> None:
        logger.debug(f"[{self.account.name}] {self.state.value} -> {state.value}")
        self.state = state

    def cancel(self) -> None:
        """Stop before the next unit; the current pass commits nothing."""
        self.cancel_event.set()

    def run_sync(self, full_resync: bool = False) -> SyncResult:
        """
        Sync the account until the remote reports no more changes.

        Args:
            full_resync: Ignore the stored token and enumerate every message

        Returns:
            SyncResult with statistics about the run

        Raises:
            SyncAbortedError: If the account is disabled or already syncing
            SyncCancelledError: If cancelled; committed passes are kept
            TransientRemoteError: After exhausting pass retries
            StateStoreCorruption: If a commit would break the manifest
        """
        if not self.account.is_active:
            raise SyncAbortedError(
                f"Account {self.account.name} is disabled", account=self.account.name
            )

        with self.state_store.account_lock(self.account) as owner:
            self.lock_owner = owner
            snapshot = self.state_store.load(self.account)
            is_full = full_resync or snapshot.is_initial

            self.session = SyncSession.objects.create(
                account=self.account,
                is_full_resync=is_full,
                start_token=snapshot.state_token,
            )

            logger.info(
                f"Starting {'full' if is_full else 'incremental'} sync for {self.account.name}"
            )

            result = SyncResult(full_resync=is_full, final_token=snapshot.state_token)
            try:
                force_full = full_resync
                while True:
                    outcome = self._run_pass_with_retries(force_full, result)
                    force_full = False
                    if not outcome.more_available:
                        break

                self._snapshot_mailboxes(result)

                self.session.status = "partial" if result.errors else "completed"
                self._close_session(result)

                logger.info(
                    f"Sync completed for {self.account.name}: "
                    f"{result.objects_archived} archived, "
                    f"{result.objects_skipped} already archived, "
                    f"{result.objects_failed} failed in {result.passes} pass(es)"
                )
                return result

            except SyncCancelledError:
                self.session.status = "cancelled"
                self._close_session(result)
                logger.warning(f"Sync cancelled for {self.account.name}")
                raise

            except Exception as e:
                self._transition(PassState.FAILED)
                self.session.status = "failed"
                self.session.error_message = str(e)
                self._close_session(result)
                logger.error(f"Sync failed for {self.account.name}: {e}", exc_info=True)
                raise

            finally:
                self.lock_owner = None

    def _close_session(self, result: SyncResult) -> None:
        self.session.completed_at = timezone.now()
        self.session.is_full_resync = result.full_resync
        self.session.end_token = result.final_token
        self.session.passes = result.passes
        self.session.objects_archived = result.objects_archived
        self.session.objects_skipped = result.objects_skipped
        self.session.objects_failed = result.objects_failed
        self.session.bytes_archived = result.bytes_archived
        self.session.save()

    def _run_pass_with_retries(self, full_resync: bool, result: SyncResult) -> PassOutcome:
        """Run one pass, retrying transient failures and resyncing on expired tokens."""
        attempt = 0
        resyncs = 0

        while True:
            try:
                return self.run_pass(full_resync=full_resync, result=result)

            except TransientRemoteError as e:
                self._transition(PassState.FAILED)
                attempt += 1
                if attempt > self.pass_retries:
                    snapshot = self.state_store.load(self.account)
                    raise TransientRemoteError(
                        f"Giving up after {attempt} attempts: {e}",
                        account=self.account.name,
                        last_token=snapshot.state_token,
                    ) from e

                delay = min(self.backoff_seconds * 2 ** (attempt - 1), self.backoff_max_seconds)
                logger.warning(
                    f"Transient error for {self.account.name} (attempt {attempt}/"
                    f"{self.pass_retries}), retrying in {delay}s: {e}"
                )
                self.sleep(delay)

            except TokenInvalidated as e:
                self._transition(PassState.FAILED)
                resyncs += 1
                if resyncs > self.pass_retries:
                    raise
                logger.warning(f"State token for {self.account.name} invalidated, running full resync: {e}")
                self._event("resync", message=str(e))
                full_resync = True
                result.full_resync = True

    def run_pass(self, full_resync: bool = False, result: SyncResult | None = None) -> PassOutcome:
        """
        Execute one pass and commit it.

        Args:
            full_resync: Start from an empty token instead of the committed one
            result: Optional SyncResult to accumulate into

        Returns:
            PassOutcome; more_available means another pass should follow
        """
        if result is None:
            result = SyncResult()

        self._renew_lock()
        self._transition(PassState.FETCHING)
        snapshot = self.state_store.load(self.account)
        since_token = "" if full_resync else snapshot.state_token
        batch = self.fetcher.fetch_changes(since_token)
        logger.info(
            f"Fetched {len(batch.records)} change(s) in {batch.pages} page(s) "
            f"for {self.account.name}"
        )

        self._transition(PassState.RECONCILING)
        stats = ReconcileStats()
        units = reconcile(batch.records, snapshot.manifest, snapshot.pending, stats)
        resolved = {p.remote_id for p in snapshot.pending if p.remote_id in snapshot.manifest}
        logger.debug(
            f"Reconciled: {stats.to_archive} to archive, {stats.already_archived} archived, "
            f"{stats.destroyed} destroyed, {stats.duplicates} duplicates"
        )

        self._transition(PassState.WRITING)
        self._finished_units = 0
        outcomes = self.writer.run(units, self.cancel_event, on_outcome=self._on_outcome)

        self._transition(PassState.COMMITTING)
        self._renew_lock()
        commit = self.committer.commit(
            self.account,
            PassResult(
                snapshot=snapshot,
                new_token=batch.new_token,
                outcomes=outcomes,
                resolved=resolved,
            ),
        )
        self._transition(PassState.IDLE)

        self._record_pass(commit, outcomes, stats, batch.new_token, result)
        self._notify(commit)

        return PassOutcome(
            more_available=batch.more_available,
            commit=commit,
            stats=stats,
            new_token=batch.new_token,
        )

    def _renew_lock(self) -> None:
        """
        Extend the account lease held by this run.

        Raises:
            SyncLockedError: If the lease expired and another pass took it
        """
        if self.lock_owner is None:
            return
        if not self.state_store.acquire_lock(self.account, self.lock_owner):
            snapshot = self.state_store.load(self.account)
            raise SyncLockedError(
                f"Lost the sync lock for {self.account.name} to another pass",
                account=self.account.name,
                last_token=snapshot.state_token,
            )

    def _snapshot_mailboxes(self, result: SyncResult) -> None:
        try:
            snapshot = self.mailboxes.snapshot()
        except (TransientRemoteError, RemoteError, ObjectStoreError) as e:
            logger.warning(f"Mailbox snapshot failed for {self.account.name}: {e}")
            self._event("mailbox_failed", message=str(e))
            return

        result.mailboxes_seen = snapshot.total
        result.mailboxes_archived = len(snapshot.written)
        if snapshot.written:
            self._event(
                "mailbox_snapshot",
                message=f"{len(snapshot.written)} of {snapshot.total} mailbox(es) stored",
            )

    def _on_outcome(self, outcome: WriteOutcome) -> None:
        self._finished_units += 1
        if self._finished_units % 100 == 0:
            logger.info(f"{self._finished_units} unit(s) finished for {self.account.name}")

    def _record_pass(
        self,
        commit: CommitResult,
        outcomes: list[WriteOutcome],
        stats: ReconcileStats,
        new_token: str,
        result: SyncResult,
    ) -> None:
        committed_ids = {entry.remote_id for entry in commit.committed}

        result.passes += 1
        result.objects_archived += len(commit.committed)
        result.objects_skipped += stats.already_archived
        result.objects_destroyed += stats.destroyed
        result.objects_failed += len(commit.gave_up)
        result.bytes_archived += sum(entry.size for entry in commit.committed)
        result.objects_written += sum(
            1 for o in outcomes if o.wrote_object and o.unit.remote_id in committed_ids
        )
        result.final_token = new_token
        result.manifest_version = commit.manifest_version

        for entry in commit.committed:
            self._event("object_archived", remote_id=entry.remote_id, content_key=entry.content_key)

        for outcome in commit.failed:
            self._event("object_failed", remote_id=outcome.unit.remote_id, message=outcome.error)

        for outcome in commit.gave_up:
            result.errors.append(
                ObjectWriteFailure(
                    f"Could not archive {outcome.unit.remote_id}: {outcome.error}",
                    remote_id=outcome.unit.remote_id,
                    attempts=outcome.total_attempts,
                    account=self.account.name,
                    last_token=new_token,
                )
            )

        self._event("checkpoint", message=f"Checkpoint v{commit.manifest_version}: token={new_token[:20]}...")

    def _notify(self, commit: CommitResult) -> None:
        if not commit.committed:
            return

        items = [
            ArchivedObject(
                content_key=entry.content_key,
                remote_id=entry.remote_id,
                archived_at=entry.archived_at,
            )
            for entry in commit.committed
        ]
        try:
            self.notifier.notify(items)
        except Exception as e:
            logger.error(f"Index notification failed for {self.account.name}: {e}", exc_info=True)
            self._event("notify_failed", message=str(e))

    def _event(self, event_type: str, **fields) -> None:
        if self.session is None:
            return
        SyncEvent.objects.create(session=self.session, event_type=event_type, **fields)


def _setting(value, name: str, default):
    if value is not None:
        return value
    return getattr(settings, name, default)
