"""
Checkpoint commits.

A token is only persisted after every object the pass claims to have
archived has been confirmed in the object store. Anything that cannot be
confirmed is carried forward as a pending retry instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from django.conf import settings

from mailvault.storage import ObjectStore, ObjectStoreError
from mailvault.sync.state_store import (
    ManifestRecord,
    PendingRecord,
    SyncStateSnapshot,
    SyncStateStore,
)
from mailvault.sync.writer import WriteOutcome

if TYPE_CHECKING:
    from mailvault.models import Account

logger = logging.getLogger(__name__)


@dataclass
class PassResult:
    """What a pass produced, ready to be committed."""

    snapshot: SyncStateSnapshot
    new_token: str
    outcomes: list[WriteOutcome] = field(default_factory=list)
    resolved: set[str] = field(default_factory=set)


@dataclass
class CommitResult:
    """What actually got committed, in sequence order."""

    manifest_version: int
    committed: list[ManifestRecord] = field(default_factory=list)
    failed: list[WriteOutcome] = field(default_factory=list)
    gave_up: list[WriteOutcome] = field(default_factory=list)


class CheckpointCommitter:
    """Confirms durability, then advances the sync state."""

    def __init__(
        self,
        state_store: SyncStateStore,
        store: ObjectStore,
        max_object_retries: int | None = None,
    ):
        self.state_store = state_store
        self.store = store
        if max_object_retries is None:
            max_object_retries = getattr(settings, "MAILVAULT_MAX_OBJECT_RETRIES", 5)
        self.max_object_retries = max_object_retries

    def _confirm(self, outcome: WriteOutcome) -> bool:
        keys = [outcome.object_key]
        if outcome.metadata_key:
            keys.append(outcome.metadata_key)
        try:
            return all(self.store.exists(key) for key in keys)
        except ObjectStoreError as e:
            logger.warning(f"Could not confirm {outcome.object_key}: {e}")
            return False

    def commit(self, account: Account, result: PassResult) -> CommitResult:
        """
        Commit a pass.

        Returns:
            CommitResult listing confirmed entries and failed units

        Raises:
            StateStoreCorruption: Propagated from the state store
        """
        snapshot = result.snapshot
        if (
            not result.outcomes
            and not result.resolved
            and result.new_token == snapshot.state_token
        ):
            logger.debug(f"Nothing to commit for {account.name}")
            return CommitResult(manifest_version=snapshot.manifest_version)

        committed: list[ManifestRecord] = []
        failed: list[WriteOutcome] = []

        for outcome in result.outcomes:
            if outcome.succeeded and self._confirm(outcome):
                committed.append(
                    ManifestRecord(
                        remote_id=outcome.unit.remote_id,
                        content_key=outcome.content_key,
                        size=outcome.size,
                        archived_at=outcome.archived_at,
                    )
                )
                continue

            if outcome.succeeded:
                outcome.error = f"Object {outcome.object_key} not visible after write"
                logger.warning(f"Unconfirmed write for {outcome.unit.remote_id}")
            failed.append(outcome)

        pending = []
        gave_up = []
        for outcome in failed:
            attempts = outcome.total_attempts
            if outcome.permanent:
                attempts = max(attempts, self.max_object_retries)
            if attempts >= self.max_object_retries:
                gave_up.append(outcome)
            pending.append(PendingRecord(outcome.unit.remote_id, attempts, outcome.error))

        version = self.state_store.commit(
            account,
            expected_version=snapshot.manifest_version,
            new_token=result.new_token,
            new_entries=committed,
            failed=pending,
            resolved=result.resolved,
            max_object_retries=self.max_object_retries,
        )

        return CommitResult(
            manifest_version=version,
            committed=committed,
            failed=failed,
            gave_up=gave_up,
        )
