"""
Archive writing.

Fetches message bytes for each unit of work and stores them under their
content address, together with a JSON document of the message metadata
returned alongside them. Units are independent, so they run on a bounded thread
pool; results are handed back strictly in sequence order.

Workers never touch the database. Manifest bookkeeping stays with the
caller on the calling thread.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from django.utils import timezone

from mailvault.providers.base import ObjectNotFoundError, RemoteMailbox
from mailvault.storage import ObjectStore, compute_digest, metadata_key_for, object_key_for
from mailvault.sync.exceptions import SyncCancelledError
from mailvault.sync.reconciler import UnitOfWork

logger = logging.getLogger(__name__)


@dataclass
class WriteOutcome:
    """Result of archiving one unit of work."""

    unit: UnitOfWork
    content_key: str = ""
    object_key: str = ""
    metadata_key: str = ""
    size: int = 0
    archived_at: datetime | None = None
    wrote_object: bool = False
    attempts: int = 0
    error: str = ""
    permanent: bool = False

    @property
    def succeeded(self) -> bool:
        return bool(self.content_key) and not self.error

    @property
    def total_attempts(self) -> int:
        """Attempts across all passes, including earlier failed ones."""
        return self.unit.attempt + self.attempts


class OrderedReleaseBuffer:
    """
    Holds finished outcomes until every earlier sequence number is finished.

    add() returns the outcomes that became releasable, in order.
    """

    def __init__(self, sequences: Iterable[int]):
        self._order = sorted(sequences)
        self._position = 0
        self._held: dict[int, WriteOutcome] = {}

    def add(self, outcome: WriteOutcome) -> list[WriteOutcome]:
        self._held[outcome.unit.sequence] = outcome
        released = []
        while self._position < len(self._order):
            sequence = self._order[self._position]
            if sequence not in self._held:
                break
            released.append(self._held.pop(sequence))
            self._position += 1
        return released

    @property
    def complete(self) -> bool:
        return self._position == len(self._order)


class ArchiveWriter:
    """Fetches and stores objects for a pass."""

    def __init__(
        self,
        client: RemoteMailbox,
        store: ObjectStore,
        concurrency: int = 8,
        max_attempts: int = 3,
        retry_delay: float = 0,
        retry_delay_max: float = 60,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.store = store
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.retry_delay_max = retry_delay_max
        self.sleep = sleep

        # One lock per storage key, so a key is checked and written by a
        # single worker at a time
        self._claims: dict[str, threading.Lock] = {}
        self._claims_lock = threading.Lock()

    def _claim(self, key: str) -> threading.Lock:
        with self._claims_lock:
            return self._claims.setdefault(key, threading.Lock())

    def _put_once(self, key: str, data: bytes) -> bool:
        """Store data under key unless it is already there. Returns True if written."""
        with self._claim(key):
            if self.store.exists(key):
                return False
            self.store.put(key, data)
            return True

    def write_unit(self, unit: UnitOfWork) -> WriteOutcome:
        """
        Make one attempt at archiving a unit.

        Never raises for remote or storage failures; they are reported on
        the outcome.
        """
        outcome = WriteOutcome(unit=unit)
        try:
            message = self.client.fetch_message(unit.remote_id)
            data = message.data
            content_key = compute_digest(data)
            object_key = object_key_for(content_key)

            # Identical content may already be stored for another remote id
            outcome.wrote_object = self._put_once(object_key, data)

            document = json.dumps(
                {
                    "remoteId": unit.remote_id,
                    "contentKey": content_key,
                    "size": len(data),
                    "email": message.metadata,
                },
                sort_keys=True,
                indent=2,
            ).encode()
            metadata_key = metadata_key_for(unit.remote_id, document)
            self._put_once(metadata_key, document)

            outcome.content_key = content_key
            outcome.object_key = object_key
            outcome.metadata_key = metadata_key
            outcome.size = len(data)
            outcome.archived_at = timezone.now()
            logger.debug(f"Archived {unit.remote_id} as {content_key[:20]}...")

        except ObjectNotFoundError as e:
            outcome.error = f"Object no longer exists on the server: {e}"
            outcome.permanent = True

        except Exception as e:
            logger.warning(f"Failed to archive {unit.remote_id}: {e}")
            outcome.error = str(e) or e.__class__.__name__

        return outcome

    def run(
        self,
        units: list[UnitOfWork],
        cancel_event: threading.Event | None = None,
        on_outcome: Callable[[WriteOutcome], None] | None = None,
    ) -> list[WriteOutcome]:
        """
        Archive all units, retrying failures up to max_attempts.

        Args:
            units: Units from the reconciler
            cancel_event: When set, no new unit starts and the pass is abandoned
            on_outcome: Called on the calling thread, in sequence order, once
                a unit has succeeded or finally failed

        Returns:
            Final outcomes in sequence order

        Raises:
            SyncCancelledError: If cancel_event was set
        """
        with self._claims_lock:
            self._claims.clear()

        buffer = OrderedReleaseBuffer(u.sequence for u in units)
        attempts = {u.sequence: 0 for u in units}
        final: list[WriteOutcome] = []
        queue = list(units)
        round_number = 0

        while queue:
            round_number += 1
            retry = []

            if round_number > 1 and self.retry_delay > 0:
                delay = min(self.retry_delay * 2 ** (round_number - 2), self.retry_delay_max)
                logger.info(f"Waiting {delay}s before retry round {round_number}")
                self.sleep(delay)

            for outcome in self._run_round(queue, cancel_event):
                attempts[outcome.unit.sequence] += 1
                outcome.attempts = attempts[outcome.unit.sequence]

                if (
                    not outcome.succeeded
                    and not outcome.permanent
                    and outcome.attempts < self.max_attempts
                ):
                    retry.append(outcome.unit)
                    continue

                for released in buffer.add(outcome):
                    final.append(released)
                    if on_outcome:
                        on_outcome(released)

            if retry:
                logger.info(f"Retrying {len(retry)} unit(s) (round {round_number + 1})")
            queue = sorted(retry, key=lambda u: u.sequence)

        return final

    def _run_round(
        self,
        units: list[UnitOfWork],
        cancel_event: threading.Event | None,
    ) -> Iterable[WriteOutcome]:
        def guarded(unit: UnitOfWork) -> WriteOutcome | None:
            if cancel_event is not None and cancel_event.is_set():
                return None
            return self.write_unit(unit)

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = [pool.submit(guarded, unit) for unit in units]
            cancelled = False
            for future in as_completed(futures):
                outcome = future.result()
                if outcome is None:
                    cancelled = True
                    continue
                if not cancelled:
                    yield outcome

        if cancelled or (cancel_event is not None and cancel_event.is_set()):
            raise SyncCancelledError("Pass cancelled between units")
