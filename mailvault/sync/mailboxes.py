"""
Mailbox (folder) snapshots.

Each Mailbox object from the remote is stored as a JSON document addressed
by its digest. An unchanged mailbox maps to a key that already exists and is
skipped; a renamed or moved one gets a new version beside the old.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from mailvault.providers.base import RemoteMailbox, TransportError
from mailvault.storage import ObjectStore, mailbox_key_for
from mailvault.sync.exceptions import TransientRemoteError

logger = logging.getLogger(__name__)


@dataclass
class MailboxSnapshot:
    total: int = 0
    written: list[str] = field(default_factory=list)


class MailboxSnapshotter:
    def __init__(self, client: RemoteMailbox, store: ObjectStore):
        self.client = client
        self.store = store

    def snapshot(self) -> MailboxSnapshot:
        """
        Store every mailbox not already archived in its current form.

        Raises:
            TransientRemoteError: If the listing could not be fetched
            RemoteError: If the remote rejected the request
            ObjectStoreError: If a document could not be stored
        """
        try:
            mailboxes = self.client.get_mailboxes()
        except TransportError as e:
            raise TransientRemoteError(f"Could not list mailboxes: {e}") from e

        result = MailboxSnapshot(total=len(mailboxes))
        for mailbox in mailboxes:
            mailbox_id = mailbox.get("id")
            if not mailbox_id:
                logger.warning(f"Skipping mailbox without an id: {mailbox.get('name', '?')}")
                continue

            data = json.dumps(mailbox, sort_keys=True, indent=2).encode()
            key = mailbox_key_for(mailbox_id, data)
            if self.store.exists(key):
                continue
            self.store.put(key, data)
            result.written.append(key)

        logger.debug(f"Mailbox snapshot: {len(result.written)} of {result.total} stored")
        return result
