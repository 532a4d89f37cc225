"""
Full-text search over archived messages.

The search index is fed by the sync engine through SearchIndexNotifier
after each commit. Documents are derived data: they can always be rebuilt
from the object store with reindex_account().
"""

from __future__ import annotations

import logging
from datetime import datetime
from email import policy
from email.parser import BytesParser
from email.utils import parsedate_to_datetime
from typing import Sequence

from django.db.models import Q

from mailvault.models import Account, ManifestEntry, SearchDocument
from mailvault.storage import ObjectStore, object_key_for
from mailvault.sync.notifier import ArchivedObject, IndexNotifier

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100


class IndexingError(Exception):
    """Some archived messages could not be indexed."""

    def __init__(self, message: str = "", remote_ids: Sequence[str] = ()):
        super().__init__(message)
        self.remote_ids = list(remote_ids)


def parse_message(data: bytes) -> dict:
    """Extract the searchable fields from raw RFC 5322 bytes."""
    msg = BytesParser(policy=policy.default).parsebytes(data)

    recipients = ", ".join(
        str(msg.get(header, "")) for header in ("To", "Cc") if msg.get(header)
    )

    body = ""
    if msg.is_multipart():
        for part in msg.walk():
            if part.is_multipart() or part.get_filename():
                continue
            if part.get_content_type() == "text/plain":
                body += _part_text(part)
    elif msg.get_content_type() == "text/plain":
        body = _part_text(msg)

    return {
        "subject": str(msg.get("Subject", "")),
        "sender": str(msg.get("From", "")),
        "recipients": recipients,
        "sent_at": _parse_date(str(msg.get("Date", ""))),
        "body": body,
    }


def _part_text(part) -> str:
    try:
        return part.get_content()
    except (LookupError, ValueError):
        payload = part.get_payload(decode=True)
        return payload.decode("utf-8", errors="ignore") if payload else ""


def _parse_date(value: str) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def index_object(account: Account, store: ObjectStore, content_key: str, remote_id: str) -> SearchDocument:
    """Parse a stored message and upsert its search document."""
    data = store.get(object_key_for(content_key))
    fields = parse_message(data)
    document, _ = SearchDocument.objects.update_or_create(
        account=account,
        content_key=content_key,
        defaults={"remote_id": remote_id, **fields},
    )
    return document


class SearchIndexNotifier(IndexNotifier):
    """Indexes newly archived messages into SearchDocument rows."""

    def __init__(self, account: Account, store: ObjectStore):
        self.account = account
        self.store = store

    def notify(self, items: Sequence[ArchivedObject]) -> None:
        """
        Index every item, continuing past individual failures.

        Raises:
            IndexingError: After the batch, naming the items that failed
        """
        failed = []
        for item in items:
            try:
                index_object(self.account, self.store, item.content_key, item.remote_id)
            except Exception as e:
                logger.warning(f"Could not index {item.remote_id}: {e}", exc_info=True)
                failed.append(item.remote_id)

        logger.info(
            f"Indexed {len(items) - len(failed)} of {len(items)} message(s) for {self.account.name}"
        )
        if failed:
            raise IndexingError(
                f"{len(failed)} of {len(items)} message(s) could not be indexed",
                remote_ids=failed,
            )


def reindex_account(account: Account, store: ObjectStore) -> int:
    """Rebuild the search documents of an account from its manifest."""
    count = 0
    seen = set()
    for entry in ManifestEntry.objects.filter(account=account):
        if entry.content_key in seen:
            continue
        seen.add(entry.content_key)
        try:
            index_object(account, store, entry.content_key, entry.remote_id)
            count += 1
        except Exception as e:
            logger.warning(f"Could not index {entry.remote_id}: {e}")
    return count


def search(account: Account, query: str, limit: int = DEFAULT_LIMIT) -> list[SearchDocument]:
    """
    Find messages whose subject, sender or body contain every query term.

    Terms are matched case-insensitively; results are newest first.
    """
    terms = query.split()
    if not terms:
        return []

    documents = SearchDocument.objects.filter(account=account)
    for term in terms:
        documents = documents.filter(
            Q(subject__icontains=term) | Q(sender__icontains=term) | Q(body__icontains=term)
        )
    return list(documents[:limit])
