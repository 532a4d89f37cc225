"""
Index notification boundary.

Notifiers are told about newly archived objects after each commit, in the
order the reconciler scheduled them. They are fire-and-forget: the engine
logs their failures and carries on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchivedObject:
    """Notification payload for one archived object."""

    content_key: str
    remote_id: str
    archived_at: datetime


class IndexNotifier:
    def notify(self, items: Sequence[ArchivedObject]) -> None:
        raise NotImplementedError


class NullNotifier(IndexNotifier):
    def notify(self, items: Sequence[ArchivedObject]) -> None:
        return None


class LoggingNotifier(IndexNotifier):
    """Logs each archived object; useful when no index is configured."""

    def notify(self, items: Sequence[ArchivedObject]) -> None:
        for item in items:
            logger.info(f"Archived {item.remote_id} -> {item.content_key}")


class CompositeNotifier(IndexNotifier):
    """Fans out to several notifiers. One failing does not stop the others."""

    def __init__(self, *notifiers: IndexNotifier):
        self.notifiers = list(notifiers)

    def notify(self, items: Sequence[ArchivedObject]) -> None:
        errors = []
        for notifier in self.notifiers:
            try:
                notifier.notify(items)
            except Exception as e:
                logger.error(f"{notifier.__class__.__name__} failed: {e}", exc_info=True)
                errors.append(e)
        if errors:
            raise errors[0]
