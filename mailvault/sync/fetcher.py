"""
Change fetching.

Pages through the remote change feed from a committed token, one page at
a time, because each page's token is only valid as the input of the next
request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from mailvault.providers.base import (
    CannotCalculateChangesError,
    ChangeRecord,
    RemoteMailbox,
    TransportError,
)
from mailvault.sync.exceptions import TokenInvalidated, TransientRemoteError

logger = logging.getLogger(__name__)


@dataclass
class ChangeBatch:
    """Changes gathered for one pass."""

    records: list[ChangeRecord] = field(default_factory=list)
    new_token: str = ""
    more_available: bool = False
    pages: int = 0


class ChangeFetcher:
    """Collects change pages until the remote is caught up or max_pages is hit."""

    def __init__(self, client: RemoteMailbox, page_size: int = 50, max_pages: int = 20):
        if max_pages < 1:
            raise ValueError("max_pages must be at least 1")
        self.client = client
        self.page_size = page_size
        self.max_pages = max_pages

    def fetch_changes(self, since_token: str) -> ChangeBatch:
        """
        Fetch changes since a committed token.

        Args:
            since_token: Last committed token ("" for a full enumeration)

        Returns:
            ChangeBatch with records in the order received. When
            more_available is set, new_token is an intermediate checkpoint
            that is safe to commit.

        Raises:
            TransientRemoteError: Transport failure; no token was advanced
            TokenInvalidated: The remote cannot resume from since_token
        """
        batch = ChangeBatch(new_token=since_token)
        token = since_token

        while True:
            try:
                page = self.client.get_changes(token, self.page_size)
            except CannotCalculateChangesError as e:
                raise TokenInvalidated(
                    f"Remote rejected state token: {e}", last_token=since_token
                ) from e
            except TransportError as e:
                raise TransientRemoteError(
                    f"Change fetch failed after {batch.pages} page(s): {e}",
                    last_token=since_token,
                ) from e

            batch.pages += 1
            batch.records.extend(page.records)
            token = page.next_token or token
            logger.debug(
                f"Fetched change page {batch.pages}: {len(page.records)} records, "
                f"has_more={page.has_more}"
            )

            if not page.has_more:
                batch.more_available = False
                break
            if batch.pages >= self.max_pages:
                batch.more_available = True
                logger.info(f"Reached {self.max_pages} pages, continuing in a later pass")
                break

        batch.new_token = token
        return batch
