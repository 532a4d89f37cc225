"""
Delta reconciliation.

Turns the change records of a pass into the ordered list of objects that
still need archiving. The archive never changes what it already holds, so
updates to archived objects and destroyed objects produce no work.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from mailvault.providers.base import ChangeKind, ChangeRecord


@dataclass(frozen=True)
class UnitOfWork:
    """One fetch-and-write task, owned by the pass that created it."""

    sequence: int
    remote_id: str
    attempt: int = 0


@dataclass
class ReconcileStats:
    """How the records of a pass were classified."""

    to_archive: int = 0
    already_archived: int = 0
    destroyed: int = 0
    duplicates: int = 0


def reconcile(
    records: Iterable[ChangeRecord],
    manifest: Mapping[str, object],
    pending: Iterable = (),
    stats: ReconcileStats | None = None,
) -> list[UnitOfWork]:
    """
    Compute the units of work for a pass.

    Args:
        records: Change records in the order the remote reported them
        manifest: Archived objects keyed by remote id
        pending: Earlier failures (objects with remote_id and attempts),
            retried ahead of new records
        stats: Optional counters to fill in

    Returns:
        Units in sequence order. The result depends only on the inputs.
    """
    if stats is None:
        stats = ReconcileStats()

    units: list[UnitOfWork] = []
    scheduled: set[str] = set()

    for item in pending:
        if item.remote_id in manifest or item.remote_id in scheduled:
            continue
        units.append(UnitOfWork(len(units), item.remote_id, item.attempts))
        scheduled.add(item.remote_id)
        stats.to_archive += 1

    for record in records:
        if record.change_kind == ChangeKind.DESTROYED:
            # Archived copies are kept forever
            stats.destroyed += 1
            continue

        if record.remote_id in manifest:
            stats.already_archived += 1
            continue

        if record.remote_id in scheduled:
            stats.duplicates += 1
            continue

        units.append(UnitOfWork(len(units), record.remote_id))
        scheduled.add(record.remote_id)
        stats.to_archive += 1

    return units
