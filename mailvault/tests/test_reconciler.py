from django.test import SimpleTestCase

from mailvault.providers.base import ChangeKind, ChangeRecord
from mailvault.sync.reconciler import ReconcileStats, UnitOfWork, reconcile
from mailvault.sync.state_store import PendingRecord


def created(remote_id):
    return ChangeRecord(remote_id, ChangeKind.CREATED)


class ReconcileTests(SimpleTestCase):
    def test_created_records_become_units_in_order(self):
        units = reconcile([created("a"), created("b"), created("c")], {})

        self.assertEqual(
            units,
            [UnitOfWork(0, "a"), UnitOfWork(1, "b"), UnitOfWork(2, "c")],
        )

    def test_archived_ids_are_skipped(self):
        stats = ReconcileStats()
        units = reconcile([created("a"), created("b")], {"a": object()}, stats=stats)

        self.assertEqual([u.remote_id for u in units], ["b"])
        self.assertEqual(stats.already_archived, 1)

    def test_updated_archived_id_is_noop(self):
        units = reconcile([ChangeRecord("a", ChangeKind.UPDATED)], {"a": object()})
        self.assertEqual(units, [])

    def test_updated_unarchived_id_is_archived(self):
        units = reconcile([ChangeRecord("a", ChangeKind.UPDATED)], {})
        self.assertEqual([u.remote_id for u in units], ["a"])

    def test_destroyed_records_produce_no_work(self):
        stats = ReconcileStats()
        units = reconcile(
            [created("a"), ChangeRecord("a", ChangeKind.DESTROYED), ChangeRecord("z", ChangeKind.DESTROYED)],
            {},
            stats=stats,
        )

        self.assertEqual([u.remote_id for u in units], ["a"])
        self.assertEqual(stats.destroyed, 2)

    def test_duplicates_keep_first_position(self):
        stats = ReconcileStats()
        units = reconcile(
            [created("a"), created("b"), ChangeRecord("a", ChangeKind.UPDATED)],
            {},
            stats=stats,
        )

        self.assertEqual([(u.sequence, u.remote_id) for u in units], [(0, "a"), (1, "b")])
        self.assertEqual(stats.duplicates, 1)

    def test_pending_units_come_first_with_attempts(self):
        pending = [PendingRecord("p1", 2, "timeout"), PendingRecord("done", 1)]
        units = reconcile([created("p1"), created("n1")], {"done": object()}, pending)

        self.assertEqual(units, [UnitOfWork(0, "p1", 2), UnitOfWork(1, "n1")])

    def test_deterministic(self):
        records = [created("x"), created("y"), ChangeRecord("x", ChangeKind.UPDATED)]
        manifest = {"y": object()}

        self.assertEqual(reconcile(records, manifest), reconcile(records, manifest))

    def test_empty_input(self):
        self.assertEqual(reconcile([], {}), [])
