"""Tests for the SyncEngine."""

import json
import threading
from unittest.mock import MagicMock, patch

from django.test import TestCase, override_settings

from mailvault.models import Account, ManifestEntry, PendingObject, PendingStatus
from mailvault.storage import compute_digest
from mailvault.sync import PassState, SyncEngine
from mailvault.sync.committer import CheckpointCommitter
from mailvault.sync.exceptions import (
    ObjectWriteFailure,
    SyncAbortedError,
    SyncCancelledError,
    SyncLockedError,
    TransientRemoteError,
)
from mailvault.sync.models import SyncEvent, SyncSession
from mailvault.sync.notifier import IndexNotifier
from mailvault.sync.state_store import SyncStateStore

from .fakes import FakeRemoteMailbox, MemoryObjectStore, message_bytes


class RecordingNotifier(IndexNotifier):
    def __init__(self):
        self.items = []

    def notify(self, items):
        self.items.extend(items)


class FailingNotifier(IndexNotifier):
    def notify(self, items):
        raise RuntimeError("index unavailable")


class SyncEngineTestCase(TestCase):
    """Base test case with common setup for SyncEngine tests."""

    def setUp(self):
        self.account = Account.objects.create(
            name="personal",
            host="https://jmap.example.com",
            is_active=True,
        )
        self.remote = FakeRemoteMailbox()
        self.store = MemoryObjectStore()
        self.notifier = RecordingNotifier()
        self.sleep = MagicMock()

    def make_engine(self, account=None, store=None, **kwargs):
        options = {
            "notifier": self.notifier,
            "page_size": 50,
            "max_pages": 20,
            "concurrency": 4,
            "max_unit_attempts": 2,
            "pass_retries": 3,
            "backoff_seconds": 2,
            "backoff_max_seconds": 60,
            "sleep": self.sleep,
        }
        options.update(kwargs)
        return SyncEngine(
            account=account or self.account,
            store=store or self.store,
            client=self.remote,
            **options,
        )

    def manifest(self, account=None):
        return dict(
            ManifestEntry.objects.filter(account=account or self.account)
            .values_list("remote_id", "content_key")
        )

    def state(self):
        return SyncStateStore().load(self.account)


class InitialSyncTests(SyncEngineTestCase):
    def test_three_created_records(self):
        for remote_id in ["m0", "m1", "m2"]:
            self.remote.add_message(remote_id)

        result = self.make_engine().run_sync()

        self.assertEqual(result.objects_archived, 3)
        self.assertEqual(ManifestEntry.objects.filter(account=self.account).count(), 3)
        self.assertEqual(self.state().state_token, self.remote.current_token)
        self.assertEqual([item.remote_id for item in self.notifier.items], ["m0", "m1", "m2"])
        self.assertEqual(
            [item.content_key for item in self.notifier.items],
            [compute_digest(self.remote.messages[r]) for r in ["m0", "m1", "m2"]],
        )

    def test_initial_sync_creates_session(self):
        self.remote.add_message("m0")

        result = self.make_engine().run_sync()

        session = SyncSession.objects.get(account=self.account)
        self.assertTrue(result.full_resync)
        self.assertTrue(session.is_full_resync)
        self.assertEqual(session.status, "completed")
        self.assertEqual(session.start_token, "")
        self.assertEqual(session.end_token, "s1")
        self.assertEqual(session.objects_archived, 1)
        self.assertIsNotNone(session.completed_at)
        self.assertTrue(
            SyncEvent.objects.filter(session=session, event_type="object_archived", remote_id="m0").exists()
        )

    def test_empty_mailbox_commits_token(self):
        result = self.make_engine().run_sync()

        self.assertEqual(result.objects_archived, 0)
        self.assertEqual(self.state().state_token, "s0")

    def test_paged_enumeration_runs_several_passes(self):
        for i in range(5):
            self.remote.add_message(f"m{i}")

        result = self.make_engine(page_size=2, max_pages=1).run_sync()

        self.assertEqual(result.passes, 3)
        self.assertEqual(len(self.manifest()), 5)
        self.assertEqual(self.state().state_token, "s5")
        self.assertEqual(self.state().manifest_version, 3)

    def test_engine_returns_to_idle(self):
        engine = self.make_engine()
        engine.run_sync()
        self.assertEqual(engine.state, PassState.IDLE)


class IncrementalSyncTests(SyncEngineTestCase):
    def setUp(self):
        super().setUp()
        for remote_id in ["m0", "m1", "m2"]:
            self.remote.add_message(remote_id)
        self.make_engine().run_sync()
        self.notifier.items.clear()

    def test_second_run_is_idempotent(self):
        before = self.state()
        puts = self.store.put_count

        result = self.make_engine().run_sync()

        after = self.state()
        self.assertEqual(result.objects_archived, 0)
        self.assertEqual(after.state_token, before.state_token)
        self.assertEqual(after.manifest_version, before.manifest_version)
        self.assertEqual(len(after.manifest), 3)
        self.assertEqual(self.store.put_count, puts)
        self.assertEqual(self.notifier.items, [])

    def test_new_messages_archived(self):
        self.remote.add_message("m3")

        result = self.make_engine().run_sync()

        self.assertFalse(result.full_resync)
        self.assertEqual(result.objects_archived, 1)
        self.assertIn("m3", self.manifest())
        self.assertEqual(self.state().state_token, "s4")

    def test_destroyed_record_keeps_manifest(self):
        self.remote.destroy_message("m1")

        result = self.make_engine().run_sync()

        self.assertEqual(result.objects_destroyed, 1)
        self.assertEqual(len(self.manifest()), 3)
        self.assertEqual(self.state().state_token, "s4")

    def test_update_of_archived_message_is_noop(self):
        original = self.manifest()["m0"]
        self.remote.messages["m0"] = b"rewritten"
        self.remote.update_message("m0")
        self.remote.fetch_calls.clear()

        result = self.make_engine().run_sync()

        self.assertEqual(result.objects_skipped, 1)
        self.assertEqual(self.manifest()["m0"], original)
        self.assertEqual(self.remote.fetch_calls, [])
        self.assertEqual(self.state().state_token, "s4")

    def test_invalid_token_triggers_full_resync(self):
        prior = self.manifest()
        self.remote.add_message("m3")
        self.remote.expired_tokens.add("s3")

        result = self.make_engine().run_sync()

        manifest = self.manifest()
        self.assertTrue(result.full_resync)
        self.assertEqual(result.objects_archived, 1)
        self.assertTrue(set(prior.items()) <= set(manifest.items()))
        self.assertEqual(sorted(manifest), ["m0", "m1", "m2", "m3"])
        self.assertEqual(len(manifest.values()), len(set(manifest.values())))
        self.assertEqual(self.state().state_token, "s4")
        self.assertTrue(SyncEvent.objects.filter(event_type="resync").exists())

    def test_forced_full_resync_skips_archived(self):
        self.remote.fetch_calls.clear()

        result = self.make_engine().run_sync(full_resync=True)

        self.assertTrue(result.full_resync)
        self.assertEqual(result.objects_skipped, 3)
        self.assertEqual(self.remote.fetch_calls, [])
        self.assertEqual(self.remote.change_calls[-1], "")


class ContentDedupTests(SyncEngineTestCase):
    def test_identical_bytes_stored_once(self):
        data = message_bytes("Same newsletter")
        self.remote.add_message("a", data)
        self.remote.add_message("b", data)

        self.make_engine(concurrency=1).run_sync()

        manifest = self.manifest()
        self.assertEqual(self.store.blob_put_count, 1)
        self.assertEqual(len(manifest), 2)
        self.assertEqual(manifest["a"], manifest["b"])

    def test_identical_bytes_stored_once_under_concurrency(self):
        data = message_bytes("Same newsletter")
        for remote_id in ["a", "b", "c"]:
            self.remote.add_message(remote_id, data)
        self.store.exists_delay = 0.05

        result = self.make_engine(concurrency=4).run_sync()

        self.assertEqual(self.store.blob_put_count, 1)
        self.assertEqual(result.objects_written, 1)
        self.assertEqual(len(set(self.manifest().values())), 1)


class OrderingTests(SyncEngineTestCase):
    def test_notifications_follow_change_order_under_concurrency(self):
        remote_ids = [f"m{i}" for i in range(10)]
        for i, remote_id in enumerate(remote_ids):
            self.remote.add_message(remote_id)
            self.remote.fetch_delays[remote_id] = 0.01 * (len(remote_ids) - i)

        self.make_engine(concurrency=8).run_sync()

        self.assertEqual([item.remote_id for item in self.notifier.items], remote_ids)
        self.assertEqual(
            [item.content_key for item in self.notifier.items],
            [compute_digest(self.remote.messages[r]) for r in remote_ids],
        )


class CrashSafetyTests(SyncEngineTestCase):
    def setUp(self):
        super().setUp()
        for i in range(6):
            self.remote.add_message(f"m{i}")

    def reference_manifest(self):
        other = Account.objects.create(name="reference", host="https://jmap.example.com")
        self.make_engine(account=other, store=MemoryObjectStore(), notifier=RecordingNotifier()).run_sync()
        return self.manifest(other)

    def test_crash_before_commit_leaves_state_untouched(self):
        with patch.object(CheckpointCommitter, "commit", side_effect=RuntimeError("power loss")):
            with self.assertRaises(RuntimeError):
                self.make_engine().run_sync()

        snapshot = self.state()
        self.assertEqual(snapshot.state_token, "")
        self.assertEqual(snapshot.manifest, {})
        self.assertEqual(SyncSession.objects.get(account=self.account).status, "failed")

        self.make_engine().run_sync()

        self.assertEqual(self.manifest(), self.reference_manifest())

    def test_crash_mid_enumeration_resumes_from_committed_cursor(self):
        commit = CheckpointCommitter.commit
        calls = []

        def crash_on_second_commit(committer, account, result):
            calls.append(result.new_token)
            if len(calls) == 2:
                raise RuntimeError("power loss")
            return commit(committer, account, result)

        with patch.object(
            CheckpointCommitter, "commit", autospec=True, side_effect=crash_on_second_commit
        ):
            with self.assertRaises(RuntimeError):
                self.make_engine(page_size=2, max_pages=1).run_sync()

        cursor = self.state().state_token
        self.assertEqual(cursor, calls[0])
        self.assertTrue(cursor.startswith("enum:"))
        self.assertEqual(sorted(self.manifest()), ["m0", "m1"])

        self.remote.change_calls.clear()
        self.make_engine(page_size=2, max_pages=1).run_sync()

        self.assertEqual(self.remote.change_calls[0], cursor)
        self.assertEqual(self.manifest(), self.reference_manifest())

    def test_cancelled_pass_commits_nothing(self):
        cancel = threading.Event()
        fetched = []

        def cancel_after_two(remote_id):
            fetched.append(remote_id)
            if len(fetched) == 2:
                cancel.set()

        self.remote.on_fetch = cancel_after_two

        with self.assertRaises(SyncCancelledError):
            self.make_engine(concurrency=1, cancel_event=cancel).run_sync()

        self.assertEqual(self.state().manifest, {})
        self.assertEqual(self.notifier.items, [])
        self.assertEqual(SyncSession.objects.get(account=self.account).status, "cancelled")

        self.remote.on_fetch = None
        self.make_engine().run_sync()

        self.assertEqual(self.manifest(), self.reference_manifest())
        self.assertEqual(len(self.notifier.items), 6)


class PendingRetryTests(SyncEngineTestCase):
    def setUp(self):
        super().setUp()
        for remote_id in ["m0", "m1", "m2"]:
            self.remote.add_message(remote_id)

    def test_failed_unit_retried_next_run(self):
        self.remote.broken_ids.add("m1")

        first = self.make_engine(max_unit_attempts=1).run_sync()

        self.assertEqual(sorted(self.manifest()), ["m0", "m2"])
        self.assertEqual(self.state().state_token, "s3")
        self.assertEqual(first.errors, [])
        pending = PendingObject.objects.get(remote_id="m1")
        self.assertEqual(pending.attempts, 1)
        self.assertEqual(pending.status, PendingStatus.PENDING)

        self.remote.broken_ids.clear()
        second = self.make_engine().run_sync()

        self.assertEqual(second.objects_archived, 1)
        self.assertIn("m1", self.manifest())
        self.assertFalse(PendingObject.objects.exists())

    @override_settings(MAILVAULT_MAX_OBJECT_RETRIES=2)
    def test_exhausted_unit_reported(self):
        self.remote.broken_ids.add("m1")

        self.make_engine(max_unit_attempts=1).run_sync()
        result = self.make_engine(max_unit_attempts=1).run_sync()

        self.assertEqual(len(result.errors), 1)
        error = result.errors[0]
        self.assertIsInstance(error, ObjectWriteFailure)
        self.assertEqual(error.remote_id, "m1")
        self.assertEqual(error.attempts, 2)
        self.assertEqual(result.objects_failed, 1)
        self.assertEqual(PendingObject.objects.get(remote_id="m1").status, PendingStatus.FAILED)
        self.assertEqual(SyncSession.objects.filter(status="partial").count(), 1)

        self.remote.fetch_calls.clear()
        self.make_engine(max_unit_attempts=1).run_sync()
        self.assertNotIn("m1", self.remote.fetch_calls)

    def test_missing_object_fails_permanently(self):
        self.make_engine().run_sync()
        self.remote.add_message("m3")
        del self.remote.messages["m3"]

        result = self.make_engine().run_sync()

        self.assertEqual([e.remote_id for e in result.errors], ["m3"])
        self.assertEqual(self.remote.fetch_calls.count("m3"), 1)
        self.assertEqual(self.state().state_token, "s4")

    def test_unconfirmed_write_not_committed(self):
        self.store.invisible_writes = True

        self.make_engine().run_sync()

        self.assertEqual(self.manifest(), {})
        self.assertEqual(self.state().state_token, "s3")
        self.assertEqual(PendingObject.objects.filter(status=PendingStatus.PENDING).count(), 3)

        self.store.invisible_writes = False
        self.make_engine().run_sync()

        self.assertEqual(len(self.manifest()), 3)


class TransientErrorTests(SyncEngineTestCase):
    def test_retries_with_backoff(self):
        self.remote.add_message("m0")
        self.remote.change_failures = 2

        result = self.make_engine().run_sync()

        self.assertEqual(result.objects_archived, 1)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [2, 4])

    def test_backoff_is_capped(self):
        self.remote.change_failures = 3

        self.make_engine(backoff_max_seconds=3).run_sync()

        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [2, 3, 3])

    def test_exhausted_retries_surface_last_token(self):
        self.remote.add_message("m0")
        self.make_engine().run_sync()
        self.remote.change_failures = 10

        engine = self.make_engine(pass_retries=2)
        with self.assertRaises(TransientRemoteError) as ctx:
            engine.run_sync()

        self.assertEqual(ctx.exception.account, "personal")
        self.assertEqual(ctx.exception.last_token, "s1")
        self.assertEqual(self.sleep.call_count, 2)
        self.assertEqual(engine.state, PassState.FAILED)
        self.assertEqual(SyncSession.objects.filter(status="failed").count(), 1)

    def test_failed_units_wait_before_retry(self):
        self.remote.add_message("m0")
        self.remote.fetch_failures["m0"] = 1

        result = self.make_engine(backoff_seconds=3).run_sync()

        self.assertEqual(result.objects_archived, 1)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [3])


class GuardTests(SyncEngineTestCase):
    def test_disabled_account_raises_sync_aborted(self):
        self.account.is_active = False
        self.account.save()

        with self.assertRaises(SyncAbortedError):
            self.make_engine().run_sync()

    def test_held_lock_rejects_second_pass(self):
        SyncStateStore().acquire_lock(self.account, "another-worker")

        with self.assertRaises(SyncLockedError):
            self.make_engine().run_sync()

        self.assertFalse(SyncSession.objects.exists())

    def test_lock_released_after_run(self):
        self.make_engine().run_sync()
        self.assertTrue(SyncStateStore().acquire_lock(self.account, "next"))

    def test_notifier_failure_does_not_fail_pass(self):
        self.remote.add_message("m0")

        result = self.make_engine(notifier=FailingNotifier()).run_sync()

        self.assertEqual(result.objects_archived, 1)
        self.assertIn("m0", self.manifest())
        self.assertTrue(SyncEvent.objects.filter(event_type="notify_failed").exists())


@override_settings(MAILVAULT_LOCK_TTL_SECONDS=0)
class LeaseRenewalTests(SyncEngineTestCase):
    def setUp(self):
        super().setUp()
        for i in range(5):
            self.remote.add_message(f"m{i}")

    def test_expired_lease_renewed_between_passes(self):
        result = self.make_engine(page_size=2, max_pages=1).run_sync()

        self.assertEqual(result.passes, 3)
        self.assertEqual(len(self.manifest()), 5)

    def test_lease_taken_over_stops_run(self):
        state_store = SyncStateStore()

        class TakeoverNotifier(IndexNotifier):
            def notify(notifier, items):
                self.assertTrue(state_store.acquire_lock(self.account, "intruder", ttl=3600))

        engine = self.make_engine(page_size=2, max_pages=1, notifier=TakeoverNotifier())
        with self.assertRaises(SyncLockedError) as ctx:
            engine.run_sync()

        snapshot = self.state()
        self.assertEqual(snapshot.manifest_version, 1)
        self.assertEqual(sorted(snapshot.manifest), ["m0", "m1"])
        self.assertEqual(ctx.exception.last_token, snapshot.state_token)
        self.assertEqual(SyncSession.objects.get(account=self.account).status, "failed")
        self.assertFalse(state_store.acquire_lock(self.account, "next", ttl=3600))


class ArchivedMetadataTests(SyncEngineTestCase):
    def test_metadata_stored_with_message(self):
        self.remote.add_message("m0")
        self.remote.metadata["m0"]["keywords"] = {"$seen": True, "$answered": True}

        self.make_engine().run_sync()

        keys = self.store.list("emails/m0/")
        self.assertEqual(len(keys), 1)
        document = json.loads(self.store.get(keys[0]))
        self.assertEqual(document["contentKey"], self.manifest()["m0"])
        self.assertEqual(document["email"]["mailboxIds"], {"inbox": True})
        self.assertEqual(document["email"]["keywords"], {"$seen": True, "$answered": True})

    def test_mailboxes_snapshotted_once(self):
        self.remote.mailboxes.append(
            {"id": "archive", "name": "Archive", "role": "archive", "parentId": None}
        )

        first = self.make_engine().run_sync()

        self.assertEqual(first.mailboxes_seen, 2)
        self.assertEqual(first.mailboxes_archived, 2)
        self.assertEqual(len(self.store.list("mailboxes/")), 2)
        self.assertTrue(SyncEvent.objects.filter(event_type="mailbox_snapshot").exists())

        second = self.make_engine().run_sync()
        self.assertEqual(second.mailboxes_archived, 0)

        self.remote.mailboxes[1]["name"] = "Old mail"
        third = self.make_engine().run_sync()

        self.assertEqual(third.mailboxes_archived, 1)
        self.assertEqual(len(self.store.list("mailboxes/archive/")), 2)
        self.assertEqual(len(self.store.list("mailboxes/inbox/")), 1)

    def test_mailbox_failure_does_not_fail_run(self):
        self.remote.add_message("m0")
        self.remote.mailbox_failures = 1

        result = self.make_engine().run_sync()

        self.assertEqual(result.objects_archived, 1)
        self.assertEqual(result.mailboxes_archived, 0)
        self.assertEqual(SyncSession.objects.get(account=self.account).status, "completed")
        self.assertTrue(SyncEvent.objects.filter(event_type="mailbox_failed").exists())
