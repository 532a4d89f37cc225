"""
Django management command to sync a mailbox account.
"""

import signal

from django.core.management.base import BaseCommand, CommandError

from mailvault import secrets
from mailvault.providers.jmap import JmapClient
from mailvault.search import SearchIndexNotifier
from mailvault.storage import get_object_store
from mailvault.sync import SyncCancelledError, SyncEngine, SyncError

from ._common import resolve_account


class Command(BaseCommand):
    help = "Sync a JMAP mailbox into the local archive"

    def add_arguments(self, parser):
        parser.add_argument(
            "account",
            help="Account ID or name to sync",
        )
        parser.add_argument(
            "--full-resync",
            action="store_true",
            help="Ignore the stored state token and enumerate every message",
        )
        parser.add_argument(
            "--max-pages",
            type=int,
            help="Change pages per pass (default: MAILVAULT_MAX_PAGES)",
        )
        parser.add_argument(
            "--concurrency",
            type=int,
            help="Concurrent archive writes (default: MAILVAULT_WRITE_CONCURRENCY)",
        )

    def handle(self, *args, **options):
        account = resolve_account(options["account"])

        if not secrets.has_secret(account):
            raise CommandError(
                f"No secret stored for {account.name}. "
                f"Run: python manage.py set_secret {account.name}"
            )

        self.stdout.write(f"Syncing account: {account.name} ({account.host})")

        store = get_object_store(account)
        engine = SyncEngine(
            account=account,
            store=store,
            client=JmapClient(account),
            notifier=SearchIndexNotifier(account, store),
            max_pages=options["max_pages"],
            concurrency=options["concurrency"],
        )

        if options["full_resync"]:
            self.stdout.write("Forcing full resync (ignoring stored state token)")

        # Ctrl-C stops the current pass without committing it
        previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: engine.cancel())
        try:
            result = engine.run_sync(full_resync=options["full_resync"])
        except SyncCancelledError:
            self.stdout.write(self.style.WARNING("\n⚠ Sync cancelled; earlier passes are committed"))
            return
        except SyncError as e:
            self.stdout.write(self.style.ERROR(f"\n✗ Sync failed: {e}"))
            if e.last_token is not None:
                self.stdout.write(f"  Last committed token: {e.last_token or '(none)'}")
            raise CommandError(f"Sync failed: {e}")
        except Exception as e:
            self.stdout.write(self.style.ERROR(f"\n✗ Sync failed: {e}"))
            raise CommandError(f"Sync failed: {e}")
        finally:
            signal.signal(signal.SIGINT, previous_handler)

        self.stdout.write(
            self.style.SUCCESS(
                f"\n✓ Sync completed successfully:\n"
                f"  - Passes: {result.passes}\n"
                f"  - Messages archived: {result.objects_archived}\n"
                f"  - Already archived: {result.objects_skipped}\n"
                f"  - Failed: {result.objects_failed}\n"
                f"  - Bytes archived: {result.bytes_archived:,}\n"
                f"  - Full resync: {'yes' if result.full_resync else 'no'}"
            )
        )

        if result.errors:
            self.stdout.write(
                self.style.WARNING(
                    f"\n⚠ Encountered {len(result.errors)} error(s) during sync"
                )
            )
            for i, error in enumerate(result.errors[:5], 1):
                self.stdout.write(f"  {i}. {error}")
            if len(result.errors) > 5:
                self.stdout.write(f"  ... and {len(result.errors) - 5} more")
