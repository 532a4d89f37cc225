"""
Django management command to check archived objects against their content keys.
"""

from django.core.management.base import BaseCommand, CommandError

from mailvault.storage import (
    DigestError,
    ObjectNotFoundInStoreError,
    ObjectStoreError,
    get_object_store,
    verify_object,
)

from ._common import resolve_account


class Command(BaseCommand):
    help = "Re-hash every archived message and report missing or corrupt objects"

    def add_arguments(self, parser):
        parser.add_argument("account", help="Account ID or name")

    def handle(self, *args, **options):
        account = resolve_account(options["account"], active_only=False)
        store = get_object_store(account)

        content_keys = (
            account.manifest_entries.order_by()
            .values_list("content_key", flat=True)
            .distinct()
        )

        checked = 0
        missing = []
        corrupt = []
        for content_key in content_keys:
            checked += 1
            try:
                verify_object(store, content_key)
            except ObjectNotFoundInStoreError:
                missing.append(content_key)
            except (DigestError, ObjectStoreError) as e:
                corrupt.append(f"{content_key}: {e}")

        self.stdout.write(f"Checked {checked} object(s) for {account.name}")

        for content_key in missing:
            self.stdout.write(self.style.ERROR(f"  MISSING {content_key}"))
        for problem in corrupt:
            self.stdout.write(self.style.ERROR(f"  CORRUPT {problem}"))

        if missing or corrupt:
            raise CommandError(
                f"{len(missing)} missing and {len(corrupt)} corrupt object(s)"
            )

        self.stdout.write(self.style.SUCCESS("✓ All objects verified"))
