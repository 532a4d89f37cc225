"""
Django management command to write an archived message to an .eml file.
"""

from pathlib import Path

from django.core.management.base import BaseCommand, CommandError

from mailvault.models import ManifestEntry
from mailvault.storage import ObjectStoreError, get_object_store, object_key_for

from ._common import resolve_account


class Command(BaseCommand):
    help = "Export an archived message by remote id or content key"

    def add_arguments(self, parser):
        parser.add_argument("account", help="Account ID or name")
        parser.add_argument("message", help="Remote id or sha256: content key")
        parser.add_argument(
            "--output",
            "-o",
            help="Destination file (default: <remote id>.eml in the current directory)",
        )

    def handle(self, *args, **options):
        account = resolve_account(options["account"], active_only=False)
        identifier = options["message"]

        entries = ManifestEntry.objects.filter(account=account)
        if identifier.startswith("sha256:"):
            entry = entries.filter(content_key=identifier).first()
        else:
            entry = entries.filter(remote_id=identifier).first()
        if entry is None:
            raise CommandError(f"No archived message {identifier} for {account.name}")

        store = get_object_store(account)
        try:
            data = store.get(object_key_for(entry.content_key))
        except ObjectStoreError as e:
            raise CommandError(f"Could not read {entry.content_key}: {e}")

        output = Path(options["output"] or f"{entry.remote_id}.eml")
        output.write_bytes(data)

        self.stdout.write(
            self.style.SUCCESS(f"✓ Wrote {len(data):,} bytes to {output}")
        )
