"""
Django management command to print the committed sync record of an account.
"""

import json

from django.core.management.base import BaseCommand

from mailvault.sync.state_store import SyncStateStore

from ._common import resolve_account


class Command(BaseCommand):
    help = "Print the state token and manifest of an account as JSON"

    def add_arguments(self, parser):
        parser.add_argument("account", help="Account ID or name")

    def handle(self, *args, **options):
        account = resolve_account(options["account"], active_only=False)
        snapshot = SyncStateStore().load(account)

        data = {
            "stateToken": snapshot.state_token,
            "manifestVersion": snapshot.manifest_version,
            "manifest": [
                {
                    "remoteId": record.remote_id,
                    "contentKey": record.content_key,
                    "size": record.size,
                    "archivedAt": record.archived_at.isoformat(),
                }
                for record in snapshot.manifest.values()
            ],
        }

        self.stdout.write(json.dumps(data, indent=2))
